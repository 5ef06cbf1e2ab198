"""Row-driven report templates (HTML and flat OpenDocument text).

A template has exactly one body region. Everything before it is emitted
once, the body is emitted once per table row with its placeholder tags
replaced by that row's values, and everything after it is emitted once.

    HTML   body ``<section>``      placeholder ``<template>column</template>``
    OOXML  body ``<office:body>``  placeholder ``<text:placeholder>column</text:placeholder>``

In HTML mode the ``<section>`` tags themselves are repeated for every row;
in OOXML mode the single ``<office:body>`` wraps all repetitions.

Tags are located with a real markup parser (``html.parser`` or expat), so
markup inside comments, CDATA sections and script blocks is left alone.
Everything outside the placeholders is copied through byte for byte.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from html import escape
from html.parser import HTMLParser
from pathlib import Path
from typing import Any
from xml.parsers import expat

from queries.shared.exceptions import ReportError
from queries.tables.field import DBType
from queries.tables.table import Table, is_plot_payload

_log = logging.getLogger(__name__)

PLOT_WIDTH = "600px"
PLOT_HEIGHT = "400px"


class TemplateMode(Enum):
    HTML = "html"
    OOXML = "ooxml"

    @property
    def body_tag(self) -> str:
        return "section" if self is TemplateMode.HTML else "office:body"

    @property
    def placeholder_tag(self) -> str:
        return "template" if self is TemplateMode.HTML else "text:placeholder"

    @classmethod
    def for_path(cls, path: str | Path) -> TemplateMode:
        suffix = Path(path).suffix.lower()
        if suffix in (".html", ".htm"):
            return cls.HTML
        if suffix in (".fodt", ".xml"):
            return cls.OOXML
        raise ReportError("Invalid or missing file extension. Should be .html or .fodt")


@dataclass(frozen=True, slots=True)
class RenderedReport:
    document: str
    # (href, plot JSON) for every plot payload referenced by the document.
    plots: list[tuple[str, Any]] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class _Placeholder:
    start: int
    end: int
    name: str


class _Layout:
    """Offsets of body tags and placeholders, fed by either markup parser."""

    def __init__(self, mode: TemplateMode) -> None:
        self.mode = mode
        self.opens: list[tuple[int, int]] = []
        self.closes: list[tuple[int, int]] = []
        self.placeholders: list[_Placeholder] = []
        self._depth = 0
        self._start = 0
        self._text: list[str] = []

    def start_tag(self, name: str, start: int, end: int, closed: bool = False) -> None:
        if name == self.mode.body_tag:
            self.opens.append((start, end))
            if closed:
                self.closes.append((end, end))
        elif name == self.mode.placeholder_tag:
            if closed:
                if self._depth == 0:
                    self.placeholders.append(_Placeholder(start, end, ""))
                return
            if self._depth == 0:
                self._start = start
                self._text = []
            self._depth += 1

    def end_tag(self, name: str, start: int, end: int) -> None:
        if name == self.mode.body_tag:
            self.closes.append((start, end))
        elif name == self.mode.placeholder_tag and self._depth:
            self._depth -= 1
            if self._depth == 0:
                self.placeholders.append(_Placeholder(self._start, end, "".join(self._text).strip()))

    def text(self, data: str) -> None:
        if self._depth:
            self._text.append(data)


def _tag_end(text: str, start: int) -> int:
    quote = None
    for index in range(start, len(text)):
        ch = text[index]
        if quote:
            if ch == quote:
                quote = None
        elif ch in "\"'":
            quote = ch
        elif ch == ">":
            return index + 1
    raise ReportError("Unterminated tag in template")


class _HtmlScanner(HTMLParser):
    def __init__(self, template: str, layout: _Layout) -> None:
        super().__init__(convert_charrefs=True)
        self._template = template
        self._layout = layout
        # getpos() reports (line, column); lines are counted on "\n" only.
        self._line_starts = [0] + [index + 1 for index, ch in enumerate(template) if ch == "\n"]

    def _offset(self) -> int:
        line, column = self.getpos()
        return self._line_starts[line - 1] + column

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        start = self._offset()
        self._layout.start_tag(tag, start, start + len(self.get_starttag_text() or ""))

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        start = self._offset()
        self._layout.start_tag(tag, start, start + len(self.get_starttag_text() or ""), closed=True)

    def handle_endtag(self, tag: str) -> None:
        start = self._offset()
        self._layout.end_tag(tag, start, _tag_end(self._template, start))

    def handle_data(self, data: str) -> None:
        self._layout.text(data)


class _XmlScanner:
    """Feeds expat events into a layout.

    Prefixed names such as ``office:body`` are matched literally, so
    templates need not declare their namespaces.
    """

    def __init__(self, template: str, layout: _Layout) -> None:
        self._template = template
        self._data = template.encode("utf-8")
        self._layout = layout
        self._skip_end = False
        self._parser = expat.ParserCreate()
        self._parser.StartElementHandler = self._start
        self._parser.EndElementHandler = self._end
        self._parser.CharacterDataHandler = layout.text

    def scan(self) -> None:
        self._parser.Parse(self._data, True)

    def _offset(self) -> int:
        return len(self._data[: self._parser.CurrentByteIndex].decode("utf-8"))

    def _tracked(self, name: str) -> bool:
        return name in (self._layout.mode.body_tag, self._layout.mode.placeholder_tag)

    def _start(self, name: str, attrs: dict[str, str]) -> None:
        if not self._tracked(name):
            return
        start = self._offset()
        end = _tag_end(self._template, start)
        self._skip_end = self._template[end - 2 : end] == "/>"
        self._layout.start_tag(name, start, end, closed=self._skip_end)

    def _end(self, name: str) -> None:
        if not self._tracked(name):
            return
        # An empty-element tag was recorded whole by _start.
        if self._skip_end:
            self._skip_end = False
            return
        start = self._offset()
        self._layout.end_tag(name, start, _tag_end(self._template, start))


def _scan(template: str, mode: TemplateMode) -> _Layout:
    layout = _Layout(mode)
    if mode is TemplateMode.HTML:
        scanner = _HtmlScanner(template, layout)
        scanner.feed(template)
        scanner.close()
        return layout
    try:
        _XmlScanner(template, layout).scan()
    except expat.ExpatError as exc:
        if layout.opens and not layout.closes:
            raise ReportError("Body of document was not closed") from exc
        raise ReportError(f"Template is not well-formed XML: {exc}") from exc
    return layout


def _locate(template: str, mode: TemplateMode) -> tuple[tuple[int, int], tuple[int, int], list[_Placeholder]]:
    if not template.strip():
        raise ReportError("Empty template document")
    layout = _scan(template, mode)
    if len(layout.opens) > 1:
        raise ReportError(f"Multiple <{mode.body_tag}> tags found (expected one)")
    if not layout.opens:
        raise ReportError(f"Template has no <{mode.body_tag}> body")
    opening = layout.opens[0]
    if not layout.closes or layout.closes[-1][0] < opening[1]:
        raise ReportError("Body of document was not closed")
    closing = layout.closes[-1]
    inside = [ph for ph in layout.placeholders if ph.start >= opening[1] and ph.end <= closing[0]]
    return opening, closing, inside


def split_body(template: str, mode: TemplateMode) -> tuple[str, str, str, str, str]:
    """Return ``(prelude, open_tag, body, close_tag, postlude)``.

    Raises ReportError for an empty template, a missing or unclosed body and
    more than one body.
    """
    (open_start, open_end), (close_start, close_end), _ = _locate(template, mode)
    return (
        template[:open_start],
        template[open_start:open_end],
        template[open_end:close_start],
        template[close_start:close_end],
        template[close_end:],
    )


def render_report(
    template: str,
    table: Table,
    mode: TemplateMode,
    *,
    missing: str = "",
    precision: int = 4,
) -> RenderedReport:
    """Substitute ``table`` into ``template``, repeating the body per row."""
    (open_start, open_end), (close_start, close_end), placeholders = _locate(template, mode)
    open_tag = template[open_start:open_end]
    close_tag = template[close_start:close_end]
    plots: list[tuple[str, Any]] = []
    nrows, _ = table.shape()

    def value_text(name: str, row: int) -> str:
        column = table.get_column_by_name(name)
        if column is None:
            raise ReportError(f"Field '{name}' at template does not match any column")
        value = column.value_at(row)
        if value is None:
            return escape(missing, quote=False)
        if column.kind is DBType.JSON and is_plot_payload(value):
            href = f"plot-{len(plots) + 1}.svg"
            plots.append((href, value))
            return _plot_reference(href, mode)
        return escape(column.display_content_at_index(row, precision) or "", quote=False)

    def substitute(row: int) -> str:
        pieces: list[str] = []
        cursor = open_end
        for placeholder in placeholders:
            pieces.append(template[cursor : placeholder.start])
            pieces.append(value_text(placeholder.name, row))
            cursor = placeholder.end
        pieces.append(template[cursor:close_start])
        return "".join(pieces)

    rows = [substitute(row) for row in range(nrows)]
    if mode is TemplateMode.HTML:
        rendered_body = "".join(f"{open_tag}{text}{close_tag}" for text in rows)
    else:
        rendered_body = open_tag + "".join(rows) + close_tag
    _log.debug("Rendered %d row(s) into %s template", nrows, mode.value)
    return RenderedReport(template[:open_start] + rendered_body + template[close_end:], plots)


def _plot_reference(href: str, mode: TemplateMode) -> str:
    if mode is TemplateMode.HTML:
        return f'<img src="{href}" width="{PLOT_WIDTH}" height="{PLOT_HEIGHT}"/>'
    return (
        f'<draw:frame draw:name="{Path(href).stem}" svg:width="{PLOT_WIDTH}" svg:height="{PLOT_HEIGHT}">'
        f'<draw:image xlink:href="{href}" xlink:type="simple" xlink:show="embed" xlink:actuate="onLoad"/>'
        "</draw:frame>"
    )


def render_report_file(template_path: str | Path, table: Table, output_path: str | Path | None = None) -> RenderedReport:
    """Render a template file; when ``output_path`` is given, write the result there.

    The output file must share the template's extension.
    """
    source = Path(template_path)
    mode = TemplateMode.for_path(source)
    try:
        template = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise ReportError(f"Unable to read template {source}: {exc}") from exc
    report = render_report(template, table, mode)
    if output_path is not None:
        target = Path(output_path)
        if target.suffix.lower() != source.suffix.lower():
            raise ReportError("Layout and output files should have the same extension")
        try:
            target.write_text(report.document, encoding="utf-8")
        except OSError as exc:
            raise ReportError(f"Unable to write {target}: {exc}") from exc
    return report
