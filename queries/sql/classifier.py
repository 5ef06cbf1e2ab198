"""Lexical pre-pass over SQL scripts.

Splits a script into statements, classifies each one by its leading keyword,
applies the execution policy and injects the configured row limit into
selects. Nothing here talks to a database: the lexer only understands enough
of SQL (quotes, comments and dollar-quoted bodies) to find statement
boundaries and top-level keywords.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Mapping, Sequence

from queries.shared.config import ExecutionSettings

DML_REJECTION = "Update/delete statements not permitted by current policy"
DDL_REJECTION = "Alter/drop/truncate statements not permitted by current policy"
PLAN_REJECTION = "Only SELECT commands supported in plan mode"

_DOLLAR_TAG_RE = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)?\$")
_SUBSTITUTION_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_WORD_START = re.compile(r"[A-Za-z_]")


class StatementKind(Enum):
    SELECT = "Select"
    INSERT = "Insert"
    UPDATE = "Update"
    DELETE = "Delete"
    CREATE = "Create"
    ALTER = "Alter"
    DROP = "Drop"
    TRUNCATE = "Truncate"
    GRANT = "Grant"
    REVOKE = "Revoke"
    COPY = "Copy"
    BEGIN = "Begin"
    COMMIT = "Commit"
    ROLLBACK = "Rollback"
    SAVEPOINT = "Savepoint"
    LISTEN = "Listen"
    OTHER = "Other"

    @property
    def is_dml(self) -> bool:
        return self in (StatementKind.INSERT, StatementKind.UPDATE, StatementKind.DELETE)

    @property
    def is_ddl(self) -> bool:
        return self in (StatementKind.CREATE, StatementKind.ALTER, StatementKind.DROP, StatementKind.TRUNCATE)

    @property
    def may_return_rows(self) -> bool:
        # INSERT ... RETURNING, SHOW, EXPLAIN and PRAGMA all produce rows.
        return self is StatementKind.SELECT or self.is_dml or self is StatementKind.OTHER


_KEYWORDS: dict[str, StatementKind] = {
    "SELECT": StatementKind.SELECT,
    "INSERT": StatementKind.INSERT,
    "UPDATE": StatementKind.UPDATE,
    "DELETE": StatementKind.DELETE,
    "CREATE": StatementKind.CREATE,
    "ALTER": StatementKind.ALTER,
    "DROP": StatementKind.DROP,
    "TRUNCATE": StatementKind.TRUNCATE,
    "GRANT": StatementKind.GRANT,
    "REVOKE": StatementKind.REVOKE,
    "COPY": StatementKind.COPY,
    "BEGIN": StatementKind.BEGIN,
    "START": StatementKind.BEGIN,
    "COMMIT": StatementKind.COMMIT,
    "END": StatementKind.COMMIT,
    "ROLLBACK": StatementKind.ROLLBACK,
    "ABORT": StatementKind.ROLLBACK,
    "SAVEPOINT": StatementKind.SAVEPOINT,
    "RELEASE": StatementKind.SAVEPOINT,
    "LISTEN": StatementKind.LISTEN,
}

_CTE_BODY_KINDS = {
    "SELECT": StatementKind.SELECT,
    "VALUES": StatementKind.SELECT,
    "INSERT": StatementKind.INSERT,
    "UPDATE": StatementKind.UPDATE,
    "DELETE": StatementKind.DELETE,
}

# Top-level clauses after which an appended LIMIT would be misplaced or redundant.
_LIMIT_BLOCKERS = {"LIMIT", "FETCH", "OFFSET", "FOR", "INTO"}


class ScriptSyntaxError(ValueError):
    """Raised by the lexer for input whose statement boundaries are ambiguous."""


@dataclass(frozen=True, slots=True)
class SqlStatement:
    """One statement of a script, trimmed, without its terminating semicolon."""

    text: str
    kind: StatementKind

    @property
    def keyword(self) -> str:
        word = next((w for w, _depth in _top_level_words(self.text)), "")
        return word.title()


@dataclass(frozen=True, slots=True)
class ParsedScript:
    """Statements read before the first lexer error, plus that error if any."""

    statements: tuple[SqlStatement, ...]
    error: str | None = None


@dataclass(frozen=True, slots=True)
class _Token:
    kind: str  # "word", "code", "open", "close", "semi"
    start: int
    end: int


def _tokens(text: str) -> Iterator[_Token]:
    """Yield code tokens, skipping whitespace, comments and literals' contents.

    Quoted literals and identifiers are reported as single "code" tokens.
    Raises ScriptSyntaxError for unterminated constructs.
    """
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
        elif text.startswith("--", i):
            end = text.find("\n", i)
            i = n if end == -1 else end + 1
        elif text.startswith("/*", i):
            i = _skip_block_comment(text, i)
        elif ch in ("'", '"'):
            start = i
            escapes = ch == "'" and i > 0 and text[i - 1] in "eE" and (i < 2 or not _is_word_char(text[i - 2]))
            i = _skip_quoted(text, i, ch, escapes)
            yield _Token("code", start, i)
        elif ch == "$":
            match = _DOLLAR_TAG_RE.match(text, i)
            if match:
                closing = text.find(match.group(0), match.end())
                if closing == -1:
                    raise ScriptSyntaxError(f"Unterminated dollar-quoted string starting with {match.group(0)}")
                end = closing + len(match.group(0))
                yield _Token("code", i, end)
                i = end
            elif i + 1 < n and text[i + 1].isdigit():
                j = i + 1
                while j < n and text[j].isdigit():
                    j += 1
                raise ScriptSyntaxError(f"Unsupported SQL token: {text[i:j]}")
            else:
                yield _Token("code", i, i + 1)
                i += 1
        elif _WORD_START.match(ch):
            start = i
            while i < n and _is_word_char(text[i]):
                i += 1
            yield _Token("word", start, i)
        elif ch == "(":
            yield _Token("open", i, i + 1)
            i += 1
        elif ch == ")":
            yield _Token("close", i, i + 1)
            i += 1
        elif ch == ";":
            yield _Token("semi", i, i + 1)
            i += 1
        else:
            yield _Token("code", i, i + 1)
            i += 1


def _is_word_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_$"


def _skip_block_comment(text: str, i: int) -> int:
    depth = 0
    n = len(text)
    while i < n:
        if text.startswith("/*", i):
            depth += 1
            i += 2
        elif text.startswith("*/", i):
            depth -= 1
            i += 2
            if depth == 0:
                return i
        else:
            i += 1
    raise ScriptSyntaxError("Unterminated block comment")


def _skip_quoted(text: str, i: int, quote: str, escapes: bool) -> int:
    n = len(text)
    i += 1
    while i < n:
        ch = text[i]
        if escapes and ch == "\\":
            i += 2
            continue
        if ch == quote:
            if i + 1 < n and text[i + 1] == quote:
                i += 2
                continue
            return i + 1
        i += 1
    kind = "string literal" if quote == "'" else "quoted identifier"
    raise ScriptSyntaxError(f"Unterminated {kind}")


def _top_level_words(text: str) -> Iterator[tuple[str, int]]:
    """Yield (UPPERCASE word, paren depth) pairs; lexer errors end the stream."""
    depth = 0
    try:
        for token in _tokens(text):
            if token.kind == "open":
                depth += 1
            elif token.kind == "close":
                depth = max(depth - 1, 0)
            elif token.kind == "word":
                yield text[token.start:token.end].upper(), depth
    except ScriptSyntaxError:
        return


def parse_script(script: str) -> ParsedScript:
    """Split and classify ``script``.

    Each statement keeps its original text, trimmed and without trailing
    comments. Chunks holding only comments or whitespace are dropped. On a
    lexer error the statements completed so far are kept and ``error`` holds
    the message for the unreadable tail.
    """
    statements: list[SqlStatement] = []
    code_start: int | None = None
    chunk_start = 0
    code_end = 0
    try:
        for token in _tokens(script):
            if token.kind == "semi":
                if code_start is not None:
                    statements.append(_make_statement(script[chunk_start:code_end].strip()))
                code_start = None
                chunk_start = token.end
                continue
            if code_start is None:
                code_start = token.start
            code_end = token.end
    except ScriptSyntaxError as exc:
        return ParsedScript(tuple(statements), str(exc))
    if code_start is not None:
        statements.append(_make_statement(script[chunk_start:code_end].strip()))
    return ParsedScript(tuple(statements))


def split_statements(script: str) -> list[SqlStatement]:
    """Return the statements of ``script``; raises ScriptSyntaxError on lexer errors."""
    parsed = parse_script(script)
    if parsed.error:
        raise ScriptSyntaxError(parsed.error)
    return list(parsed.statements)


def _make_statement(text: str) -> SqlStatement:
    return SqlStatement(text, classify(text))


def classify(text: str) -> StatementKind:
    """Classify a single statement by its first keyword (case-insensitive).

    Statements starting with WITH take the kind of the first keyword after
    the common table expressions.
    """
    words = _top_level_words(text)
    first = next(words, None)
    if first is None:
        return StatementKind.OTHER
    keyword, _depth = first
    if keyword == "WITH":
        for word, depth in words:
            if depth == 0 and word in _CTE_BODY_KINDS:
                return _CTE_BODY_KINDS[word]
        return StatementKind.OTHER
    return _KEYWORDS.get(keyword, StatementKind.OTHER)


def policy_rejection(kind: StatementKind, settings: ExecutionSettings) -> str | None:
    """Return the rejection message for ``kind`` under ``settings``, if any."""
    if kind in (StatementKind.UPDATE, StatementKind.DELETE) and not settings.accept_dml:
        return DML_REJECTION
    if kind in (StatementKind.ALTER, StatementKind.DROP, StatementKind.TRUNCATE) and not settings.accept_ddl:
        return DDL_REJECTION
    return None


def check_policy(
    statements: Sequence[SqlStatement], settings: ExecutionSettings
) -> list[tuple[SqlStatement, str]]:
    """Return every statement rejected by the policy together with its message."""
    rejected: list[tuple[SqlStatement, str]] = []
    for statement in statements:
        message = policy_rejection(statement.kind, settings)
        if message:
            rejected.append((statement, message))
    return rejected


def has_top_level_limit(text: str) -> bool:
    return any(depth == 0 and word in _LIMIT_BLOCKERS for word, depth in _top_level_words(text))


def inject_row_limit(statement: SqlStatement, row_limit: int) -> str:
    """Return the statement text, with ``LIMIT row_limit`` appended to limit-free selects."""
    if statement.kind is not StatementKind.SELECT or row_limit <= 0:
        return statement.text
    if has_top_level_limit(statement.text):
        return statement.text
    return f"{statement.text} LIMIT {row_limit}"


def substitute(text: str, substitutions: Mapping[str, str]) -> str:
    """Replace ``${name}`` placeholders; unknown names are left in place."""
    if not substitutions:
        return text

    def _replace(match: re.Match[str]) -> str:
        return substitutions.get(match.group(1), match.group(0))

    return _SUBSTITUTION_RE.sub(_replace, text)


def is_plannable(statement: SqlStatement) -> bool:
    return statement.kind is StatementKind.SELECT


def explain_statement(statement: SqlStatement, prefix: str) -> SqlStatement:
    """Prefix a query with ``prefix`` (e.g. ``EXPLAIN (FORMAT json)``)."""
    if statement.kind is not StatementKind.SELECT:
        raise ValueError(PLAN_REJECTION)
    return SqlStatement(f"{prefix} {statement.text}", StatementKind.OTHER)
