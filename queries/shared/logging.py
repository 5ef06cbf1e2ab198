"""Rich-based logging helpers for the command line front-end."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme
from rich.traceback import install

install(show_locals=False)

_THEME = Theme(
    {
        "info": "cyan",
        "warning": "yellow",
        "error": "bold red",
        "success": "bold green",
        "debug": "dim",
    }
)

# Payloads (result tables, JSON) go to stdout; everything else goes to stderr.
# Highlighting is off so numbers inside messages never pick up ANSI styling.
_stdout_console = Console(theme=_THEME, highlight=False)
_stderr_console = Console(stderr=True, theme=_THEME, highlight=False)

_LIBRARY_LOGGER = "queries"


@dataclass(slots=True)
class Logger:
    """Lightweight logger facade backed by Rich consoles."""

    verbose: bool = False

    @property
    def console(self) -> Console:
        return _stdout_console

    def info(self, message: str) -> None:
        _stderr_console.print(message, style="info", markup=False)

    def success(self, message: str) -> None:
        _stderr_console.print(message, style="success", markup=False)

    def warning(self, message: str) -> None:
        _stderr_console.print(message, style="warning", markup=False)

    def error(self, message: str) -> None:
        _stderr_console.print(message, style="error", markup=False)

    def debug(self, message: str) -> None:
        if self.verbose:
            _stderr_console.print(message, style="debug", markup=False)


def configure_logging(verbose: bool = False) -> None:
    """Route the library's stdlib loggers through a Rich handler on stderr.

    Library modules log with ``logging.getLogger(__name__)``; this only decides
    where those records end up. Calling it twice does not stack handlers.
    """
    root = logging.getLogger(_LIBRARY_LOGGER)
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    handler = RichHandler(console=_stderr_console, show_path=False, markup=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)


def get_logger(verbose: bool = False) -> Logger:
    """Return a configured Logger instance."""
    configure_logging(verbose)
    return Logger(verbose=verbose)
