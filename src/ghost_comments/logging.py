"""Stderr logging for the annotation store and its front ends.

Provides consistent logging behavior across the CLI, watcher and MCP server:
- Stderr for all messages, so stdout stays clean for command output
- Optional debug logging via --verbose flag
- Colored output when stderr is a terminal
"""

import sys
import traceback
from typing import Any


class Logger:
    """Simple stderr logger.

    Attributes:
        verbose: If True, DEBUG messages are printed
        use_colors: If True, use ANSI color codes
    """

    def __init__(self, verbose: bool = False, use_colors: bool = True) -> None:
        self.verbose = verbose
        self.use_colors = use_colors and sys.stderr.isatty()

    def _colorize(self, text: str, color_code: str) -> str:
        if not self.use_colors:
            return text
        return f"\033[{color_code}m{text}\033[0m"

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log debug message (only if verbose enabled).

        Args:
            message: Message to log
            **kwargs: Additional key-value pairs to include
        """
        if not self.verbose:
            return

        formatted = self._colorize(f"DEBUG: {message}", "36")  # Cyan
        if kwargs:
            details = " ".join(f"{k}={v!r}" for k, v in kwargs.items())
            formatted += f" ({details})"

        print(formatted, file=sys.stderr)

    def info(self, message: str) -> None:
        print(self._colorize(message, "37"), file=sys.stderr)

    def warning(self, message: str) -> None:
        print(self._colorize(f"Warning: {message}", "33"), file=sys.stderr)

    def error(self, message: str, suggestion: str | None = None) -> None:
        """Log error message with optional suggestion.

        Args:
            message: Error message to log
            suggestion: Optional suggestion for fixing the error
        """
        print(self._colorize(f"Error: {message}", "31"), file=sys.stderr)

        if suggestion:
            print(self._colorize(f"  → {suggestion}", "33"), file=sys.stderr)

    def exception(self, message: str, exc: BaseException) -> None:
        """Log exception, with traceback in verbose mode.

        Args:
            message: Context message
            exc: Exception to log
        """
        self.error(f"{message}: {exc}")

        if self.verbose:
            tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            print(self._colorize(tb, "90"), file=sys.stderr)  # Gray


def init_logger(verbose: bool = False, use_colors: bool = True) -> Logger:
    """Create the logger for an entry point.

    Args:
        verbose: Enable debug output
        use_colors: Enable ANSI color codes

    Returns:
        Logger instance
    """
    return Logger(verbose=verbose, use_colors=use_colors)
