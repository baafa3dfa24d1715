"""Read-only text sources that the anchoring engine scans.

The engine only needs three synchronous reads from whatever holds the live
document: the line count, one line's text, and the text of an inclusive line
range. ``TextDocument`` is the in-memory implementation used by the CLI,
the watcher and the tests; an editor integration supplies its own buffer.
"""

from pathlib import Path
from typing import Protocol


class TextSource(Protocol):
    """Minimal read interface over a document's current text."""

    @property
    def line_count(self) -> int: ...

    def line_at(self, line: int) -> str: ...

    def get_text(self, start_line: int, end_line: int) -> str: ...


class SourceDocument(TextSource, Protocol):
    """A text source that also knows which file it came from."""

    path: Path


def is_binary_file(path: Path) -> bool:
    """
    Detect if file contains binary content.

    Uses a heuristic: reads first 8192 bytes and checks for null bytes.

    Args:
        path: Path to file

    Returns:
        True if file appears to be binary, False if it appears to be text
    """
    try:
        with open(path, "rb") as f:
            chunk = f.read(8192)
            return b"\x00" in chunk
    except OSError:
        # If we can't read the file, assume it's binary for safety
        return True


class TextDocument:
    """Immutable snapshot of a file's text, split into lines.

    Lines never include their terminator. A trailing newline yields a final
    empty line, the way an editor buffer counts it.
    """

    def __init__(self, path: Path, lines: list[str]) -> None:
        self.path = Path(path)
        self.lines = list(lines) or [""]

    @classmethod
    def from_text(cls, path: Path, text: str) -> "TextDocument":
        """Build a document from a full text string."""
        return cls(path, text.replace("\r\n", "\n").split("\n"))

    @classmethod
    def from_file(cls, path: Path) -> "TextDocument":
        """
        Read a document from disk.

        Args:
            path: Path to a UTF-8 text file

        Returns:
            TextDocument holding the file's current content

        Raises:
            FileNotFoundError: If file does not exist
            ValueError: If file is binary
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Source file not found: {path}")
        if is_binary_file(path):
            raise ValueError(f"Binary files not supported: {path}")
        return cls.from_text(path, path.read_text(encoding="utf-8"))

    @property
    def line_count(self) -> int:
        return len(self.lines)

    def line_at(self, line: int) -> str:
        if line < 0 or line >= len(self.lines):
            raise IndexError(f"Line {line} out of range (document has {len(self.lines)} lines)")
        return self.lines[line]

    def get_text(self, start_line: int, end_line: int) -> str:
        """Return lines ``start_line..end_line`` (inclusive) joined with newlines."""
        if start_line < 0 or end_line >= len(self.lines) or end_line < start_line:
            raise IndexError(
                f"Invalid line range {start_line}:{end_line} "
                f"(document has {len(self.lines)} lines)"
            )
        return "\n".join(self.lines[start_line : end_line + 1])

    def __repr__(self) -> str:
        return f"TextDocument({self.path!s}, {len(self.lines)} lines)"
