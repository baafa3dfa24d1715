"""Formatting helpers shared by the CLI, the watcher and the MCP server.

These functions only read store data and located positions; they never touch
the sidecar themselves.
"""

import re
from datetime import datetime
from typing import Literal, NamedTuple

from ghost_comments.anchors import resolve_annotations
from ghost_comments.document import SourceDocument
from ghost_comments.models import AnchoredAnnotation, Annotation, Store

BROKEN_PREFIX = "(BROKEN LINK) "

# C0/C1 control characters, zero-width spaces/joiners and the BOM
_UNSAFE_CHARS = re.compile("[\u0000-\u001f\u007f-\u009f\u200b-\u200d\ufeff]")


def sanitize_input(text: str) -> str:
    """Remove control and invisible characters from user-entered text."""
    return _UNSAFE_CHARS.sub("", text)


def format_annotation(annotation: Annotation, is_match: bool) -> str:
    """Render an annotation as a single display line.

    Example:
        ``Fix this • [alice, 2026-10-18]``, or with a ``(BROKEN LINK)`` prefix
        when the anchor could not be confirmed.
    """
    date = datetime.fromtimestamp(annotation.updated_at / 1000).strftime("%Y-%m-%d")
    text = f"{annotation.text} • [{annotation.author}, {date}]"
    if not is_match:
        text = BROKEN_PREFIX + text
    return text


class FileListing(NamedTuple):
    """One file's annotations, as shown in a list or tree view."""

    path: str
    entries: list[AnchoredAnnotation]


def build_listing(
    store: Store,
    filter_text: str = "",
    sort_order: Literal["alpha", "date"] = "alpha",
    documents: dict[str, SourceDocument] | None = None,
    search_radius: int = 15,
) -> list[FileListing]:
    """
    Group a store's annotations by file for display.

    Args:
        store: Loaded store
        filter_text: Case-insensitive filter on path or annotation text
        sort_order: ``alpha`` sorts by path, ``date`` by newest annotation first
        documents: Open documents by relative path; their annotations are
            located against the live text, the rest shown at their stored line
        search_radius: Search radius used when locating

    Returns:
        Listing per file with at least one visible entry
    """
    needle = filter_text.lower()
    documents = documents or {}
    listings: list[FileListing] = []

    for path, file_annotations in store.items():
        path_matches = needle in path.lower()

        document = documents.get(path)
        if document is not None:
            entries = resolve_annotations(document, file_annotations, search_radius)
        else:
            entries = [
                AnchoredAnnotation(line, line, True, file_annotations[line])
                for line in sorted(file_annotations)
            ]

        if needle and not path_matches:
            entries = [e for e in entries if needle in e.annotation.text.lower()]
        if entries:
            listings.append(FileListing(path, entries))

    if sort_order == "date":
        listings.sort(
            key=lambda listing: max(e.annotation.updated_at for e in listing.entries),
            reverse=True,
        )
    else:
        listings.sort(key=lambda listing: listing.path)

    return listings
