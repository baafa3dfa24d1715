"""Line anchoring: relocating annotations after the source file is edited.

Every annotation stores the line it was written against plus a snapshot of the
text found there. When the file changes, the stored line is checked first; if
the snapshot is no longer there, a window of candidate lines around it is
scanned in ascending order and the first line whose text contains the snapshot
(ignoring all whitespace) wins. A snapshot found nowhere leaves the annotation
at its stored line, flagged as a broken anchor.
"""

import re

from ghost_comments.document import TextSource
from ghost_comments.models import (
    AnchoredAnnotation,
    Annotation,
    FileAnnotations,
    LocateResult,
    ReconciliationReport,
)

_WHITESPACE = re.compile(r"\s")


def normalize_context(text: str) -> str:
    """Strip every whitespace character so reformatting never breaks a match."""
    return _WHITESPACE.sub("", text)


def matches_context(window: str, snapshot: str) -> bool:
    """Check whether the normalized window contains the normalized snapshot.

    Containment rather than equality lets code appended to the same line keep
    its annotation while unrelated lines are still rejected.
    """
    return normalize_context(snapshot) in normalize_context(window)


def window_context(document: TextSource, line: int, snapshot: str) -> str:
    """Extract the document text at ``line`` spanning as many lines as ``snapshot``.

    Returns an empty string when the span would run outside the document.
    """
    span = snapshot.count("\n") + 1
    if line < 0 or line + span > document.line_count:
        return ""
    return document.get_text(line, line + span - 1).strip()


def locate(
    document: TextSource, original_line: int, snapshot: str, search_radius: int
) -> LocateResult:
    """Find the current line of an anchor.

    Args:
        document: Live text of the annotated file
        original_line: Line the annotation is stored under (0-indexed)
        snapshot: Context captured when the annotation was written
        search_radius: Lines to scan above and below ``original_line``;
            zero or negative scans the whole document

    Returns:
        LocateResult with the located line and whether the match is trusted.
        On a miss the original line is returned with ``is_match=False``.
    """
    if not snapshot:
        # Nothing to verify against (legacy data)
        return LocateResult(original_line, True)

    if matches_context(window_context(document, original_line, snapshot), snapshot):
        return LocateResult(original_line, True)

    if search_radius > 0:
        start = max(0, original_line - search_radius)
        end = min(document.line_count - 1, original_line + search_radius)
    else:
        start = 0
        end = document.line_count - 1

    # First match in ascending order wins, not the nearest one
    for candidate in range(start, end + 1):
        if candidate == original_line:
            continue
        if matches_context(window_context(document, candidate, snapshot), snapshot):
            return LocateResult(candidate, True)

    return LocateResult(original_line, False)


def capture_context(document: TextSource, line: int, selection: str | None = None) -> str:
    """Snapshot the text an annotation is anchored to.

    Args:
        document: Document being annotated
        line: Target line (0-indexed)
        selection: Exact selected text, if the user selected a range

    Returns:
        The selection, or the full text of ``line``, trimmed
    """
    if selection:
        return selection.strip()
    return document.line_at(line).strip()


def resolve_annotations(
    document: TextSource, file_annotations: FileAnnotations, search_radius: int
) -> list[AnchoredAnnotation]:
    """Locate every annotation of one file for display, sorted by current line."""
    resolved = []
    for original_line in sorted(file_annotations):
        annotation = file_annotations[original_line]
        line, is_match = locate(document, original_line, annotation.context, search_radius)
        resolved.append(AnchoredAnnotation(line, original_line, is_match, annotation))
    resolved.sort(key=lambda item: (item.line, item.original_line))
    return resolved


def find_annotation_at_line(
    document: TextSource, file_annotations: FileAnnotations, line: int, search_radius: int
) -> tuple[int, Annotation] | None:
    """Return ``(stored_line, annotation)`` for the annotation currently shown at ``line``."""
    for original_line in sorted(file_annotations):
        annotation = file_annotations[original_line]
        located, _ = locate(document, original_line, annotation.context, search_radius)
        if located == line:
            return original_line, annotation
    return None


def reconcile_annotations(
    document: TextSource, file_annotations: FileAnnotations, search_radius: int
) -> tuple[FileAnnotations, ReconciliationReport]:
    """Stage new keys for a file's annotations after drift.

    Confident matches are re-keyed at their located line. Broken anchors keep
    their stored key; they are never silently moved. Entries are staged in
    ascending key order, so if two land on the same line the later one wins.

    Returns:
        Tuple of (staged map, report). ``report.changed`` is left False; the
        caller sets it once the staged map has actually been persisted.
    """
    staged: FileAnnotations = {}
    anchored = relocated = broken = max_drift = 0

    for original_line in sorted(file_annotations):
        annotation = file_annotations[original_line]
        line, is_match = locate(document, original_line, annotation.context, search_radius)

        if not is_match:
            broken += 1
            staged[original_line] = annotation
        elif line != original_line:
            relocated += 1
            max_drift = max(max_drift, abs(line - original_line))
            staged[line] = annotation
        else:
            anchored += 1
            staged[original_line] = annotation

    report = ReconciliationReport(
        total=len(file_annotations),
        anchored=anchored,
        relocated=relocated,
        broken=broken,
        max_drift=max_drift,
    )
    return staged, report
