"""Data models for annotations, the persisted store, and reconciliation reports."""

import time
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, TypeAdapter


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


class Annotation(BaseModel):
    """A single comment attached to one line of one file.

    The ``context`` field is the trimmed snapshot of source text captured when
    the annotation was written. It is the ground truth used to relocate the
    annotation after the file is edited. Legacy entries without a snapshot
    default to an empty string and are never verified.
    """

    model_config = ConfigDict(populate_by_name=True)

    text: str
    author: str
    updated_at: int = Field(default_factory=now_ms, alias="updatedAt")
    context: str = ""

    def to_json(self) -> dict[str, Any]:
        """Serialize with the on-disk field names."""
        return self.model_dump(by_alias=True)


# Persisted shape: relative path -> line number -> annotation
FileAnnotations = dict[int, Annotation]
Store = dict[str, FileAnnotations]

_STORE_ADAPTER: TypeAdapter[dict[str, dict[NonNegativeInt, Annotation]]] = TypeAdapter(
    dict[str, dict[NonNegativeInt, Annotation]]
)


def parse_store(data: Any) -> Store:
    """Validate an untyped JSON value into a Store.

    Empty per-file maps are dropped so the loaded store never violates the
    no-empty-file-entry invariant.

    Raises:
        pydantic.ValidationError: If the value does not have the store shape
    """
    store = _STORE_ADAPTER.validate_python(data)
    return {path: lines for path, lines in store.items() if lines}


def dump_store(store: Store) -> dict[str, dict[str, dict[str, Any]]]:
    """Convert a Store to a JSON-ready dict.

    Paths and line numbers are emitted in sorted order (lines numerically) so
    the sidecar diffs cleanly.
    """
    return {
        path: {str(line): store[path][line].to_json() for line in sorted(store[path])}
        for path in sorted(store)
    }


class LocateResult(NamedTuple):
    """Current position of an anchor and whether it was confidently matched."""

    line: int
    is_match: bool


class AnchoredAnnotation(NamedTuple):
    """An annotation together with its located position in a live document."""

    line: int  # current (located) line, 0-indexed
    original_line: int  # key in the store
    is_match: bool
    annotation: Annotation


class ReconciliationReport(BaseModel):
    """Summary of one reconciliation pass over a file's annotations.

    Used for CLI output and tool responses.
    """

    total: int = Field(..., ge=0, description="Annotations examined")
    anchored: int = Field(..., ge=0, description="Confident matches at their stored line")
    relocated: int = Field(..., ge=0, description="Confident matches at a different line")
    broken: int = Field(..., ge=0, description="Snapshots not found in the search window")
    max_drift: int = Field(default=0, ge=0, description="Largest relocation distance in lines")
    changed: bool = Field(default=False, description="Whether the store was rewritten")
