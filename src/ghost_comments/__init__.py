"""Line annotations kept in a sidecar store and re-anchored after edits.

This package contains:
- AnnotationStore for serialized load/save/rename/reconcile of the sidecar
- locate() and friends for relocating annotations in an edited document
- TextDocument, the in-memory text source used by the front ends
"""

from .anchors import capture_context, locate
from .config import GhostConfig, load_config
from .document import TextDocument
from .models import Annotation, LocateResult, ReconciliationReport
from .storage import AnnotationStore, MalformedStoreError
from .workspace import WorkspaceResolver

__all__ = [
    "Annotation",
    "AnnotationStore",
    "GhostConfig",
    "LocateResult",
    "MalformedStoreError",
    "ReconciliationReport",
    "TextDocument",
    "WorkspaceResolver",
    "capture_context",
    "load_config",
    "locate",
]
