"""Sidecar store I/O: one JSON document of annotations per workspace root.

Every mutation reads the whole store, applies one change and writes the whole
store back, under a per-store FIFO lock plus an OS file lock on a sibling
``.lock`` file, so two mutations never interleave, even across processes.
Plain reads for display do not take the lock and may observe the store just
before or just after an in-flight write.
"""

import asyncio
import contextlib
import json
import os
import tempfile
from collections.abc import AsyncIterator, Callable
from pathlib import Path

from pydantic import ValidationError

from ghost_comments.anchors import reconcile_annotations, resolve_annotations
from ghost_comments.config import GhostConfig
from ghost_comments.document import SourceDocument
from ghost_comments.locking import StoreLock, file_lock, lock_path_for
from ghost_comments.logging import Logger
from ghost_comments.models import (
    AnchoredAnnotation,
    Annotation,
    FileAnnotations,
    ReconciliationReport,
    Store,
    dump_store,
    now_ms,
    parse_store,
)
from ghost_comments.workspace import WorkspaceResolver

ChangeListener = Callable[[str], None]


class MalformedStoreError(ValueError):
    """Raised when an existing sidecar cannot be parsed into the store shape."""


class AnnotationTooLongError(ValueError):
    """Raised when annotation text exceeds the configured maximum length."""


def is_safe_sidecar_name(filename: str) -> bool:
    """Check that a configured sidecar name cannot leave the workspace root."""
    return bool(filename) and not any(token in filename for token in ("..", "/", "\\"))


def read_store_file(path: Path, max_size: int) -> Store:
    """
    Read and validate a sidecar file.

    Args:
        path: Path to the sidecar
        max_size: Byte ceiling; larger files are treated as empty

    Returns:
        Parsed Store; empty if the file is missing or over the ceiling

    Raises:
        MalformedStoreError: If the file is not valid JSON or fails schema validation
    """
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return {}

    if size > max_size:
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        # Removed between stat and open
        return {}
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedStoreError(f"Invalid JSON in {path}: {e}") from e

    try:
        return parse_store(data)
    except ValidationError as e:
        raise MalformedStoreError(f"{path} failed schema validation: {e}") from e


def write_store_file(path: Path, store: Store) -> None:
    """
    Write the whole store atomically as 2-space indented JSON.

    Uses temp file + rename in the sidecar's directory, so readers see either
    the old or the new document and never a partial one.

    Raises:
        OSError: If write or rename fails
    """
    json_str = json.dumps(dump_store(store), indent=2, ensure_ascii=False) + "\n"

    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json_str)
        os.chmod(temp_name, 0o644)
        os.replace(temp_name, path)
    except Exception:
        try:
            os.unlink(temp_name)
        except OSError:
            pass  # Already renamed or never created
        raise


class AnnotationStore:
    """Serialized CRUD over the sidecar stores of one or more workspaces.

    One ``StoreLock`` is created per sidecar path, so operations on different
    workspaces never contend. All mutating methods return True only when the
    store on disk was rewritten; front ends use that to decide whether to
    redraw, and subscribers are called with each affected relative path.
    """

    def __init__(
        self,
        config: GhostConfig,
        resolver: WorkspaceResolver,
        logger: Logger | None = None,
    ) -> None:
        self.config = config
        self.resolver = resolver
        self.logger = logger or Logger()
        self._locks: dict[Path, StoreLock] = {}
        self._listeners: list[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a callback for persisted changes; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, *relative_paths: str) -> None:
        for relative_path in relative_paths:
            for listener in list(self._listeners):
                listener(relative_path)

    def lock_for(self, location: Path) -> StoreLock:
        """Return the lock guarding the sidecar at ``location``."""
        lock = self._locks.get(location)
        if lock is None:
            lock = self._locks[location] = StoreLock()
        return lock

    @contextlib.asynccontextmanager
    async def exclusive(self, location: Path) -> AsyncIterator[None]:
        """Hold the in-process FIFO lock and the cross-process file lock for ``location``."""
        async with self.lock_for(location):
            async with file_lock(lock_path_for(location)):
                yield

    def resolve_store_location(self, file: Path) -> Path | None:
        """
        Map a file to the sidecar of the workspace that contains it.

        Returns:
            Sidecar path, or None if the file is outside every workspace or the
            configured sidecar name would escape the workspace root
        """
        root = self.resolver.workspace_for(file)
        if root is None:
            return None

        filename = self.config.filename
        if not is_safe_sidecar_name(filename):
            self.logger.error(
                f'Invalid sidecar filename configuration: "{filename}"',
                suggestion="Subdirectories and parent references are not allowed; "
                "use a plain file name such as .ghost-comments.json",
            )
            return None

        return root / filename

    async def _read(self, location: Path) -> Store:
        try:
            return await asyncio.to_thread(read_store_file, location, self.config.max_file_size)
        except MalformedStoreError as e:
            self.logger.error(f"Failed to parse the comments file. {e}")
            raise

    async def _write(self, location: Path, store: Store) -> None:
        await asyncio.to_thread(write_store_file, location, store)
        self.logger.debug("Store written", path=str(location), files=len(store))

    async def load(self, file: Path) -> Store:
        """
        Load the full store of the workspace containing ``file``.

        Returns an empty store when there is no sidecar yet, when the sidecar
        exceeds ``max_file_size``, or when ``file`` is outside every workspace.

        Raises:
            MalformedStoreError: If an existing sidecar within the size limit
                cannot be parsed. Callers must abort rather than overwrite it.
        """
        location = self.resolve_store_location(file)
        if location is None:
            return {}
        return await self._read(location)

    async def annotations_for(self, file: Path) -> FileAnnotations:
        """Return the annotations stored for one file (unlocked read)."""
        relative_path = self.resolver.relative_path(file)
        if relative_path is None:
            return {}
        store = await self.load(file)
        return store.get(relative_path, {})

    async def anchored_annotations(self, document: SourceDocument) -> list[AnchoredAnnotation]:
        """Locate every annotation of ``document`` for display (unlocked read)."""
        file_annotations = await self.annotations_for(document.path)
        return resolve_annotations(document, file_annotations, self.config.search_range)

    async def save(
        self,
        file: Path,
        line: int,
        text: str,
        author: str,
        context: str,
        *,
        previous_line: int | None = None,
    ) -> bool:
        """
        Upsert the annotation at ``(file, line)``; empty text deletes it.

        Args:
            file: Annotated file
            line: Target line (0-indexed)
            text: Annotation body; ``""`` deletes the entry
            author: Display identity of the writer
            context: Trimmed context snapshot for later relocation
            previous_line: Stored key of the annotation being edited, when it
                drifted away from ``line``; removed in the same cycle

        Returns:
            True if the store was rewritten

        Raises:
            AnnotationTooLongError: If text exceeds ``max_comment_length``
            MalformedStoreError: If the existing sidecar cannot be parsed
            OSError: If the write fails
        """
        if len(text) > self.config.max_comment_length:
            raise AnnotationTooLongError(
                f"Annotation is {len(text)} characters "
                f"(limit {self.config.max_comment_length})"
            )

        location = self.resolve_store_location(file)
        relative_path = self.resolver.relative_path(file)
        if location is None or relative_path is None:
            return False

        async with self.exclusive(location):
            store = await self._read(location)
            file_annotations = store.setdefault(relative_path, {})
            changed = False

            if previous_line is not None and previous_line != line:
                changed = file_annotations.pop(previous_line, None) is not None

            if text == "":
                changed = file_annotations.pop(line, None) is not None or changed
            else:
                file_annotations[line] = Annotation(
                    text=text, author=author, updated_at=now_ms(), context=context
                )
                changed = True

            if not file_annotations:
                del store[relative_path]

            if not changed:
                return False

            await self._write(location, store)

        self._notify(relative_path)
        return True

    async def delete(self, file: Path, line: int) -> bool:
        """Remove the annotation stored at ``(file, line)``."""
        return await self.save(file, line, "", "", "")

    async def rename(self, old_file: Path, new_file: Path) -> bool:
        """
        Move a file's annotations from its old path key to its new one.

        Returns:
            True if annotations were moved and the store rewritten; False when
            the old path has no annotations or the new path belongs to a
            different store
        """
        location = self.resolve_store_location(old_file)
        if location is None:
            return False

        if self.resolve_store_location(new_file) != location:
            self.logger.warning(
                f"Cannot move annotations from {old_file} to {new_file}: "
                "the new path belongs to a different workspace"
            )
            return False

        old_path = self.resolver.relative_path(old_file)
        new_path = self.resolver.relative_path(new_file)
        assert old_path is not None and new_path is not None  # Both resolved to a store
        if old_path == new_path:
            return False

        async with self.exclusive(location):
            store = await self._read(location)
            moved = store.pop(old_path, None)
            if not moved:
                return False

            if new_path in store:
                self.logger.warning(
                    f"Replacing {len(store[new_path])} existing annotation(s) under {new_path}"
                )
            store[new_path] = moved
            await self._write(location, store)

        self._notify(old_path, new_path)
        return True

    async def reconcile_report(self, document: SourceDocument) -> ReconciliationReport | None:
        """
        Rewrite stored lines of ``document``'s annotations after drift.

        Only confident matches move; broken anchors keep their key. The store
        is written only when at least one annotation moved.

        Returns:
            Report of the pass, or None if the document has no annotations or
            lies outside every workspace
        """
        location = self.resolve_store_location(document.path)
        relative_path = self.resolver.relative_path(document.path)
        if location is None or relative_path is None:
            return None

        async with self.exclusive(location):
            store = await self._read(location)
            file_annotations = store.get(relative_path)
            if not file_annotations:
                return None

            staged, report = reconcile_annotations(
                document, file_annotations, self.config.search_range
            )

            if len(staged) < len(file_annotations):
                self.logger.warning(
                    f"{len(file_annotations) - len(staged)} annotation(s) in {relative_path} "
                    "relocated onto an already annotated line and were replaced"
                )

            if report.relocated == 0:
                return report

            store[relative_path] = staged
            await self._write(location, store)
            report.changed = True

        self._notify(relative_path)
        return report

    async def reconcile(self, document: SourceDocument) -> bool:
        """Reconcile ``document``'s annotations; True if the store was rewritten."""
        report = await self.reconcile_report(document)
        return report is not None and report.changed
