"""Watch a workspace and keep annotations attached while files change.

Moves and renames rewrite the annotation's path key. When auto-sync is on,
edits to a file schedule a reconciliation after a debounce period, so a burst
of saves produces one sync. Watchdog delivers events on its own thread; every
store operation is handed to the asyncio loop that owns the store's locks.
"""

import asyncio
import time
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ghost_comments.config import CONFIG_FILENAME
from ghost_comments.document import TextDocument
from ghost_comments.storage import AnnotationStore, MalformedStoreError


def _event_path(raw: str | bytes) -> Path:
    # src_path can be str or bytes
    return Path(raw if isinstance(raw, str) else raw.decode("utf-8"))


def _log(message: str) -> None:
    print(f"[{time.strftime('%Y-%m-%d %H:%M:%S')}] {message}", flush=True)


class AnnotationSyncHandler(FileSystemEventHandler):
    """File system event handler that forwards renames and edits to the store."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        store: AnnotationStore,
        workspace: Path,
        debounce_seconds: float = 1.0,
        auto_sync: bool = True,
    ) -> None:
        """Initialize the event handler.

        Args:
            loop: Event loop that runs store operations
            store: Store for the watched workspace
            workspace: Root directory being watched
            debounce_seconds: Wait time after the last edit before syncing
            auto_sync: Whether edits trigger reconciliation at all
        """
        self.loop = loop
        self.store = store
        self.workspace = workspace.resolve()
        self.debounce_seconds = debounce_seconds
        self.auto_sync = auto_sync
        self._timers: dict[Path, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    def should_handle(self, path: Path) -> bool:
        """Ignore the sidecar with its lock and temp files, the config file and VCS internals."""
        sidecar = self.store.config.filename
        if path.name in (sidecar, sidecar + ".lock", CONFIG_FILENAME):
            return False
        if path.name.startswith(".tmp_"):
            return False
        return ".git" not in path.parts

    # Watchdog thread side

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory or not self.auto_sync:
            return
        path = _event_path(event.src_path)
        if self.should_handle(path):
            self.loop.call_soon_threadsafe(self.schedule_sync, path)

    def on_moved(self, event: FileSystemEvent) -> None:
        src = _event_path(event.src_path)
        dest = _event_path(event.dest_path)
        if not (self.should_handle(src) and self.should_handle(dest)):
            return
        self.loop.call_soon_threadsafe(self._start_task, self.move(src, dest, event.is_directory))
        if self.auto_sync and not event.is_directory:
            # Editors that save through a temp file show up as a move onto the target
            self.loop.call_soon_threadsafe(self.schedule_sync, dest)

    # Event loop side

    def _start_task(self, coro) -> None:
        task = self.loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def schedule_sync(self, path: Path) -> None:
        """(Re)start the debounce timer for ``path``."""
        timer = self._timers.pop(path, None)
        if timer is not None:
            timer.cancel()
        self._timers[path] = self.loop.call_later(self.debounce_seconds, self._fire_sync, path)

    def _fire_sync(self, path: Path) -> None:
        self._timers.pop(path, None)
        self._start_task(self.sync_file(path))

    async def sync_file(self, path: Path) -> bool:
        """Reconcile one file's annotations; True if the store was rewritten."""
        try:
            document = await asyncio.to_thread(TextDocument.from_file, path)
        except (FileNotFoundError, ValueError, OSError) as e:
            self.store.logger.debug("Skipping sync", path=str(path), reason=str(e))
            return False

        try:
            report = await self.store.reconcile_report(document)
        except MalformedStoreError:
            # Already reported by the store; leave the sidecar untouched
            return False
        except OSError as e:
            self.store.logger.exception(f"Failed to synchronize {path}", e)
            return False

        if report is None or not report.changed:
            return False

        _log(f"Synchronized {path}: {report.relocated} moved, {report.broken} broken")
        return True

    async def move(self, src: Path, dest: Path, is_directory: bool = False) -> int:
        """Move annotations for a renamed file or every file under a renamed directory.

        Returns:
            Number of files whose annotations moved
        """
        if not is_directory:
            moved = await self._rename(src, dest)
            return 1 if moved else 0

        old_prefix = self.store.resolver.relative_path(src)
        if old_prefix is None:
            return 0
        try:
            store = await self.store.load(src)
        except MalformedStoreError:
            return 0

        count = 0
        for relative_path in sorted(store):
            if relative_path.startswith(old_prefix + "/"):
                suffix = relative_path[len(old_prefix) + 1 :]
                if await self._rename(src / suffix, dest / suffix):
                    count += 1
        return count

    async def _rename(self, src: Path, dest: Path) -> bool:
        try:
            moved = await self.store.rename(src, dest)
        except MalformedStoreError:
            return False
        except OSError as e:
            self.store.logger.exception(f"Failed to move annotations from {src} to {dest}", e)
            return False
        if moved:
            _log(f"Moved annotations: {src} → {dest}")
        return moved

    def shutdown(self) -> None:
        """Cancel pending debounce timers."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

    async def drain(self) -> None:
        """Wait for in-flight store operations to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


async def run_watcher(
    workspace: Path,
    store: AnnotationStore,
    debounce: float = 1.0,
    auto_sync: bool = True,
    stop_event: asyncio.Event | None = None,
) -> None:
    """
    Watch ``workspace`` until ``stop_event`` is set (or the task is cancelled).

    Args:
        workspace: Root directory to watch recursively
        store: Store owning the workspace's sidecar
        debounce: Seconds to wait after the last edit before syncing
        auto_sync: Whether edits trigger reconciliation
        stop_event: Event that ends the watch; a private one is used if None
    """
    loop = asyncio.get_running_loop()
    handler = AnnotationSyncHandler(
        loop, store, workspace, debounce_seconds=debounce, auto_sync=auto_sync
    )
    observer = Observer()
    observer.schedule(handler, str(workspace), recursive=True)

    _log(f"Watching {workspace} for changes...")
    _log(f"Auto-sync: {'on' if auto_sync else 'off'}, debounce {debounce} seconds")
    observer.start()

    stop = stop_event or asyncio.Event()
    try:
        await stop.wait()
    finally:
        handler.shutdown()
        observer.stop()
        await asyncio.to_thread(observer.join)
        await handler.drain()
        _log("Watcher stopped")
