"""Mutual exclusion for read-modify-write cycles on a sidecar store.

Two layers guard every mutation: ``StoreLock`` orders the operations of one
process fairly, and ``file_lock`` holds an OS-level exclusive lock on a
sibling ``.lock`` file so separate processes (the watcher, one-shot CLI
commands, the MCP server) never interleave their cycles either.
"""

import asyncio
import contextlib
import os
import sys
import time
from collections import deque
from collections.abc import AsyncIterator
from pathlib import Path
from types import TracebackType

if sys.platform == "win32":
    import msvcrt
else:
    import fcntl


class LockTimeout(TimeoutError):  # noqa: N818
    """Raised when the sidecar file lock cannot be acquired in time."""


def lock_path_for(sidecar: Path) -> Path:
    """Return the lock file guarding ``sidecar``."""
    return sidecar.with_name(sidecar.name + ".lock")


@contextlib.asynccontextmanager
async def file_lock(path: Path, timeout: float = 5.0) -> AsyncIterator[None]:
    """
    Hold an exclusive OS-level lock on ``path`` for the duration of the block.

    The lock file is created if needed and never truncated. Acquisition
    polls in a worker thread, so the event loop keeps running while another
    process holds the lock.

    Args:
        path: Lock file to lock
        timeout: Maximum seconds to wait for the lock

    Raises:
        LockTimeout: If the lock cannot be acquired within timeout
        OSError: If the lock file cannot be opened or locked

    Example:
        >>> async with file_lock(lock_path_for(sidecar)):
        ...     write_store_file(sidecar, store)
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    # 'a+' creates the file if needed without truncating it
    lock_file = open(path, "a+", encoding="utf-8")
    try:
        fd = lock_file.fileno()
        await asyncio.to_thread(_acquire_lock, fd, timeout)
        try:
            yield
        finally:
            _release_lock(fd)
    finally:
        lock_file.close()


def _acquire_lock(fd: int, timeout: float) -> None:
    start_time = time.time()

    while True:
        try:
            if sys.platform == "win32":
                # Lock the first byte as a symbolic lock on the whole file
                os.lseek(fd, 0, os.SEEK_SET)
                msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return
        except OSError:
            # Held by another process; retry with backoff
            elapsed = time.time() - start_time
            if elapsed >= timeout:
                raise LockTimeout(f"Failed to acquire store lock after {timeout:.1f} seconds")
            time.sleep(min(0.01 * (2 ** min(int(elapsed * 10), 10)), 0.1))


def _release_lock(fd: int) -> None:
    if sys.platform == "win32":
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)


class StoreLock:
    """
    Asyncio lock that serves waiters strictly in call order.

    Each store mutation holds the lock across its whole load, mutate and save
    sequence. On release, ownership passes directly to the oldest waiter, so a
    newly arriving caller can never jump ahead of one already queued. There is
    no timeout: a stalled holder blocks every later operation on the store.

    Example:
        >>> async with store_lock:
        ...     store = await load()
        ...     await persist(store)
    """

    def __init__(self) -> None:
        self._locked = False
        self._waiters: deque[asyncio.Future[None]] = deque()

    def locked(self) -> bool:
        """Return True if the lock is currently held."""
        return self._locked

    async def acquire(self) -> None:
        """
        Wait until the lock is handed to this caller.

        Raises:
            asyncio.CancelledError: If the waiting task is cancelled. A waiter
                cancelled after the lock was already handed to it passes the
                lock on before re-raising.
        """
        if not self._locked and not self._waiters:
            self._locked = True
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Ownership was transferred before the cancellation landed
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        """
        Release the lock, handing it to the oldest live waiter if any.

        Raises:
            RuntimeError: If the lock is not held
        """
        if not self._locked:
            raise RuntimeError("StoreLock released while not held")

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Lock stays held; the waiter now owns it
                waiter.set_result(None)
                return

        self._locked = False

    async def __aenter__(self) -> None:
        await self.acquire()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "locked" if self._locked else "unlocked"
        return f"<StoreLock {state}, waiters={len(self._waiters)}>"
