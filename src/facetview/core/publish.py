# publish.py
# SPDX-License-Identifier: MIT
"""Publish staged output: path-scoped locks and the atomic swap.

A publish acquires the lock named after the destination, swaps the staged
directory into place in a single rename, and releases the lock whatever
happened. Runs publishing to different destinations take different locks
and never wait for each other.
"""

from __future__ import annotations

import hashlib
import os
import shutil
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX
    fcntl = None  # type: ignore[assignment]

from .errors import LockError, PublishError
from .interfaces import LockHandle, LockService, Publisher
from .log import get_logger
from .state import RunState

log = get_logger(__name__)

__all__ = [
    "normalize_lock_name",
    "LocalLockService",
    "FileLockService",
    "DirectorySwapPublisher",
    "PublishCoordinator",
    "VERSIONS_DIR",
]

VERSIONS_DIR = ".versions"


def normalize_lock_name(path_prefix: str | os.PathLike[str]) -> str:
    """Canonical lock name for a destination: absolute, normalized path."""
    return os.path.normpath(os.path.abspath(os.fspath(path_prefix)))


@dataclass
class _Hold:
    owner: int
    count: int = 1
    fh: IO[Any] | None = None


def _deadline(timeout: float | None) -> float | None:
    return None if timeout is None else time.monotonic() + max(float(timeout), 0.0)


def _new_handle(name: str, owner: int, **extra: Any) -> LockHandle:
    return LockHandle(name=name, token=uuid.uuid4().hex, owner=owner, acquired_at=time.monotonic(), extra=extra)


class LocalLockService:
    """In-process publish locks for runs sharing one interpreter.

    A thread that already holds a lock may acquire it again; the lock is
    freed when every nested acquisition has been released.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._held: dict[str, _Hold] = {}

    def acquire(self, path_prefix: str, timeout: float | None = None) -> LockHandle:
        name = normalize_lock_name(path_prefix)
        me = threading.get_ident()
        deadline = _deadline(timeout)
        with self._cond:
            while True:
                hold = self._held.get(name)
                if hold is None:
                    self._held[name] = _Hold(owner=me)
                    break
                if hold.owner == me:
                    hold.count += 1
                    break
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise LockError(f"Timed out after {timeout}s waiting for publish lock on {name}")
                self._cond.wait(remaining)
        log.debug("Acquired publish lock %s", name)
        return _new_handle(name, me)

    def release(self, handle: LockHandle) -> None:
        if handle.released:
            raise LockError(f"Publish lock {handle.name} released twice")
        with self._cond:
            hold = self._held.get(handle.name)
            if hold is None or hold.owner != handle.owner:
                raise LockError(f"Publish lock {handle.name} is not held by this handle")
            hold.count -= 1
            if hold.count == 0:
                del self._held[handle.name]
                self._cond.notify_all()
        handle.released = True
        log.debug("Released publish lock %s", handle.name)

    def is_locked(self, path_prefix: str) -> bool:
        with self._cond:
            return normalize_lock_name(path_prefix) in self._held


class FileLockService:
    """Publish locks shared by processes on one host, via ``flock``.

    Each destination maps to a lock file under ``lock_dir``. The lock is
    polled with a non-blocking ``flock`` every ``poll_interval`` seconds
    until it is free or ``timeout`` elapses.

    Args:
        lock_dir (str | os.PathLike[str]): Directory holding lock files.
        poll_interval (float): Seconds between attempts.
    """

    def __init__(self, lock_dir: str | os.PathLike[str], *, poll_interval: float = 0.05) -> None:
        if fcntl is None:
            raise LockError("FileLockService requires fcntl (POSIX); use the local lock kind instead")
        self.lock_dir = Path(lock_dir)
        self.poll_interval = float(poll_interval)
        self._lock = threading.Lock()
        self._held: dict[str, _Hold] = {}

    def lock_path(self, path_prefix: str) -> Path:
        digest = hashlib.sha1(normalize_lock_name(path_prefix).encode("utf-8")).hexdigest()[:16]
        return self.lock_dir / f"{digest}.lock"

    def acquire(self, path_prefix: str, timeout: float | None = None) -> LockHandle:
        name = normalize_lock_name(path_prefix)
        me = threading.get_ident()
        with self._lock:
            hold = self._held.get(name)
            if hold is not None and hold.owner == me:
                hold.count += 1
                return _new_handle(name, me)

        self.lock_dir.mkdir(parents=True, exist_ok=True)
        path = self.lock_path(name)
        fh = open(path, "a+", encoding="utf-8")
        deadline = _deadline(timeout)
        try:
            while True:
                try:
                    fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if deadline is not None and time.monotonic() >= deadline:
                        raise LockError(f"Timed out after {timeout}s waiting for publish lock on {name}") from None
                    time.sleep(self.poll_interval)
            fh.seek(0)
            fh.truncate()
            fh.write(f"{os.getpid()} {name}\n")
            fh.flush()
        except BaseException:
            fh.close()
            raise
        with self._lock:
            self._held[name] = _Hold(owner=me, fh=fh)
        log.debug("Acquired publish lock %s (%s)", name, path)
        return _new_handle(name, me, lock_file=str(path))

    def release(self, handle: LockHandle) -> None:
        if handle.released:
            raise LockError(f"Publish lock {handle.name} released twice")
        with self._lock:
            hold = self._held.get(handle.name)
            if hold is None or hold.owner != handle.owner:
                raise LockError(f"Publish lock {handle.name} is not held by this handle")
            hold.count -= 1
            fh = None
            if hold.count == 0:
                del self._held[handle.name]
                fh = hold.fh
        handle.released = True
        if fh is not None:
            try:
                fcntl.flock(fh, fcntl.LOCK_UN)
            finally:
                fh.close()
            log.debug("Released publish lock %s", handle.name)


class DirectorySwapPublisher:
    """Swap a staged directory into place behind a symlink.

    The destination is a symlink into ``{parent}/.versions/{name}/``.
    Publishing moves the staged directory next to the older versions and
    repoints the symlink with one ``os.replace``, so readers see either
    the old view or the new one. Versions older than the newest
    ``keep_versions`` previous ones are removed afterwards.
    """

    def __init__(self, *, keep_versions: int = 1) -> None:
        self.keep_versions = max(int(keep_versions), 0)

    @staticmethod
    def versions_root(destination: Path) -> Path:
        return destination.parent / VERSIONS_DIR / destination.name

    @staticmethod
    def current_version(destination: str | os.PathLike[str]) -> Path | None:
        """Resolved directory the destination currently points at, if any."""
        dest = Path(destination)
        if not dest.is_symlink():
            return None
        return (dest.parent / os.readlink(dest)).resolve()

    def swap(self, staged: Path, destination: Path) -> None:
        staged = Path(staged)
        destination = Path(destination)
        if not staged.is_dir():
            raise PublishError(f"Staged output {staged} does not exist or is not a directory")
        if destination.exists() and not destination.is_symlink():
            raise PublishError(f"Destination {destination} exists and is not a published view link")

        versions = self.versions_root(destination)
        versions.mkdir(parents=True, exist_ok=True)
        target = versions / f"{time.time_ns():020d}-{uuid.uuid4().hex[:8]}"
        try:
            os.replace(staged, target)
        except OSError as exc:
            raise PublishError(f"Could not move {staged} into {versions}: {exc}") from exc

        tmp_link = destination.parent / f".{destination.name}.{uuid.uuid4().hex[:8]}.tmp"
        try:
            os.symlink(os.path.relpath(target, destination.parent), tmp_link, target_is_directory=True)
            os.replace(tmp_link, destination)
        except OSError as exc:
            if tmp_link.is_symlink():
                tmp_link.unlink()
            try:
                os.replace(target, staged)
            except OSError as restore_exc:
                log.warning("Could not move %s back to %s: %s", target, staged, restore_exc)
            raise PublishError(f"Could not repoint {destination}: {exc}") from exc
        log.info("Published %s -> %s", destination, target.name)
        self._prune(versions, keep=target)

    def _prune(self, versions: Path, *, keep: Path) -> None:
        older = sorted((p for p in versions.iterdir() if p.is_dir() and p != keep), reverse=True)
        for stale in older[self.keep_versions:]:
            try:
                shutil.rmtree(stale)
            except OSError as exc:
                log.warning("Could not prune old view version %s: %s", stale, exc)
            else:
                log.debug("Pruned old view version %s", stale)


class PublishCoordinator:
    """Lock, swap, release.

    Args:
        lock_service (LockService): Provides path-scoped exclusive locks.
        publisher (Publisher): Performs the atomic swap.
        lock_timeout (float | None): Seconds to wait for the lock; ``None``
            waits indefinitely.
    """

    def __init__(self, lock_service: LockService, publisher: Publisher, *, lock_timeout: float | None = None) -> None:
        self.lock_service = lock_service
        self.publisher = publisher
        self.lock_timeout = lock_timeout

    def publish(
        self,
        staged: Path,
        destination: Path,
        *,
        on_state: Callable[[RunState], None] | None = None,
    ) -> None:
        """Make ``staged`` visible at ``destination``.

        Args:
            staged (Path): Completely written output of this run.
            destination (Path): Visible location to replace.
            on_state (Callable[[RunState], None] | None): Notified on
                ``LOCK_ACQUIRE``, ``PUBLISHING`` and ``LOCK_RELEASE``.

        Raises:
            LockError: If the lock cannot be acquired in time.
            PublishError: If the swap fails; the destination is unchanged
                and the lock has been released.
        """
        notify = on_state or (lambda state: None)
        notify(RunState.LOCK_ACQUIRE)
        try:
            handle = self.lock_service.acquire(str(destination), timeout=self.lock_timeout)
        except LockError:
            raise
        except Exception as exc:
            raise LockError(f"Could not acquire publish lock for {destination}: {exc}") from exc

        try:
            notify(RunState.PUBLISHING)
            try:
                self.publisher.swap(Path(staged), Path(destination))
            except PublishError:
                raise
            except Exception as exc:
                raise PublishError(f"Swap of {staged} into {destination} failed: {exc}") from exc
            notify(RunState.LOCK_RELEASE)
        except BaseException:
            self._release(handle, quiet=True)
            raise
        self._release(handle)

    def _release(self, handle: LockHandle, *, quiet: bool = False) -> None:
        try:
            self.lock_service.release(handle)
        except Exception as exc:
            if not quiet:
                if isinstance(exc, LockError):
                    raise
                raise LockError(f"Could not release publish lock {handle.name}: {exc}") from exc
            log.error("Could not release publish lock %s: %s", handle.name, exc)
