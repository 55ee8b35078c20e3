# resources.py
# SPDX-License-Identifier: MIT
"""Process-scoped cache for clients shared by the collaborators of a run.

Filesystem handles, service clients and similar objects are expensive to
build and safe to share. ``RunResources`` is constructed once when a run
starts and passed explicitly to whatever needs a client; each entry is
created at most once, even under concurrent first use, and everything is
closed in reverse creation order when the run ends.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Hashable
from typing import Any, TypeVar

from .log import get_logger

log = get_logger(__name__)

T = TypeVar("T")

__all__ = ["RunResources"]


class RunResources:
    """Initialize-once cache of named clients.

    Example::

        fs = resources.get_or_create(("fs", "s3://bucket"), lambda: make_fs())
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[Hashable, Any] = {}
        self._key_locks: dict[Hashable, threading.Lock] = {}
        self._order: list[Hashable] = []
        self._closed = False

    def get_or_create(self, key: Hashable, factory: Callable[[], T]) -> T:
        """Return the cached value for ``key``, building it on first use.

        Concurrent callers asking for the same key wait for a single
        ``factory()`` call; callers for different keys do not block each
        other while a factory runs. A factory that raises leaves nothing
        cached, so the next caller retries.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("RunResources has been closed")
            if key in self._entries:
                return self._entries[key]
            key_lock = self._key_locks.setdefault(key, threading.Lock())
        with key_lock:
            with self._lock:
                if key in self._entries:
                    return self._entries[key]
            value = factory()
            with self._lock:
                self._entries[key] = value
                self._order.append(key)
            log.debug("Initialized shared resource %r", key)
            return value

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def close(self) -> None:
        """Close every cached value that has a ``close()`` method.

        Values are closed newest first. A failing ``close()`` is logged and
        does not prevent the remaining values from being closed.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            order = list(reversed(self._order))
            entries = dict(self._entries)
            self._entries.clear()
            self._order.clear()
        for key in order:
            close = getattr(entries[key], "close", None)
            if not callable(close):
                continue
            try:
                close()
            except Exception as exc:  # noqa: BLE001
                log.warning("Closing shared resource %r failed: %s", key, exc)

    def __enter__(self) -> RunResources:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
