"""A thread-safe key/value cache with optional periodic cleanup."""

from __future__ import annotations

import threading
from typing import Callable, Generic, Hashable, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

ShouldDelete = Callable[[K, V], bool]


class Cache(Generic[K, V]):
    """A locked dictionary that can evict entries on a timer."""

    def __init__(
        self,
        cleanup_interval: float = 0,
        cleanup_func: Optional[Callable[[K, V], bool]] = None,
    ) -> None:
        self._entries: dict[K, V] = {}
        self._lock = threading.Lock()
        self.cleanup_interval = cleanup_interval
        self.cleanup_func = cleanup_func

    def set(self, key: K, value: V) -> None:
        with self._lock:
            self._entries[key] = value

    def delete(self, key: K) -> None:
        """Remove ``key`` if present."""
        with self._lock:
            self._entries.pop(key, None)

    def get(self, key: K) -> Optional[V]:
        """Return the value for ``key``, or None if absent."""
        with self._lock:
            return self._entries.get(key)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> list[K]:
        with self._lock:
            return list(self._entries)

    def items(self) -> dict[K, V]:
        """A copy of all entries."""
        with self._lock:
            return dict(self._entries)

    def _evict(self, should_delete: Callable[[K, V], bool]) -> None:
        with self._lock:
            doomed = [k for k, v in self._entries.items() if should_delete(k, v)]
            for key in doomed:
                del self._entries[key]

    def start_cleanup(self, stop: threading.Event) -> Optional[threading.Thread]:
        """Run the configured cleanup in a background thread until ``stop`` is set.

        Returns the thread, or None when no interval or cleanup function is configured.
        """
        if not self.cleanup_interval or self.cleanup_func is None:
            return None
        func = self.cleanup_func

        def loop() -> None:
            while not stop.wait(self.cleanup_interval):
                self._evict(func)

        thread = threading.Thread(target=loop, daemon=True)
        thread.start()
        return thread

    def cleanup(self, stop: threading.Event, should_delete: Callable[[K, V], bool]) -> None:
        """Evict matching entries every interval, blocking until ``stop`` is set."""
        if not self.cleanup_interval:
            return
        while not stop.wait(self.cleanup_interval):
            self._evict(should_delete)