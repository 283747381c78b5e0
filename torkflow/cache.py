"""A thread-safe in-memory key/value cache with per-item expiration."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterable, TypeVar

V = TypeVar("V")

#: Pass as a duration to make an item never expire.
NO_EXPIRATION: float = -1
#: Pass as a duration to use the cache's default expiration.
DEFAULT_EXPIRATION: float = 0


@dataclass
class _Item(Generic[V]):
    value: V
    expiration: float
    lock: threading.Lock = field(default_factory=threading.Lock)

    def expired(self, now: float) -> bool:
        return self.expiration > 0 and now > self.expiration


class Cache(Generic[V]):
    """In-memory cache whose items may expire after a duration in seconds.

    A default expiration of zero or less means items never expire unless a
    duration is given explicitly. A positive cleanup interval starts a
    background thread that removes expired items periodically.
    """

    def __init__(
        self,
        default_expiration: float = DEFAULT_EXPIRATION,
        cleanup_interval: float = 0,
    ) -> None:
        if default_expiration == 0:
            default_expiration = NO_EXPIRATION
        self._default_expiration = default_expiration
        self._items: dict[str, _Item[V]] = {}
        self._lock = threading.Lock()
        self._on_evicted: Callable[[str, V], Any] | None = None
        self._stop: threading.Event | None = None
        self._janitor: threading.Thread | None = None
        if cleanup_interval > 0:
            self._start_janitor(cleanup_interval)

    def _start_janitor(self, interval: float) -> None:
        stop = threading.Event()

        def run() -> None:
            while not stop.wait(interval):
                self.delete_expired()

        self._stop = stop
        self._janitor = threading.Thread(target=run, name="cache-janitor", daemon=True)
        self._janitor.start()

    def _expiration_for(self, duration: float) -> float:
        if duration == DEFAULT_EXPIRATION:
            duration = self._default_expiration
        if duration > 0:
            return time.monotonic() + duration
        return 0.0

    def _lookup(self, key: str) -> _Item[V]:
        with self._lock:
            item = self._items.get(key)
        if item is None:
            raise KeyError(f"unknown key: {key}")
        return item

    def set(self, key: str, value: V) -> None:
        """Store a value under the default expiration, replacing any existing one."""
        self.set_with_expiration(key, value, DEFAULT_EXPIRATION)

    def set_with_expiration(self, key: str, value: V, duration: float) -> None:
        """Store a value that expires after ``duration`` seconds.

        ``DEFAULT_EXPIRATION`` uses the cache default, ``NO_EXPIRATION``
        keeps the item forever.
        """
        item = _Item(value, self._expiration_for(duration))
        with self._lock:
            self._items[key] = item

    def set_expiration(self, key: str, duration: float) -> None:
        """Change the expiration of an existing item; raise KeyError if absent."""
        expiration = self._expiration_for(duration)
        item = self._lookup(key)
        with item.lock:
            item.expiration = expiration

    def modify(self, key: str, fn: Callable[[V], V]) -> None:
        """Replace an item's value with ``fn(value)`` atomically.

        Raises KeyError for an unknown key. If ``fn`` raises, the stored value
        is left unchanged and the exception propagates.
        """
        item = self._lookup(key)
        with item.lock:
            item.value = fn(item.value)

    def get(self, key: str, default: V | None = None) -> V | None:
        """Return the unexpired value for ``key`` or ``default``."""
        with self._lock:
            item = self._items.get(key)
        if item is None:
            return default
        with item.lock:
            if item.expired(time.monotonic()):
                return default
            return item.value

    def contains(self, key: str) -> bool:
        """Return True if ``key`` holds an unexpired value."""
        with self._lock:
            item = self._items.get(key)
        if item is None:
            return False
        with item.lock:
            return not item.expired(time.monotonic())

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.contains(key)

    def delete(self, key: str) -> None:
        """Remove ``key``; does nothing if absent. Calls the eviction callback."""
        with self._lock:
            item = self._items.pop(key, None)
            callback = self._on_evicted
        if item is not None and callback is not None:
            callback(key, item.value)

    def delete_expired(self) -> None:
        """Remove every expired item, calling the eviction callback for each."""
        evicted: list[tuple[str, V]] = []
        now = time.monotonic()
        with self._lock:
            callback = self._on_evicted
            for key, item in list(self._items.items()):
                with item.lock:
                    if item.expired(now):
                        del self._items[key]
                        evicted.append((key, item.value))
        if callback is not None:
            for key, value in evicted:
                callback(key, value)

    def on_evicted(self, fn: Callable[[str, V], Any] | None) -> None:
        """Set a callback run when an item is deleted or expires; None disables it."""
        with self._lock:
            self._on_evicted = fn

    def _live_items(self) -> list[tuple[str, _Item[V]]]:
        now = time.monotonic()
        with self._lock:
            return [(k, v) for k, v in self._items.items() if not v.expired(now)]

    def list(self, *filters: Callable[[V], bool]) -> list[V]:
        """Return the unexpired values accepted by every filter."""
        result: list[V] = []
        for _, item in self._live_items():
            with item.lock:
                value = item.value
            if all(f(value) for f in filters):
                result.append(value)
        return result

    def items(self) -> list[tuple[str, V]]:
        """Return a snapshot of unexpired ``(key, value)`` pairs."""
        result: list[tuple[str, V]] = []
        for key, item in self._live_items():
            with item.lock:
                result.append((key, item.value))
        return result

    def item_count(self) -> int:
        """Number of stored items, possibly including expired ones not yet removed."""
        with self._lock:
            return len(self._items)

    def __len__(self) -> int:
        return self.item_count()

    def flush(self) -> None:
        """Remove all items without calling the eviction callback."""
        with self._lock:
            self._items = {}

    def close(self) -> None:
        """Stop the background cleanup thread, if one is running."""
        if self._stop is not None:
            self._stop.set()
            if self._janitor is not None:
                self._janitor.join()
            self._stop = None
            self._janitor = None

    def __enter__(self) -> "Cache[V]":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def _ensure_iterable(values: Iterable[V]) -> list[V]:
    return list(values)