# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import contextlib
import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Iterator, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class BoundedCache(Generic[K, V]):
    """
    Insertion-ordered cache. Overwriting a key keeps its original slot, so
    eviction is strictly oldest-first.
    """

    def __init__(self, max_size: int):
        self.max_size = int(max_size)
        self._data: "OrderedDict[K, V]" = OrderedDict()

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        return self._data.get(key, default)

    def set(self, key: K, value: V) -> None:
        self._data[key] = value

    def pop(self, key: K, default: Optional[V] = None) -> Optional[V]:
        return self._data.pop(key, default)

    def discard_where(self, predicate: Callable[[K], bool]) -> int:
        doomed = [k for k in self._data if predicate(k)]
        for k in doomed:
            del self._data[k]
        return len(doomed)

    def trim(self) -> int:
        evicted = 0
        while len(self._data) > self.max_size:
            self._data.popitem(last=False)
            evicted += 1
        return evicted

    def clear(self) -> None:
        self._data.clear()

    def keys(self) -> list[K]:
        return list(self._data.keys())

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[K]:
        return iter(list(self._data))


class PendingLocks:
    """
    Advisory per-key creation locks. There is no per-entry TTL; the
    maintenance sweep force-clears the whole set once it grows past
    `threshold`.
    """

    def __init__(self, threshold: int):
        self.threshold = int(threshold)
        self._held: set = set()

    def try_acquire(self, key) -> bool:
        if key in self._held:
            return False
        self._held.add(key)
        return True

    def release(self, key) -> None:
        self._held.discard(key)

    @contextlib.contextmanager
    def claim(self, key):
        acquired = self.try_acquire(key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)

    def is_held(self, key) -> bool:
        return key in self._held

    def force_clear_if_oversized(self) -> bool:
        if len(self._held) > self.threshold:
            self._held.clear()
            return True
        return False

    def __len__(self) -> int:
        return len(self._held)


class ExpiringSet:
    """Set whose members silently expire `ttl` seconds after being added."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = float(ttl)
        self._clock = clock
        self._expiry: dict = {}

    def add(self, key) -> None:
        self._expiry[key] = self._clock() + self.ttl

    def discard(self, key) -> None:
        self._expiry.pop(key, None)

    def __contains__(self, key) -> bool:
        exp = self._expiry.get(key)
        if exp is None:
            return False
        if exp <= self._clock():
            del self._expiry[key]
            return False
        return True

    def prune(self) -> int:
        now = self._clock()
        dead = [k for k, exp in self._expiry.items() if exp <= now]
        for k in dead:
            del self._expiry[k]
        return len(dead)

    def clear(self) -> None:
        self._expiry.clear()

    def __len__(self) -> int:
        return len(self._expiry)


class FailedEntityCache:
    """Negative-result cache: entity id -> last access error code (403/404)."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = float(ttl)
        self._clock = clock
        self._entries: dict[int, tuple[int, float]] = {}

    def record(self, entity_id: int, status: int) -> None:
        self._entries[int(entity_id)] = (int(status), self._clock())

    def get(self, entity_id: int) -> Optional[int]:
        hit = self._entries.get(int(entity_id))
        if hit is None:
            return None
        status, ts = hit
        if self._clock() - ts >= self.ttl:
            del self._entries[int(entity_id)]
            return None
        return status

    def forget(self, entity_id: int) -> None:
        self._entries.pop(int(entity_id), None)

    def prune(self) -> int:
        now = self._clock()
        dead = [k for k, (_, ts) in self._entries.items() if now - ts >= self.ttl]
        for k in dead:
            del self._entries[k]
        return len(dead)

    def __len__(self) -> int:
        return len(self._entries)
