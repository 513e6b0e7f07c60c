import threading
import time
from typing import Any, Callable, Hashable, Optional


class TTLCache:
    """Read-through cache for summaries, keyed by ``(user_id, ...)`` tuples.

    Entries expire ``ttl_secs`` after they were stored. The clock is injected
    so expiry can be driven from tests. Every ``invalidate_user`` bumps that
    user's generation, and a load that started under an older generation is
    returned to its caller but never stored.
    """

    def __init__(
        self, ttl_secs: float, *, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl_secs = ttl_secs
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, Any]] = {}
        self._generations: dict[Any, int] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _owner(key: Hashable) -> Any:
        if isinstance(key, tuple) and key:
            return key[0]
        return None

    def generation(self, user_id: Any) -> int:
        with self._lock:
            return self._generations.get(user_id, 0)

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_secs:
                del self._entries[key]
                return None
            return value

    def set(
        self, key: Hashable, value: Any, *, generation: Optional[int] = None
    ) -> bool:
        with self._lock:
            current = self._generations.get(self._owner(key), 0)
            if generation is not None and generation != current:
                return False
            self._entries[key] = (self._clock(), value)
            return True

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is None:
            generation = self.generation(self._owner(key))
            value = loader()
            self.set(key, value, generation=generation)
        return value

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_user(self, user_id: int) -> None:
        with self._lock:
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
            for key in [k for k in self._entries if self._owner(k) == user_id]:
                del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)
