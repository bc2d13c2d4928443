"""Key/value backends for search records.

Every component that persists state takes one of these at construction time;
nothing reaches for module-level storage.
"""

from typing import Optional, Dict, Any, List, Protocol
import json
import threading
import time


class KeyValueStore(Protocol):
    """What the search-record store needs from a backend."""

    def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    def set(self, key: str, value: Dict[str, Any]) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> List[str]: ...


class InMemoryStore:
    """In-process dictionary with optional TTL semantics.

    Values are copied through JSON on the way in and out, so callers can
    never mutate what is stored and non-serializable values fail here just
    as they would against Redis.
    """

    def __init__(self, ttl_seconds: Optional[int] = None):
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._data: Dict[str, Dict[str, Any]] = {}

    def _expired(self, rec: Dict[str, Any]) -> bool:
        if not self.ttl_seconds:
            return False
        return (time.time() - rec.get("updated_at", 0)) > self.ttl_seconds

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the stored value if present and not expired, else None."""
        with self._lock:
            rec = self._data.get(key)
            if not rec:
                return None
            if self._expired(rec):
                self._data.pop(key, None)
                return None
            return json.loads(rec["raw"])

    def set(self, key: str, value: Dict[str, Any]) -> None:
        raw = json.dumps(value)
        with self._lock:
            self._data[key] = {"raw": raw, "updated_at": time.time()}

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [k for k, rec in self._data.items() if k.startswith(prefix) and not self._expired(rec)]

    def put_raw(self, key: str, raw: str) -> None:
        """Store an unparsed string as-is (simulates a foreign or damaged writer)."""
        with self._lock:
            self._data[key] = {"raw": raw, "updated_at": time.time()}
