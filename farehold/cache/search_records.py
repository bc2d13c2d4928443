import json
import hashlib
import uuid
from typing import Callable, Dict, Optional, Any, Iterable, List
from datetime import datetime, timedelta

from farehold.config import settings
from farehold.obs.logger import log_event
from farehold.obs.metrics import inc_counter
from farehold.session.store import KeyValueStore
from farehold.types import Offer, SearchParameters, SearchRecord, SearchTiming, UserProgress
from farehold.utils.dates import utc_now

RECORD_PREFIX = "record:"
PARAMS_PREFIX = "params:"


def create_cache_key(params: SearchParameters) -> str:
    # Parameters are normalized on construction, so equal searches hash equal
    pax = params.passengers
    parts = [
        params.origin,
        params.destination,
        params.departure_date,
        params.return_date or "ONEWAY",
        str(pax.adults),
        str(pax.children),
        str(pax.infants_in_seat),
        str(pax.infants_on_lap),
        params.cabin_class,
        params.currency,
        str(params.max_connections),
    ]
    key_str = "|".join(parts)
    return hashlib.md5(key_str.encode()).hexdigest()


def generate_search_id() -> str:
    """Opaque token, deliberately unrelated to the search parameters."""
    return uuid.uuid4().hex[:12]


def _offers_fingerprint(offers: Iterable[Offer]) -> str:
    payload = [
        o.model_dump(mode="json", exclude={"converted_amount", "converted_currency"})
        for o in offers
    ]
    return hashlib.md5(json.dumps(payload, sort_keys=True).encode()).hexdigest()


class SearchRecordStore:
    """Search results, supplier timing and booking progress, addressable two ways.

    Each record lives under ``record:{search_id}``; ``params:{digest}`` points
    at the newest record for a set of normalized parameters. A fresh search
    with different offers re-points the digest (supersession) while the older
    record stays reachable by its own id until it is evicted.
    """

    def __init__(self, store: KeyValueStore,
                 clock: Callable[[], datetime] = utc_now,
                 retention_seconds: Optional[int] = None,
                 stale_window_seconds: Optional[int] = None,
                 keep_on_pressure: Optional[int] = None):
        self.store = store
        self.clock = clock
        self.retention = timedelta(seconds=retention_seconds or settings.RECORD_RETENTION_SECONDS)
        self.expired_grace = timedelta(seconds=stale_window_seconds or settings.STALE_WINDOW_SECONDS)
        self.keep_on_pressure = keep_on_pressure or settings.AGGRESSIVE_CLEANUP_KEEP
        self.cache_stats = {"hits": 0, "misses": 0}

    # --- writes -----------------------------------------------------------

    def save(self, params: SearchParameters, offers: List[Offer], timing: SearchTiming,
             selected_offer_id: Optional[str] = None,
             progress: Optional[UserProgress] = None) -> str:
        key = create_cache_key(params)
        fingerprint = _offers_fingerprint(offers)

        pointer = self._read_pointer(key)
        if pointer and pointer.get("fingerprint") == fingerprint:
            # Same parameters, same offers: keep the id, overwrite the record
            search_id = pointer["search_id"]
        else:
            search_id = generate_search_id()

        record = SearchRecord(
            search_id=search_id,
            search_parameters=params,
            offers=list(offers),
            timing=timing,
            cached_at=self.clock(),
            selected_offer_id=selected_offer_id,
            user_progress=progress or UserProgress(),
        )

        # Clean up old entries before saving
        self.cleanup()
        try:
            self._write(record, key, fingerprint)
        except Exception as e:
            log_event("search_record_save_failed", level="WARNING", search_id=search_id, error=str(e))
            self.aggressive_cleanup()
            try:
                self._write(record, key, fingerprint)
            except Exception as retry_error:
                # The caller still gets its id; the next load simply misses
                log_event("search_record_save_abandoned", level="ERROR",
                          search_id=search_id, error=str(retry_error))
                return search_id

        log_event("search_record_saved", search_id=search_id, offers=len(record.offers))
        return search_id

    def _write(self, record: SearchRecord, key: Optional[str] = None, fingerprint: Optional[str] = None) -> None:
        self.store.set(f"{RECORD_PREFIX}{record.search_id}", record.model_dump(mode="json"))
        if key is not None:
            self.store.set(f"{PARAMS_PREFIX}{key}", {
                "search_id": record.search_id,
                "fingerprint": fingerprint,
            })

    def update_selected_offer(self, params: Optional[SearchParameters], offer_id: str,
                              search_id: Optional[str] = None) -> bool:
        record = self._target(params, search_id)
        if record is None:
            return False
        record.selected_offer_id = offer_id
        self._write(record)
        return True

    def update_progress(self, params: Optional[SearchParameters], progress: Dict[str, Any],
                        search_id: Optional[str] = None) -> bool:
        """Merge ``progress`` into the record's user progress.

        With an explicit ``search_id`` exactly that record is updated, which is
        what a flow resumed by id needs. Missing records are a no-op.
        """
        record = self._target(params, search_id)
        if record is None:
            log_event("progress_update_skipped", level="WARNING", search_id=search_id)
            return False
        merged = {**record.user_progress.model_dump(), **progress}
        record.user_progress = UserProgress.model_validate(merged)
        self._write(record)
        return True

    def _target(self, params: Optional[SearchParameters], search_id: Optional[str]) -> Optional[SearchRecord]:
        if search_id:
            return self.load_by_id(search_id)
        if params is not None:
            return self.load(params)
        return None

    # --- reads ------------------------------------------------------------

    def _read_pointer(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            pointer = self.store.get(f"{PARAMS_PREFIX}{key}")
        except Exception as e:
            log_event("search_pointer_unreadable", level="WARNING", key=key, error=str(e))
            return None
        if not isinstance(pointer, dict) or not pointer.get("search_id"):
            return None
        return pointer

    def load(self, params: SearchParameters) -> Optional[SearchRecord]:
        key = create_cache_key(params)
        pointer = self._read_pointer(key)
        if pointer is None:
            self._miss()
            return None
        record = self.load_by_id(pointer["search_id"])
        if record is None:
            # dangling pointer, record was evicted or damaged
            self.store.delete(f"{PARAMS_PREFIX}{key}")
        return record

    def load_by_id(self, search_id: str) -> Optional[SearchRecord]:
        record = self._read_record(search_id) if search_id else None
        if record is None:
            self._miss()
            return None
        self.cache_stats["hits"] += 1
        inc_counter("search_record_lookups_total", {"result": "hit"})
        return record

    def _read_record(self, search_id: str) -> Optional[SearchRecord]:
        # Damaged entries are deleted so the next search can replace them
        storage_key = f"{RECORD_PREFIX}{search_id}"
        try:
            raw = self.store.get(storage_key)
            if raw is None:
                return None
            return SearchRecord.model_validate(raw)
        except Exception as e:
            log_event("search_record_corrupted", level="WARNING", search_id=search_id, error=str(e))
            inc_counter("search_record_lookups_total", {"result": "corrupt"})
            self.store.delete(storage_key)
            return None

    def resolve(self, search_id: Optional[str] = None,
                params: Optional[SearchParameters] = None) -> Optional[SearchRecord]:
        """Explicit resumption by id wins over parameter matching.

        Two unrelated searches can share parameters while holding different
        offers, so params are only consulted when the id is absent or unknown.
        """
        if search_id:
            record = self.load_by_id(search_id)
            if record is not None:
                return record
        if params is not None:
            return self.load(params)
        return None

    def _miss(self) -> None:
        self.cache_stats["misses"] += 1
        inc_counter("search_record_lookups_total", {"result": "miss"})

    # --- eviction ---------------------------------------------------------

    def remove_by_id(self, search_id: str) -> None:
        record = self._read_record(search_id)
        self.store.delete(f"{RECORD_PREFIX}{search_id}")
        if record is not None:
            key = create_cache_key(record.search_parameters)
            pointer = self._read_pointer(key)
            if pointer and pointer["search_id"] == search_id:
                self.store.delete(f"{PARAMS_PREFIX}{key}")
        log_event("search_record_removed", search_id=search_id)

    def remove(self, params: SearchParameters) -> None:
        pointer = self._read_pointer(create_cache_key(params))
        if pointer:
            self.remove_by_id(pointer["search_id"])

    def all_records(self) -> Dict[str, SearchRecord]:
        records: Dict[str, SearchRecord] = {}
        for storage_key in self.store.keys(RECORD_PREFIX):
            search_id = storage_key[len(RECORD_PREFIX):]
            record = self._read_record(search_id)
            if record is not None:
                records[search_id] = record
        return records

    def is_evictable(self, record: SearchRecord, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        if now - record.cached_at > self.retention:
            return True
        expires_at = record.timing.expires_at
        return bool(expires_at and now - expires_at > self.expired_grace)

    def cleanup(self) -> int:
        """Evict records past the retention age and drop dangling pointers."""
        now = self.clock()
        removed = 0
        for search_id, record in self.all_records().items():
            if self.is_evictable(record, now):
                self.remove_by_id(search_id)
                removed += 1
        for storage_key in self.store.keys(PARAMS_PREFIX):
            pointer = self._read_pointer(storage_key[len(PARAMS_PREFIX):])
            if pointer is None or self._read_record(pointer["search_id"]) is None:
                self.store.delete(storage_key)
        if removed:
            log_event("search_records_evicted", removed=removed)
        return removed

    def aggressive_cleanup(self, keep: Optional[int] = None) -> int:
        """Keep only the ``keep`` most recently cached records."""
        keep = self.keep_on_pressure if keep is None else keep
        ordered = sorted(self.all_records().values(), key=lambda r: r.cached_at)
        to_remove = ordered[:-keep] if keep > 0 else ordered
        for record in to_remove:
            self.remove_by_id(record.search_id)
        log_event("search_records_aggressive_cleanup",
                  kept=len(ordered) - len(to_remove), removed=len(to_remove))
        return len(to_remove)

    def stats(self) -> Dict[str, Any]:
        records = self.all_records()
        total_bytes = sum(len(r.model_dump_json()) for r in records.values())
        total = self.cache_stats["hits"] + self.cache_stats["misses"]
        hit_rate = 0 if total == 0 else self.cache_stats["hits"] / total * 100
        return {
            "records": len(records),
            "total_bytes": total_bytes,
            "hits": self.cache_stats["hits"],
            "misses": self.cache_stats["misses"],
            "hit_rate": f"{hit_rate:.1f}%",
        }
