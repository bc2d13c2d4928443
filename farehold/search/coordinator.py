"""
Search orchestration: one supplier call per normalized parameter set, results
persisted once, and navigation resolved to resume-or-search.

No retries happen here. A failed search surfaces as ``SupplierError`` and the
user decides whether to try again.
"""

import asyncio
from datetime import datetime
from typing import Callable, Dict, Mapping, Optional

from pydantic import BaseModel

from farehold.cache.search_records import SearchRecordStore, create_cache_key
from farehold.errors import SearchDiscarded, SupplierError
from farehold.obs.context import search_id_var
from farehold.obs.logger import log_event
from farehold.obs.metrics import inc_counter, timed
from farehold.search.addressing import parse_navigation
from farehold.search.dedup import AutoSearchDeduplicator, NavigationDecision
from farehold.supplier.client import SearchClient
from farehold.types import SearchParameters, SearchRecord
from farehold.utils.dates import utc_now


class NavigationOutcome(BaseModel):
    decision: NavigationDecision
    record: Optional[SearchRecord] = None
    resumed: bool = False


class SearchCoordinator:
    def __init__(self, records: SearchRecordStore, search_client: SearchClient,
                 deduplicator: Optional[AutoSearchDeduplicator] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.records = records
        self.search_client = search_client
        self.deduplicator = deduplicator or AutoSearchDeduplicator()
        self.clock = clock
        self.active_key: Optional[str] = None
        self._inflight: Dict[str, "asyncio.Task[SearchRecord]"] = {}

    @property
    def is_searching(self) -> bool:
        return any(not t.done() for t in self._inflight.values())

    async def search(self, params: SearchParameters) -> SearchRecord:
        """Search the supplier, or join the search already running for these params."""
        key = create_cache_key(params)
        self.active_key = key
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run(params, key))
            self._inflight[key] = task
            task.add_done_callback(lambda _t: self._inflight.pop(key, None))
        else:
            inc_counter("searches_total", {"result": "joined"})
        return await asyncio.shield(task)

    async def _run(self, params: SearchParameters, key: str) -> SearchRecord:
        started_at = self.clock()
        try:
            with timed("search_latency_ms"):
                response = await self.search_client.search(params)
        except SupplierError:
            inc_counter("searches_total", {"result": "failed"})
            raise
        except Exception as e:
            inc_counter("searches_total", {"result": "failed"})
            log_event("search_failed", level="ERROR", error=f"{type(e).__name__}: {e}")
            raise SupplierError("search", "Failed to search for flights") from e

        if self.active_key != key:
            # the user moved on while we were waiting; do not persist or present
            inc_counter("searches_total", {"result": "discarded"})
            log_event("search_discarded", origin=params.origin, destination=params.destination)
            raise SearchDiscarded("Search results arrived for an abandoned search")

        timing = response.timing
        if timing.search_started_at is None:
            timing = timing.model_copy(update={"search_started_at": started_at})

        search_id = self.records.save(params, response.offers, timing)
        search_id_var.set(search_id)
        inc_counter("searches_total", {"result": "ok"})

        record = self.records.load_by_id(search_id)
        if record is None:
            # persistence failed; still hand the results back for this page view
            record = SearchRecord(
                search_id=search_id,
                search_parameters=params,
                offers=response.offers,
                timing=timing,
                cached_at=self.clock(),
            )
        return record

    def abandon(self) -> None:
        """Forget the active search so results still in flight get discarded."""
        self.active_key = None

    async def _search_or_forget(self, params: SearchParameters) -> SearchRecord:
        """Run a navigation search; a failed one must not stay remembered as done."""
        key = create_cache_key(params)
        try:
            return await self.search(params)
        except (SupplierError, SearchDiscarded):
            if self.deduplicator.last_key == key:
                self.deduplicator.forget()
            raise

    async def navigate(self, query: Mapping[str, str], refresh: bool = False) -> NavigationOutcome:
        """Resolve a results-page URL. ``refresh`` is an explicit user re-search."""
        navigation = parse_navigation(query)
        if refresh and navigation.params is not None:
            self.deduplicator.forget()
            navigation = navigation.model_copy(update={"search_id": None})
        decision = self.deduplicator.decide(navigation)

        if decision == NavigationDecision.RESUME:
            record = self.records.resolve(navigation.search_id, navigation.params)
            if record is not None:
                self.active_key = create_cache_key(record.search_parameters)
                search_id_var.set(record.search_id)
                log_event("search_resumed", resumed_from=navigation.search_id)
                return NavigationOutcome(decision=decision, record=record, resumed=True)
            if navigation.params is None:
                log_event("search_resume_missed", level="WARNING", resumed_from=navigation.search_id)
                return NavigationOutcome(decision=decision)
            # unknown id with usable params: search instead, remembered like any auto-search
            self.deduplicator.last_key = create_cache_key(navigation.params)
            record = await self._search_or_forget(navigation.params)
            return NavigationOutcome(decision=NavigationDecision.SEARCH, record=record)

        if decision == NavigationDecision.SEARCH:
            record = await self._search_or_forget(navigation.params)
            return NavigationOutcome(decision=decision, record=record)

        if decision == NavigationDecision.DUPLICATE:
            task = self._inflight.get(create_cache_key(navigation.params))
            if task is not None:
                inc_counter("searches_total", {"result": "joined"})
                record = await asyncio.shield(task)
                return NavigationOutcome(decision=decision, record=record)
            record = self.records.load(navigation.params)
            if record is None:
                # remembered search left nothing behind (evicted, or lost): search again
                record = await self._search_or_forget(navigation.params)
                return NavigationOutcome(decision=NavigationDecision.SEARCH, record=record)
            return NavigationOutcome(decision=decision, record=record)

        return NavigationOutcome(decision=decision)
