"""
Offer freshness for cached search records.

Two independent signals:

* expired - authoritative, from the supplier's ``expires_at``
* stale   - heuristic, from the age of the cached record; only consulted
            when the supplier gave us no expiry to go by

Everything here is a pure function of the record and the clock, so the
one-second countdown can recompute as often as it likes.
"""

import asyncio
from datetime import datetime, timedelta
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional, Tuple

from pydantic import BaseModel

from farehold.config import settings
from farehold.types import Offer, SearchRecord
from farehold.utils.dates import elapsed_ms, utc_now


class Freshness(str, Enum):
    FRESH = "FRESH"
    NEAR_EXPIRY = "NEAR_EXPIRY"
    EXPIRED = "EXPIRED"


class FreshnessSnapshot(BaseModel):
    state: Freshness
    stale: bool
    time_remaining_ms: int
    refresh_recommended: bool
    bookable: bool
    has_supplier_timing: bool


def format_time_remaining(milliseconds: int) -> str:
    """Format a countdown as MM:SS ("00:00" once it runs out)"""
    if milliseconds <= 0:
        return "00:00"
    total_seconds = milliseconds // 1000
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes:02d}:{seconds:02d}"


class ExpirationTracker:
    def __init__(self, clock: Callable[[], datetime] = utc_now,
                 stale_window_seconds: Optional[int] = None,
                 near_expiry_seconds: Optional[int] = None,
                 expiry_buffer_seconds: Optional[int] = None,
                 supplier_timeout_multiplier: Optional[int] = None):
        self.clock = clock
        self.stale_window = timedelta(seconds=stale_window_seconds or settings.STALE_WINDOW_SECONDS)
        self.near_expiry_ms = (near_expiry_seconds or settings.NEAR_EXPIRY_SECONDS) * 1000
        buffer_seconds = settings.OFFER_EXPIRY_BUFFER_SECONDS if expiry_buffer_seconds is None else expiry_buffer_seconds
        self.expiry_buffer = timedelta(seconds=buffer_seconds)
        self.timeout_multiplier = supplier_timeout_multiplier or settings.SUPPLIER_TIMEOUT_MULTIPLIER

    def effective_expiry(self, record: SearchRecord, offer: Optional[Offer] = None) -> Optional[datetime]:
        """Earliest supplier expiry that applies; never later than either source."""
        candidates = [record.timing.expires_at]
        if offer is not None:
            candidates.append(offer.expires_at)
        known = [c for c in candidates if c is not None]
        return min(known) if known else None

    def has_supplier_timing(self, record: SearchRecord) -> bool:
        return record.timing.search_started_at is not None and record.timing.expires_at is not None

    def get_time_remaining(self, record: SearchRecord, offer: Optional[Offer] = None) -> int:
        """Milliseconds until expiry; 0 when unknown or already expired."""
        expiry = self.effective_expiry(record, offer)
        if expiry is None:
            return 0
        return max(0, elapsed_ms(self.clock(), expiry))

    def is_expired(self, record: SearchRecord, offer: Optional[Offer] = None) -> bool:
        expiry = self.effective_expiry(record, offer)
        return expiry is not None and self.clock() >= expiry

    def is_bookable(self, record: SearchRecord, offer: Optional[Offer] = None) -> bool:
        """False once inside the pre-expiry buffer, even if not literally expired."""
        expiry = self.effective_expiry(record, offer)
        if expiry is None:
            return True
        return self.clock() < expiry - self.expiry_buffer

    def _stale_window(self, record: SearchRecord) -> timedelta:
        timeout_ms = record.timing.supplier_timeout
        if not timeout_ms:
            return self.stale_window
        return max(timedelta(milliseconds=timeout_ms * self.timeout_multiplier), self.stale_window)

    def is_stale(self, record: SearchRecord) -> bool:
        # Supplier timing, when present, is the only signal that counts
        if self.has_supplier_timing(record):
            return self.is_expired(record)
        return self.clock() - record.cached_at > self._stale_window(record)

    def freshness(self, record: SearchRecord, offer: Optional[Offer] = None) -> FreshnessSnapshot:
        remaining = self.get_time_remaining(record, offer)
        expired = self.is_expired(record, offer)
        if expired:
            state = Freshness.EXPIRED
        elif self.effective_expiry(record, offer) is not None and remaining < self.near_expiry_ms:
            state = Freshness.NEAR_EXPIRY
        else:
            state = Freshness.FRESH
        stale = self.is_stale(record)
        return FreshnessSnapshot(
            state=state,
            stale=stale,
            time_remaining_ms=remaining,
            refresh_recommended=state != Freshness.FRESH or stale,
            bookable=not expired and not stale and self.is_bookable(record, offer),
            has_supplier_timing=self.has_supplier_timing(record),
        )

    def needs_refresh(self, record: Optional[SearchRecord]) -> Tuple[bool, Optional[str]]:
        if record is None:
            return True, None
        if self.is_expired(record):
            return True, "expired"
        if self.is_stale(record):
            return True, "stale"
        return False, None

    async def countdown(self, record: SearchRecord, offer: Optional[Offer] = None,
                        interval: float = 1.0,
                        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
                        ) -> AsyncIterator[FreshnessSnapshot]:
        """Yield a snapshot every ``interval`` seconds until the offer expires.

        Records without a supplier expiry yield once and stop.
        """
        while True:
            snapshot = self.freshness(record, offer)
            yield snapshot
            if snapshot.state == Freshness.EXPIRED or self.effective_expiry(record, offer) is None:
                return
            await sleep(interval)
