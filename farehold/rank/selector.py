from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional, Tuple

from pydantic import BaseModel, Field

from farehold.config import settings
from farehold.freshness.tracker import ExpirationTracker
from farehold.obs.logger import log_event
from farehold.types import Offer, SearchRecord, Slice


class StopsFilter(str, Enum):
    ANY = "any"
    NONSTOP = "nonstop"
    ONE_OR_FEWER = "1_or_fewer"
    TWO_OR_FEWER = "2_or_fewer"


_MAX_STOPS = {
    StopsFilter.NONSTOP: 0,
    StopsFilter.ONE_OR_FEWER: 1,
    StopsFilter.TWO_OR_FEWER: 2,
}


class SortMode(str, Enum):
    BEST = "best"
    CHEAPEST = "cheapest"
    FASTEST = "fastest"
    DIRECT = "direct"


class OfferFilters(BaseModel):
    # Unset criteria match everything
    airlines: List[str] = Field(default_factory=list)
    stops: StopsFilter = StopsFilter.ANY
    price_range: Optional[Tuple[Optional[Decimal], Optional[Decimal]]] = None
    duration_range: Optional[Tuple[Optional[float], Optional[float]]] = None   # hours; None bound is open
    connecting_airports: List[str] = Field(default_factory=list)


class ScoreWeights(BaseModel):
    price: float = Field(default_factory=lambda: settings.BEST_SCORE_PRICE_WEIGHT)
    duration: float = Field(default_factory=lambda: settings.BEST_SCORE_DURATION_WEIGHT)
    stops: float = Field(default_factory=lambda: settings.BEST_SCORE_STOPS_WEIGHT)


class RankStatus(str, Enum):
    OK = "OK"
    EMPTY = "EMPTY"              # nothing to rank in the first place
    NO_MATCH = "NO_MATCH"        # filters removed every offer
    ALL_EXPIRED = "ALL_EXPIRED"  # every offer is past its booking cutoff, refresh required


class RankedOffers(BaseModel):
    status: RankStatus
    offers: List[Offer]
    expired_count: int = 0
    total: int = 0


def slice_stops(sl: Slice) -> int:
    return max(0, len(sl.segments) - 1)


def total_stops(offer: Offer) -> int:
    return sum(slice_stops(sl) for sl in offer.slices)


def slice_duration(sl: Slice) -> timedelta:
    if not sl.segments:
        return timedelta(0)
    return sl.segments[-1].arriving_at - sl.segments[0].departing_at


def total_duration(offer: Offer) -> timedelta:
    return sum((slice_duration(sl) for sl in offer.slices), timedelta(0))


def duration_hours(offer: Offer) -> float:
    return total_duration(offer) / timedelta(hours=1)


def display_price(offer: Offer) -> Decimal:
    """Converted total when we have one, else the supplier's raw total"""
    return offer.converted_amount if offer.converted_amount is not None else offer.total_amount


def primary_airline(offer: Offer) -> Optional[str]:
    if not offer.slices or not offer.slices[0].segments:
        return None
    return offer.slices[0].segments[0].marketing_carrier


def connecting_airports(offer: Offer) -> List[str]:
    # every airport where one segment hands over to the next
    return [seg.origin for sl in offer.slices for seg in sl.segments[1:]]


def matches(offer: Offer, filters: OfferFilters) -> bool:
    if filters.airlines:
        airline = primary_airline(offer)
        if not airline or airline not in filters.airlines:
            return False

    if filters.stops != StopsFilter.ANY:
        if total_stops(offer) > _MAX_STOPS[filters.stops]:
            return False

    if filters.price_range is not None:
        low, high = filters.price_range
        price = display_price(offer)
        if (low is not None and price < low) or (high is not None and price > high):
            return False

    if filters.duration_range is not None:
        low_h, high_h = filters.duration_range
        hours = duration_hours(offer)
        if (low_h is not None and hours < low_h) or (high_h is not None and hours > high_h):
            return False

    if filters.connecting_airports:
        if not any(code in filters.connecting_airports for code in connecting_airports(offer)):
            return False

    return True


def filter_offers(offers: List[Offer], filters: Optional[OfferFilters] = None) -> List[Offer]:
    if filters is None:
        return list(offers)
    return [o for o in offers if matches(o, filters)]


def best_score(offer: Offer, weights: Optional[ScoreWeights] = None) -> float:
    """Lower is better: price in hundreds, duration in hours, stops as is."""
    w = weights or ScoreWeights()
    return (
        float(display_price(offer)) / 100 * w.price
        + duration_hours(offer) * w.duration
        + total_stops(offer) * w.stops
    )


def sort_offers(offers: List[Offer], mode: SortMode = SortMode.BEST,
                weights: Optional[ScoreWeights] = None) -> List[Offer]:
    if mode == SortMode.CHEAPEST:
        return sorted(offers, key=display_price)
    if mode == SortMode.FASTEST:
        return sorted(offers, key=total_duration)
    if mode == SortMode.DIRECT:
        return sorted(offers, key=total_stops)
    return sorted(offers, key=lambda o: best_score(o, weights))


def rank_offers(offers: List[Offer],
                filters: Optional[OfferFilters] = None,
                mode: SortMode = SortMode.BEST,
                weights: Optional[ScoreWeights] = None,
                is_bookable: Callable[[Offer], bool] = lambda _o: True) -> RankedOffers:
    if not offers:
        return RankedOffers(status=RankStatus.EMPTY, offers=[], total=0)

    live = [o for o in offers if is_bookable(o)]
    expired_count = len(offers) - len(live)
    if expired_count:
        log_event("offers_expired_dropped", dropped=expired_count, total=len(offers))
    if not live:
        return RankedOffers(status=RankStatus.ALL_EXPIRED, offers=[],
                            expired_count=expired_count, total=len(offers))

    filtered = filter_offers(live, filters)
    if not filtered:
        return RankedOffers(status=RankStatus.NO_MATCH, offers=[],
                            expired_count=expired_count, total=len(offers))

    return RankedOffers(
        status=RankStatus.OK,
        offers=sort_offers(filtered, mode, weights),
        expired_count=expired_count,
        total=len(offers),
    )


def rank_record(record: SearchRecord, tracker: ExpirationTracker,
                filters: Optional[OfferFilters] = None,
                mode: SortMode = SortMode.BEST,
                weights: Optional[ScoreWeights] = None,
                offers: Optional[List[Offer]] = None) -> RankedOffers:
    """Rank a record's offers (or converted copies of them) against its expiry."""
    return rank_offers(
        record.offers if offers is None else offers,
        filters=filters,
        mode=mode,
        weights=weights,
        is_bookable=lambda o: tracker.is_bookable(record, o),
    )
