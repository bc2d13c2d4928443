import os
import sys
import asyncio
import inspect
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import pytz

# Ensure project root is on sys.path so `import farehold` works in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from farehold.obs.metrics import reset_metrics  # noqa: E402
from farehold.types import (  # noqa: E402
    Offer,
    OfferConditions,
    OfferPassenger,
    PenaltyCondition,
    SearchParameters,
    SearchTiming,
    Segment,
    Slice,
)


def pytest_pyfunc_call(pyfuncitem):
    """Allow running async tests without pytest-asyncio.

    If the test function is a coroutine, run it in a fresh event loop.
    """
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        funcargs = pyfuncitem.funcargs
        sig = inspect.signature(testfunction)
        # Filter only the parameters that the test function expects
        allowed = {name: funcargs[name] for name in sig.parameters.keys() if name in funcargs}
        asyncio.run(testfunction(**allowed))
        return True
    return None


class FixedClock:
    """Injectable clock; tests move time forward instead of sleeping."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


T0 = datetime(2025, 5, 1, 12, 0, tzinfo=pytz.utc)


@pytest.fixture(autouse=True)
def _fresh_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def params():
    return SearchParameters(
        origin="JFK",
        destination="CDG",
        departure_date="2025-06-01",
        passengers=1,
        cabin_class="economy",
        currency="USD",
    )


def build_offer(offer_id="O1", amount="450.00", currency="USD", stops_per_slice=(0,),
                hours=7.0, carrier="AF", via=("LHR", "AMS"), expires_at=None,
                passengers=1, change_penalty=None):
    """Offer JFK->CDG with ``stops`` connections per slice through ``via`` airports."""
    slices = []
    for stops in stops_per_slice:
        airports = ["JFK", *via[:stops], "CDG"]
        leg = timedelta(hours=hours / len(stops_per_slice) / (stops + 1))
        departing = T0 + timedelta(days=31)
        segments = []
        for origin, destination in zip(airports, airports[1:]):
            segments.append(Segment(
                origin=origin,
                destination=destination,
                departing_at=departing,
                arriving_at=departing + leg,
                marketing_carrier=carrier,
                flight_number="100",
            ))
            departing = departing + leg
        slices.append(Slice(segments=segments))

    conditions = OfferConditions()
    if change_penalty is not None:
        amount_, currency_ = change_penalty
        conditions = OfferConditions(change_before_departure=PenaltyCondition(
            allowed=True, penalty_amount=Decimal(amount_), penalty_currency=currency_))

    return Offer(
        id=offer_id,
        total_amount=Decimal(amount),
        total_currency=currency,
        expires_at=expires_at,
        conditions=conditions,
        slices=slices,
        passengers=[OfferPassenger(id=f"pas_{i}", type="adult") for i in range(passengers)],
    )


@pytest.fixture
def make_offer():
    return build_offer


@pytest.fixture
def timing():
    return SearchTiming(
        search_started_at=T0,
        supplier_timeout=20000,
        expires_at=T0 + timedelta(minutes=30),
        created_at=T0,
    )
