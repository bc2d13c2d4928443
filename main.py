from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from farehold.booking.flow import BookingFlow, FlowStatus
from farehold.booking.pricing import luggage_options
from farehold.cache.search_records import SearchRecordStore
from farehold.config import settings
from farehold.errors import ExpirationError, FareholdError, SearchDiscarded, SupplierError, ValidationError
from farehold.freshness.tracker import ExpirationTracker, format_time_remaining
from farehold.obs.logger import log_event
from farehold.obs.metrics import get_metrics_snapshot
from farehold.obs.middleware import ObservabilityMiddleware
from farehold.rank.selector import (
    OfferFilters,
    SortMode,
    StopsFilter,
    display_price,
    duration_hours,
    primary_airline,
    rank_record,
    total_stops,
)
from farehold.rates.cache import CurrencyConversionCache
from farehold.rates.client import ExchangeRateClient
from farehold.search.addressing import build_details_url, build_search_url
from farehold.search.coordinator import SearchCoordinator
from farehold.session.redis_store import RedisStore
from farehold.supplier.client import FlightSearchClient, HttpBookingClient, StaticAuth
from farehold.types import Identity, Offer, SearchRecord
from farehold.utils.dates import format_duration_minutes

load_dotenv()


def wire_state(state: Any, store, search_client, rates_client, booking_client) -> None:
    """Attach the shared components to ``app.state``."""
    state.records = SearchRecordStore(store)
    state.tracker = ExpirationTracker()
    state.rates = CurrencyConversionCache(rates_client)
    state.coordinator = SearchCoordinator(state.records, search_client)
    state.booking_client = booking_client
    state.flows = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_event("startup", env=settings.APP_ENV)
    owned = []
    if getattr(app.state, "records", None) is None:
        search_client = FlightSearchClient()
        rates_client = ExchangeRateClient()
        booking_client = HttpBookingClient()
        owned = [search_client, rates_client, booking_client]
        wire_state(app.state, RedisStore(), search_client, rates_client, booking_client)

    yield

    for client in owned:
        await client.aclose()
    log_event("shutdown")


app = FastAPI(
    title="Farehold",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse({"error": "validation", "passengers": exc.errors, "message": str(exc)}, status_code=422)


@app.exception_handler(ExpirationError)
async def _expiration_error(request: Request, exc: ExpirationError):
    return JSONResponse({"error": "expired", "reason": exc.reason, "message": str(exc)}, status_code=409)


@app.exception_handler(SupplierError)
async def _supplier_error(request: Request, exc: SupplierError):
    return JSONResponse({"error": "supplier", "source": exc.source, "message": exc.message}, status_code=502)


@app.exception_handler(SearchDiscarded)
async def _search_discarded(request: Request, exc: SearchDiscarded):
    return JSONResponse({"error": "discarded", "message": str(exc)}, status_code=409)


@app.exception_handler(FareholdError)
async def _farehold_error(request: Request, exc: FareholdError):
    return JSONResponse({"error": "booking", "message": str(exc)}, status_code=400)


def _identity(request: Request) -> Optional[Identity]:
    user_id = request.headers.get("x-user-id")
    if not user_id:
        return None
    return Identity(user_id=user_id, email=request.headers.get("x-user-email"))


def _record_or_404(request: Request, search_id: str) -> SearchRecord:
    record = request.app.state.records.load_by_id(search_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Search not found or expired")
    return record


def _split(value: Optional[str]) -> List[str]:
    return [v.strip().upper() for v in (value or "").split(",") if v.strip()]


class FilterQuery(BaseModel):
    """Offer filters as they arrive on the query string; bad values are a 422."""
    airlines: Optional[str] = None
    stops: StopsFilter = StopsFilter.ANY
    price_min: Optional[Decimal] = Field(None, ge=0, allow_inf_nan=False)
    price_max: Optional[Decimal] = Field(None, ge=0, allow_inf_nan=False)
    duration_min: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    duration_max: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    connecting: Optional[str] = None

    def to_filters(self) -> OfferFilters:
        price_range = None
        if self.price_min is not None or self.price_max is not None:
            price_range = (self.price_min, self.price_max)
        duration_range = None
        if self.duration_min is not None or self.duration_max is not None:
            duration_range = (self.duration_min, self.duration_max)
        return OfferFilters(
            airlines=_split(self.airlines),
            stops=self.stops,
            price_range=price_range,
            duration_range=duration_range,
            connecting_airports=_split(self.connecting),
        )


def _offer_view(offer: Offer, rates: CurrencyConversionCache, display_currency: str,
                search_id: str, lang: str) -> Dict[str, Any]:
    conditions = offer.conditions
    change = conditions.change_before_departure
    refund = conditions.refund_before_departure
    return {
        "id": offer.id,
        "price": str(display_price(offer)),
        "currency": offer.converted_currency or offer.total_currency,
        "original_price": str(offer.total_amount),
        "original_currency": offer.total_currency,
        "airline": primary_airline(offer),
        "stops": total_stops(offer),
        "duration": format_duration_minutes(int(round(duration_hours(offer) * 60))),
        "change_penalty": rates.format_penalty(
            change.penalty_amount if change else None, change.penalty_currency if change else None,
            display_currency),
        "refund_penalty": rates.format_penalty(
            refund.penalty_amount if refund else None, refund.penalty_currency if refund else None,
            display_currency),
        "details_url": build_details_url(offer.id, search_id, lang),
    }


def _freshness_view(request: Request, record: SearchRecord, offer: Optional[Offer] = None) -> Dict[str, Any]:
    snapshot = request.app.state.tracker.freshness(record, offer)
    view = snapshot.model_dump(mode="json")
    view["time_remaining"] = format_time_remaining(snapshot.time_remaining_ms)
    return view


def _flow_view(flow: BookingFlow) -> Dict[str, Any]:
    return {
        "search_id": flow.record.search_id,
        "offer_id": flow.offer_id,
        "step": flow.step.value,
        "status": flow.status.value,
        "failure_reason": flow.failure_reason,
        "booking_reference": flow.confirmation.booking_reference if flow.confirmation else None,
        "passengers": [f.model_dump(mode="json") for f in flow.passenger_forms],
        "total_price": str(flow.total_price()),
    }


def _flow_or_404(request: Request, search_id: str) -> BookingFlow:
    state = request.app.state
    flow = state.flows.get(search_id)
    if flow is not None and state.records.load_by_id(search_id) is None:
        # record evicted
        state.flows.pop(search_id, None)
        flow = None
    if flow is None:
        raise HTTPException(status_code=404, detail="No booking in progress for this search")
    return flow


def _prune_flows(state: Any) -> None:
    """Drop flows that finished or whose search record is gone."""
    for search_id, flow in list(state.flows.items()):
        if flow.status == FlowStatus.BOOKED or state.records.load_by_id(search_id) is None:
            state.flows.pop(search_id, None)


def _finished_view(request: Request, flow: BookingFlow) -> Dict[str, Any]:
    view = _flow_view(flow)
    if flow.status == FlowStatus.BOOKED:
        request.app.state.flows.pop(flow.record.search_id, None)
    return view


@app.get("/")
async def root():
    return {"service": "farehold", "version": "1.0.0", "status": "running"}


@app.get("/health")
async def health():
    return {"status": "healthy", "service": "farehold"}


@app.get("/metrics")
async def metrics(request: Request):
    snapshot = get_metrics_snapshot()
    records = getattr(request.app.state, "records", None)
    snapshot["search_records"] = records.stats() if records else {"records": 0}
    return snapshot


@app.get("/search")
async def navigate(request: Request, lang: str = "en", refresh: bool = False):
    """Resolve an incoming results-page URL: resume by searchId or search by params.

    `refresh=true` is the user asking for the same search again (after a
    failure, or to get new prices) and bypasses the auto-search guard.
    """
    state = request.app.state
    outcome = await state.coordinator.navigate(dict(request.query_params), refresh=refresh)
    record = outcome.record
    body: Dict[str, Any] = {"decision": outcome.decision.value, "resumed": outcome.resumed}
    if record is not None:
        body.update({
            "search_id": record.search_id,
            "url": build_search_url(record.search_parameters, record.search_id, lang),
            "offers": len(record.offers),
            "freshness": _freshness_view(request, record),
        })
    return body


@app.get("/search/{search_id}/offers")
async def offers(request: Request, search_id: str, filters: Annotated[FilterQuery, Query()],
                 sort: SortMode = SortMode.BEST, currency: Optional[str] = None, lang: str = "en"):
    state = request.app.state
    record = _record_or_404(request, search_id)
    display_currency = (currency or record.search_parameters.currency).upper()

    converted = await state.rates.convert_offers(record.offers, display_currency)
    await state.rates.ensure_penalty_rates(record.offers, display_currency)
    ranked = rank_record(record, state.tracker, filters=filters.to_filters(),
                         mode=sort, offers=converted)
    return {
        "status": ranked.status.value,
        "total": ranked.total,
        "expired": ranked.expired_count,
        "offers": [_offer_view(o, state.rates, display_currency, search_id, lang) for o in ranked.offers],
        "freshness": _freshness_view(request, record),
    }


@app.get("/search/{search_id}/freshness")
async def freshness(request: Request, search_id: str, offer_id: Optional[str] = None):
    record = _record_or_404(request, search_id)
    refresh, reason = request.app.state.tracker.needs_refresh(record)
    view = _freshness_view(request, record, record.get_offer(offer_id))
    view.update({"needs_refresh": refresh, "reason": reason})
    return view


@app.get("/rates/{base}")
async def rates(request: Request, base: str):
    found = await request.app.state.rates.get_rates(base)
    if found is None:
        return JSONResponse({"base": base.upper(), "status": "unavailable"}, status_code=503)
    return {"base": base.upper(), "rates": {k: str(v) for k, v in found.items()}}


@app.get("/luggage/options")
async def luggage():
    return [o.model_dump(mode="json") for o in luggage_options()]


class StartBooking(BaseModel):
    offer_id: Optional[str] = None


class PassengerUpdate(BaseModel):
    index: int
    fields: Dict[str, Any]


class LuggageUpdate(BaseModel):
    index: int
    checked: int = 0
    carry_on: int = 0


class Submission(BaseModel):
    payment: Dict[str, Any] = {"type": "balance"}


@app.post("/booking/{search_id}")
async def start_booking(request: Request, search_id: str, body: StartBooking):
    state = request.app.state
    flow = BookingFlow.resume(
        state.records, state.tracker, state.booking_client, StaticAuth(_identity(request)),
        search_id=search_id, offer_id=body.offer_id,
    )
    if flow is None:
        raise HTTPException(status_code=404, detail="Search or offer not found")
    _prune_flows(state)
    state.flows[flow.record.search_id] = flow
    return _flow_view(flow)


@app.get("/booking/{search_id}")
async def get_booking(request: Request, search_id: str):
    return _flow_view(_flow_or_404(request, search_id))


@app.put("/booking/{search_id}/passengers")
async def update_passenger(request: Request, search_id: str, body: PassengerUpdate):
    flow = _flow_or_404(request, search_id)
    flow.update_passenger(body.index, **body.fields)
    return _flow_view(flow)


@app.put("/booking/{search_id}/ancillaries")
async def update_ancillaries(request: Request, search_id: str, payload: Dict[str, Any]):
    flow = _flow_or_404(request, search_id)
    flow.set_ancillaries(payload or None)
    return _flow_view(flow)


@app.put("/booking/{search_id}/luggage")
async def update_luggage(request: Request, search_id: str, body: LuggageUpdate):
    flow = _flow_or_404(request, search_id)
    flow.set_luggage(body.index, checked=body.checked, carry_on=body.carry_on)
    return _flow_view(flow)


@app.post("/booking/{search_id}/advance")
async def advance(request: Request, search_id: str):
    flow = _flow_or_404(request, search_id)
    flow.advance()
    return _flow_view(flow)


@app.post("/booking/{search_id}/back")
async def back(request: Request, search_id: str):
    flow = _flow_or_404(request, search_id)
    flow.back()
    return _flow_view(flow)


@app.post("/booking/{search_id}/submit")
async def submit(request: Request, search_id: str, body: Submission):
    flow = _flow_or_404(request, search_id)
    flow.auth = StaticAuth(_identity(request))
    await flow.submit(body.payment)
    return _finished_view(request, flow)


@app.post("/booking/{search_id}/authenticated")
async def authenticated(request: Request, search_id: str):
    flow = _flow_or_404(request, search_id)
    identity = _identity(request)
    if identity is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    await flow.authenticated(identity)
    return _finished_view(request, flow)


# Apply middleware
app = ObservabilityMiddleware(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8001,
        reload=True,
        log_level="info"
    )
