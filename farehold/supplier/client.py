import httpx
from typing import Any, Dict, Optional, Protocol

from farehold.config import settings
from farehold.errors import SupplierError
from farehold.obs.logger import log_event
from farehold.obs.metrics import inc_counter, timed
from farehold.supplier.transform import (
    booking_request_body,
    confirmation_from_supplier,
    from_supplier,
    search_request_body,
)
from farehold.types import BookingConfirmation, BookingRequest, Identity, SearchParameters, SearchResponse


class SearchClient(Protocol):
    async def search(self, params: SearchParameters) -> SearchResponse: ...


class BookingClient(Protocol):
    async def book(self, request: BookingRequest) -> BookingConfirmation: ...


class AuthProvider(Protocol):
    async def current_identity(self) -> Optional[Identity]: ...


class StaticAuth:
    """Identity known up front, e.g. from a request header. ``None`` means signed out."""

    def __init__(self, identity: Optional[Identity] = None):
        self.identity = identity

    async def current_identity(self) -> Optional[Identity]:
        return self.identity


def _default_http() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(connect=3.0, read=45.0, write=12.0, pool=12.0),
    )


def _error_message(response: httpx.Response, fallback: str) -> str:
    # Supplier failures come back as {"error": "..."}; surface that text as is
    try:
        body = response.json()
    except ValueError:
        return response.text or fallback
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            return err.get("message") or fallback
        if err:
            return str(err)
        if body.get("message"):
            return str(body["message"])
    return fallback


class _SupplierHttp:
    source = "supplier"

    def __init__(self, url: str, api_key: Optional[str] = None,
                 http: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.api_key = settings.SUPPLIER_API_KEY if api_key is None else api_key
        self._http = http or _default_http()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, body: Dict[str, Any], fallback: str) -> Dict[str, Any]:
        try:
            with timed("supplier_call_ms", {"source": self.source}):
                r = await self._http.post(self.url, json=body, headers=self._headers())
        except httpx.TransportError as e:
            log_event(f"{self.source}_transport_error", level="ERROR", error=f"{type(e).__name__}: {e}")
            inc_counter("supplier_calls_total", {"source": self.source, "result": "error"})
            raise SupplierError(self.source, fallback) from e

        if r.status_code >= 400:
            message = _error_message(r, fallback)
            log_event(f"{self.source}_http_error", level="ERROR", status=r.status_code, error=message)
            inc_counter("supplier_calls_total", {"source": self.source, "result": "error"})
            raise SupplierError(self.source, message)

        try:
            data = r.json()
        except ValueError as e:
            inc_counter("supplier_calls_total", {"source": self.source, "result": "error"})
            raise SupplierError(self.source, fallback) from e
        inc_counter("supplier_calls_total", {"source": self.source, "result": "ok"})
        return data

    async def aclose(self) -> None:
        await self._http.aclose()


class FlightSearchClient(_SupplierHttp):
    source = "search"

    def __init__(self, url: Optional[str] = None, api_key: Optional[str] = None,
                 http: Optional[httpx.AsyncClient] = None):
        super().__init__(url or settings.SEARCH_API_URL, api_key, http)

    async def search(self, params: SearchParameters) -> SearchResponse:
        log_event("search_requested", origin=params.origin, destination=params.destination,
                  departure_date=params.departure_date, passengers=params.passengers.total)
        data = await self._post(search_request_body(params), "Failed to search for flights")
        response = from_supplier(data)
        log_event("search_completed", offers=len(response.offers))
        return response


class HttpBookingClient(_SupplierHttp):
    source = "booking"

    def __init__(self, url: Optional[str] = None, api_key: Optional[str] = None,
                 http: Optional[httpx.AsyncClient] = None):
        super().__init__(url or settings.BOOKING_API_URL, api_key, http)

    async def book(self, request: BookingRequest) -> BookingConfirmation:
        data = await self._post(booking_request_body(request), "Failed to create booking")
        if not isinstance(data, dict):
            log_event("booking_unexpected_response", level="ERROR", body_type=type(data).__name__)
            raise SupplierError(self.source, "Failed to create booking")
        if data.get("error"):
            raise SupplierError(self.source, str(data["error"]))
        confirmation = confirmation_from_supplier(request.offer_id, data)
        if not confirmation.booking_reference:
            log_event("booking_missing_reference", level="ERROR", offer_id=request.offer_id)
            raise SupplierError(self.source, "Booking was not confirmed by the supplier")
        return confirmation
