import httpx
from decimal import Decimal
from datetime import datetime
from typing import Callable, Optional, Protocol

from farehold.config import settings
from farehold.errors import SupplierError
from farehold.obs.logger import log_event
from farehold.types import ExchangeRateSet
from farehold.utils.dates import utc_now


class RatesClient(Protocol):
    async def fetch_rates(self, base_currency: str) -> ExchangeRateSet: ...


class ExchangeRateClient:
    """Latest rates for a base currency from an open.er-api style endpoint.

    The endpoint answers ``{"result": "success", "rates": {...}}``; anything
    else is a supplier failure. No retries here, the cache decides what to
    fall back to.
    """

    def __init__(self, base_url: Optional[str] = None,
                 http: Optional[httpx.AsyncClient] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.base_url = (base_url or settings.RATES_API_URL).rstrip("/")
        self._http = http or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=3.0, read=10.0, write=10.0, pool=10.0),
        )
        self.clock = clock

    async def fetch_rates(self, base_currency: str) -> ExchangeRateSet:
        url = f"{self.base_url}/{base_currency.upper()}"
        try:
            r = await self._http.get(url, headers={"Accept": "application/json"})
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPStatusError as e:
            log_event("rates_http_error", level="ERROR", base=base_currency, status=e.response.status_code)
            raise SupplierError("rates", "Failed to fetch exchange rates") from e
        except (httpx.TransportError, ValueError) as e:
            log_event("rates_transport_error", level="ERROR", base=base_currency, error=f"{type(e).__name__}: {e}")
            raise SupplierError("rates", "Failed to fetch exchange rates") from e

        if data.get("result") != "success" or not isinstance(data.get("rates"), dict):
            raise SupplierError("rates", "Invalid response from exchange rate API")

        return ExchangeRateSet(
            base_currency=base_currency.upper(),
            rates={code.upper(): Decimal(str(rate)) for code, rate in data["rates"].items()},
            fetched_at=self.clock(),
        )

    async def aclose(self) -> None:
        await self._http.aclose()
