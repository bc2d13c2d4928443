import asyncio
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Iterable, List, Optional, Union

from farehold.config import settings
from farehold.obs.logger import log_event
from farehold.obs.metrics import inc_counter, timed
from farehold.rates.client import RatesClient
from farehold.types import ExchangeRateSet, Offer
from farehold.utils.dates import utc_now

CENT = Decimal("0.01")

Amount = Union[Decimal, float, int, str]


def round_money(amount: Amount) -> Decimal:
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def penalty_currencies(offers: Iterable[Offer]) -> List[str]:
    """Distinct currencies quoted in change/refund penalties, in first-seen order"""
    seen: List[str] = []
    for offer in offers:
        conditions = offer.conditions
        for cond in (conditions.change_before_departure, conditions.refund_before_departure):
            if cond is not None and cond.penalty_currency and cond.penalty_currency not in seen:
                seen.append(cond.penalty_currency)
    return seen


class CurrencyConversionCache:
    """Exchange rates per base currency with a short TTL.

    Concurrent lookups for one base share a single outstanding fetch. When a
    fetch fails the last good rates for that base are served; with nothing to
    fall back on the answer is ``None`` and callers show the unconverted
    amount.
    """

    def __init__(self, rates_client: RatesClient,
                 ttl_seconds: Optional[int] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.rates_client = rates_client
        self.ttl = timedelta(seconds=ttl_seconds or settings.RATES_TTL_SECONDS)
        self.clock = clock
        self._rates: Dict[str, ExchangeRateSet] = {}
        self._inflight: Dict[str, "asyncio.Task[Optional[Dict[str, Decimal]]]"] = {}

    def _is_fresh(self, rate_set: ExchangeRateSet) -> bool:
        return self.clock() - rate_set.fetched_at < self.ttl

    def cached_rates(self, base_currency: str) -> Optional[Dict[str, Decimal]]:
        """Whatever is cached for ``base_currency``, fresh or not, without fetching"""
        rate_set = self._rates.get(base_currency.upper())
        return rate_set.rates if rate_set else None

    async def get_rates(self, base_currency: str) -> Optional[Dict[str, Decimal]]:
        base = base_currency.upper()
        cached = self._rates.get(base)
        if cached and self._is_fresh(cached):
            inc_counter("rates_lookups_total", {"result": "cached"})
            return cached.rates

        task = self._inflight.get(base)
        if task is None:
            task = asyncio.ensure_future(self._fetch(base))
            self._inflight[base] = task
            task.add_done_callback(lambda _t: self._inflight.pop(base, None))
        else:
            inc_counter("rates_lookups_total", {"result": "coalesced"})
        # shield: one cancelled caller must not cancel the fetch for the others
        return await asyncio.shield(task)

    async def _fetch(self, base: str) -> Optional[Dict[str, Decimal]]:
        try:
            with timed("rates_fetch_ms", {"base": base}):
                rate_set = await self.rates_client.fetch_rates(base)
        except Exception as e:
            previous = self._rates.get(base)
            log_event("rates_fetch_failed", level="WARNING", base=base,
                      error=str(e), fallback=previous is not None)
            inc_counter("rates_lookups_total", {"result": "fallback" if previous else "unavailable"})
            return previous.rates if previous else None

        self._rates[base] = rate_set
        inc_counter("rates_lookups_total", {"result": "fetched"})
        return rate_set.rates

    async def convert_amount(self, amount: Amount, base_currency: str,
                             target_currency: str) -> Optional[Decimal]:
        if base_currency.upper() == target_currency.upper():
            return round_money(amount)
        rates = await self.get_rates(base_currency)
        return self._apply(amount, rates, target_currency)

    def convert_cached(self, amount: Amount, base_currency: str,
                       target_currency: str) -> Optional[Decimal]:
        if base_currency.upper() == target_currency.upper():
            return round_money(amount)
        return self._apply(amount, self.cached_rates(base_currency), target_currency)

    @staticmethod
    def _apply(amount: Amount, rates: Optional[Dict[str, Decimal]],
               target_currency: str) -> Optional[Decimal]:
        if not rates:
            return None
        rate = rates.get(target_currency.upper())
        if rate is None:
            return None
        return round_money(Decimal(str(amount)) * rate)

    async def convert_offers(self, offers: List[Offer], target_currency: str) -> List[Offer]:
        """Annotate offers priced in another currency with converted totals.

        Offers already in ``target_currency``, or whose rates are unavailable,
        come back without annotations and display their raw total.
        """
        target = target_currency.upper()
        converted: List[Offer] = []
        for offer in offers:
            if offer.total_currency.upper() == target:
                converted.append(offer.model_copy(update={"converted_amount": None, "converted_currency": None}))
                continue
            amount = await self.convert_amount(offer.total_amount, offer.total_currency, target)
            if amount is None:
                converted.append(offer.model_copy(update={"converted_amount": None, "converted_currency": None}))
            else:
                converted.append(offer.model_copy(update={"converted_amount": amount, "converted_currency": target}))
        return converted

    async def ensure_penalty_rates(self, offers: Iterable[Offer], display_currency: str) -> List[str]:
        """Fetch rates for penalty currencies we cannot yet convert from."""
        display = display_currency.upper()
        missing = [
            cur.upper() for cur in penalty_currencies(offers)
            if cur.upper() != display and cur.upper() not in self._rates
        ]
        if missing:
            await asyncio.gather(*(self.get_rates(cur) for cur in missing))
        return missing

    def format_penalty(self, amount: Optional[Amount], penalty_currency: Optional[str],
                       display_currency: str) -> str:
        if amount is None or penalty_currency is None:
            return "Unknown"
        if penalty_currency.upper() == display_currency.upper():
            return f"{round_money(amount)} {penalty_currency.upper()}"
        converted = self.convert_cached(amount, penalty_currency, display_currency)
        if converted is not None:
            return f"{converted} {display_currency.upper()}"
        # Fallback: show original amount with original currency
        return f"{round_money(amount)} {penalty_currency.upper()}"
