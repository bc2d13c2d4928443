from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from farehold.config import settings
from farehold.rates.cache import round_money
from farehold.types import LuggageSelection, Offer


class LuggageOption(BaseModel):
    id: str
    kind: str          # "checked" or "carry_on"
    weight_kg: int
    price: Decimal


def luggage_options() -> List[LuggageOption]:
    # the priced defaults follow config; the rest are fixed catalogue entries
    return [
        LuggageOption(id="checked_23kg", kind="checked", weight_kg=23,
                      price=Decimal(str(settings.CHECKED_BAG_PRICE))),
        LuggageOption(id="checked_32kg", kind="checked", weight_kg=32, price=Decimal("50")),
        LuggageOption(id="carry_on_7kg", kind="carry_on", weight_kg=7, price=Decimal("0")),
        LuggageOption(id="carry_on_10kg", kind="carry_on", weight_kg=10,
                      price=Decimal(str(settings.CARRY_ON_PRICE))),
    ]


def luggage_fees(selections: Optional[List[LuggageSelection]],
                 checked_price: Optional[float] = None,
                 carry_on_price: Optional[float] = None) -> Decimal:
    """Per-unit fees summed over every passenger's selection."""
    checked = Decimal(str(settings.CHECKED_BAG_PRICE if checked_price is None else checked_price))
    carry_on = Decimal(str(settings.CARRY_ON_PRICE if carry_on_price is None else carry_on_price))
    total = Decimal("0")
    for sel in selections or []:
        total += checked * sel.checked + carry_on * sel.carry_on
    return total


def ancillaries_delta(offer: Offer, ancillaries_payload: Optional[Dict[str, Any]]) -> Decimal:
    """Extra cost of seats/services picked in the ancillaries step.

    The ancillaries widget reports the offer total including its own
    additions, so the delta is that figure minus the untouched offer total.
    """
    if not ancillaries_payload:
        return Decimal("0")
    reported = ancillaries_payload.get("offer_total_amount")
    if reported in (None, ""):
        return Decimal("0")
    return max(Decimal("0"), Decimal(str(reported)) - offer.total_amount)


def total_price(offer: Offer, selections: Optional[List[LuggageSelection]] = None,
                ancillaries_payload: Optional[Dict[str, Any]] = None) -> Decimal:
    return round_money(
        offer.total_amount + luggage_fees(selections) + ancillaries_delta(offer, ancillaries_payload)
    )
