from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from farehold.booking.validation import format_phone
from farehold.obs.logger import log_event
from farehold.types import (
    BookingConfirmation,
    BookingRequest,
    Offer,
    OfferConditions,
    OfferPassenger,
    PassengerForm,
    PenaltyCondition,
    SearchParameters,
    SearchResponse,
    SearchTiming,
    Segment,
    Slice,
)
from farehold.utils.dates import parse_timestamp


def _decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _penalty(raw: Optional[Dict[str, Any]]) -> Optional[PenaltyCondition]:
    if not raw:
        return None
    return PenaltyCondition(
        allowed=raw.get("allowed"),
        penalty_amount=_decimal(raw.get("penalty_amount")),
        penalty_currency=raw.get("penalty_currency"),
    )


def _segment(raw: Dict[str, Any]) -> Segment:
    carrier = raw.get("marketing_carrier") or {}
    return Segment(
        origin=(raw.get("origin") or {}).get("iata_code", ""),
        destination=(raw.get("destination") or {}).get("iata_code", ""),
        departing_at=parse_timestamp(raw["departing_at"]),
        arriving_at=parse_timestamp(raw["arriving_at"]),
        marketing_carrier=carrier.get("iata_code"),
        marketing_carrier_name=carrier.get("name"),
        flight_number=raw.get("marketing_carrier_flight_number"),
    )


def offer_from_supplier(raw: Dict[str, Any]) -> Offer:
    conditions = raw.get("conditions") or {}
    return Offer(
        id=raw["id"],
        total_amount=Decimal(str(raw["total_amount"])),
        total_currency=raw["total_currency"],
        base_amount=_decimal(raw.get("base_amount")),
        base_currency=raw.get("base_currency"),
        expires_at=parse_timestamp(raw.get("expires_at")),
        conditions=OfferConditions(
            change_before_departure=_penalty(conditions.get("change_before_departure")),
            refund_before_departure=_penalty(conditions.get("refund_before_departure")),
        ),
        slices=[
            Slice(segments=[_segment(s) for s in sl.get("segments", [])])
            for sl in raw.get("slices", [])
        ],
        passengers=[
            OfferPassenger(id=p["id"], type=p.get("type", "adult"))
            for p in raw.get("passengers", [])
        ],
    )


def from_supplier(json_obj: Dict[str, Any]) -> SearchResponse:
    """Parse a search response: ``{"data": {"offers": [...]}, "timing": {...}}``.

    Offers that fail to parse are skipped and logged; one malformed quote
    should not sink the whole result page.
    """
    data = json_obj.get("data") or {}
    offers: List[Offer] = []
    for raw in data.get("offers", []):
        try:
            offers.append(offer_from_supplier(raw))
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            log_event("supplier_offer_skipped", level="WARNING",
                      offer_id=raw.get("id") if isinstance(raw, dict) else None, error=str(e))

    timing_raw = json_obj.get("timing") or {}
    timing = SearchTiming(
        search_started_at=parse_timestamp(timing_raw.get("search_started_at")),
        supplier_timeout=timing_raw.get("supplier_timeout"),
        expires_at=parse_timestamp(timing_raw.get("expires_at") or data.get("expires_at")),
        created_at=parse_timestamp(timing_raw.get("created_at") or data.get("created_at")),
    )
    return SearchResponse(offers=offers, timing=timing)


def search_request_body(params: SearchParameters) -> Dict[str, Any]:
    pax = params.passengers
    slices = [{
        "origin": params.origin,
        "destination": params.destination,
        "departure_date": params.departure_date,
    }]
    if params.return_date:
        slices.append({
            "origin": params.destination,
            "destination": params.origin,
            "departure_date": params.return_date,
        })
    passengers = (
        [{"type": "adult"}] * pax.adults
        + [{"type": "child"}] * pax.children
        + [{"type": "infant_without_seat"}] * pax.infants_on_lap
        + [{"type": "child"}] * pax.infants_in_seat
    )
    return {
        "data": {
            "slices": slices,
            "passengers": passengers,
            "cabin_class": params.cabin_class,
            "max_connections": params.max_connections,
            "currency": params.currency,
        }
    }


def passenger_payload(form: PassengerForm) -> Dict[str, Any]:
    payload = {
        "id": form.id,
        "type": form.type,
        "title": form.title,
        "given_name": form.given_name.strip(),
        "family_name": form.family_name.strip(),
        "email": form.email.strip(),
        "phone_number": format_phone(form.phone_country_code, form.phone_number),
        "gender": form.gender,
        "born_on": form.born_on,
    }
    if form.passport_number:
        payload["identity_documents"] = [{
            "type": "passport",
            "unique_identifier": form.passport_number,
            "issuing_country_code": form.passport_issuing_country,
            "expires_on": form.passport_expires_on,
        }]
    return payload


def booking_request_body(request: BookingRequest) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "selected_offers": [request.offer_id],
        "passengers": [passenger_payload(p) for p in request.passengers],
        "payments": [{
            **request.payment,
            "amount": str(request.total_amount),
            "currency": request.currency,
        }],
    }
    if request.ancillaries_payload:
        body["ancillaries"] = request.ancillaries_payload
    return body


def confirmation_from_supplier(offer_id: str, json_obj: Dict[str, Any]) -> BookingConfirmation:
    data = json_obj.get("data") or {}
    reference = (
        json_obj.get("booking_reference")
        or (json_obj.get("booking") or {}).get("booking_reference")
        or data.get("booking_reference")
        or data.get("id")
        or ""
    )
    return BookingConfirmation(booking_reference=reference, offer_id=offer_id, raw=json_obj)
