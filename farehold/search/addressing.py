"""
Resumable addressing: query strings in, query strings out.

A results page is addressable two ways, by its explicit search parameters
and by the opaque ``searchId`` the store handed out. ``parse_navigation``
reads both from an incoming query; the builders write them back.
"""

from typing import Mapping, Optional
from urllib.parse import urlencode

from pydantic import BaseModel, ValidationError as PydanticValidationError

from farehold.obs.logger import log_event
from farehold.types import PassengerCounts, SearchParameters

SEARCH_PATH = "/{lang}/booking/flights"
DETAILS_PATH = "/{lang}/booking/flight-details"


class NavigationContext(BaseModel):
    search_id: Optional[str] = None
    params: Optional[SearchParameters] = None   # None when the query is incomplete


def _int(query: Mapping[str, str], name: str, default: int) -> int:
    value = query.get(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _passengers(query: Mapping[str, str]) -> PassengerCounts:
    # The per-type breakdown wins; "passengers" alone means that many adults
    if any(query.get(k) for k in ("adults", "children", "infantsInSeat", "infantsOnLap")):
        return PassengerCounts(
            adults=_int(query, "adults", 1),
            children=_int(query, "children", 0),
            infants_in_seat=_int(query, "infantsInSeat", 0),
            infants_on_lap=_int(query, "infantsOnLap", 0),
        )
    return PassengerCounts(adults=_int(query, "passengers", 1))


def parse_navigation(query: Mapping[str, str]) -> NavigationContext:
    """Build a navigation context from URL query parameters.

    Origin, destination and departure date are required for a search; the
    rest default the way the search form does. Malformed values leave
    ``params`` empty rather than raising.
    """
    search_id = (query.get("searchId") or "").strip() or None
    origin = query.get("origin")
    destination = query.get("destination")
    departure = query.get("departureDate")

    if not (origin and destination and departure):
        return NavigationContext(search_id=search_id)

    try:
        params = SearchParameters(
            origin=origin,
            destination=destination,
            departure_date=departure,
            return_date=query.get("returnDate") or None,
            passengers=_passengers(query),
            cabin_class=query.get("cabinClass") or "economy",
            currency=query.get("currency") or "USD",
            max_connections=_int(query, "maxConnections", 1),
        )
    except PydanticValidationError as e:
        log_event("navigation_params_invalid", level="WARNING", errors=e.error_count())
        return NavigationContext(search_id=search_id)

    return NavigationContext(search_id=search_id, params=params)


def build_search_url(params: SearchParameters, search_id: str, language: str = "en") -> str:
    pax = params.passengers
    query = {
        "origin": params.origin,
        "destination": params.destination,
        "departureDate": params.departure_date,
        "adults": pax.adults,
        "children": pax.children,
        "infantsInSeat": pax.infants_in_seat,
        "infantsOnLap": pax.infants_on_lap,
        "cabinClass": params.cabin_class,
        "currency": params.currency,
        "searchId": search_id,
    }
    if params.return_date:
        query["returnDate"] = params.return_date
    if params.max_connections != 1:
        query["maxConnections"] = params.max_connections
    return f"{SEARCH_PATH.format(lang=language)}?{urlencode(query)}"


def build_details_url(offer_id: str, search_id: str, language: str = "en") -> str:
    query = urlencode({"offerId": offer_id, "searchId": search_id})
    return f"{DETAILS_PATH.format(lang=language)}?{query}"
