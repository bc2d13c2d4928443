from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from farehold.errors import SupplierError
from farehold.session.store import InMemoryStore
from farehold.types import BookingConfirmation, ExchangeRateSet, SearchResponse, SearchTiming
from farehold.utils.dates import utc_now

SEARCH_QUERY = "origin=JFK&destination=CDG&departureDate=2025-06-01&adults=1&cabinClass=economy&currency=USD"

PASSENGER = {
    "title": "ms",
    "given_name": "Grace",
    "family_name": "Hopper",
    "email": "grace@example.com",
    "phone_country_code": "+1",
    "phone_number": "212 555 0100",
    "gender": "f",
    "born_on": "1986-12-09",
}


@pytest.fixture
def clients(make_offer):
    now = utc_now()
    search_client = AsyncMock()
    search_client.search.return_value = SearchResponse(
        offers=[make_offer("O1", amount="100.00", change_penalty=("50.00", "USD")),
                make_offer("O2", amount="250.00", stops_per_slice=(1,))],
        timing=SearchTiming(search_started_at=now, supplier_timeout=20000,
                            expires_at=now + timedelta(minutes=30)),
    )

    async def fetch(base):
        if base != "USD":
            raise SupplierError("rates", "Failed to fetch exchange rates")
        return ExchangeRateSet(base_currency="USD", rates={"EUR": Decimal("0.92")}, fetched_at=utc_now())

    rates_client = AsyncMock()
    rates_client.fetch_rates.side_effect = fetch

    booking_client = AsyncMock()
    booking_client.book.return_value = BookingConfirmation(booking_reference="FH-1", offer_id="O1")
    return search_client, rates_client, booking_client


@pytest.fixture
def client(clients):
    import main

    search_client, rates_client, booking_client = clients
    main.wire_state(main.app.app.state, InMemoryStore(), search_client, rates_client, booking_client)
    return TestClient(main.app)


def _search(client):
    r = client.get(f"/search?{SEARCH_QUERY}")
    assert r.status_code == 200
    return r.json()


def test_health_and_request_metrics(client):
    assert client.get("/health").status_code == 200

    data = client.get("/metrics").json()
    assert any(
        c["name"] == "requests_total" and c["labels"] == {"route": "/health", "status": "200"}
        for c in data["counters"]
    )
    assert any(h["name"] == "request_latency_ms" for h in data["histograms"])
    assert "search_records" in data


def test_navigation_searches_once_then_resumes(client, clients):
    search_client = clients[0]

    first = _search(client)
    assert first["decision"] == "SEARCH"
    assert f"searchId={first['search_id']}" in first["url"]

    again = client.get(f"/search?{SEARCH_QUERY}").json()
    assert again["decision"] == "DUPLICATE"

    resumed = client.get(f"/search?searchId={first['search_id']}").json()
    assert resumed["decision"] == "RESUME"
    assert resumed["search_id"] == first["search_id"]
    assert search_client.search.await_count == 1


def test_offers_converted_to_display_currency(client):
    search_id = _search(client)["search_id"]

    data = client.get(f"/search/{search_id}/offers?sort=cheapest&currency=EUR").json()

    assert data["status"] == "OK"
    first = data["offers"][0]
    assert first["id"] == "O1"
    assert first["price"] == "92.00"
    assert first["currency"] == "EUR"
    assert first["change_penalty"] == "46.00 EUR"
    assert first["refund_penalty"] == "Unknown"


def test_offers_filtering_and_no_match(client):
    search_id = _search(client)["search_id"]

    nonstop = client.get(f"/search/{search_id}/offers?stops=nonstop").json()
    assert [o["id"] for o in nonstop["offers"]] == ["O1"]

    none = client.get(f"/search/{search_id}/offers?airlines=ZZ").json()
    assert none["status"] == "NO_MATCH"


def test_freshness_endpoint(client):
    search_id = _search(client)["search_id"]
    data = client.get(f"/search/{search_id}/freshness").json()
    assert data["state"] == "FRESH"
    assert data["needs_refresh"] is False
    assert data["time_remaining"] > "29:00"


def test_unknown_search_is_404(client):
    assert client.get("/search/nope/offers").status_code == 404
    assert client.post("/booking/nope", json={}).status_code == 404


def test_rates_unavailable(client):
    assert client.get("/rates/USD").json()["rates"]["EUR"] == "0.92"
    assert client.get("/rates/JPY").status_code == 503


def test_booking_over_http_with_auth_suspension(client, clients):
    booking_client = clients[2]
    search_id = _search(client)["search_id"]

    started = client.post(f"/booking/{search_id}", json={"offer_id": "O1"}).json()
    assert started["step"] == "PASSENGERS"

    # incomplete passenger: blocked, data kept
    client.put(f"/booking/{search_id}/passengers", json={"index": 0, "fields": {"given_name": "Grace"}})
    r = client.post(f"/booking/{search_id}/advance")
    assert r.status_code == 422
    assert "email" in r.json()["passengers"]["0"]
    assert client.get(f"/booking/{search_id}").json()["passengers"][0]["given_name"] == "Grace"

    client.put(f"/booking/{search_id}/passengers", json={"index": 0, "fields": PASSENGER})
    for expected in ("ANCILLARIES", "LUGGAGE", "PAYMENT"):
        assert client.post(f"/booking/{search_id}/advance").json()["step"] == expected

    suspended = client.post(f"/booking/{search_id}/submit", json={"payment": {"type": "balance"}}).json()
    assert suspended["status"] == "AWAITING_AUTH"
    booking_client.book.assert_not_awaited()

    assert client.post(f"/booking/{search_id}/authenticated").status_code == 401
    done = client.post(f"/booking/{search_id}/authenticated", headers={"X-User-Id": "user-9"}).json()
    assert done["status"] == "BOOKED"
    assert done["booking_reference"] == "FH-1"
    assert booking_client.book.await_args.args[0].user_id == "user-9"
    # finished flows are not kept around
    assert client.get(f"/booking/{search_id}").status_code == 404


def test_luggage_options(client):
    ids = [o["id"] for o in client.get("/luggage/options").json()]
    assert "checked_23kg" in ids


def test_failed_search_is_retried_on_next_navigation(client, clients):
    search_client = clients[0]
    search_client.search.side_effect = [RuntimeError("supplier down"), search_client.search.return_value]

    failed = client.get(f"/search?{SEARCH_QUERY}")
    assert failed.status_code == 502
    assert failed.json()["source"] == "search"

    retried = client.get(f"/search?{SEARCH_QUERY}").json()
    assert retried["decision"] == "SEARCH"
    assert retried["offers"] == 2


def test_refresh_reruns_the_same_search(client, clients):
    _search(client)
    refreshed = client.get(f"/search?{SEARCH_QUERY}&refresh=true").json()
    assert refreshed["decision"] == "SEARCH"
    assert clients[0].search.await_count == 2


@pytest.mark.parametrize("query", ["stops=bogus", "price_min=abc", "duration_max=x", "price_max=-5"])
def test_bad_filter_values_are_rejected(client, query):
    search_id = _search(client)["search_id"]
    assert client.get(f"/search/{search_id}/offers?{query}").status_code == 422


def test_filters_accept_open_and_zero_bounds(client):
    search_id = _search(client)["search_id"]

    cheap = client.get(f"/search/{search_id}/offers?price_max=150").json()
    assert [o["id"] for o in cheap["offers"]] == ["O1"]

    none = client.get(f"/search/{search_id}/offers?duration_max=0").json()
    assert none["status"] == "NO_MATCH"


def test_passenger_index_out_of_range(client):
    search_id = _search(client)["search_id"]
    client.post(f"/booking/{search_id}", json={"offer_id": "O1"})

    r = client.put(f"/booking/{search_id}/passengers", json={"index": 10_000_000, "fields": {"given_name": "Eve"}})
    assert r.status_code == 422
    assert len(client.get(f"/booking/{search_id}").json()["passengers"]) == 1


def test_flow_dropped_when_its_search_is_evicted(client):
    import main

    search_id = _search(client)["search_id"]
    client.post(f"/booking/{search_id}", json={"offer_id": "O1"})
    main.app.app.state.records.remove_by_id(search_id)

    assert client.get(f"/booking/{search_id}").status_code == 404
    assert search_id not in main.app.app.state.flows
