from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from farehold.booking.flow import BookingFlow, FlowStatus, PaymentGate, payment_gate
from farehold.cache.search_records import SearchRecordStore
from farehold.errors import ExpirationError, FareholdError, SupplierError, ValidationError
from farehold.freshness.tracker import ExpirationTracker, Freshness, FreshnessSnapshot
from farehold.session.store import InMemoryStore
from farehold.supplier.client import StaticAuth
from farehold.types import BookingConfirmation, BookingStep, Identity, SearchTiming

PASSENGER = dict(
    title="mr",
    given_name="Alan",
    family_name="Turing",
    email="alan@example.com",
    phone_country_code="+44",
    phone_number="7700900123",
    gender="m",
    born_on="1980-06-23",
)

IDENTITY = Identity(user_id="user-1", email="alan@example.com")


def _snapshot(state=Freshness.FRESH, stale=False, bookable=True):
    return FreshnessSnapshot(state=state, stale=stale, time_remaining_ms=600000,
                             refresh_recommended=False, bookable=bookable, has_supplier_timing=True)


class TestPaymentGate:
    def test_gate_combines_step_and_freshness(self):
        assert payment_gate(BookingStep.LUGGAGE, _snapshot()) == PaymentGate.NOT_AT_PAYMENT
        assert payment_gate(BookingStep.PAYMENT, _snapshot()) == PaymentGate.OPEN
        assert payment_gate(BookingStep.PAYMENT, _snapshot(Freshness.EXPIRED, bookable=False)) == PaymentGate.EXPIRED
        assert payment_gate(BookingStep.PAYMENT, _snapshot(stale=True, bookable=False)) == PaymentGate.STALE
        assert payment_gate(BookingStep.PAYMENT, _snapshot(Freshness.NEAR_EXPIRY, bookable=False)) == PaymentGate.BUFFER


class TestBookingFlow:
    @pytest.fixture
    def records(self, clock):
        return SearchRecordStore(InMemoryStore(), clock=clock)

    @pytest.fixture
    def tracker(self, clock):
        return ExpirationTracker(clock=clock)

    @pytest.fixture
    def booking_client(self):
        client = AsyncMock()
        client.book.return_value = BookingConfirmation(booking_reference="FH-20250501-12345", offer_id="O1")
        return client

    @pytest.fixture
    def search_id(self, records, params, timing, make_offer):
        return records.save(params, [make_offer("O1", passengers=2), make_offer("O2")], timing)

    def _flow(self, records, tracker, booking_client, search_id, identity=IDENTITY, offer_id="O1"):
        return BookingFlow.resume(records, tracker, booking_client, StaticAuth(identity),
                                  search_id=search_id, offer_id=offer_id)

    def _fill(self, flow):
        for i in range(len(flow.passenger_forms)):
            flow.update_passenger(i, **PASSENGER)

    def _to_payment(self, flow):
        self._fill(flow)
        flow.advance()
        flow.advance()
        flow.advance()
        assert flow.step == BookingStep.PAYMENT

    def test_forms_seeded_from_offer_passengers(self, records, tracker, booking_client, search_id):
        flow = self._flow(records, tracker, booking_client, search_id)
        assert [f.id for f in flow.passenger_forms] == ["pas_0", "pas_1"]
        assert flow.step == BookingStep.PASSENGERS
        assert records.load_by_id(search_id).selected_offer_id == "O1"

    def test_invalid_passengers_block_and_keep_data(self, records, tracker, booking_client, search_id):
        flow = self._flow(records, tracker, booking_client, search_id)
        flow.update_passenger(0, **PASSENGER)
        flow.update_passenger(1, given_name="Joan")

        with pytest.raises(ValidationError) as exc:
            flow.advance()

        assert 1 in exc.value.errors and 0 not in exc.value.errors
        assert flow.step == BookingStep.PASSENGERS
        assert flow.passenger_forms[1].given_name == "Joan"

    def test_reload_mid_flow_restores_step_and_fields(self, records, tracker, booking_client, search_id):
        flow = self._flow(records, tracker, booking_client, search_id)
        self._fill(flow)
        flow.advance()
        flow.set_ancillaries({"offer_total_amount": "460.00"})
        flow.advance()
        assert flow.step == BookingStep.LUGGAGE

        # reload with ?searchId=... and nothing else
        restored = BookingFlow.resume(records, tracker, booking_client, StaticAuth(IDENTITY), search_id=search_id)

        assert restored.step == BookingStep.LUGGAGE
        assert restored.offer_id == "O1"
        assert [f.given_name for f in restored.passenger_forms] == ["Alan", "Alan"]
        assert restored.passenger_forms[0].phone_number == "7700900123"
        assert restored.progress.ancillaries_payload == {"offer_total_amount": "460.00"}

    def test_back_is_free_and_persisted(self, records, tracker, booking_client, search_id):
        flow = self._flow(records, tracker, booking_client, search_id)
        self._fill(flow)
        flow.advance()
        flow.update_passenger(0, email="broken")   # would fail validation going forward

        assert flow.back() == BookingStep.PASSENGERS
        assert records.load_by_id(search_id).user_progress.current_step == BookingStep.PASSENGERS
        assert flow.back() == BookingStep.PASSENGERS

    def test_payment_refused_when_expired(self, records, tracker, booking_client, search_id, clock):
        flow = self._flow(records, tracker, booking_client, search_id)
        self._fill(flow)
        flow.advance()
        flow.advance()

        clock.advance(minutes=31)
        with pytest.raises(ExpirationError) as exc:
            flow.advance()
        assert exc.value.reason == "expired"
        assert flow.step == BookingStep.LUGGAGE

    async def test_payment_refused_inside_buffer(self, records, tracker, booking_client, search_id, clock):
        flow = self._flow(records, tracker, booking_client, search_id)
        self._to_payment(flow)

        clock.advance(minutes=26)
        with pytest.raises(ExpirationError) as exc:
            await flow.submit({"type": "balance"})
        assert exc.value.reason == "buffer"
        booking_client.book.assert_not_awaited()

    def test_payment_refused_when_stale(self, records, tracker, booking_client, params, make_offer, clock):
        search_id = records.save(params, [make_offer("O1")], SearchTiming())
        flow = self._flow(records, tracker, booking_client, search_id)
        self._fill(flow)
        flow.advance()
        flow.advance()

        clock.advance(minutes=31)
        with pytest.raises(ExpirationError) as exc:
            flow.advance()
        assert exc.value.reason == "stale"

    async def test_successful_booking(self, records, tracker, booking_client, search_id):
        flow = self._flow(records, tracker, booking_client, search_id)
        self._to_payment(flow)
        flow.set_luggage(0, checked=1)

        status = await flow.submit({"type": "balance"})

        assert status == FlowStatus.BOOKED
        assert flow.confirmation.booking_reference == "FH-20250501-12345"
        request = booking_client.book.await_args.args[0]
        assert request.offer_id == "O1"
        assert request.user_id == "user-1"
        assert request.total_amount == Decimal("480.00")
        assert len(request.passengers) == 2

    async def test_signed_out_submission_suspends_and_resumes_once(self, records, tracker, booking_client, search_id):
        flow = self._flow(records, tracker, booking_client, search_id, identity=None)
        self._to_payment(flow)

        status = await flow.submit({"type": "card", "token": "tok_1"})
        assert status == FlowStatus.AWAITING_AUTH
        booking_client.book.assert_not_awaited()

        status = await flow.authenticated(IDENTITY)

        assert status == FlowStatus.BOOKED
        assert flow.step == BookingStep.PAYMENT
        booking_client.book.assert_awaited_once()
        request = booking_client.book.await_args.args[0]
        assert request.payment["token"] == "tok_1"
        assert request.user_id == "user-1"

        with pytest.raises(FareholdError):
            await flow.authenticated(IDENTITY)

    async def test_supplier_failure_keeps_payment_step_and_forms(self, records, tracker, booking_client, search_id):
        flow = self._flow(records, tracker, booking_client, search_id)
        self._to_payment(flow)
        booking_client.book.side_effect = SupplierError("booking", "Insufficient balance")

        status = await flow.submit({"type": "balance"})

        assert status == FlowStatus.FAILED
        assert flow.failure_reason == "Insufficient balance"
        assert flow.step == BookingStep.PAYMENT
        assert all(f.family_name == "Turing" for f in flow.passenger_forms)
        assert records.load_by_id(search_id).user_progress.current_step == BookingStep.PAYMENT

        # retry without re-entering anything
        booking_client.book.side_effect = None
        assert await flow.submit({"type": "balance"}) == FlowStatus.BOOKED
        assert flow.failure_reason is None

    async def test_submit_outside_payment_is_rejected(self, records, tracker, booking_client, search_id):
        flow = self._flow(records, tracker, booking_client, search_id)
        with pytest.raises(FareholdError):
            await flow.submit({"type": "balance"})

    def test_resume_unknown_search_or_offer(self, records, tracker, booking_client, search_id):
        assert BookingFlow.resume(records, tracker, booking_client, StaticAuth(), search_id="nope") is None
        assert self._flow(records, tracker, booking_client, search_id, offer_id="missing") is None

    def test_passenger_index_outside_offer_is_rejected(self, records, tracker, booking_client, search_id):
        flow = self._flow(records, tracker, booking_client, search_id)

        with pytest.raises(ValidationError) as exc:
            flow.update_passenger(10_000_000, given_name="Eve")
        assert exc.value.errors == {10_000_000: ["index"]}
        with pytest.raises(ValidationError):
            flow.set_luggage(-1, checked=1)
        assert len(flow.passenger_forms) == 2

    def test_forms_seeded_from_search_when_offer_lists_no_passengers(self, records, tracker, booking_client,
                                                                     params, timing, make_offer):
        search_id = records.save(params, [make_offer("O1", passengers=0)], timing)
        flow = self._flow(records, tracker, booking_client, search_id)
        assert len(flow.passenger_forms) == params.passengers.total

    async def test_unexpected_client_error_marks_flow_failed(self, records, tracker, booking_client, search_id):
        flow = self._flow(records, tracker, booking_client, search_id)
        self._to_payment(flow)
        booking_client.book.side_effect = AttributeError("'list' object has no attribute 'get'")

        status = await flow.submit({"type": "balance"})

        assert status == FlowStatus.FAILED
        assert flow.failure_reason == "Failed to create booking"
        assert flow.step == BookingStep.PAYMENT

    async def test_offer_lapsing_during_sign_in_fails_with_reason(self, records, tracker, booking_client,
                                                                 search_id, clock):
        flow = self._flow(records, tracker, booking_client, search_id, identity=None)
        self._to_payment(flow)
        assert await flow.submit({"type": "balance"}) == FlowStatus.AWAITING_AUTH

        clock.advance(minutes=31)
        with pytest.raises(ExpirationError):
            await flow.authenticated(IDENTITY)

        assert flow.status == FlowStatus.FAILED
        assert "expired" in flow.failure_reason
        booking_client.book.assert_not_awaited()
