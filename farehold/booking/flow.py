"""
Booking wizard: PASSENGERS -> ANCILLARIES -> LUGGAGE -> PAYMENT.

The wizard step and the offer's freshness are tracked separately and only
combined by ``payment_gate``. Every step change is written back to the search
record it was resumed from, so a reload lands on the same step with the same
form values.

Submitting without a signed-in user does not fail; the flow parks the
submission and ``authenticated`` replays exactly that submission once.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from farehold.booking.pricing import total_price
from farehold.booking.validation import validate_passengers
from farehold.cache.search_records import SearchRecordStore
from farehold.errors import ExpirationError, FareholdError, SupplierError, ValidationError
from farehold.freshness.tracker import Freshness, FreshnessSnapshot, ExpirationTracker
from farehold.obs.logger import log_event
from farehold.obs.metrics import inc_counter, timed
from farehold.supplier.client import AuthProvider, BookingClient
from farehold.types import (
    STEP_ORDER,
    BookingConfirmation,
    BookingRequest,
    BookingStep,
    Identity,
    LuggageSelection,
    Offer,
    PassengerForm,
    SearchParameters,
    SearchRecord,
    UserProgress,
)


class FlowStatus(str, Enum):
    ACTIVE = "ACTIVE"
    AWAITING_AUTH = "AWAITING_AUTH"
    BOOKED = "BOOKED"
    FAILED = "FAILED"


class PaymentGate(str, Enum):
    OPEN = "OPEN"
    NOT_AT_PAYMENT = "NOT_AT_PAYMENT"
    EXPIRED = "EXPIRED"
    STALE = "STALE"
    BUFFER = "BUFFER"     # not yet expired, but too close to expiry to pay


def payment_gate(step: BookingStep, freshness: FreshnessSnapshot) -> PaymentGate:
    if step != BookingStep.PAYMENT:
        return PaymentGate.NOT_AT_PAYMENT
    if freshness.state == Freshness.EXPIRED:
        return PaymentGate.EXPIRED
    if freshness.stale:
        return PaymentGate.STALE
    if not freshness.bookable:
        return PaymentGate.BUFFER
    return PaymentGate.OPEN


def _seed_forms(offer: Optional[Offer], params: SearchParameters) -> List[PassengerForm]:
    if offer is not None and offer.passengers:
        return [PassengerForm(id=p.id, type=p.type) for p in offer.passengers]
    # supplier sent no passenger list; one blank form per searched traveller
    return [PassengerForm() for _ in range(params.passengers.total)]


class BookingFlow:
    def __init__(self, records: SearchRecordStore, record: SearchRecord, offer_id: str,
                 tracker: ExpirationTracker, booking_client: BookingClient, auth: AuthProvider):
        self.records = records
        self.record = record
        self.offer_id = offer_id
        self.tracker = tracker
        self.booking_client = booking_client
        self.auth = auth

        self.progress = record.user_progress.model_copy(deep=True)
        if not self.progress.passenger_forms:
            self.progress.passenger_forms = _seed_forms(self.offer, record.search_parameters)

        self.status = FlowStatus.ACTIVE
        self.failure_reason: Optional[str] = None
        self.confirmation: Optional[BookingConfirmation] = None
        self._pending_payment: Optional[Dict[str, Any]] = None

    @classmethod
    def resume(cls, records: SearchRecordStore, tracker: ExpirationTracker,
               booking_client: BookingClient, auth: AuthProvider,
               search_id: Optional[str] = None,
               params: Optional[SearchParameters] = None,
               offer_id: Optional[str] = None) -> Optional["BookingFlow"]:
        """Rebuild the flow from the store; an explicit ``search_id`` wins over params."""
        record = records.resolve(search_id, params)
        if record is None:
            log_event("booking_resume_missed", level="WARNING", resumed_from=search_id)
            return None

        chosen = offer_id or record.selected_offer_id
        if not chosen or record.get_offer(chosen) is None:
            log_event("booking_offer_missing", level="WARNING", offer_id=chosen)
            return None
        if chosen != record.selected_offer_id:
            records.update_selected_offer(None, chosen, search_id=record.search_id)
            record.selected_offer_id = chosen

        flow = cls(records, record, chosen, tracker, booking_client, auth)
        log_event("booking_resumed", search_id=record.search_id, step=flow.step.value)
        return flow

    # --- state --------------------------------------------------------------

    @property
    def step(self) -> BookingStep:
        return self.progress.current_step

    @property
    def offer(self) -> Optional[Offer]:
        return self.record.get_offer(self.offer_id)

    @property
    def passenger_forms(self) -> List[PassengerForm]:
        return self.progress.passenger_forms

    def freshness(self) -> FreshnessSnapshot:
        return self.tracker.freshness(self.record, self.offer)

    def total_price(self):
        offer = self.offer
        if offer is None:
            raise FareholdError(f"Offer {self.offer_id} is not part of this search")
        return total_price(offer, self.progress.luggage_selections, self.progress.ancillaries_payload)

    # --- edits (in memory until the next step change) -------------------------

    def update_passenger(self, index: int, **fields: Any) -> PassengerForm:
        forms = self.progress.passenger_forms
        if not 0 <= index < len(forms):
            raise ValidationError({index: ["index"]})
        updated = forms[index].model_copy(update=fields)
        forms[index] = PassengerForm.model_validate(updated.model_dump())
        return forms[index]

    def set_ancillaries(self, payload: Optional[Dict[str, Any]]) -> None:
        self.progress.ancillaries_payload = payload

    def set_luggage(self, index: int, checked: int = 0, carry_on: int = 0) -> None:
        selection = LuggageSelection(checked=checked, carry_on=carry_on)
        self.update_passenger(index, luggage=selection)
        self.progress.luggage_selections = [f.luggage for f in self.progress.passenger_forms]

    # --- transitions --------------------------------------------------------

    def _check_payment(self) -> None:
        gate = payment_gate(BookingStep.PAYMENT, self.freshness())
        if gate == PaymentGate.OPEN:
            return
        reason = {
            PaymentGate.EXPIRED: "expired",
            PaymentGate.STALE: "stale",
            PaymentGate.BUFFER: "buffer",
        }[gate]
        inc_counter("payment_gate_refusals_total", {"reason": reason})
        log_event("payment_refused", level="WARNING", reason=reason, offer_id=self.offer_id)
        raise ExpirationError(reason)

    def advance(self) -> BookingStep:
        current = self.step
        idx = STEP_ORDER.index(current)
        if idx == len(STEP_ORDER) - 1:
            return current

        if current == BookingStep.PASSENGERS:
            validate_passengers(self.progress.passenger_forms)
        target = STEP_ORDER[idx + 1]
        if target == BookingStep.PAYMENT:
            self._check_payment()

        self._move(target)
        return target

    def back(self) -> BookingStep:
        idx = STEP_ORDER.index(self.step)
        if idx == 0:
            return self.step
        target = STEP_ORDER[idx - 1]
        self._move(target)
        return target

    def _move(self, target: BookingStep) -> None:
        previous = self.step
        self.progress.current_step = target
        self._persist()
        log_event("booking_step_changed", from_step=previous.value, to_step=target.value)

    def _persist(self) -> None:
        payload = {
            "current_step": self.progress.current_step,
            "passenger_forms": [f.model_dump() for f in self.progress.passenger_forms],
            "ancillaries_payload": self.progress.ancillaries_payload,
            "luggage_selections": (
                [s.model_dump() for s in self.progress.luggage_selections]
                if self.progress.luggage_selections is not None else None
            ),
        }
        saved = self.records.update_progress(None, payload, search_id=self.record.search_id)
        if not saved:
            log_event("booking_progress_not_saved", level="WARNING", step=self.step.value)
        self.record.user_progress = UserProgress.model_validate(payload)

    # --- submission ---------------------------------------------------------

    async def submit(self, payment: Dict[str, Any]) -> FlowStatus:
        if self.step != BookingStep.PAYMENT:
            raise FareholdError("Booking can only be submitted from the payment step")
        if self.status == FlowStatus.BOOKED:
            return self.status

        self._check_payment()

        identity = await self.auth.current_identity()
        if identity is None:
            self.status = FlowStatus.AWAITING_AUTH
            self._pending_payment = dict(payment)
            log_event("booking_awaiting_auth", offer_id=self.offer_id)
            return self.status

        return await self._book(payment, identity)

    async def authenticated(self, identity: Identity) -> FlowStatus:
        """Replay the submission parked by ``submit``; only once."""
        if self.status != FlowStatus.AWAITING_AUTH or self._pending_payment is None:
            raise FareholdError("No booking is waiting for authentication")
        payment, self._pending_payment = self._pending_payment, None
        try:
            # signing in can take long enough for the offer to lapse
            self._check_payment()
        except ExpirationError as e:
            self.status = FlowStatus.FAILED
            self.failure_reason = str(e)
            raise
        self.status = FlowStatus.ACTIVE
        return await self._book(payment, identity)

    async def _book(self, payment: Dict[str, Any], identity: Identity) -> FlowStatus:
        offer = self.offer
        if offer is None:
            raise FareholdError(f"Offer {self.offer_id} is not part of this search")

        request = BookingRequest(
            offer_id=self.offer_id,
            passengers=self.progress.passenger_forms,
            payment=payment,
            total_amount=self.total_price(),
            currency=offer.total_currency,
            user_id=identity.user_id,
            ancillaries_payload=self.progress.ancillaries_payload,
        )
        self.failure_reason = None
        try:
            with timed("booking_latency_ms"):
                confirmation = await self.booking_client.book(request)
        except SupplierError as e:
            return self._failed(e.message)
        except Exception as e:
            log_event("booking_client_error", level="ERROR", error=f"{type(e).__name__}: {e}")
            return self._failed("Failed to create booking")

        self.status = FlowStatus.BOOKED
        self.confirmation = confirmation
        inc_counter("bookings_total", {"result": "booked"})
        log_event("booking_confirmed", offer_id=self.offer_id,
                  booking_reference=confirmation.booking_reference)
        return self.status

    def _failed(self, reason: str) -> FlowStatus:
        self.status = FlowStatus.FAILED
        self.failure_reason = reason
        inc_counter("bookings_total", {"result": "failed"})
        log_event("booking_failed", level="ERROR", offer_id=self.offer_id, error=reason)
        return self.status
