from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal
from enum import Enum

from farehold.utils.dates import ensure_aware, to_iso_date


class PassengerCounts(BaseModel):
    adults: int = Field(1, ge=1, le=9)
    children: int = Field(0, ge=0, le=8)
    infants_in_seat: int = Field(0, ge=0, le=4)
    infants_on_lap: int = Field(0, ge=0, le=4)

    @property
    def total(self) -> int:
        return self.adults + self.children + self.infants_in_seat + self.infants_on_lap

    @model_validator(mode="after")
    def _check_total(self):
        if self.total > 9:
            raise ValueError("Cannot book more than 9 passengers")
        return self


class SearchParameters(BaseModel):
    """Search inputs, normalized on construction (case, date format)"""
    origin: str
    destination: str
    departure_date: str              # YYYY-MM-DD
    return_date: Optional[str] = None
    passengers: PassengerCounts = Field(default_factory=PassengerCounts)
    cabin_class: str = "economy"     # economy, premium_economy, business, first
    currency: str = "USD"
    max_connections: int = 1

    @field_validator("origin", "destination", "currency", mode="before")
    @classmethod
    def _upper(cls, v):
        return str(v or "").strip().upper()

    @field_validator("cabin_class", mode="before")
    @classmethod
    def _lower(cls, v):
        return str(v or "economy").strip().lower()

    @field_validator("departure_date", mode="before")
    @classmethod
    def _departure(cls, v):
        iso = to_iso_date(v)
        if not iso:
            raise ValueError(f"Unparseable departure date: {v!r}")
        return iso

    @field_validator("return_date", mode="before")
    @classmethod
    def _return(cls, v):
        if v in (None, "", "oneway"):
            return None
        iso = to_iso_date(v)
        if not iso:
            raise ValueError(f"Unparseable return date: {v!r}")
        return iso

    @field_validator("passengers", mode="before")
    @classmethod
    def _passenger_shorthand(cls, v):
        # a bare count means that many adults
        if isinstance(v, int):
            return {"adults": v}
        return v

    @field_validator("origin", "destination")
    @classmethod
    def _required(cls, v):
        if not v:
            raise ValueError("Airport code is required")
        return v


class Segment(BaseModel):
    origin: str
    destination: str
    departing_at: datetime
    arriving_at: datetime
    marketing_carrier: Optional[str] = None       # IATA code, e.g. "AF"
    marketing_carrier_name: Optional[str] = None
    flight_number: Optional[str] = None


class Slice(BaseModel):
    segments: List[Segment] = Field(default_factory=list)


class PenaltyCondition(BaseModel):
    allowed: Optional[bool] = None
    penalty_amount: Optional[Decimal] = None
    penalty_currency: Optional[str] = None


class OfferConditions(BaseModel):
    change_before_departure: Optional[PenaltyCondition] = None
    refund_before_departure: Optional[PenaltyCondition] = None


class OfferPassenger(BaseModel):
    id: str
    type: str = "adult"


class Offer(BaseModel):
    id: str
    total_amount: Decimal
    total_currency: str
    base_amount: Optional[Decimal] = None
    base_currency: Optional[str] = None
    expires_at: Optional[datetime] = None
    conditions: OfferConditions = Field(default_factory=OfferConditions)
    slices: List[Slice] = Field(default_factory=list)
    passengers: List[OfferPassenger] = Field(default_factory=list)
    # display annotations, set by the conversion cache
    converted_amount: Optional[Decimal] = None
    converted_currency: Optional[str] = None

    @field_validator("expires_at")
    @classmethod
    def _aware(cls, v):
        return ensure_aware(v) if v is not None else None


class SearchTiming(BaseModel):
    search_started_at: Optional[datetime] = None
    supplier_timeout: Optional[int] = None   # milliseconds, display only
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_validator("search_started_at", "expires_at", "created_at")
    @classmethod
    def _aware(cls, v):
        return ensure_aware(v) if v is not None else None


class BookingStep(str, Enum):
    PASSENGERS = "PASSENGERS"
    ANCILLARIES = "ANCILLARIES"
    LUGGAGE = "LUGGAGE"
    PAYMENT = "PAYMENT"


STEP_ORDER: List[BookingStep] = [
    BookingStep.PASSENGERS,
    BookingStep.ANCILLARIES,
    BookingStep.LUGGAGE,
    BookingStep.PAYMENT,
]


class LuggageSelection(BaseModel):
    checked: int = Field(0, ge=0)
    carry_on: int = Field(0, ge=0)


class PassengerForm(BaseModel):
    # Everything defaults to empty so half-filled forms survive a reload
    id: Optional[str] = None
    type: str = "adult"
    title: str = ""
    given_name: str = ""
    family_name: str = ""
    email: str = ""
    phone_number: str = ""
    phone_country_code: str = ""
    gender: str = ""
    born_on: str = ""                  # YYYY-MM-DD
    passport_number: str = ""
    passport_issuing_country: str = ""
    passport_expires_on: str = ""
    luggage: LuggageSelection = Field(default_factory=LuggageSelection)


class UserProgress(BaseModel):
    current_step: BookingStep = BookingStep.PASSENGERS
    passenger_forms: List[PassengerForm] = Field(default_factory=list)
    ancillaries_payload: Optional[Dict[str, Any]] = None
    luggage_selections: Optional[List[LuggageSelection]] = None


class SearchRecord(BaseModel):
    search_id: str
    search_parameters: SearchParameters
    offers: List[Offer] = Field(default_factory=list)
    timing: SearchTiming = Field(default_factory=SearchTiming)
    cached_at: datetime
    selected_offer_id: Optional[str] = None
    user_progress: UserProgress = Field(default_factory=UserProgress)

    @field_validator("cached_at")
    @classmethod
    def _aware(cls, v):
        return ensure_aware(v)

    def get_offer(self, offer_id: Optional[str]) -> Optional[Offer]:
        for offer in self.offers:
            if offer.id == offer_id:
                return offer
        return None


class ExchangeRateSet(BaseModel):
    base_currency: str
    rates: Dict[str, Decimal]
    fetched_at: datetime


# Collaborator payloads

class SearchResponse(BaseModel):
    offers: List[Offer]
    timing: SearchTiming = Field(default_factory=SearchTiming)


class Identity(BaseModel):
    user_id: str
    email: Optional[str] = None


class BookingRequest(BaseModel):
    offer_id: str
    passengers: List[PassengerForm]
    payment: Dict[str, Any]
    total_amount: Decimal
    currency: str
    user_id: Optional[str] = None
    ancillaries_payload: Optional[Dict[str, Any]] = None


class BookingConfirmation(BaseModel):
    booking_reference: str
    offer_id: str
    status: str = "confirmed"
    raw: Dict[str, Any] = Field(default_factory=dict)
