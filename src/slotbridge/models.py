"""Canonical records shared by the catalog, availability and booking layers."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

ItemKind = Literal["service", "event"]
KindSource = Literal["override", "flag", "keyword", "occurrence", "default"]


class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None
    online_url: Optional[str] = None


class BookableItem(BaseModel):
    """Normalized catalog entry, immutable once handed to a caller."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    price: str = ""
    duration: Optional[int] = None
    category_id: Optional[str] = None
    category_name: str = "General"
    image_url: Optional[str] = None
    status: Literal["online", "offline"] = "online"
    kind: ItemKind = "service"
    kind_source: KindSource = "default"
    location: Optional[Location] = None
    unit_ids: tuple[str, ...] = ()
    source: str = ""
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)


class Performer(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    description: str = ""
    service_ids: tuple[str, ...] = ()
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)


class AvailabilityWindow(BaseModel):
    """Bookable start times on one calendar date."""

    date: dt.date
    times: list[str]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def count(self) -> int:
        return len(self.times)


class AvailabilityResult(BaseModel):
    item_id: str
    kind: ItemKind
    strategy: Optional[str] = None
    date_from: dt.date
    date_to: dt.date
    windows: list[AvailabilityWindow] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_slots(self) -> int:
        return sum(window.count for window in self.windows)


class ClientData(BaseModel):
    """Customer details sent by the storefront."""

    model_config = ConfigDict(extra="allow")

    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    phone: str = ""

    @model_validator(mode="before")
    @classmethod
    def _accept_full_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("name") and data.get("full_name"):
            data = {**data, "name": data["full_name"]}
        return data


class PaymentTerms(BaseModel):
    amount: Decimal = Field(..., gt=0)
    description: Optional[str] = None


class PendingBookingRequest(BaseModel):
    """Booking parked until its payment is confirmed paid."""

    service_id: str
    performer_id: Optional[str] = None
    datetime: str
    client_data: ClientData
    additional_fields: dict[str, Any] = Field(default_factory=dict)
    count: int = 1


class BookingState(str, Enum):
    REQUESTED = "requested"
    CLIENT_RESOLVED = "client_resolved"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_CONFIRMED = "payment_confirmed"
    RESERVED = "reserved"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class PaymentSession(BaseModel):
    payment_id: str
    checkout_url: str


class PaymentStatus(BaseModel):
    payment_id: str
    status: str
    amount: Optional[str] = None
    currency: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.status == "paid"


class CategoryAvailabilityResult(BaseModel):
    """Union of member-item availability; a date is open if any member has a slot."""

    category_id: str
    item_ids: list[str]
    date_from: dt.date
    date_to: dt.date
    windows: list[AvailabilityWindow] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_slots(self) -> int:
        return sum(window.count for window in self.windows)


class BookingConfirmation(BaseModel):
    """Reservation as accepted by the scheduling provider."""

    booking_id: Optional[str] = None
    booking_hash: Optional[str] = None
    require_confirm: bool = False
    confirmed_ids: list[str] = Field(default_factory=list)
    client_id: Optional[str] = None
    performer_id: Optional[str] = None
    state: BookingState = BookingState.RESERVED
    raw: Any = Field(default=None, repr=False)


class CreateBookingResult(BaseModel):
    payment_required: bool = False
    checkout_url: Optional[str] = None
    payment_id: Optional[str] = None
    booking: Optional[BookingConfirmation] = None


class FinalizeResult(BaseModel):
    payment_id: str
    already_processed: bool = False
    booking: Optional[BookingConfirmation] = None
