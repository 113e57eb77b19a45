"""Request and response DTOs for the HTTP surface."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from .models import (
    BookableItem,
    BookingConfirmation,
    ClientData,
    ItemKind,
    PaymentTerms,
    Performer,
)


class StrictRequestModel(BaseModel):
    """Request DTO base that forbids unexpected fields."""

    model_config = ConfigDict(extra="forbid", coerce_numbers_to_str=True)


class AvailabilityRequest(StrictRequestModel):
    item_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("itemId", "item_id", "serviceId")
    )
    category_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("categoryId", "category_id")
    )
    date_from: str = Field(..., validation_alias=AliasChoices("dateFrom", "date_from"))
    date_to: Optional[str] = Field(None, validation_alias=AliasChoices("dateTo", "date_to"))
    performer_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("performerId", "performer_id", "unitId")
    )
    count: int = Field(1, ge=1)

    @model_validator(mode="after")
    def _one_target(self) -> "AvailabilityRequest":
        if bool(self.item_id) == bool(self.category_id):
            raise ValueError("exactly one of itemId or categoryId is required")
        return self


class BookingRequest(StrictRequestModel):
    item_id: str = Field(..., validation_alias=AliasChoices("itemId", "item_id", "serviceId"))
    datetime: str
    performer_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("performerId", "performer_id", "unitId")
    )
    client: ClientData = Field(..., validation_alias=AliasChoices("client", "clientData"))
    additional_fields: Union[dict[str, Any], str, None] = Field(
        None, validation_alias=AliasChoices("additionalFields", "additional_fields")
    )
    count: int = Field(1, ge=1)
    payment: Optional[PaymentTerms] = None
    title: Optional[str] = None


class FinalizeRequest(StrictRequestModel):
    payment_id: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("paymentId", "payment_id")
    )


class KindOverrideRequest(StrictRequestModel):
    kind: Optional[ItemKind] = None


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    environment: str
    timestamp: str


class ServicesResponse(BaseModel):
    items: list[BookableItem]
    count: int
    fetched_at: Optional[datetime] = None


class PerformersResponse(BaseModel):
    performers: list[Performer]
    count: int


class PassthroughResponse(BaseModel):
    success: bool = True
    data: Any = None


class BookingResponse(BaseModel):
    success: bool = True
    payment_required: bool = False
    checkout_url: Optional[str] = None
    payment_id: Optional[str] = None
    booking: Optional[BookingConfirmation] = None


class FinalizeResponse(BaseModel):
    success: bool = True
    payment_id: str
    already_processed: bool = False
    booking: Optional[BookingConfirmation] = None


class WebhookResponse(BaseModel):
    status: Literal["processed", "already_processed", "ignored"]
    payment_id: str


class AdminResponse(BaseModel):
    ok: bool = True
    message: str
