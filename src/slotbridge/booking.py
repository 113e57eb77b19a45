"""
Booking orchestration: client resolution, reservation and payment gating.

A booking without payment terms is reserved immediately. A payment-gated
booking is parked as a ``PendingBookingRequest`` keyed by the payment id
and only reserved once the payment provider reports the payment as paid,
either through the webhook or an explicit finalize call. Finalization for
one payment id is serialized so a redelivered webhook racing a finalize
call cannot reserve twice.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
import hashlib
import json
import logging
import re
from typing import Any, AsyncIterator

from pydantic import ValidationError as PydanticValidationError

from .catalog import CatalogService
from .client import SimplyBookClient, _secret_value
from .config import Settings
from .exceptions import (
    AuthenticationError,
    BookingFailed,
    DomainException,
    PaymentMismatch,
    SlotUnavailable,
    ValidationError,
)
from .models import (
    BookingConfirmation,
    BookingState,
    ClientData,
    CreateBookingResult,
    FinalizeResult,
    PaymentTerms,
    PendingBookingRequest,
)
from .normalizer import as_records, parse_bool
from .payments import MollieClient

logger = logging.getLogger(__name__)

DATETIME_PATTERN = re.compile(r"^(\d{4}-\d{2}-\d{2})[T ](\d{2}:\d{2})(:\d{2})?")
DEFAULT_PAYMENT_TITLE = "Consultation"
PENDING_METADATA_KEY = "pending_booking"


def split_datetime(value: str) -> tuple[str, str]:
    """
    Split an ISO-like datetime into provider ``(YYYY-MM-DD, HH:MM:SS)``.

    The wall-clock text is sliced as given; parsing into a datetime is
    only a fallback for inputs the pattern does not cover, so an offset
    in the input never shifts the booked slot.
    """
    text = str(value or "").strip()
    match = DATETIME_PATTERN.match(text)
    if match:
        seconds = match.group(3) or ":00"
        return match.group(1), f"{match.group(2)}{seconds}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(
            "datetime must look like YYYY-MM-DDTHH:MM",
            code="invalid_datetime",
            details={"datetime": value},
        ) from None
    return parsed.strftime("%Y-%m-%d"), parsed.strftime("%H:%M:%S")


def confirmation_signature(booking_id: str, booking_hash: str, secret: str) -> str:
    return hashlib.md5(f"{booking_id}{booking_hash}{secret}".encode("utf-8")).hexdigest()


class PendingBookingStore:
    """Bookings awaiting payment, keyed by payment id."""

    def __init__(self) -> None:
        self._items: dict[str, PendingBookingRequest] = {}

    def get(self, payment_id: str) -> PendingBookingRequest | None:
        return self._items.get(payment_id)

    def set(self, payment_id: str, request: PendingBookingRequest) -> None:
        self._items[payment_id] = request

    def pop(self, payment_id: str) -> PendingBookingRequest | None:
        return self._items.pop(payment_id, None)

    def invalidate(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


class ProcessedPaymentSet:
    def __init__(self) -> None:
        self._ids: set[str] = set()

    def contains(self, payment_id: str) -> bool:
        return payment_id in self._ids

    def add(self, payment_id: str) -> None:
        self._ids.add(payment_id)

    def __len__(self) -> int:
        return len(self._ids)


class ReservedBookingStore:
    """Raw ``book`` results whose confirmation has not completed, keyed by payment id."""

    def __init__(self) -> None:
        self._items: dict[str, tuple[Any, BookingConfirmation]] = {}

    def get(self, payment_id: str) -> tuple[Any, BookingConfirmation] | None:
        return self._items.get(payment_id)

    def set(self, payment_id: str, result: Any, booking: BookingConfirmation) -> None:
        self._items[payment_id] = (result, booking)

    def pop(self, payment_id: str) -> tuple[Any, BookingConfirmation] | None:
        return self._items.pop(payment_id, None)

    def __len__(self) -> int:
        return len(self._items)


class KeyedLocks:
    """One ``asyncio.Lock`` per key, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


def _log_state(state: BookingState, **context: Any) -> None:
    level = logging.ERROR if state is BookingState.FAILED else logging.INFO
    logger.log(level, "booking_state_changed", extra={"state": state.value, **context})


class BookingOrchestrator:
    def __init__(
        self,
        client: SimplyBookClient,
        payments: MollieClient,
        catalog: CatalogService,
        settings: Settings,
        *,
        pending: PendingBookingStore | None = None,
        processed: ProcessedPaymentSet | None = None,
        locks: KeyedLocks | None = None,
        reserved: ReservedBookingStore | None = None,
    ) -> None:
        self.client = client
        self.payments = payments
        self.catalog = catalog
        self.settings = settings
        # the stores define __len__, so an injected empty store is falsy
        self.pending = pending if pending is not None else PendingBookingStore()
        self.processed = processed if processed is not None else ProcessedPaymentSet()
        self.locks = locks if locks is not None else KeyedLocks()
        self.reserved = reserved if reserved is not None else ReservedBookingStore()

    def prepare_additional_fields(self, value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            if not value.strip():
                value = {}
            else:
                try:
                    value = json.loads(value)
                except ValueError:
                    logger.warning("additional_fields_unparseable", extra={"raw": value[:200]})
                    value = {}
        fields = dict(value) if isinstance(value, dict) else {}
        for key, default in self.settings.default_additional_fields.items():
            current = fields.get(key)
            if current is None or (isinstance(current, str) and not current.strip()):
                fields[key] = default
        return fields

    async def create_booking(
        self,
        item_id: str,
        datetime_value: str,
        client: ClientData,
        *,
        performer_id: str | None = None,
        additional_fields: Any = None,
        count: int = 1,
        payment: PaymentTerms | None = None,
        title: str | None = None,
    ) -> CreateBookingResult:
        if not str(item_id).strip():
            raise ValidationError("itemId is required", code="missing_item_id")
        if count < 1:
            raise ValidationError("count must be at least 1", code="invalid_count")
        split_datetime(datetime_value)

        request = PendingBookingRequest(
            service_id=str(item_id),
            performer_id=performer_id,
            datetime=datetime_value,
            client_data=client,
            additional_fields=self.prepare_additional_fields(additional_fields),
            count=count,
        )
        _log_state(BookingState.REQUESTED, item_id=request.service_id, payment_gated=payment is not None)

        if payment is None:
            booking = await self.reserve(request)
            return CreateBookingResult(booking=booking)

        description = payment.description or await self._payment_description(
            request.service_id, client, title
        )
        session = await self.payments.create_payment_session(
            payment.amount,
            description,
            self.settings.payment_redirect_url,
            self.settings.payment_webhook_url,
            metadata={
                "service_id": request.service_id,
                "datetime": request.datetime,
                PENDING_METADATA_KEY: request.model_dump_json(),
            },
        )
        self.pending.set(session.payment_id, request)
        _log_state(
            BookingState.PAYMENT_PENDING,
            item_id=request.service_id,
            payment_id=session.payment_id,
        )
        return CreateBookingResult(
            payment_required=True,
            checkout_url=session.checkout_url,
            payment_id=session.payment_id,
        )

    async def _payment_description(
        self, item_id: str, client: ClientData, title: str | None
    ) -> str:
        if not title:
            try:
                item = await self.catalog.get_item(item_id)
            except DomainException as exc:
                logger.warning(
                    "payment_description_lookup_failed",
                    extra={"item_id": item_id, "error": exc.message},
                )
                item = None
            title = item.name if item is not None and item.name else DEFAULT_PAYMENT_TITLE
        return f"{title} - {client.name}"

    async def resolve_client(self, client: ClientData) -> str | None:
        """Find the customer by email, creating them when absent or when lookup fails."""
        existing: Any = None
        try:
            existing = await self.client.get_client_list(client.email, 1)
        except DomainException as exc:
            logger.warning(
                "client_lookup_failed",
                extra={"error_type": type(exc).__name__, "error": exc.message},
            )
        for record in as_records(existing):
            email = str(record.get("email") or "").strip().lower()
            if record.get("id") is not None and (not email or email == client.email.strip().lower()):
                return str(record["id"])

        created = await self.client.add_client(
            {"name": client.name, "email": client.email, "phone": client.phone}
        )
        if isinstance(created, dict):
            created = created.get("id") or created.get("client_id")
        return str(created) if created not in (None, "") else None

    async def _resolve_unit(self, request: PendingBookingRequest, date: str, time: str) -> str:
        units = await self.client.get_available_units(
            request.service_id, f"{date} {time}", request.count
        )
        if isinstance(units, dict):
            units = list(units.values()) if units else []
        for unit in units or []:
            unit_id = unit.get("id") if isinstance(unit, dict) else unit
            if unit_id not in (None, ""):
                return str(unit_id)
        raise SlotUnavailable(
            "No performer is available for the requested slot",
            code="slot_unavailable",
            details={"item_id": request.service_id, "datetime": request.datetime},
        )

    async def reserve(self, request: PendingBookingRequest) -> BookingConfirmation:
        result, booking = await self._book(request)
        if booking.require_confirm:
            booking = await self._confirm(result, booking)
        return booking

    async def _book(self, request: PendingBookingRequest) -> tuple[Any, BookingConfirmation]:
        date, time = split_datetime(request.datetime)
        client_id = await self.resolve_client(request.client_data)
        _log_state(BookingState.CLIENT_RESOLVED, item_id=request.service_id, client_id=client_id)

        unit_id = request.performer_id or await self._resolve_unit(request, date, time)
        client_data = request.client_data.model_dump()
        if client_id:
            client_data["client_id"] = client_id

        result = await self.client.book(
            request.service_id,
            unit_id,
            date,
            time,
            client_data,
            request.additional_fields,
            request.count,
        )
        booking = self._confirmation(result, client_id=client_id, performer_id=unit_id)
        _log_state(
            BookingState.RESERVED,
            item_id=request.service_id,
            booking_id=booking.booking_id,
            require_confirm=booking.require_confirm,
        )
        return result, booking

    def _confirmation(self, result: Any, *, client_id: str | None, performer_id: str) -> BookingConfirmation:
        body = result if isinstance(result, dict) else {"id": result}
        bookings = as_records(body.get("bookings"))
        first = bookings[0] if bookings else body
        require_confirm = parse_bool(body.get("require_confirm", body.get("requireConfirm")))
        booking_id = first.get("id")
        return BookingConfirmation(
            booking_id=str(booking_id) if booking_id is not None else None,
            booking_hash=first.get("hash"),
            require_confirm=bool(require_confirm),
            client_id=client_id,
            performer_id=performer_id,
            state=BookingState.RESERVED if require_confirm else BookingState.CONFIRMED,
            raw=result,
        )

    async def _confirm(self, result: dict[str, Any], booking: BookingConfirmation) -> BookingConfirmation:
        secret = _secret_value(self.settings.simplybook_secret_key)
        if not secret:
            raise AuthenticationError(
                "Booking confirmation secret is not configured",
                code="simplybook_secret_missing",
            )
        sub_bookings = as_records(result.get("bookings")) or [result]
        confirmed: list[str] = []
        for sub in sub_bookings:
            booking_id = str(sub.get("id", ""))
            signature = confirmation_signature(booking_id, str(sub.get("hash", "")), secret)
            await self.client.confirm_booking(booking_id, signature)
            confirmed.append(booking_id)
        _log_state(BookingState.CONFIRMED, booking_id=booking.booking_id, confirmed=confirmed)
        return booking.model_copy(update={"confirmed_ids": confirmed, "state": BookingState.CONFIRMED})

    def _recover_from_metadata(self, payment_id: str, metadata: dict[str, Any]) -> PendingBookingRequest | None:
        stored = metadata.get(PENDING_METADATA_KEY)
        if not stored:
            return None
        try:
            if isinstance(stored, str):
                request = PendingBookingRequest.model_validate_json(stored)
            else:
                request = PendingBookingRequest.model_validate(stored)
        except PydanticValidationError as exc:
            logger.error(
                "pending_booking_metadata_invalid",
                extra={"payment_id": payment_id, "error": str(exc)},
            )
            return None
        logger.warning("pending_booking_recovered_from_metadata", extra={"payment_id": payment_id})
        return request

    async def finalize_payment(self, payment_id: str) -> FinalizeResult:
        payment_id = str(payment_id or "").strip()
        if not payment_id:
            raise ValidationError("paymentId is required", code="missing_payment_id")

        async with self.locks.hold(payment_id):
            if self.processed.contains(payment_id):
                logger.info("payment_already_processed", extra={"payment_id": payment_id})
                return FinalizeResult(payment_id=payment_id, already_processed=True)

            status = await self.payments.get_payment_status(payment_id)
            if not status.is_paid:
                raise PaymentMismatch(
                    "Payment is not paid",
                    code="payment_not_paid",
                    details={"payment_id": payment_id, "status": status.status},
                )

            request = self.pending.get(payment_id) or self._recover_from_metadata(
                payment_id, status.metadata
            )
            if request is None:
                raise PaymentMismatch(
                    "No pending booking is attached to this payment",
                    code="pending_booking_missing",
                    details={"payment_id": payment_id},
                )
            _log_state(BookingState.PAYMENT_CONFIRMED, payment_id=payment_id, item_id=request.service_id)

            # a reservation made by an earlier attempt is only confirmed, never booked again
            reserved = self.reserved.get(payment_id)
            try:
                if reserved is None:
                    result, booking = await self._book(request)
                    self.reserved.set(payment_id, result, booking)
                else:
                    result, booking = reserved
                    logger.info(
                        "reservation_reused",
                        extra={"payment_id": payment_id, "booking_id": booking.booking_id},
                    )
                if booking.require_confirm:
                    booking = await self._confirm(result, booking)
            except DomainException as exc:
                _log_state(
                    BookingState.FAILED,
                    payment_id=payment_id,
                    item_id=request.service_id,
                    error_type=type(exc).__name__,
                    error=exc.message,
                )
                self.pending.set(payment_id, request)
                held = self.reserved.get(payment_id)
                raise BookingFailed(
                    "Payment was captured but the reservation failed",
                    code="booking_failed_after_payment",
                    details={
                        "payment_id": payment_id,
                        "pending_booking": request.model_dump(mode="json"),
                        "reserved_booking_id": held[1].booking_id if held else None,
                        "upstream_error": exc.message,
                    },
                ) from exc

            self.processed.add(payment_id)
            self.pending.pop(payment_id)
            self.reserved.pop(payment_id)
            return FinalizeResult(payment_id=payment_id, booking=booking)

    async def handle_webhook(self, payment_id: str) -> str:
        """
        Process a payment notification; returns ``processed``,
        ``already_processed`` or ``ignored``.

        Notifications for payments that are not actionable are acknowledged
        so the provider stops redelivering them. ``BookingFailed`` and
        upstream errors propagate so the provider retries.
        """
        try:
            result = await self.finalize_payment(payment_id)
        except PaymentMismatch as exc:
            level = logging.ERROR if exc.code == "pending_booking_missing" else logging.INFO
            logger.log(
                level,
                "payment_webhook_ignored",
                extra={"payment_id": payment_id, "reason": exc.code, **exc.details},
            )
            return "ignored"
        return "already_processed" if result.already_processed else "processed"
