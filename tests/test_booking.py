import asyncio
import hashlib
import json

import pytest
from slotbridge.booking import (
    BookingOrchestrator,
    KeyedLocks,
    PendingBookingStore,
    ProcessedPaymentSet,
    confirmation_signature,
    split_datetime,
)
from slotbridge.catalog import CatalogService
from slotbridge.client import TokenCache
from slotbridge.config import Settings
from slotbridge.exceptions import (
    BookingFailed,
    PaymentMismatch,
    SlotUnavailable,
    TransportError,
    UpstreamRejected,
    ValidationError,
)
from slotbridge.models import BookingState, ClientData, PaymentSession, PaymentStatus, PaymentTerms


class FakeSimplyBook:
    def __init__(self):
        self.calls = []
        self.clients = []
        self.lookup_error = None
        self.units = ["2"]
        self.book_result = {"require_confirm": False, "bookings": [{"id": 501, "hash": "h501"}]}
        self.book_error = None
        self.confirm_errors = []
        self.catalog = {"7": {"name": "Deep Tissue Massage"}}
        self.token_cache = TokenCache(3000)

    async def get_client_list(self, search, limit=1):
        self.calls.append(("getClientList", search))
        if self.lookup_error:
            raise self.lookup_error
        return [c for c in self.clients if c["email"] == search][:limit]

    async def add_client(self, client_data):
        self.calls.append(("addClient", client_data))
        return 77

    async def get_available_units(self, service_id, datetime, count=1):
        self.calls.append(("getAvailableUnits", service_id, datetime, count))
        return self.units

    async def book(self, service_id, unit_id, date, time, client_data, additional_fields, count=1):
        self.calls.append(("book", service_id, unit_id, date, time, client_data, additional_fields, count))
        await asyncio.sleep(0)
        if self.book_error:
            raise self.book_error
        return self.book_result

    async def confirm_booking(self, booking_id, signature):
        self.calls.append(("confirmBooking", booking_id, signature))
        if self.confirm_errors:
            raise self.confirm_errors.pop(0)
        return True

    async def get_event_list(self):
        return self.catalog

    async def get_event_list_public(self, date_from=None, date_to=None):
        return []

    async def get_service_list_public(self):
        return []

    def count(self, method):
        return sum(1 for call in self.calls if call[0] == method)

    def last(self, method):
        return [call for call in self.calls if call[0] == method][-1]


class FakePayments:
    def __init__(self):
        self.sessions = []
        self.statuses = {}
        self.status_calls = 0

    async def create_payment_session(self, amount, description, redirect_url, webhook_url, metadata=None):
        payment_id = f"tr_{len(self.sessions) + 1}"
        self.sessions.append(
            {
                "id": payment_id,
                "amount": amount,
                "description": description,
                "redirect_url": redirect_url,
                "webhook_url": webhook_url,
                "metadata": metadata,
            }
        )
        self.statuses[payment_id] = "open"
        return PaymentSession(payment_id=payment_id, checkout_url=f"https://pay.test/{payment_id}")

    async def get_payment_status(self, payment_id):
        self.status_calls += 1
        await asyncio.sleep(0)
        session = next((s for s in self.sessions if s["id"] == payment_id), None)
        return PaymentStatus(
            payment_id=payment_id,
            status=self.statuses.get(payment_id, "open"),
            amount="49.00",
            currency="EUR",
            metadata=(session or {}).get("metadata") or {},
        )

    def mark(self, payment_id, status="paid"):
        self.statuses[payment_id] = status


CLIENT = ClientData(name="Ann Lee", email="ann@example.com", phone="+4712345678")


def _orchestrator(**settings):
    values = {
        "simplybook_secret_key": "s3cret",
        "public_base_url": "https://api.example.com",
        "payment_redirect_url": "https://shop.example.com/thanks",
    }
    values.update(settings)
    config = Settings(**values)
    simplybook = FakeSimplyBook()
    payments = FakePayments()
    catalog = CatalogService(simplybook, config)
    return BookingOrchestrator(simplybook, payments, catalog, config), simplybook, payments


def test_split_datetime_slices_wall_clock_text():
    assert split_datetime("2025-03-01T09:30:00+05:00") == ("2025-03-01", "09:30:00")
    assert split_datetime("2025-03-01 09:30") == ("2025-03-01", "09:30:00")
    with pytest.raises(ValidationError):
        split_datetime("tomorrow at nine")


def test_confirmation_signature_is_md5_of_id_hash_secret():
    expected = hashlib.md5(b"501h501s3cret").hexdigest()
    assert confirmation_signature("501", "h501", "s3cret") == expected


@pytest.mark.asyncio
async def test_keyed_locks_release_their_entries():
    locks = KeyedLocks()
    async with locks.hold("tr_1"):
        assert len(locks) == 1
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_direct_booking_reserves_immediately():
    orchestrator, simplybook, payments = _orchestrator()

    result = await orchestrator.create_booking("7", "2025-03-01T09:00:00", CLIENT)

    assert result.payment_required is False
    assert result.booking.booking_id == "501"
    assert result.booking.state is BookingState.CONFIRMED
    assert result.booking.performer_id == "2"
    _, service_id, unit_id, date, time, client_data, _, count = simplybook.last("book")
    assert (service_id, unit_id, date, time, count) == ("7", "2", "2025-03-01", "09:00:00", 1)
    assert client_data["client_id"] == "77"
    assert simplybook.last("getAvailableUnits")[2] == "2025-03-01 09:00:00"
    assert payments.sessions == []


@pytest.mark.asyncio
async def test_existing_client_is_reused():
    orchestrator, simplybook, _ = _orchestrator()
    simplybook.clients = [{"id": 12, "email": "ann@example.com"}]

    result = await orchestrator.create_booking("7", "2025-03-01T09:00", CLIENT, performer_id="4")

    assert result.booking.client_id == "12"
    assert simplybook.count("addClient") == 0
    assert simplybook.count("getAvailableUnits") == 0
    assert simplybook.last("book")[2] == "4"


@pytest.mark.asyncio
async def test_client_lookup_failure_creates_client():
    orchestrator, simplybook, _ = _orchestrator()
    simplybook.lookup_error = UpstreamRejected("Access denied")

    result = await orchestrator.create_booking("7", "2025-03-01T09:00", CLIENT)

    assert result.booking.client_id == "77"
    assert simplybook.count("addClient") == 1


@pytest.mark.asyncio
async def test_no_available_unit_is_slot_unavailable():
    orchestrator, simplybook, _ = _orchestrator()
    simplybook.units = []

    with pytest.raises(SlotUnavailable):
        await orchestrator.create_booking("7", "2025-03-01T09:00", CLIENT)
    assert simplybook.count("book") == 0


@pytest.mark.asyncio
async def test_require_confirm_signs_every_sub_booking():
    orchestrator, simplybook, _ = _orchestrator()
    simplybook.book_result = {
        "require_confirm": True,
        "bookings": [{"id": 501, "hash": "h501"}, {"id": 502, "hash": "h502"}],
    }

    result = await orchestrator.create_booking("7", "2025-03-01T09:00", CLIENT, count=2)

    confirms = [call for call in simplybook.calls if call[0] == "confirmBooking"]
    assert confirms == [
        ("confirmBooking", "501", confirmation_signature("501", "h501", "s3cret")),
        ("confirmBooking", "502", confirmation_signature("502", "h502", "s3cret")),
    ]
    assert result.booking.confirmed_ids == ["501", "502"]
    assert result.booking.state is BookingState.CONFIRMED


@pytest.mark.asyncio
async def test_additional_fields_json_string_and_defaults():
    orchestrator, simplybook, _ = _orchestrator(
        default_additional_fields={"consultation_type": "in-person", "translator": "no"}
    )

    await orchestrator.create_booking(
        "7",
        "2025-03-01T09:00",
        CLIENT,
        additional_fields=json.dumps({"city": "Oslo", "translator": ""}),
    )

    fields = simplybook.last("book")[6]
    assert fields == {"city": "Oslo", "translator": "no", "consultation_type": "in-person"}
    assert orchestrator.prepare_additional_fields("{not json") == {
        "consultation_type": "in-person",
        "translator": "no",
    }


@pytest.mark.asyncio
async def test_payment_gated_booking_defers_reservation():
    orchestrator, simplybook, payments = _orchestrator()

    result = await orchestrator.create_booking(
        "7", "2025-03-01T09:00", CLIENT, payment=PaymentTerms(amount=49)
    )

    assert result.payment_required is True
    assert result.payment_id == "tr_1"
    assert result.checkout_url == "https://pay.test/tr_1"
    assert simplybook.count("book") == 0
    session = payments.sessions[0]
    assert session["description"] == "Deep Tissue Massage - Ann Lee"
    assert session["webhook_url"] == "https://api.example.com/webhooks/payment"
    assert session["redirect_url"] == "https://shop.example.com/thanks"
    assert json.loads(session["metadata"]["pending_booking"])["service_id"] == "7"
    assert orchestrator.pending.get("tr_1") is not None

    payments.mark("tr_1")
    assert await orchestrator.handle_webhook("tr_1") == "processed"
    assert simplybook.count("book") == 1
    assert orchestrator.pending.get("tr_1") is None


@pytest.mark.asyncio
async def test_payment_description_falls_back_to_consultation():
    orchestrator, simplybook, payments = _orchestrator()
    simplybook.catalog = {}

    await orchestrator.create_booking("9", "2025-03-01T09:00", CLIENT, payment=PaymentTerms(amount=10))

    assert payments.sessions[0]["description"] == "Consultation - Ann Lee"


@pytest.mark.asyncio
async def test_webhook_redelivery_books_once():
    orchestrator, simplybook, payments = _orchestrator()
    created = await orchestrator.create_booking(
        "7", "2025-03-01T09:00", CLIENT, payment=PaymentTerms(amount=49)
    )
    payments.mark(created.payment_id)

    first = await orchestrator.handle_webhook(created.payment_id)
    second = await orchestrator.handle_webhook(created.payment_id)

    assert (first, second) == ("processed", "already_processed")
    assert simplybook.count("book") == 1


@pytest.mark.asyncio
async def test_finalize_twice_reports_already_processed():
    orchestrator, simplybook, payments = _orchestrator()
    created = await orchestrator.create_booking(
        "7", "2025-03-01T09:00", CLIENT, payment=PaymentTerms(amount=49)
    )
    payments.mark(created.payment_id)

    first = await orchestrator.finalize_payment(created.payment_id)
    second = await orchestrator.finalize_payment(created.payment_id)

    assert first.already_processed is False
    assert first.booking.booking_id == "501"
    assert second.already_processed is True
    assert simplybook.count("book") == 1
    assert payments.status_calls == 1


@pytest.mark.asyncio
async def test_concurrent_finalize_is_serialized():
    orchestrator, simplybook, payments = _orchestrator()
    created = await orchestrator.create_booking(
        "7", "2025-03-01T09:00", CLIENT, payment=PaymentTerms(amount=49)
    )
    payments.mark(created.payment_id)

    results = await asyncio.gather(
        orchestrator.finalize_payment(created.payment_id),
        orchestrator.handle_webhook(created.payment_id),
        orchestrator.finalize_payment(created.payment_id),
    )

    assert simplybook.count("book") == 1
    assert results[0].already_processed is False
    assert results[1] == "already_processed"
    assert results[2].already_processed is True
    assert len(orchestrator.locks) == 0


@pytest.mark.asyncio
async def test_finalize_unpaid_payment_is_mismatch():
    orchestrator, simplybook, payments = _orchestrator()
    created = await orchestrator.create_booking(
        "7", "2025-03-01T09:00", CLIENT, payment=PaymentTerms(amount=49)
    )

    with pytest.raises(PaymentMismatch) as excinfo:
        await orchestrator.finalize_payment(created.payment_id)
    assert excinfo.value.code == "payment_not_paid"
    assert simplybook.count("book") == 0
    assert orchestrator.pending.get(created.payment_id) is not None


@pytest.mark.asyncio
async def test_webhook_for_failed_payment_is_acknowledged():
    orchestrator, simplybook, payments = _orchestrator()
    created = await orchestrator.create_booking(
        "7", "2025-03-01T09:00", CLIENT, payment=PaymentTerms(amount=49)
    )
    payments.mark(created.payment_id, "expired")

    assert await orchestrator.handle_webhook(created.payment_id) == "ignored"
    assert simplybook.count("book") == 0


@pytest.mark.asyncio
async def test_paid_payment_without_pending_request_is_mismatch():
    orchestrator, _, payments = _orchestrator()
    payments.mark("tr_unknown")

    with pytest.raises(PaymentMismatch) as excinfo:
        await orchestrator.finalize_payment("tr_unknown")
    assert excinfo.value.code == "pending_booking_missing"
    assert await orchestrator.handle_webhook("tr_unknown") == "ignored"


@pytest.mark.asyncio
async def test_pending_request_recovered_from_payment_metadata():
    orchestrator, simplybook, payments = _orchestrator()
    created = await orchestrator.create_booking(
        "7", "2025-03-01T09:00", CLIENT, payment=PaymentTerms(amount=49)
    )
    payments.mark(created.payment_id)
    orchestrator.pending.invalidate()

    result = await orchestrator.finalize_payment(created.payment_id)

    assert result.booking.booking_id == "501"
    assert simplybook.last("book")[1] == "7"


@pytest.mark.asyncio
async def test_booking_failure_after_payment_keeps_pending_and_raises():
    orchestrator, simplybook, payments = _orchestrator()
    created = await orchestrator.create_booking(
        "7", "2025-03-01T09:00", CLIENT, payment=PaymentTerms(amount=49)
    )
    payments.mark(created.payment_id)
    simplybook.book_error = TransportError("provider down")

    with pytest.raises(BookingFailed) as excinfo:
        await orchestrator.handle_webhook(created.payment_id)

    details = excinfo.value.public_details()
    assert details["payment_id"] == created.payment_id
    assert details["pending_booking"]["service_id"] == "7"
    assert orchestrator.pending.get(created.payment_id) is not None
    assert not orchestrator.processed.contains(created.payment_id)

    simplybook.book_error = None
    assert await orchestrator.handle_webhook(created.payment_id) == "processed"


@pytest.mark.asyncio
async def test_invalid_input_is_rejected_before_upstream_calls():
    orchestrator, simplybook, payments = _orchestrator()

    with pytest.raises(ValidationError):
        await orchestrator.create_booking("7", "soon", CLIENT)
    with pytest.raises(ValidationError):
        await orchestrator.finalize_payment("  ")
    assert simplybook.calls == []
    assert payments.sessions == []


@pytest.mark.asyncio
async def test_confirm_failure_after_payment_retries_only_the_confirmation():
    orchestrator, simplybook, payments = _orchestrator()
    simplybook.book_result = {"require_confirm": True, "bookings": [{"id": 501, "hash": "h501"}]}
    simplybook.confirm_errors = [TransportError("confirm timed out")]
    created = await orchestrator.create_booking(
        "7", "2025-03-01T09:00", CLIENT, payment=PaymentTerms(amount=49)
    )
    payments.mark(created.payment_id)

    with pytest.raises(BookingFailed) as excinfo:
        await orchestrator.handle_webhook(created.payment_id)
    assert excinfo.value.details["reserved_booking_id"] == "501"

    assert await orchestrator.handle_webhook(created.payment_id) == "processed"
    assert await orchestrator.handle_webhook(created.payment_id) == "already_processed"
    assert simplybook.count("book") == 1
    assert simplybook.count("confirmBooking") == 2
    assert len(orchestrator.reserved) == 0


@pytest.mark.asyncio
async def test_injected_empty_stores_are_kept():
    config = Settings(simplybook_secret_key="s3cret")
    simplybook = FakeSimplyBook()
    payments = FakePayments()
    pending = PendingBookingStore()
    processed = ProcessedPaymentSet()
    locks = KeyedLocks()
    orchestrator = BookingOrchestrator(
        simplybook,
        payments,
        CatalogService(simplybook, config),
        config,
        pending=pending,
        processed=processed,
        locks=locks,
    )

    created = await orchestrator.create_booking(
        "7", "2025-03-01T09:00", CLIENT, payment=PaymentTerms(amount=49)
    )
    payments.mark(created.payment_id)
    await orchestrator.finalize_payment(created.payment_id)

    assert orchestrator.pending is pending
    assert orchestrator.processed is processed
    assert orchestrator.locks is locks
    assert processed.contains(created.payment_id)
