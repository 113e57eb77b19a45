"""HTTP endpoints for the storefront, the payment provider and operators."""

from __future__ import annotations

from datetime import datetime, timezone
import hmac
import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from . import __version__
from .availability import AvailabilityResolver
from .booking import BookingOrchestrator
from .catalog import CatalogService
from .client import _secret_value
from .config import Settings
from .exceptions import ValidationError
from .models import AvailabilityResult, CategoryAvailabilityResult
from .schemas import (
    AdminResponse,
    AvailabilityRequest,
    BookingRequest,
    BookingResponse,
    FinalizeRequest,
    FinalizeResponse,
    HealthResponse,
    KindOverrideRequest,
    PassthroughResponse,
    PerformersResponse,
    ServicesResponse,
    WebhookResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_catalog(request: Request) -> CatalogService:
    return request.app.state.catalog


def get_resolver(request: Request) -> AvailabilityResolver:
    return request.app.state.resolver


def get_orchestrator(request: Request) -> BookingOrchestrator:
    return request.app.state.orchestrator


def require_admin_secret(
    x_cache_admin_secret: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings_dep),
) -> None:
    expected = _secret_value(settings.cache_admin_secret)
    provided = x_cache_admin_secret or ""
    if not expected or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("admin_request_unauthorized")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health(settings: Settings = Depends(get_settings_dep)) -> HealthResponse:
    return HealthResponse(
        status="healthy",
        service="slotbridge",
        version=__version__,
        environment=settings.environment,
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )


@router.get("/services", response_model=ServicesResponse, tags=["catalog"])
async def list_services(
    force: bool = Query(False),
    catalog: CatalogService = Depends(get_catalog),
) -> ServicesResponse:
    items = await catalog.list_items(force_refresh=force)
    return ServicesResponse(items=items, count=len(items), fetched_at=catalog.cache.fetched_at)


@router.put("/services/{item_id}/kind", response_model=AdminResponse, tags=["admin"])
async def override_kind(
    item_id: str,
    payload: KindOverrideRequest,
    _: None = Depends(require_admin_secret),
    catalog: CatalogService = Depends(get_catalog),
) -> AdminResponse:
    catalog.set_kind_override(item_id, payload.kind)
    if payload.kind is None:
        return AdminResponse(message=f"Kind override cleared for {item_id}")
    return AdminResponse(message=f"{item_id} is now treated as {payload.kind}")


@router.get("/performers", response_model=PerformersResponse, tags=["catalog"])
async def list_performers(
    service_id: Optional[str] = Query(None),
    catalog: CatalogService = Depends(get_catalog),
) -> PerformersResponse:
    performers = await catalog.list_performers(service_id)
    return PerformersResponse(performers=performers, count=len(performers))


@router.get("/calendar", response_model=PassthroughResponse, tags=["catalog"])
async def work_calendar(
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(...),
    unit_id: Optional[str] = Query(None),
    catalog: CatalogService = Depends(get_catalog),
) -> PassthroughResponse:
    return PassthroughResponse(data=await catalog.get_work_calendar(year, month, unit_id))


@router.get("/first-working-day", response_model=PassthroughResponse, tags=["catalog"])
async def first_working_day(
    unit_id: str = Query(...),
    catalog: CatalogService = Depends(get_catalog),
) -> PassthroughResponse:
    return PassthroughResponse(data=await catalog.get_first_working_day(unit_id))


@router.get("/intake-forms", response_model=PassthroughResponse, tags=["catalog"])
async def intake_forms(
    service_id: str = Query(...),
    catalog: CatalogService = Depends(get_catalog),
) -> PassthroughResponse:
    return PassthroughResponse(data=await catalog.get_intake_forms(service_id))


@router.post(
    "/availability",
    response_model=Union[AvailabilityResult, CategoryAvailabilityResult],
    tags=["availability"],
)
async def availability(
    payload: AvailabilityRequest,
    resolver: AvailabilityResolver = Depends(get_resolver),
) -> Union[AvailabilityResult, CategoryAvailabilityResult]:
    if payload.category_id:
        return await resolver.resolve_category(
            payload.category_id,
            payload.date_from,
            payload.date_to,
            performer_id=payload.performer_id,
            party_size=payload.count,
        )
    return await resolver.resolve(
        payload.item_id or "",
        payload.date_from,
        payload.date_to,
        performer_id=payload.performer_id,
        party_size=payload.count,
    )


@router.post("/bookings", response_model=BookingResponse, tags=["bookings"])
async def create_booking(
    payload: BookingRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> BookingResponse:
    result = await orchestrator.create_booking(
        payload.item_id,
        payload.datetime,
        payload.client,
        performer_id=payload.performer_id,
        additional_fields=payload.additional_fields,
        count=payload.count,
        payment=payload.payment,
        title=payload.title,
    )
    return BookingResponse(**result.model_dump())


@router.post("/bookings/finalize", response_model=FinalizeResponse, tags=["bookings"])
async def finalize_booking(
    payload: FinalizeRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> FinalizeResponse:
    result = await orchestrator.finalize_payment(payload.payment_id)
    return FinalizeResponse(**result.model_dump())


async def _webhook_payment_id(request: Request) -> str:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            body = None
        payment_id = body.get("id") if isinstance(body, dict) else None
    else:
        form = await request.form()
        payment_id = form.get("id")
    if not isinstance(payment_id, str) or not payment_id.strip():
        raise ValidationError("Webhook payload has no payment id", code="missing_payment_id")
    return payment_id.strip()


@router.post("/webhooks/payment", response_model=WebhookResponse, tags=["webhooks"])
async def payment_webhook(
    request: Request,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> WebhookResponse:
    """
    Payment provider notification.

    The body only names the payment; its status is always read back from
    the provider before anything is booked.
    """
    payment_id = await _webhook_payment_id(request)
    logger.info("payment_webhook_received", extra={"payment_id": payment_id})
    outcome = await orchestrator.handle_webhook(payment_id)
    return WebhookResponse(status=outcome, payment_id=payment_id)  # type: ignore[arg-type]


@router.post("/cache/purge", response_model=AdminResponse, tags=["admin"])
async def purge_cache(
    _: None = Depends(require_admin_secret),
    catalog: CatalogService = Depends(get_catalog),
) -> AdminResponse:
    catalog.purge()
    return AdminResponse(message="Caches purged")
