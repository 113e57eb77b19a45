"""Catalog lookups backed by a time-bound cache of normalized items."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
import logging
import time
from typing import Any, Awaitable, Callable

from .client import SimplyBookClient
from .config import Settings
from .exceptions import CatalogUnavailable, DomainException, NotFound, ValidationError
from .models import BookableItem, ItemKind, Performer
from .normalizer import as_records, normalize_items, normalize_performer

logger = logging.getLogger(__name__)


class ServicesCache:
    """Cache for the normalized catalog; entries expire after a fixed TTL."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._items: list[BookableItem] | None = None
        self._stored_at: float | None = None
        self.fetched_at: datetime | None = None
        self.lock = asyncio.Lock()

    def get(self) -> list[BookableItem] | None:
        if self._items is not None and self._stored_at is not None:
            if self._clock() - self._stored_at < self.ttl_seconds:
                return self._items
        return None

    def peek(self) -> list[BookableItem]:
        """Return whatever is stored, expired or not."""
        return self._items or []

    def set(self, items: list[BookableItem]) -> None:
        self._items = list(items)
        self._stored_at = self._clock()
        self.fetched_at = datetime.now(timezone.utc)

    def invalidate(self) -> None:
        self._items = None
        self._stored_at = None
        self.fetched_at = None


@dataclass(frozen=True)
class CatalogSource:
    name: str
    fetch: Callable[[], Awaitable[Any]]


class CatalogService:
    """Fetches, normalizes and caches the provider catalog."""

    def __init__(
        self,
        client: SimplyBookClient,
        settings: Settings,
        cache: ServicesCache | None = None,
    ) -> None:
        self.client = client
        self.settings = settings
        self.cache = cache or ServicesCache(settings.services_cache_ttl_seconds)
        self._overrides: dict[str, str] = dict(settings.kind_overrides)

    def sources(self) -> list[CatalogSource]:
        return [
            CatalogSource("getEventList", self.client.get_event_list),
            CatalogSource("getEventListPublic", self._public_events),
            CatalogSource("getServiceListPublic", self.client.get_service_list_public),
        ]

    async def _public_events(self) -> Any:
        today = date.today()
        horizon = today + timedelta(days=self.settings.public_event_horizon_days)
        return await self.client.get_event_list_public(today.isoformat(), horizon.isoformat())

    async def list_items(self, force_refresh: bool = False) -> list[BookableItem]:
        if not force_refresh:
            cached = self.cache.get()
            if cached is not None:
                return cached
        async with self.cache.lock:
            if not force_refresh:
                cached = self.cache.get()
                if cached is not None:
                    return cached
            items = await self._fetch()
            self.cache.set(items)
            return items

    async def _fetch(self) -> list[BookableItem]:
        last_error: DomainException | None = None
        for source in self.sources():
            try:
                result = await source.fetch()
            except DomainException as exc:
                last_error = exc
                logger.warning(
                    "catalog_source_failed",
                    extra={"source": source.name, "error_type": type(exc).__name__, "error": exc.message},
                )
                continue
            items = normalize_items(
                result,
                source.name,
                keywords=self.settings.event_keywords,
                overrides=self._overrides,
            )
            if items:
                logger.info("catalog_fetched", extra={"source": source.name, "count": len(items)})
                return items
            logger.info("catalog_source_empty", extra={"source": source.name})
        raise CatalogUnavailable(
            "Failed to fetch services from the scheduling provider",
            code="catalog_unavailable",
        ) from last_error

    async def get_item(self, item_id: str) -> BookableItem | None:
        for item in await self.list_items():
            if item.id == str(item_id):
                return item
        return None

    async def require_item(self, item_id: str) -> BookableItem:
        item = await self.get_item(item_id)
        if item is None:
            raise NotFound("Service not found", code="service_not_found", details={"item_id": item_id})
        return item

    async def category_items(self, category_id: str) -> list[BookableItem]:
        return [item for item in await self.list_items() if item.category_id == str(category_id)]

    def known_kind(self, item_id: str) -> ItemKind | None:
        """Kind from an override or the cached catalog, without fetching."""
        override = self._overrides.get(str(item_id))
        if override in ("service", "event"):
            return override  # type: ignore[return-value]
        for item in self.cache.peek():
            if item.id == str(item_id):
                return item.kind
        return None

    def set_kind_override(self, item_id: str, kind: ItemKind | None) -> None:
        if kind is None:
            self._overrides.pop(str(item_id), None)
        else:
            self._overrides[str(item_id)] = kind
        logger.info("catalog_kind_override_set", extra={"item_id": item_id, "kind": kind})
        self.cache.invalidate()

    def purge(self) -> None:
        self.cache.invalidate()
        self.client.token_cache.invalidate()
        logger.info("caches_purged")

    async def list_performers(self, service_id: str | None = None) -> list[Performer]:
        units = as_records(await self.client.get_unit_list())
        items = await self.list_items()
        services_by_unit: dict[str, list[str]] = {}
        for item in items:
            for unit_id in item.unit_ids:
                services_by_unit.setdefault(unit_id, []).append(item.id)

        performers = []
        for record in units:
            unit_id = str(record.get("id", ""))
            performer = normalize_performer(record, services_by_unit.get(unit_id, ()))
            if performer is not None:
                performers.append(performer)

        if service_id is None:
            return performers
        item = await self.require_item(service_id)
        if not item.unit_ids:
            return performers
        allowed = set(item.unit_ids)
        return [performer for performer in performers if performer.id in allowed]

    async def get_work_calendar(self, year: int, month: int, unit_id: str | None = None) -> Any:
        if not 1 <= month <= 12:
            raise ValidationError("month must be between 1 and 12", code="invalid_month")
        return await self.client.get_work_calendar(year, month, unit_id)

    async def get_first_working_day(self, unit_id: str) -> Any:
        if not str(unit_id).strip():
            raise ValidationError("unit_id is required", code="missing_unit_id")
        return await self.client.get_first_working_day(unit_id)

    async def get_intake_forms(self, service_id: str) -> list[Any]:
        if not str(service_id).strip():
            raise ValidationError("service_id is required", code="missing_service_id")
        fields = await self.client.get_additional_fields(service_id)
        if isinstance(fields, list):
            return fields
        if isinstance(fields, dict):
            return list(fields.values())
        return []
