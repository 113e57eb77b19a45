"""
Availability resolution for catalog items.

The provider exposes two query families: a start-time matrix for
flexible services and a public event listing for fixed-occurrence
events. Which one applies is only a hint from the catalog, so every
request runs an ordered chain of strategies. Failures and empty
answers from earlier strategies fall through to the next one; a failure
in the last applicable strategy is terminal.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
import logging
import re
from typing import Any, Awaitable, Callable, Iterable, Mapping

from .catalog import CatalogService
from .client import SimplyBookClient
from .config import Settings
from .exceptions import AvailabilityUnavailable, DomainException, NotFound, ValidationError
from .models import (
    AvailabilityResult,
    AvailabilityWindow,
    CategoryAvailabilityResult,
    ItemKind,
)
from .normalizer import as_records, first_value, parse_bool

logger = logging.getLogger(__name__)

SlotMap = dict[date, set[str]]

TIME_PATTERN = re.compile(r"(?<!\d)(\d{1,2}):(\d{2})(?::\d{2})?")
TIME_FIELD_KEYS = ("time", "start_time", "start", "value", "slot")
EVENT_ITEM_KEYS = ("event_id", "service_id")
EVENT_DATE_KEYS = ("date", "start_date", "event_date")
EVENT_TIME_KEYS = ("time", "start_time")
EVENT_DATETIME_KEYS = ("start_datetime", "datetime", "start", "date_time", "start_date_time")
EVENT_UNIT_KEYS = ("unit_id", "performer_id", "provider_id")


def normalize_time(value: Any) -> str | None:
    """Return a zero-padded ``HH:MM`` from strings like ``9:00`` or ``09:00:00``."""
    if not isinstance(value, str):
        return None
    match = TIME_PATTERN.search(value)
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"


def _collect_times(value: Any, out: set[str]) -> None:
    if isinstance(value, str):
        normalized = normalize_time(value)
        if normalized:
            out.add(normalized)
        return
    if isinstance(value, Mapping):
        field_value = first_value(value, TIME_FIELD_KEYS)
        if isinstance(field_value, str):
            _collect_times(field_value, out)
            return
        for key, nested in value.items():
            key_time = normalize_time(key) if isinstance(key, str) else None
            if key_time and isinstance(nested, Mapping) and first_value(nested, TIME_FIELD_KEYS) is None:
                # {"09:00": {"available": true}}: the key carries the time
                if nested and parse_bool(nested.get("available")) is not False:
                    out.add(key_time)
            elif isinstance(nested, (Mapping, list, tuple)):
                _collect_times(nested, out)
            elif key_time and nested not in (False, 0, None, ""):
                _collect_times(key, out)
            else:
                _collect_times(nested, out)
        return
    if isinstance(value, (list, tuple)):
        for entry in value:
            _collect_times(entry, out)


def extract_times(value: Any) -> list[str]:
    """
    Extract an ordered, de-duplicated list of ``HH:MM`` start times.

    Accepts an array of strings, an array of objects carrying a time
    field, or a nested object of either.
    """
    times: set[str] = set()
    _collect_times(value, times)
    return sorted(times)


def parse_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and len(value.strip()) >= 10:
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


def parse_matrix(result: Any) -> SlotMap:
    """Turn a start-time matrix (date-keyed map or list of day objects) into a slot map."""
    slots: SlotMap = {}
    if isinstance(result, Mapping):
        day_entries: Iterable[tuple[Any, Any]] = result.items()
    elif isinstance(result, list):
        day_entries = [
            (first_value(entry, ("date", "day")), first_value(entry, ("times", "slots", "time")))
            for entry in result
            if isinstance(entry, Mapping)
        ]
    else:
        return slots
    for key, value in day_entries:
        day = parse_date(key)
        if day is None:
            continue
        times = extract_times(value)
        if times:
            slots.setdefault(day, set()).update(times)
    return slots


def _event_slot(record: Mapping[str, Any]) -> tuple[date, str] | None:
    day = parse_date(first_value(record, EVENT_DATE_KEYS))
    time_value = normalize_time(first_value(record, EVENT_TIME_KEYS))
    if day is not None and time_value is not None:
        return day, time_value
    combined = first_value(record, EVENT_DATETIME_KEYS + EVENT_DATE_KEYS)
    if not isinstance(combined, str):
        return None
    combined_day = parse_date(combined)
    combined_time = normalize_time(combined[10:]) if len(combined) > 10 else None
    if combined_day is None or combined_time is None:
        return None
    return combined_day, combined_time


def parse_events(
    result: Any,
    item_id: str,
    *,
    date_from: date,
    date_to: date,
    performer_id: str | None = None,
) -> SlotMap:
    """Slots for one item from a public event listing; malformed records are skipped."""
    slots: SlotMap = {}
    for record in as_records(result):
        # a bare ``id`` is the occurrence id, not the item it belongs to
        owner = first_value(record, EVENT_ITEM_KEYS)
        if owner is None or str(owner) != str(item_id):
            continue
        unit = first_value(record, EVENT_UNIT_KEYS)
        if performer_id is not None and unit is not None and str(unit) != str(performer_id):
            continue
        slot = _event_slot(record)
        if slot is None:
            logger.debug(
                "availability_event_record_skipped",
                extra={"item_id": item_id, "record_id": record.get("id")},
            )
            continue
        day, start = slot
        if date_from <= day <= date_to:
            slots.setdefault(day, set()).add(start)
    return slots


def build_windows(slots: SlotMap) -> list[AvailabilityWindow]:
    return [
        AvailabilityWindow(date=day, times=sorted(times))
        for day, times in sorted(slots.items())
        if times
    ]


@dataclass(frozen=True)
class AvailabilityQuery:
    item_id: str
    date_from: date
    date_to: date
    kind: ItemKind
    performer_id: str | None = None
    party_size: int = 1


@dataclass(frozen=True)
class Strategy:
    name: str
    run: Callable[[AvailabilityQuery], Awaitable[SlotMap]]
    applies: Callable[[AvailabilityQuery], bool] = field(default=lambda query: True)


class AvailabilityResolver:
    """Routes an availability request through the strategy chain for its item kind."""

    def __init__(
        self,
        client: SimplyBookClient,
        catalog: CatalogService,
        settings: Settings,
    ) -> None:
        self.client = client
        self.catalog = catalog
        self.settings = settings
        self.start_time_matrix = Strategy("start_time_matrix", self._probe_matrix)
        self.public_event_list = Strategy("public_event_list", self._probe_events)

    def chain_for(self, kind: ItemKind) -> list[Strategy]:
        if kind == "event":
            return [self.public_event_list, self.start_time_matrix]
        return [self.start_time_matrix, self.public_event_list]

    def validate_range(self, date_from: Any, date_to: Any = None) -> tuple[date, date]:
        start = parse_date(date_from)
        if start is None:
            raise ValidationError(
                "date_from must be an ISO date (YYYY-MM-DD)",
                code="invalid_date_from",
                details={"date_from": str(date_from)},
            )
        if date_to is None or date_to == "":
            end = start + timedelta(days=self.settings.availability_window_days)
        else:
            parsed_end = parse_date(date_to)
            if parsed_end is None:
                raise ValidationError(
                    "date_to must be an ISO date (YYYY-MM-DD)",
                    code="invalid_date_to",
                    details={"date_to": str(date_to)},
                )
            end = parsed_end
        if start > end:
            raise ValidationError(
                "date_from must not be after date_to",
                code="invalid_date_range",
                details={"date_from": start.isoformat(), "date_to": end.isoformat()},
            )
        return start, end

    async def resolve(
        self,
        item_id: str,
        date_from: Any,
        date_to: Any = None,
        *,
        performer_id: str | None = None,
        party_size: int = 1,
    ) -> AvailabilityResult:
        if not str(item_id or "").strip():
            raise ValidationError("item_id is required", code="missing_item_id")
        if party_size < 1:
            raise ValidationError("party_size must be >= 1", code="invalid_party_size")
        start, end = self.validate_range(date_from, date_to)
        kind = self.catalog.known_kind(str(item_id)) or "service"
        query = AvailabilityQuery(
            item_id=str(item_id),
            date_from=start,
            date_to=end,
            kind=kind,
            performer_id=str(performer_id) if performer_id else None,
            party_size=party_size,
        )
        strategy_name, slots = await self._run_chain(query, self.chain_for(kind))
        windows = build_windows(slots)
        logger.info(
            "availability_resolved",
            extra={
                "item_id": query.item_id,
                "kind": kind,
                "strategy": strategy_name,
                "dates": len(windows),
            },
        )
        return AvailabilityResult(
            item_id=query.item_id,
            kind=kind,
            strategy=strategy_name,
            date_from=start,
            date_to=end,
            windows=windows,
        )

    async def resolve_category(
        self,
        category_id: str,
        date_from: Any,
        date_to: Any = None,
        *,
        performer_id: str | None = None,
        party_size: int = 1,
    ) -> CategoryAvailabilityResult:
        start, end = self.validate_range(date_from, date_to)
        members = await self.catalog.category_items(category_id)
        if not members:
            raise NotFound(
                "Category has no bookable items",
                code="category_not_found",
                details={"category_id": category_id},
            )
        outcomes = await asyncio.gather(
            *(
                self.resolve(
                    member.id,
                    start,
                    end,
                    performer_id=performer_id,
                    party_size=party_size,
                )
                for member in members
            ),
            return_exceptions=True,
        )

        merged: SlotMap = {}
        failures: list[AvailabilityUnavailable] = []
        for member, outcome in zip(members, outcomes):
            if isinstance(outcome, AvailabilityUnavailable):
                failures.append(outcome)
                logger.warning(
                    "availability_category_member_failed",
                    extra={"category_id": category_id, "item_id": member.id},
                )
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            for window in outcome.windows:
                merged.setdefault(window.date, set()).update(window.times)

        if len(failures) == len(members):
            raise AvailabilityUnavailable(
                "Availability could not be determined for any item in the category",
                code="availability_unavailable",
                details={"category_id": category_id},
            ) from failures[-1]

        return CategoryAvailabilityResult(
            category_id=str(category_id),
            item_ids=[member.id for member in members],
            date_from=start,
            date_to=end,
            windows=build_windows(merged),
        )

    async def _run_chain(
        self, query: AvailabilityQuery, chain: list[Strategy]
    ) -> tuple[str | None, SlotMap]:
        applicable = [strategy for strategy in chain if strategy.applies(query)]
        attempts: list[dict[str, Any]] = []
        for index, strategy in enumerate(applicable):
            terminal = index == len(applicable) - 1
            try:
                slots = await strategy.run(query)
            except DomainException as exc:
                attempts.append(
                    {"strategy": strategy.name, "error_type": type(exc).__name__, "error": exc.message}
                )
                if terminal:
                    raise AvailabilityUnavailable(
                        "Availability is temporarily unavailable",
                        code="availability_unavailable",
                        details={"item_id": query.item_id, "attempts": attempts},
                    ) from exc
                logger.warning(
                    "availability_strategy_failed",
                    extra={
                        "item_id": query.item_id,
                        "strategy": strategy.name,
                        "error_type": type(exc).__name__,
                        "error": exc.message,
                    },
                )
                continue
            if slots or terminal:
                return strategy.name, slots
            attempts.append({"strategy": strategy.name, "result": "empty"})
            logger.info(
                "availability_strategy_empty",
                extra={"item_id": query.item_id, "strategy": strategy.name},
            )
        return None, {}

    async def _probe_matrix(self, query: AvailabilityQuery) -> SlotMap:
        result = await self.client.get_start_time_matrix(
            query.date_from.isoformat(),
            query.date_to.isoformat(),
            query.item_id,
            query.performer_id,
            query.party_size,
        )
        slots = parse_matrix(result)
        return {day: times for day, times in slots.items() if query.date_from <= day <= query.date_to}

    async def _probe_events(self, query: AvailabilityQuery) -> SlotMap:
        result = await self.client.get_event_list_public(
            query.date_from.isoformat(), query.date_to.isoformat()
        )
        return parse_events(
            result,
            query.item_id,
            date_from=query.date_from,
            date_to=query.date_to,
            performer_id=query.performer_id,
        )
