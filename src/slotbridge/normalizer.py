"""
Normalizers for heterogeneous scheduling-provider records.

Field names differ between provider configurations and between the
admin and public procedure families, so every extraction walks a
prioritized list of candidate keys and takes the first non-empty value.
Raw provider dictionaries stop here; everything downstream consumes
``BookableItem`` and ``Performer``.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
import logging
import re
from typing import Any, Iterable, Mapping, Sequence

from .models import BookableItem, ItemKind, KindSource, Location, Performer

logger = logging.getLogger(__name__)

ID_KEYS = ("id", "event_id", "service_id")
NAME_KEYS = ("name", "title", "service_name", "event_name")
DESCRIPTION_KEYS = ("description", "long_description", "details", "text")
PRICE_KEYS = ("price", "default_price", "cost", "pricing.price")
DURATION_KEYS = ("duration", "length", "duration_minutes", "event_duration")
CATEGORY_NAME_KEYS = (
    "category.name",
    "category.title",
    "unit_group_name",
    "category_name",
    "group_name",
    "category",
)
CATEGORY_ID_KEYS = ("category_id", "unit_group_id", "category.id")
IMAGE_KEYS = ("image", "image_url", "picture_url", "picture_path")
KIND_FLAG_KEYS = ("kind", "type", "event_type", "booking_type")
EVENT_FLAG_KEYS = ("is_event", "is_class", "is_group_event")
OCCURRENCE_KEYS = (
    "start_date",
    "start_datetime",
    "event_date",
    "date",
    "datetime",
    "occurrences",
    "recurring_settings",
)

EVENT_FLAG_VALUES = {"event", "class", "group", "group_event", "course"}
SERVICE_FLAG_VALUES = {"service", "appointment", "slot", "individual"}
TRUE_STRINGS = {"1", "true", "yes", "on"}
FALSE_STRINGS = {"0", "false", "no", "off"}


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return not value
    return False


def _lookup(raw: Mapping[str, Any], key: str) -> Any:
    current: Any = raw
    for part in key.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def first_value(raw: Mapping[str, Any], keys: Sequence[str], default: Any = None) -> Any:
    """Return the first non-empty value among ``keys`` (dotted paths allowed)."""
    for key in keys:
        value = _lookup(raw, key)
        if not _is_empty(value):
            return value
    return default


def parse_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
    return None


def as_records(result: Any) -> list[dict[str, Any]]:
    """Flatten a provider collection (list or id-keyed map) into dict records."""
    if isinstance(result, Mapping):
        records = []
        for key, value in result.items():
            if isinstance(value, Mapping):
                record = dict(value)
                record.setdefault("id", key)
                records.append(record)
        return records
    if isinstance(result, list):
        return [dict(item) for item in result if isinstance(item, Mapping)]
    return []


def _optional_str(value: Any) -> str | None:
    return None if _is_empty(value) else str(value)


def _format_price(value: Any) -> str:
    if _is_empty(value):
        return ""
    try:
        return f"{Decimal(str(value).strip()):.2f}"
    except (InvalidOperation, ValueError):
        return str(value).strip()


def _parse_duration(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    match = re.match(r"\s*(\d+)", str(value))
    return int(match.group(1)) if match else None


def _image_url(raw: Mapping[str, Any]) -> str | None:
    value = first_value(raw, IMAGE_KEYS)
    if isinstance(value, Mapping):
        value = value.get("url")
    return str(value) if not _is_empty(value) else None


def _status(raw: Mapping[str, Any]) -> str:
    status = raw.get("status")
    if isinstance(status, str) and status.strip().lower() in {"online", "offline"}:
        return status.strip().lower()
    for key in ("active", "is_active"):
        flag = parse_bool(raw.get(key))
        if flag is not None:
            return "online" if flag else "offline"
    return "online"


def _location(raw: Mapping[str, Any]) -> Location | None:
    value = raw.get("location")
    online_url = _optional_str(
        first_value(raw, ("online_url", "meeting_url", "location.online_url"))
    )
    if isinstance(value, Mapping):
        return Location(
            name=_optional_str(first_value(value, ("name", "title"))),
            address=_optional_str(first_value(value, ("address", "address1", "street"))),
            city=_optional_str(first_value(value, ("city",))),
            zip=_optional_str(first_value(value, ("zip", "postal_code"))),
            country=_optional_str(first_value(value, ("country", "country_id"))),
            online_url=online_url,
        )
    if isinstance(value, str) and value.strip():
        return Location(name=value.strip(), online_url=online_url)
    if online_url:
        return Location(online_url=online_url)
    return None


def _unit_ids(raw: Mapping[str, Any]) -> tuple[str, ...]:
    unit_map = raw.get("unit_map")
    if isinstance(unit_map, Mapping):
        return tuple(str(key) for key in unit_map)
    units = raw.get("units") or raw.get("unit_ids")
    if isinstance(units, list):
        return tuple(str(unit.get("id") if isinstance(unit, Mapping) else unit) for unit in units)
    return ()


def infer_kind(
    raw: Mapping[str, Any],
    *,
    name: str,
    description: str,
    keywords: Iterable[str],
) -> tuple[ItemKind, KindSource]:
    """
    Decide whether an item is a fixed-occurrence event or a flexible service.

    Order: explicit flag field, keyword match on name/description,
    presence of occurrence-date fields, then ``service``. The answer is a
    hint, which is why overrides take precedence in ``normalize_item``.
    """
    for key in KIND_FLAG_KEYS:
        value = raw.get(key)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in EVENT_FLAG_VALUES:
                return "event", "flag"
            if lowered in SERVICE_FLAG_VALUES:
                return "service", "flag"
    for key in EVENT_FLAG_KEYS:
        flag = parse_bool(raw.get(key))
        if flag is not None:
            return ("event" if flag else "service"), "flag"

    text = f"{name} {description}".lower()
    for keyword in keywords:
        keyword = keyword.strip().lower()
        if keyword and re.search(rf"\b{re.escape(keyword)}(e?s)?\b", text):
            return "event", "keyword"

    if any(not _is_empty(raw.get(key)) for key in OCCURRENCE_KEYS):
        return "event", "occurrence"
    return "service", "default"


def normalize_item(
    raw: Mapping[str, Any],
    source: str,
    *,
    keywords: Iterable[str] = (),
    overrides: Mapping[str, str] | None = None,
) -> BookableItem | None:
    """Convert one provider record into a ``BookableItem``; ``None`` if it has no id."""
    item_id = first_value(raw, ID_KEYS)
    if _is_empty(item_id):
        logger.warning("catalog_record_without_id", extra={"source": source})
        return None
    item_id = str(item_id)
    name = str(first_value(raw, NAME_KEYS, ""))
    description = str(first_value(raw, DESCRIPTION_KEYS, ""))

    override = (overrides or {}).get(item_id)
    if override in ("service", "event"):
        kind: ItemKind = override  # type: ignore[assignment]
        kind_source: KindSource = "override"
    else:
        kind, kind_source = infer_kind(raw, name=name, description=description, keywords=keywords)

    category_name = first_value(raw, CATEGORY_NAME_KEYS, "General")
    if isinstance(category_name, Mapping):
        category_name = first_value(category_name, ("name", "title"), "General")
    category_id = first_value(raw, CATEGORY_ID_KEYS)

    item = BookableItem(
        id=item_id,
        name=name,
        description=description,
        price=_format_price(first_value(raw, PRICE_KEYS)),
        duration=_parse_duration(first_value(raw, DURATION_KEYS)),
        category_id=str(category_id) if category_id is not None else None,
        category_name=str(category_name),
        image_url=_image_url(raw),
        status=_status(raw),  # type: ignore[arg-type]
        kind=kind,
        kind_source=kind_source,
        location=_location(raw),
        unit_ids=_unit_ids(raw),
        source=source,
        raw=dict(raw),
    )
    logger.debug(
        "catalog_item_classified",
        extra={"item_id": item_id, "kind": kind, "kind_source": kind_source, "source": source},
    )
    return item


def normalize_items(
    result: Any,
    source: str,
    *,
    keywords: Iterable[str] = (),
    overrides: Mapping[str, str] | None = None,
) -> list[BookableItem]:
    keywords = tuple(keywords)
    items = []
    for record in as_records(result):
        item = normalize_item(record, source, keywords=keywords, overrides=overrides)
        if item is not None:
            items.append(item)
    return items


def normalize_performer(
    raw: Mapping[str, Any], service_ids: Iterable[str] = ()
) -> Performer | None:
    performer_id = first_value(raw, ("id", "unit_id", "performer_id"))
    if _is_empty(performer_id):
        return None
    own_services = raw.get("services")
    if isinstance(own_services, (list, Mapping)) and not service_ids:
        service_ids = [str(key) for key in own_services]
    return Performer(
        id=str(performer_id),
        name=str(first_value(raw, ("name", "title", "full_name"), "")),
        email=_optional_str(first_value(raw, ("email",))),
        phone=_optional_str(first_value(raw, ("phone",))),
        description=str(first_value(raw, ("description",), "")),
        service_ids=tuple(service_ids),
        raw=dict(raw),
    )
