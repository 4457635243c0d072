from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Tuple, Type

logger = logging.getLogger(__name__)


class DailyStatus(Enum):
    NOT_STARTED = "Not Started"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"


class WtpStatus(Enum):
    LOCKED = "Locked"
    AVAILABLE = "Available"
    CLEARED = "Cleared"


# Outskirts and Core share label text but are tracked independently.
class OutskirtsStatus(Enum):
    NOT_STARTED = "Not Started"
    CLEARED = "Cleared"
    SKIPPED = "Skipped"


class CoreStatus(Enum):
    NOT_STARTED = "Not Started"
    CLEARED = "Cleared"
    SKIPPED = "Skipped"


class GoldenGoose(Enum):
    INACTIVE = "Inactive"
    ACTIVE = "Active"


@dataclass(frozen=True)
class FieldDef:
    key: str
    label: str
    enum: Type[Enum]
    column: str
    default: Enum

    @property
    def labels(self) -> List[str]:
        return [member.value for member in self.enum]


FIELD_DEFS: Tuple[FieldDef, ...] = (
    FieldDef("daily", "Daily", DailyStatus, "daily_status", DailyStatus.NOT_STARTED),
    FieldDef("wtp", "WTP", WtpStatus, "wtp", WtpStatus.LOCKED),
    FieldDef("sdn_outskirts", "SDN Outskirts", OutskirtsStatus, "sdn_outskirts", OutskirtsStatus.NOT_STARTED),
    FieldDef("sdn_core", "SDN Core", CoreStatus, "sdn_core", CoreStatus.NOT_STARTED),
    FieldDef("golden_goose", "Golden Goose", GoldenGoose, "golden_active", GoldenGoose.INACTIVE),
)
FIELD_BY_KEY: Dict[str, FieldDef] = {definition.key: definition for definition in FIELD_DEFS}
FIELD_KEYS: Tuple[str, ...] = tuple(FIELD_BY_KEY)

TIMED_FLAG_FIELD = "golden_goose"
TIMED_FLAG_COLUMN = "golden_started_at"
TIMED_FLAG_DURATION = timedelta(days=7)


def default_values() -> Dict[str, Enum]:
    return {definition.key: definition.default for definition in FIELD_DEFS}


def normalize_label_key(value: Any) -> str:
    return str(value or "").strip().lower().replace(" ", "").replace("-", "").replace("_", "")


def coerce_value(field: str, value: Any) -> Enum:
    """Resolve ``value`` to a member of ``field``'s own enumeration.

    Accepts the member itself, its display label or stored code, and for the
    timed flag a plain bool. Members of a different enumeration are rejected
    even when their label text matches.
    """
    definition = FIELD_BY_KEY[field]
    enum_type = definition.enum
    if isinstance(value, enum_type):
        return value
    if isinstance(value, Enum):
        raise ValueError(f"{value!r} is not a valid {definition.label} value")
    if isinstance(value, bool):
        if enum_type is GoldenGoose:
            return GoldenGoose.ACTIVE if value else GoldenGoose.INACTIVE
        raise ValueError(f"{definition.label} does not accept a boolean")
    key = normalize_label_key(value)
    if key:
        for member in enum_type:
            if key in {normalize_label_key(member.value), normalize_label_key(member.name)}:
                return member
    raise ValueError(f"{value!r} is not a valid {definition.label} value")


def stored_value(member: Enum) -> Any:
    if isinstance(member, GoldenGoose):
        return member is GoldenGoose.ACTIVE
    return member.name.lower()


def decode_value(definition: FieldDef, raw: Any) -> Enum:
    if raw is None:
        return definition.default
    if definition.enum is GoldenGoose and not isinstance(raw, str):
        return GoldenGoose.ACTIVE if raw else GoldenGoose.INACTIVE
    try:
        return coerce_value(definition.key, raw)
    except ValueError:
        logger.warning("Unknown stored %s value %r, using default", definition.column, raw)
        return definition.default


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning("Ignoring unparseable timestamp %r", value)
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def decode_state(record: Mapping[str, Any] | None) -> Tuple[Dict[str, Enum], datetime | None]:
    record = record or {}
    values = {definition.key: decode_value(definition, record.get(definition.column)) for definition in FIELD_DEFS}
    activated_at = None
    if values[TIMED_FLAG_FIELD] is GoldenGoose.ACTIVE:
        activated_at = parse_timestamp(record.get(TIMED_FLAG_COLUMN))
    return values, activated_at


def encode_state(values: Mapping[str, Enum], activated_at: datetime | None) -> Dict[str, Any]:
    record: Dict[str, Any] = {}
    for definition in FIELD_DEFS:
        record[definition.column] = stored_value(values.get(definition.key, definition.default))
    record[TIMED_FLAG_COLUMN] = activated_at
    return record


def expires_at(started: datetime | None) -> datetime | None:
    if started is None:
        return None
    return started + TIMED_FLAG_DURATION


def is_expired(started: datetime | None, now: datetime) -> bool:
    expiry = expires_at(started)
    return expiry is not None and now > expiry


def days_left(started: datetime | None, now: datetime) -> int | None:
    expiry = expires_at(started)
    if expiry is None:
        return None
    return (expiry.date() - now.astimezone(expiry.tzinfo).date()).days


def expiry_label(started: datetime | None, now: datetime) -> str:
    expiry = expires_at(started)
    if expiry is None:
        return "--"
    date_label = expiry.strftime("%Y-%m-%d")
    if is_expired(started, now):
        return f"Expired ({date_label})"
    remaining = days_left(started, now) or 0
    unit = "day" if remaining == 1 else "days"
    return f"{remaining} {unit} left ({date_label})"
