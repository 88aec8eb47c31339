"""Turn raw terminal records into AttendanceEvent objects.

Normalization never rejects a record: unknown codes map to ``Unknown`` and
a missing or unparsable timestamp falls back to the current server time, so
malformed punches still show up in history.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Mapping, Optional, Sequence

from dateutil import parser as date_parser

from punch_relay.exceptions import ConfigError
from punch_relay.models import (
    AttendanceEvent,
    PunchType,
    TimestampSource,
    VerificationMethod,
)
from punch_relay.shared.logger import app_logger

DEFAULT_VERIFICATION_CODES = {
    0: VerificationMethod.PASSWORD,
    1: VerificationMethod.FINGERPRINT,
    2: VerificationMethod.CARD,
    3: VerificationMethod.FACE,
    4: VerificationMethod.FINGERPRINT_OR_PASSWORD,
}

DEFAULT_PUNCH_CODES = {
    0: PunchType.CHECK_IN,
    1: PunchType.CHECK_OUT,
    2: PunchType.BREAK_OUT,
    3: PunchType.BREAK_IN,
    4: PunchType.OVERTIME_IN,
    5: PunchType.OVERTIME_OUT,
}

UNKNOWN_SUBJECT = "unknown"

# Epoch values above this are milliseconds (1e11 seconds is year 5138)
_EPOCH_MS_THRESHOLD = 1e11

# "Tue Oct 15 2024 08:30:00 GMT+0700 (Indochina Time)" -> drop zone suffixes
_ZONE_NAME_SUFFIX = re.compile(r"\s*\([^()]*\)\s*$")
_GMT_OFFSET_SUFFIX = re.compile(r"\s*(?:GMT|UTC)\s*(?:[+-]\d{1,2}:?\d{2})?\s*$", re.I)
_NUMERIC = re.compile(r"^\d+(?:\.\d+)?$")


@dataclass(frozen=True)
class FieldProfile:
    """Where a firmware variant keeps each value in its raw records"""

    name: str
    subject_fields: Sequence[str]
    timestamp_fields: Sequence[str]
    verification_fields: Sequence[str]
    punch_fields: Sequence[str]
    verification_codes: Mapping[int, VerificationMethod] = field(
        default_factory=lambda: dict(DEFAULT_VERIFICATION_CODES)
    )
    punch_codes: Mapping[int, PunchType] = field(
        default_factory=lambda: dict(DEFAULT_PUNCH_CODES)
    )


FIELD_PROFILES: Dict[str, FieldProfile] = {
    # pyzk Attendance objects: status carries the verify mode, punch the state
    "pyzk": FieldProfile(
        name="pyzk",
        subject_fields=("user_id", "uid"),
        timestamp_fields=("timestamp",),
        verification_fields=("status",),
        punch_fields=("punch",),
    ),
    # zkteco-js style dictionaries from bulk and realtime reads
    "zkteco-js": FieldProfile(
        name="zkteco-js",
        subject_fields=("user_id", "userId", "uid"),
        timestamp_fields=("record_time", "attTime", "timestamp"),
        verification_fields=("type", "verified"),
        punch_fields=("state", "status"),
    ),
    "generic": FieldProfile(
        name="generic",
        subject_fields=("subjectId", "subject_id", "user_id", "userId"),
        timestamp_fields=("occurredAt", "timestamp", "time"),
        verification_fields=("verificationType", "verification", "verified"),
        punch_fields=("status", "punchType", "punch"),
    ),
}


def get_field_profile(name: str) -> FieldProfile:
    try:
        return FIELD_PROFILES[name]
    except KeyError:
        raise ConfigError(
            f"Unknown device field profile '{name}'. "
            f"Available: {', '.join(sorted(FIELD_PROFILES))}"
        ) from None


def normalize(
    raw: Any,
    source_address: str,
    profile: Optional[FieldProfile] = None,
    now: Optional[datetime] = None,
) -> AttendanceEvent:
    """Map a raw device record to an AttendanceEvent. Never raises."""
    profile = profile or FIELD_PROFILES["pyzk"]

    # Each field has its own guard so one bad value keeps the others
    subject_id = _read_field(raw, profile.subject_fields, _parse_subject, UNKNOWN_SUBJECT)
    occurred_at = _read_field(raw, profile.timestamp_fields, parse_timestamp, None)
    verification = _read_field(
        raw,
        profile.verification_fields,
        lambda value: profile.verification_codes.get(_parse_code(value)),
        VerificationMethod.UNKNOWN,
    )
    punch = _read_field(
        raw,
        profile.punch_fields,
        lambda value: profile.punch_codes.get(_parse_code(value)),
        PunchType.UNKNOWN,
    )

    timestamp_source = TimestampSource.DEVICE
    if occurred_at is None:
        occurred_at = (now or datetime.now()).replace(microsecond=0)
        timestamp_source = TimestampSource.SERVER
        app_logger.warning(
            f"Record for subject {subject_id} has no usable timestamp, using server time"
        )

    return AttendanceEvent(
        id=make_event_id(occurred_at),
        subject_id=subject_id,
        occurred_at=occurred_at,
        verification_method=verification,
        punch_type=punch,
        source_address=source_address or "",
        raw=raw,
        timestamp_source=timestamp_source,
    )


def make_event_id(occurred_at: datetime) -> str:
    # Random suffix keeps punches with identical timestamps apart
    return f"{occurred_at.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:12]}"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse device timestamps into naive local datetimes.

    Accepts datetime objects, epoch seconds or milliseconds, ISO-8601
    strings and free-text dates with a trailing zone annotation.
    Returns None when nothing usable is found.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _to_naive_local(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)):
        return _from_epoch(value)
    if isinstance(value, bytes):
        value = value.decode(errors="ignore")
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None
    if _NUMERIC.match(text):
        return _from_epoch(float(text))

    try:
        iso_text = text[:-1] + "+00:00" if text.endswith("Z") else text
        return _to_naive_local(datetime.fromisoformat(iso_text))
    except (ValueError, OverflowError):
        pass

    text = _ZONE_NAME_SUFFIX.sub("", text)
    text = _GMT_OFFSET_SUFFIX.sub("", text)
    try:
        return _to_naive_local(date_parser.parse(text))
    except (ValueError, OverflowError) as e:
        app_logger.debug(f"Unparsable timestamp {value!r}: {e}")
        return None


def _from_epoch(value: float) -> Optional[datetime]:
    if value <= 0:
        return None
    if value > _EPOCH_MS_THRESHOLD:
        value = value / 1000.0
    try:
        return datetime.fromtimestamp(value)
    except (OverflowError, OSError, ValueError):
        return None


def _to_naive_local(value: datetime) -> Optional[datetime]:
    if value.tzinfo is None:
        return value
    try:
        return value.astimezone().replace(tzinfo=None)
    except (OverflowError, OSError, ValueError) as e:
        app_logger.debug(f"Timestamp {value!r} out of local range: {e}")
        return None


def _read_field(raw: Any, candidates: Sequence[str], parse, default: Any) -> Any:
    try:
        value = parse(_first_value(raw, candidates))
    except Exception as e:
        app_logger.warning(f"Could not read {candidates[0]} from raw record {raw!r}: {e}")
        return default
    return default if value is None else value


def _first_value(raw: Any, candidates: Sequence[str]) -> Any:
    for name in candidates:
        if isinstance(raw, Mapping):
            value = raw.get(name)
        else:
            value = getattr(raw, name, None)
        if value is not None and value != "":
            return value
    return None


def _parse_subject(value: Any) -> str:
    if value is None:
        return UNKNOWN_SUBJECT
    if isinstance(value, bytes):
        value = value.split(b"\x00")[0].decode(errors="ignore")
    text = str(value).strip()
    return text or UNKNOWN_SUBJECT


def _parse_code(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
