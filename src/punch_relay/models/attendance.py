from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class VerificationMethod(str, Enum):
    """How the subject proved their identity at the terminal"""

    PASSWORD = "Password"
    FINGERPRINT = "Fingerprint"
    CARD = "Card"
    FACE = "Face"
    FINGERPRINT_OR_PASSWORD = "FingerprintOrPassword"
    UNKNOWN = "Unknown"


class PunchType(str, Enum):
    """What the punch means for the subject's timesheet"""

    CHECK_IN = "CheckIn"
    CHECK_OUT = "CheckOut"
    BREAK_OUT = "BreakOut"
    BREAK_IN = "BreakIn"
    OVERTIME_IN = "OvertimeIn"
    OVERTIME_OUT = "OvertimeOut"
    UNKNOWN = "Unknown"


class TimestampSource:
    """Where occurred_at came from"""

    DEVICE = "device"
    SERVER = "server"


@dataclass(frozen=True)
class AttendanceEvent:
    """A normalized punch. Immutable once created by the normalizer."""

    id: str
    subject_id: str
    occurred_at: datetime
    verification_method: VerificationMethod
    punch_type: PunchType
    source_address: str
    raw: Any = field(default=None, compare=False, repr=False)
    timestamp_source: str = TimestampSource.DEVICE

    @property
    def dedup_key(self):
        return (self.subject_id, self.occurred_at, self.punch_type)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses and stream messages"""
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "occurred_at": self.occurred_at.strftime("%Y-%m-%d %H:%M:%S"),
            "verification_method": self.verification_method.value,
            "punch_type": self.punch_type.value,
            "source_address": self.source_address,
            "timestamp_source": self.timestamp_source,
            "raw": _jsonable(self.raw),
        }


@dataclass
class QueueItem:
    """An event waiting in the delivery queue"""

    event: AttendanceEvent
    enqueued_at: datetime
    attempt_count: int = 0
    queue_id: int = 0


@dataclass
class DeliveryOutcome:
    """Result of one delivery attempt against the sink"""

    success: bool
    payload_used: Dict[str, Any]
    response_or_error: Any
    attempt: int
    shape: str = ""
    status_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "payload_used": self.payload_used,
            "response_or_error": _jsonable(self.response_or_error),
            "attempt": self.attempt,
            "shape": self.shape,
            "status_code": self.status_code,
        }


def _jsonable(value):
    """Best-effort conversion of opaque device/sink values for JSON output"""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "__dict__"):
        return {
            k: _jsonable(v) for k, v in vars(value).items() if not k.startswith("_")
        }
    return str(value)
