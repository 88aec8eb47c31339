from punch_relay.models.attendance import (
    AttendanceEvent,
    DeliveryOutcome,
    PunchType,
    QueueItem,
    TimestampSource,
    VerificationMethod,
)
from punch_relay.models.link import ALLOWED_TRANSITIONS, LinkState, can_transition

__all__ = [
    "AttendanceEvent",
    "DeliveryOutcome",
    "PunchType",
    "QueueItem",
    "TimestampSource",
    "VerificationMethod",
    "LinkState",
    "ALLOWED_TRANSITIONS",
    "can_transition",
]
