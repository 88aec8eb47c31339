from punch_relay.events.event_stream import (
    DELIVERY_OUTCOME,
    EVENT_ADMITTED,
    LINK_STATE_CHANGED,
    QUEUE_STATUS,
    STATS_SNAPSHOT,
    SubscriberHub,
    Subscription,
)

__all__ = [
    "SubscriberHub",
    "Subscription",
    "EVENT_ADMITTED",
    "DELIVERY_OUTCOME",
    "QUEUE_STATUS",
    "LINK_STATE_CHANGED",
    "STATS_SNAPSHOT",
]
