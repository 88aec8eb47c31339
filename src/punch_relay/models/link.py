from enum import Enum


class LinkState(str, Enum):
    """Connection state of the device link"""

    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    RECONNECTING = "Reconnecting"


# Every state may fall back to DISCONNECTED on stop or reinitialize
ALLOWED_TRANSITIONS = {
    LinkState.DISCONNECTED: {LinkState.CONNECTING},
    LinkState.CONNECTING: {
        LinkState.CONNECTED,
        LinkState.RECONNECTING,
        LinkState.DISCONNECTED,
    },
    LinkState.CONNECTED: {LinkState.RECONNECTING, LinkState.DISCONNECTED},
    LinkState.RECONNECTING: {LinkState.CONNECTING, LinkState.DISCONNECTED},
}


def can_transition(current: LinkState, target: LinkState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())
