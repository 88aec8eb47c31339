class PunchRelayError(Exception):
    """Base class for errors raised by the relay"""


class ConfigError(PunchRelayError, ValueError):
    """Invalid configuration key or value"""


class LinkUnavailableError(PunchRelayError):
    """The device link is not in the Connected state"""
