import os
from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, List, Optional, get_origin

from punch_relay.exceptions import ConfigError


def strtobool(val):
    """Convert a string representation of truth to true (1) or false (0)."""
    val = val.lower()
    if val in ("y", "yes", "t", "true", "on", "1"):
        return 1
    elif val in ("n", "no", "f", "false", "off", "0"):
        return 0
    else:
        raise ValueError(f"invalid truth value {val!r}")


# Settings an operator may change while the pipeline is running
RUNTIME_KEYS = (
    "queue_capacity",
    "batch_size",
    "max_concurrent",
    "max_retries",
    "retry_base_delay",
    "retry_max_delay",
    "processing_delay",
    "history_capacity",
    "link_retry_base_delay",
    "link_retry_max_delay",
    "link_max_retries",
    "link_cooldown",
    "poll_interval",
)

# Keys that must stay strictly positive; everything else numeric must be >= 0
_POSITIVE_KEYS = {
    "queue_capacity",
    "batch_size",
    "max_concurrent",
    "history_capacity",
    "poll_interval",
}


@dataclass
class PipelineConfig:
    """All tunables of the relay. Durations are in seconds."""

    # Device link
    device_ip: str = "192.168.1.201"
    device_port: int = 4370
    device_password: int = 0
    device_timeout: float = 10.0
    device_force_udp: bool = False
    device_driver: str = "pyzk"
    device_field_profile: str = "pyzk"

    # External sink
    sink_url: str = ""
    sink_api_key: str = ""
    sink_timeout: float = 10.0
    sink_payload_shapes: List[str] = field(
        default_factory=lambda: ["canonical", "snake_case", "legacy_flat"]
    )

    # Delivery queue and worker pool
    queue_capacity: int = 500
    batch_size: int = 10
    max_concurrent: int = 5
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    processing_delay: float = 0.1

    # History and observers
    history_capacity: int = 200
    subscriber_queue_size: int = 100
    stats_interval: float = 30.0

    # Polling
    poll_interval: float = 60.0
    poll_backfill: bool = False
    dedup_window: int = 1000

    # Link reconnection
    link_retry_base_delay: float = 5.0
    link_retry_max_delay: float = 30.0
    link_max_retries: int = 5
    link_cooldown: float = 60.0
    realtime_channel_size: int = 1000

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "PipelineConfig":
        """Build a config from environment variables (upper-cased field names)."""
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = environ.get(f.name.upper())
            if raw is None or raw == "":
                continue
            values[f.name] = _coerce(f.name, f.type, raw)
        config = cls(**values)
        config.validate()
        return config

    def validate(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            if f.name in _POSITIVE_KEYS and value <= 0:
                raise ConfigError(f"{f.name} must be greater than 0, got {value}")
            if value < 0:
                raise ConfigError(f"{f.name} must not be negative, got {value}")
        if not self.sink_payload_shapes:
            raise ConfigError("sink_payload_shapes must name at least one shape")

    def apply_updates(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and apply a partial runtime update.

        Either every key is applied or none is. Returns the applied values.
        """
        if not isinstance(partial, dict) or not partial:
            raise ConfigError("Config update must be a non-empty object")

        unknown = sorted(set(partial) - set(RUNTIME_KEYS))
        if unknown:
            raise ConfigError(f"Keys cannot be changed at runtime: {', '.join(unknown)}")

        types = {f.name: f.type for f in fields(self)}
        coerced = {key: _coerce(key, types[key], value) for key, value in partial.items()}

        candidate = PipelineConfig(**{**asdict(self), **coerced})
        candidate.validate()

        for key, value in coerced.items():
            setattr(self, key, value)
        return coerced

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data.get("sink_api_key"):
            data["sink_api_key"] = "***"
        return data


def _coerce(name, type_hint, value):
    try:
        if type_hint is bool:
            if isinstance(value, bool):
                return value
            return bool(strtobool(str(value)))
        if type_hint is int:
            if isinstance(value, bool):
                raise ValueError("boolean is not an integer")
            if isinstance(value, float) and not value.is_integer():
                raise ValueError("expected a whole number")
            return int(value)
        if type_hint is float:
            if isinstance(value, bool):
                raise ValueError("boolean is not a number")
            return float(value)
        if get_origin(type_hint) is list:
            if isinstance(value, str):
                return [item.strip() for item in value.split(",") if item.strip()]
            return [str(item) for item in value]
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r} ({e})") from e
