import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from punch_relay.exceptions import ConfigError
from punch_relay.models import AttendanceEvent, DeliveryOutcome
from punch_relay.services.subject_directory import SubjectDirectory
from punch_relay.shared.logger import app_logger

# Statuses meaning "this body shape is not accepted", worth trying the next one
SHAPE_REJECTED_STATUSES = {400, 415, 422}


@dataclass(frozen=True)
class PayloadShape:
    """A named, pure mapping from an event to a request body"""

    name: str
    build: Callable[[AttendanceEvent, str], Dict[str, Any]]


def _canonical(event: AttendanceEvent, display_name: str) -> Dict[str, Any]:
    return {
        "subjectId": event.subject_id,
        "punchTime": event.occurred_at.strftime("%H:%M:%S"),
        "punchDate": event.occurred_at.strftime("%Y-%m-%d"),
        "deviceAddress": event.source_address,
        "displayName": display_name,
    }


def _snake_case(event: AttendanceEvent, display_name: str) -> Dict[str, Any]:
    return {
        "subject_id": event.subject_id,
        "punch_time": event.occurred_at.strftime("%H:%M:%S"),
        "punch_date": event.occurred_at.strftime("%Y-%m-%d"),
        "device_address": event.source_address,
        "display_name": display_name,
    }


def _legacy_flat(event: AttendanceEvent, display_name: str) -> Dict[str, Any]:
    return {
        "userId": event.subject_id,
        "timestamp": event.occurred_at.strftime("%Y-%m-%d %H:%M:%S"),
        "ip": event.source_address,
        "name": display_name,
    }


PAYLOAD_SHAPES: Dict[str, PayloadShape] = {
    shape.name: shape
    for shape in (
        PayloadShape("canonical", _canonical),
        PayloadShape("snake_case", _snake_case),
        PayloadShape("legacy_flat", _legacy_flat),
    )
}


def resolve_shapes(names: Sequence[str]) -> List[PayloadShape]:
    unknown = [name for name in names if name not in PAYLOAD_SHAPES]
    if unknown:
        raise ConfigError(
            f"Unknown payload shape(s): {', '.join(unknown)}. "
            f"Available: {', '.join(PAYLOAD_SHAPES)}"
        )
    return [PAYLOAD_SHAPES[name] for name in names]


def _preview(value: Any, limit: int) -> str:
    try:
        text = value if isinstance(value, str) else json.dumps(value, default=str)
    except (TypeError, ValueError):
        text = str(value)
    text = text.strip()
    if len(text) > limit:
        return text[:limit] + "...[truncated]"
    return text


class SinkClient:
    """Pushes attendance events to the external HTTP sink.

    Shapes are tried in order until one is accepted; only a shape rejection
    (400/415/422) moves on to the next shape. Timeouts, transport errors and
    other statuses fail the attempt. The last accepted shape is tried first
    on later deliveries.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        shapes: Sequence[str] = ("canonical",),
        api_key: str = "",
        directory: Optional[SubjectDirectory] = None,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.api_key = api_key
        self.shapes = resolve_shapes(shapes)
        self.directory = directory or SubjectDirectory()
        self.session = session or requests.Session()
        self._preferred: Optional[str] = None

    def deliver(self, event: AttendanceEvent, attempt: int = 1) -> DeliveryOutcome:
        if not self.url:
            app_logger.error("[SINK] Sink URL is not configured")
            return DeliveryOutcome(
                success=False,
                payload_used={},
                response_or_error="SINK_URL is not configured",
                attempt=attempt,
            )

        display_name = self.directory.display_name(event.subject_id)
        outcome = None
        for shape in self._ordered_shapes():
            payload = shape.build(event, display_name)
            outcome = self._post(payload, shape.name, attempt)
            if outcome.success:
                if self._preferred != shape.name:
                    app_logger.info(f"[SINK] Sink accepted payload shape '{shape.name}'")
                self._preferred = shape.name
                return outcome
            if outcome.status_code not in SHAPE_REJECTED_STATUSES:
                return outcome
            app_logger.warning(
                f"[SINK] Sink rejected payload shape '{shape.name}' "
                f"with status {outcome.status_code}"
            )
        return outcome

    def close(self) -> None:
        self.session.close()

    def _ordered_shapes(self) -> List[PayloadShape]:
        if not self._preferred:
            return list(self.shapes)
        return sorted(self.shapes, key=lambda shape: shape.name != self._preferred)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def _post(self, payload: Dict[str, Any], shape_name: str, attempt: int) -> DeliveryOutcome:
        headers = self._headers()
        redacted_headers = {
            key: ("***" if key.lower() in {"x-api-key", "authorization"} else value)
            for key, value in headers.items()
        }
        app_logger.info(
            f"[SINK] Request -> POST {self.url} (shape: {shape_name}, attempt: {attempt}, "
            f"headers: {redacted_headers})"
        )
        app_logger.debug(f"[SINK] Payload -> {_preview(payload, 2000)}")

        try:
            response = self.session.post(
                self.url, json=payload, headers=headers, timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            app_logger.error(f"[SINK] Timed out after {self.timeout}s: {e}")
            return DeliveryOutcome(
                success=False,
                payload_used=payload,
                response_or_error=f"Timeout after {self.timeout}s",
                attempt=attempt,
                shape=shape_name,
            )
        except requests.exceptions.RequestException as e:
            app_logger.error(f"[SINK] HTTP error during delivery: {e}")
            return DeliveryOutcome(
                success=False,
                payload_used=payload,
                response_or_error=str(e),
                attempt=attempt,
                shape=shape_name,
            )

        body = _preview(response.text or "", 1000)
        app_logger.debug(f"[SINK] Response <- Status {response.status_code}: {body}")

        success = 200 <= response.status_code < 300
        if not success:
            app_logger.warning(
                f"[SINK] Sink returned status {response.status_code}: {body}"
            )
        return DeliveryOutcome(
            success=success,
            payload_used=payload,
            response_or_error=self._response_body(response) if success else body,
            attempt=attempt,
            shape=shape_name,
            status_code=response.status_code,
        )

    @staticmethod
    def _response_body(response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text
