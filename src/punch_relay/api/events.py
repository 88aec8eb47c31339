import json
from queue import Empty

from flask import Blueprint, Response, current_app, stream_with_context

from punch_relay.shared.logger import app_logger

bp = Blueprint("live_events", __name__, url_prefix="/")

HEARTBEAT_SECONDS = 5


@bp.route("/live-events")
def live_events():
    """
    SSE endpoint for live pipeline updates.
    Sends a snapshot of history, stats and link state first, then every
    published message as it happens.
    """
    pipeline = current_app.extensions["punch_relay"]

    def event_stream():
        subscription = pipeline.subscribe()
        try:
            snapshot = json.dumps(subscription.snapshot, ensure_ascii=False, default=str)
            yield f"event: snapshot\ndata: {snapshot}\n\n"
            app_logger.info("[SSE] Client connected to /live-events")

            while True:
                try:
                    data = subscription.queue.get(timeout=HEARTBEAT_SECONDS)
                    topic = json.loads(data).get("topic", "message")
                    yield f"event: {topic}\ndata: {data}\n\n"
                except Empty:
                    # Keep the connection alive
                    yield "event: heartbeat\ndata: ping\n\n"
        except GeneratorExit:
            app_logger.info("[SSE] Client disconnected from /live-events")
        finally:
            pipeline.unsubscribe(subscription)

    return Response(stream_with_context(event_stream()), mimetype="text/event-stream")
