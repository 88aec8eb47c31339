from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from punch_relay.exceptions import ConfigError
from punch_relay.shared.logger import app_logger

bp = Blueprint("control", __name__, url_prefix="/")


def get_pipeline():
    return current_app.extensions["punch_relay"]


@bp.errorhandler(ConfigError)
def handle_config_error(error):
    app_logger.warning(f"Rejected config change: {error}")
    return jsonify({"error": str(error)}), 400


@bp.errorhandler(Exception)
def handle_unexpected_error(error):
    if isinstance(error, HTTPException):
        return error
    app_logger.error(f"Control request failed: {error}", exc_info=True)
    return jsonify({"error": str(error)}), 500


@bp.route("/diagnostics", methods=["GET"])
def diagnostics():
    return jsonify(get_pipeline().get_diagnostics())


@bp.route("/history", methods=["GET"])
def history():
    limit = request.args.get("limit", type=int)
    events = get_pipeline().get_history(limit)
    return jsonify({"data": [event.to_dict() for event in events], "count": len(events)})


@bp.route("/pipeline/pause", methods=["POST"])
def pause():
    pipeline = get_pipeline()
    pipeline.pause()
    return jsonify({"message": "Delivery paused", "diagnostics": pipeline.get_diagnostics()})


@bp.route("/pipeline/resume", methods=["POST"])
def resume():
    pipeline = get_pipeline()
    pipeline.resume()
    return jsonify({"message": "Delivery resumed", "diagnostics": pipeline.get_diagnostics()})


@bp.route("/queue/clear", methods=["POST"])
def clear_queue():
    dropped = get_pipeline().clear_queue()
    return jsonify({"message": f"Cleared {dropped} queued event(s)", "dropped": dropped})


@bp.route("/config", methods=["GET"])
def get_config():
    return jsonify(get_pipeline().config.to_dict())


@bp.route("/config", methods=["PATCH"])
def update_config():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ConfigError("Request body must be a JSON object")
    applied = get_pipeline().update_config(data)
    return jsonify({"message": "Config updated", "applied": applied})


@bp.route("/device/reinitialize", methods=["POST"])
def reinitialize_device():
    status = get_pipeline().reinitialize_link()
    return jsonify({"message": "Device link reinitialized", "link": status})


@bp.route("/device/poll", methods=["POST"])
def poll_device():
    return jsonify(get_pipeline().poll_now())
