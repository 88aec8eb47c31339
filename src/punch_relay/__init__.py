import atexit
import logging
import os

import sentry_sdk
from dotenv import load_dotenv
from flask import Flask
from flask_cors import CORS

from punch_relay.api.control import bp as control_blueprint
from punch_relay.api.events import bp as event_blueprint
from punch_relay.config import PipelineConfig
from punch_relay.services import AttendancePipeline
from punch_relay.shared.logger import app_logger

__version__ = "0.3.0"


class EndpointFilter(logging.Filter):
    """Suppress noisy request logs for specific endpoints."""

    def __init__(self, *paths):
        super().__init__()
        self.paths = paths

    def filter(self, record):
        message = record.getMessage()
        return not any(path in message for path in self.paths)


def create_app(config=None, pipeline=None, start_services=True):
    load_dotenv()
    init_sentry()

    app = Flask(__name__)

    CORS(app,
         origins=["*"],
         allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
         methods=["GET", "POST", "PATCH", "OPTIONS"])

    # Remove polling noise from werkzeug request logs
    werkzeug_logger = logging.getLogger("werkzeug")
    werkzeug_logger.addFilter(EndpointFilter("/diagnostics", "/live-events"))

    app.register_blueprint(control_blueprint)
    app.register_blueprint(event_blueprint)

    if pipeline is None:
        pipeline = AttendancePipeline(config or PipelineConfig.from_env())
    app.extensions["punch_relay"] = pipeline

    # When the reloader is enabled, only the reloader child (== "true") runs services
    run_main_flag = os.environ.get("WERKZEUG_RUN_MAIN")
    if start_services and (run_main_flag == "true" or run_main_flag is None):
        try:
            pipeline.start()
            app.logger.info("Pipeline services started successfully")

            def cleanup_services():
                app_logger.info("Shutting down services...")
                try:
                    pipeline.stop()
                except Exception as e:
                    app_logger.error(f"Error stopping pipeline: {e}")

            atexit.register(cleanup_services)

        except Exception as e:
            app_logger.error(f"Failed to start pipeline services: {e}", exc_info=True)
    elif start_services:
        app.logger.info("Skipping service start in reloader process")

    return app


def init_sentry():
    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        return
    sentry_sdk.init(
        dsn=dsn,
        traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1")),
    )
