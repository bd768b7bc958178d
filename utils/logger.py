"""Centralized logging with rotation and per-request correlation ids."""
import logging
import os
import uuid
from logging.handlers import RotatingFileHandler

from flask import g, has_request_context, request


class RequestContextFilter(logging.Filter):
    """Stamp every record with the current request id ("-" outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = getattr(g, "request_id", "-") if has_request_context() else "-"
        return True


def assign_request_id() -> None:
    g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]


def init_logging(app) -> logging.Logger:
    log_dir = app.config.get("LOG_DIR") or os.path.join(app.instance_path, "logs")
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "ward_watch.log")

    level_name = (app.config.get("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(request_id)s | %(name)s | %(module)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    context_filter = RequestContextFilter()

    file_handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(context_filter)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(context_filter)

    app.logger.handlers = [file_handler, stream_handler]
    app.logger.setLevel(level)
    app.logger.propagate = False

    # Module loggers (used outside an app context) share the same handlers.
    utils_logger = logging.getLogger("utils")
    utils_logger.handlers = [file_handler, stream_handler]
    utils_logger.setLevel(level)
    utils_logger.propagate = False

    app.logger.info("Logging initialized", extra={"log_path": log_path})
    return app.logger
