import json
import logging
import os
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

_logger = logging.getLogger("leadcapture")
_initialized = False

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# extra={...} keys emitted by the engine, gateway, workers and dispatcher
STRUCTURED_KEYS = ("turn", "model_call", "sweep", "digest", "notification", "security")


class StructuredFormatter(logging.Formatter):
    """Appends any structured payload passed through ``extra`` as compact JSON."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        payload = {key: getattr(record, key) for key in STRUCTURED_KEYS if hasattr(record, key)}
        if payload:
            line = f"{line} | {json.dumps(payload, default=str, sort_keys=True)}"
        return line


def init_monitoring() -> None:
    global _initialized
    if _initialized:
        return

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter(LOG_FORMAT))
    logging.basicConfig(level=getattr(logging, log_level, logging.INFO), handlers=[handler])

    dsn = os.getenv("SENTRY_DSN")
    if dsn:
        sentry_sdk.init(
            dsn=dsn,
            integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0")),
            environment=os.getenv("SENTRY_ENVIRONMENT", os.getenv("ENVIRONMENT", "development")),
        )
        _logger.info("Sentry initialized")
    else:
        _logger.info("Sentry DSN not provided; skipping initialization")

    _initialized = True


def capture_exception(exc: BaseException, **context: Any) -> None:
    """Log ``exc`` and forward it to Sentry, tagged with tenant/lead context when given."""
    _logger.error("Exception captured: %s", context or "", exc_info=exc)
    if not sentry_sdk.get_client().is_active():
        return
    with sentry_sdk.new_scope() as scope:
        for key, value in context.items():
            if value is not None:
                scope.set_tag(key, str(value))
        sentry_sdk.capture_exception(exc)
