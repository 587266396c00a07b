import json
import logging
import os
import re
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
# structured payloads attached through ``extra=`` by the submission, narrative and crm loggers
CONTEXT_KEYS = ("submission", "narrative", "crm")

EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
TOKEN_RE = re.compile(r"\b([0-9a-f]{8})[0-9a-f]{24}\b")

_logger = logging.getLogger("leadmagnet")
_initialized = False


class ContextFormatter(logging.Formatter):
    """Appends any structured context payload on the record as compact JSON."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = {key: getattr(record, key) for key in CONTEXT_KEYS if hasattr(record, key)}
        if context:
            line = f"{line} {json.dumps(context, default=str, sort_keys=True)}"
        return line


def redact(value: Any) -> Any:
    """Mask lead emails and shorten report tokens anywhere inside ``value``."""
    if isinstance(value, str):
        return TOKEN_RE.sub(r"\1***", EMAIL_RE.sub("[email]", value))
    if isinstance(value, dict):
        return {key: redact(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def scrub_event(event: Dict[str, Any], hint: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    # shareable tokens grant report access and emails are lead data; neither leaves the service
    for key in ("extra", "request", "logentry", "breadcrumbs", "message"):
        if key in event:
            event[key] = redact(event[key])
    for exception in (event.get("exception") or {}).get("values", []):
        if "value" in exception:
            exception["value"] = redact(exception["value"])
    return event


def init_monitoring() -> None:
    global _initialized
    if _initialized:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(ContextFormatter(LOG_FORMAT))
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=getattr(logging, log_level, logging.INFO), handlers=[handler])

    dsn = os.getenv("SENTRY_DSN")
    if dsn:
        sentry_sdk.init(
            dsn=dsn,
            integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0")),
            environment=os.getenv("SENTRY_ENVIRONMENT", os.getenv("ENVIRONMENT", "development")),
            send_default_pii=False,
            before_send=scrub_event,
        )
        _logger.info("Sentry initialized")
    else:
        _logger.info("Sentry DSN not provided; skipping initialization")

    _initialized = True


def capture_exception(exc: BaseException, **tags: Any) -> None:
    """Log ``exc`` and forward it to Sentry, tagged with the failing step and variant."""
    _logger.error("Exception captured %s", redact(tags) if tags else "", exc_info=exc)
    if not sentry_sdk.get_client().is_active():
        return
    with sentry_sdk.new_scope() as scope:
        for key, value in tags.items():
            if value is not None:
                scope.set_tag(key, value)
        sentry_sdk.capture_exception(exc)
