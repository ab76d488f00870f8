"""Structured JSON logging for the API process and the Celery workers."""

import logging
import sys

from pythonjsonlogger import jsonlogger

from unitpay.core.config import settings

REDACTED = "***"

_QUIET_LOGGERS = (
    "uvicorn.access",
    "httpx",
    "sqlalchemy.engine",
    "web3.providers",
    "web3.manager",
    "celery.worker.strategy",
)


class SecretRedactingFilter(logging.Filter):
    """Mask the operator key and PayPal credentials if they reach a log line."""

    def __init__(self, secrets: list[str]) -> None:
        super().__init__()
        self.secrets = [s for s in secrets if s]

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in self.secrets:
            redacted = redacted.replace(secret, REDACTED)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def build_handler(component: str) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={"asctime": "timestamp", "levelname": "level"},
        static_fields={
            "service": settings.app_name,
            "component": component,
            "network": settings.chain_network,
        },
    ))
    handler.addFilter(SecretRedactingFilter([
        settings.operator_private_key,
        settings.paypal_client_secret,
    ]))
    return handler


def setup_logging(component: str = "api", level: str | None = None) -> None:
    """Route every log record through one JSON handler tagged with ``component``."""
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(build_handler(component))
    root.setLevel((level or settings.log_level).upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
