# /txpipe/core/logger.py
import hashlib
import hmac
import logging

import sentry_sdk
import structlog
from prometheus_client import Counter, Histogram
from structlog.contextvars import bind_contextvars, unbind_contextvars

from txpipe.core.config import settings

# --- Prometheus Metrics ---
SUBMISSION_ATTEMPTS = Counter("txpipe_submission_attempts_total", "Submission attempts by outcome", ["outcome"])
NONCE_RECONCILE_MISSES = Counter("txpipe_nonce_reconcile_miss_total", "Nonce queries that fell back to the local value")
EXPIRY_REBUILDS = Counter("txpipe_expiry_rebuilds_total", "Transactions rebuilt after block reference expiry")
WARMUPS = Counter("txpipe_warmup_total", "Signer warmup calls", ["result"])
SIGNING_SECONDS = Histogram("txpipe_signing_seconds", "Signer latency per digest")
ENDPOINT_LATENCY = Histogram("txpipe_endpoint_latency_seconds", "Endpoint submit latency")
ERRORS_LOGGED = Counter("txpipe_errors_logged_total", "Total number of errors logged", ["level"])

SIGNING_KEY = (
    settings.LOG_SIGNING_KEY.get_secret_value().encode()
    if settings.LOG_SIGNING_KEY
    else b"insecure"
)


def sign_payload(payload: str) -> str:
    """HMAC-SHA256 over a serialized audit payload."""
    return hmac.new(SIGNING_KEY, payload.encode(), hashlib.sha256).hexdigest()


def count_errors(logger, method_name: str, event_dict: dict) -> dict:
    """Structlog processor feeding the error counter; passes the event through."""
    if method_name in ("error", "critical", "exception"):
        ERRORS_LOGGED.labels(method_name).inc()
    return event_dict


def configure_logging():
    if settings.SENTRY_DSN:
        sentry_sdk.init(dsn=settings.SENTRY_DSN.get_secret_value(), traces_sample_rate=1.0)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            count_errors,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(settings.LOG_LEVEL)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    return structlog.get_logger(name)


def bind_sender(address: str):
    bind_contextvars(sender=address)


def unbind_sender():
    unbind_contextvars("sender")


configure_logging()
log = get_logger("txpipe.system")
