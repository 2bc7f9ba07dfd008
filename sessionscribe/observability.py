"""Logging configuration, hashing helpers and Prometheus metrics."""

from __future__ import annotations

import hashlib
import logging
import os
from typing import Optional

import structlog
from prometheus_client import Counter, Histogram

_CONFIGURED = False


def configure_logging(level: Optional[str] = None) -> None:
    """Configure structlog to emit JSON lines through the stdlib logger."""

    global _CONFIGURED
    if _CONFIGURED:
        return
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, log_level, logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def hash_identifier(value: Optional[str]) -> Optional[str]:
    """Return a stable SHA256 hash prefix for identifiers."""

    if not value:
        return None
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return digest[:16]


PIPELINE_RUNS_TOTAL = Counter(
    "sessionscribe_pipeline_runs_total",
    "Processing runs by final outcome",
    ("outcome",),
)

PIPELINE_STAGE_SECONDS = Histogram(
    "sessionscribe_pipeline_stage_seconds",
    "Wall time spent in each pipeline stage",
    ("stage",),
)

PHI_SUBSTITUTIONS_TOTAL = Counter(
    "sessionscribe_phi_substitutions_total",
    "Spans replaced by the PHI redactor",
    ("category",),
)

PROVIDER_FAILURES_TOTAL = Counter(
    "sessionscribe_provider_failures_total",
    "Failed calls to the transcription or note-generation providers",
    ("provider",),
)

UPLOAD_BYTES_TOTAL = Counter(
    "sessionscribe_upload_bytes_total",
    "Recording bytes confirmed by the upload endpoint",
)

UPLOAD_FAILURES_TOTAL = Counter(
    "sessionscribe_upload_failures_total",
    "Recording uploads that did not complete",
    ("reason",),
)


__all__ = [
    "configure_logging",
    "hash_identifier",
    "PIPELINE_RUNS_TOTAL",
    "PIPELINE_STAGE_SECONDS",
    "PHI_SUBSTITUTIONS_TOTAL",
    "PROVIDER_FAILURES_TOTAL",
    "UPLOAD_BYTES_TOTAL",
    "UPLOAD_FAILURES_TOTAL",
]
