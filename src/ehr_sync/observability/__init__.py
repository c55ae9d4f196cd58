"""
EHR Sync Observability

Structured logging via structlog.
"""

from ehr_sync.observability.logging import configure_logging, redact_secrets_processor

__all__ = [
    "configure_logging",
    "redact_secrets_processor",
]
