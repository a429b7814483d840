"""Library utilities for the worker service."""

from .pii_redactor import PIIRedactor
from .json_logger import (
    JSONFormatter,
    StructuredLoggerAdapter,
    setup_json_logging,
    setup_logging,
    get_structured_logger,
    job_logger,
)

__all__ = [
    # PII
    "PIIRedactor",
    # JSON logging
    "JSONFormatter",
    "StructuredLoggerAdapter",
    "setup_json_logging",
    "setup_logging",
    "get_structured_logger",
    "job_logger",
]
