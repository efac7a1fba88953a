"""
Pod Healer - Utilities
======================

Structured logging and retry helpers.
"""

from podhealer.utils.logging import get_logger, setup_logging, set_scan_id
from podhealer.utils.retry import with_retry, retry_async, RetryConfig

__all__ = [
    "get_logger",
    "setup_logging",
    "set_scan_id",
    "with_retry",
    "retry_async",
    "RetryConfig",
]
