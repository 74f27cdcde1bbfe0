"""
Utilities package initialization.
"""
from .logger import (
    bind_request_id,
    current_request_id,
    get_logger,
    log_business_event,
    log_performance,
    reset_request_id,
    setup_logging,
)

__all__ = [
    "bind_request_id",
    "current_request_id",
    "get_logger",
    "log_business_event",
    "log_performance",
    "reset_request_id",
    "setup_logging",
]
