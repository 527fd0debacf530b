"""
MallFlow 实用工具模块
"""

from .logger import get_logger, LogContext, setup_logging
from .errors import (
    MallFlowException,
    BusinessRuleViolation,
    ErrorCode,
    ValidationError,
    NotFoundError,
)
from .timeutil import utcnow, ensure_utc

__all__ = [
    "get_logger",
    "LogContext",
    "setup_logging",
    "MallFlowException",
    "BusinessRuleViolation",
    "ErrorCode",
    "ValidationError",
    "NotFoundError",
    "utcnow",
    "ensure_utc",
]
