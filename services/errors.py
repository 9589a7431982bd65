"""Error taxonomy shared by the custody, operation, reconciliation and settlement services"""

import asyncio
import logging
import re
from typing import Any, Dict, Optional

import aiohttp

from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class CustodyError(Exception):
    """Base class for all custody engine errors"""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = get_naive_utc_now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class ValidationError(CustodyError):
    status_code = 400
    error_code = "VALIDATION_ERROR"


class BadRequestError(CustodyError):
    """Illegal state transition or request that cannot apply to the current state"""
    status_code = 400
    error_code = "BAD_REQUEST"


class ForbiddenError(CustodyError):
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(CustodyError):
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(CustodyError):
    status_code = 409
    error_code = "CONFLICT"


class ReconciliationTimeout(CustodyError):
    """Monitor exhausted its attempts; the record stays as-is until resynced"""
    status_code = 504
    error_code = "RECONCILIATION_TIMEOUT"


_TRANSIENT_PATTERNS = [
    r"timed? ?out",
    r"etimedout",
    r"econnreset",
    r"connection reset",
    r"connection refused",
    r"server disconnected",
    r"temporarily unavailable",
    r"\b50[234]\b",
]

_RATE_LIMIT_PATTERNS = [
    r"\b429\b",
    r"too many requests",
    r"rate limit",
    r"\b401\b",
    r"unauthorized",
]


class ProviderError(CustodyError):
    """Failure talking to, or reported by, the custody provider"""

    status_code = 502
    error_code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        is_transient: bool = False,
        is_rate_limited: bool = False,
        provider_status: Optional[str] = None,
        raw: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details={"http_status": http_status, "provider_status": provider_status})
        self.http_status = http_status
        self.is_rate_limited = is_rate_limited
        # Rate limiting is always retryable
        self.is_transient = is_transient or is_rate_limited
        self.provider_status = provider_status
        self.raw = raw or {}

    @classmethod
    def classify_message(cls, message: str, http_status: Optional[int] = None) -> Dict[str, bool]:
        text = f"{http_status or ''} {message}".lower()
        rate_limited = http_status in (401, 429) or any(re.search(p, text) for p in _RATE_LIMIT_PATTERNS)
        transient = (http_status is not None and http_status >= 500) or any(
            re.search(p, text) for p in _TRANSIENT_PATTERNS
        )
        return {"is_transient": transient or rate_limited, "is_rate_limited": rate_limited}

    @classmethod
    def from_exception(cls, error: BaseException) -> "ProviderError":
        """Wrap an arbitrary client-side exception, classifying it"""
        if isinstance(error, ProviderError):
            return error
        if isinstance(error, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
            return cls(f"Provider request timed out: {error}", is_transient=True)
        if isinstance(error, aiohttp.ClientResponseError):
            flags = cls.classify_message(error.message or "", error.status)
            return cls(f"Provider HTTP {error.status}: {error.message}", http_status=error.status, **flags)
        if isinstance(error, (aiohttp.ClientConnectionError, ConnectionResetError)):
            return cls(f"Provider connection error: {error}", is_transient=True)
        flags = cls.classify_message(str(error))
        return cls(f"Provider error: {error}", **flags)
