"""
Custom exception classes and error handling.

Provides consistent error responses across the API.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class UnauthorizedError(APIException):
    """Authentication required."""

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="UNAUTHORIZED",
            headers={"WWW-Authenticate": "Bearer"}
        )


class QuotaExceededError(APIException):
    """Coach usage quota exhausted for one of the admission windows."""

    def __init__(self, scope: str, retry_after_minutes: int, detail: str):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=detail,
            error_code="COACH_QUOTA_EXCEEDED",
            headers={"Retry-After": str(retry_after_minutes * 60)},
        )
        self.scope = scope
        self.retry_after_minutes = retry_after_minutes


class ServiceUnavailableError(APIException):
    """A required collaborator is not configured or not reachable."""

    def __init__(self, detail: str, error_code: str = "SERVICE_UNAVAILABLE"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            error_code=error_code,
        )


class BadGatewayError(APIException):
    """An upstream service answered, but not with something we can use."""

    def __init__(self, detail: str, error_code: str = "BAD_GATEWAY"):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=detail,
            error_code=error_code,
        )


class GatewayTimeoutError(APIException):
    """An upstream service did not answer in time."""

    def __init__(self, detail: str, error_code: str = "GATEWAY_TIMEOUT"):
        super().__init__(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail=detail,
            error_code=error_code,
        )
