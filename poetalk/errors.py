"""Error taxonomy shared by the Poe client, the conversation store and the session."""

from typing import Any, Optional


class PoetalkError(Exception):
    """Base error. Carries a user-facing message plus optional upstream status."""

    error_code = "POETALK_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "details": self.details,
        }


class ValidationError(PoetalkError):
    error_code = "VALIDATION_ERROR"


class ConfigurationError(ValidationError):
    """Required setting (the API key) is missing."""

    error_code = "CONFIGURATION_ERROR"


class AuthError(PoetalkError):
    error_code = "AUTH_ERROR"

    def __init__(self, message: str = "Invalid API key, check your Poe API key in settings", **kwargs):
        super().__init__(message, **kwargs)


class NotFoundError(PoetalkError):
    """Unknown bot on the provider side, or a missing conversation record."""

    error_code = "NOT_FOUND"


class RateLimitError(PoetalkError):
    error_code = "RATE_LIMITED"

    def __init__(
        self,
        message: str = "Too many requests, try again later (limit is 500 requests per minute)",
        **kwargs,
    ):
        super().__init__(message, **kwargs)


class InsufficientCreditError(PoetalkError):
    error_code = "INSUFFICIENT_CREDIT"

    def __init__(self, message: str = "Insufficient points, top up at poe.com", **kwargs):
        super().__init__(message, **kwargs)


class ChatTimeoutError(PoetalkError, TimeoutError):
    """Request exceeded the deadline.

    The message depends on whether a proxy was in use: without one the user
    probably needs to configure it, with one the proxy may not be running.
    """

    error_code = "TIMEOUT"

    def __init__(self, proxy_url: Optional[str] = None, code: str = "timeout", **kwargs):
        self.proxy_url = proxy_url
        self.code = code
        if proxy_url:
            hint = f"check that the proxy at {proxy_url} is running and reachable"
        else:
            hint = "no proxy is configured, you may need one (e.g. http://127.0.0.1:7890)"
        message = f"Request timed out ({code}): {hint}, then check your network connection"
        details = {"proxy_url": proxy_url, "code": code}
        super().__init__(message, details=details, **kwargs)


class TransportError(PoetalkError):
    """Anything the other categories do not cover; keeps the upstream text and status."""

    error_code = "TRANSPORT_ERROR"

    def __init__(self, message: str = "Request failed", status_code: Optional[int] = None, **kwargs):
        status = status_code if status_code is not None else "unknown"
        super().__init__(f"{message} (status: {status})", status_code=status_code, **kwargs)
        self.upstream_message = message
