"""Error types raised by the coordination layer."""

from typing import Any


class CoordinationError(Exception):
    """Base coordination error."""

    def __init__(
        self,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the standard error envelope."""
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            error["details"] = self.details

        return {"error": error}


class StoreConnectionError(CoordinationError):
    """Pool exhaustion, closed pool or transport failure talking to Redis."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__("CONNECTION_ERROR", message, details)


class RateLimitError(CoordinationError):
    """Raised by ``RateLimiter.enforce_limit`` when a caller is limited."""

    def __init__(self, message: str, reset_time: float, retry_after: float = 0.0):
        self.reset_time = reset_time
        self.retry_after = retry_after
        super().__init__(
            "RATE_LIMIT_EXCEEDED",
            message,
            {"reset_time": reset_time, "retry_after": retry_after},
        )


class LockError(CoordinationError):
    """Raised by ``LockManager.with_lock`` when the lock cannot be acquired."""

    def __init__(self, resource: str):
        self.resource = resource
        super().__init__(
            "LOCK_NOT_ACQUIRED",
            f"Failed to acquire lock for resource: {resource}",
            {"resource": resource},
        )
