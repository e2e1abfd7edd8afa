"""Domain model for sessions."""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class SessionData:
    """Session record stored under ``prefix + session_id``."""

    user_id: str
    device_id: str
    data: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    expires_at: float | None = None

    @property
    def created_at_datetime(self) -> datetime:
        """Get created_at as datetime."""
        return datetime.fromtimestamp(self.created_at)

    @property
    def expires_at_datetime(self) -> datetime | None:
        """Get expires_at as datetime."""
        if self.expires_at is None:
            return None
        return datetime.fromtimestamp(self.expires_at)

    def is_expired(self, now: float | None = None) -> bool:
        """True once expires_at has passed."""
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "user_id": self.user_id,
            "device_id": self.device_id,
            "data": self.data,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionData":
        """
        Create from dictionary.

        Raises:
            KeyError, TypeError, ValueError: on a malformed record
        """
        payload = data.get("data") or {}
        if not isinstance(payload, dict):
            raise TypeError("session data must be an object")

        expires_at = data.get("expires_at")
        return cls(
            user_id=str(data["user_id"]),
            device_id=str(data["device_id"]),
            data=payload,
            created_at=float(data["created_at"]),
            expires_at=float(expires_at) if expires_at is not None else None,
        )

    @classmethod
    def from_json(cls, json_str: str) -> "SessionData":
        """Create from JSON string."""
        data = json.loads(json_str)
        if not isinstance(data, dict):
            raise TypeError("session record must be an object")
        return cls.from_dict(data)
