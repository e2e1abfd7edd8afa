"""Domain models."""

from rediscoord.models.session import SessionData

__all__ = ["SessionData"]
