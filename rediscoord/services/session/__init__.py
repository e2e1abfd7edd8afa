from rediscoord.services.session.manager import SessionManager

__all__ = ["SessionManager"]
