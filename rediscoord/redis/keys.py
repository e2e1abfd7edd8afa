"""Redis key patterns and builders with namespacing."""


class RedisKeys:
    """Centralized Redis key management."""

    SLIDING = "sliding:"
    USER_INDEX = "user:"
    DEVICE_INDEX = "device:"
    USER_DEVICE_INDEX = "user_device:"

    @staticmethod
    def cache(namespace: str, key: str) -> str:
        """Cache entry key."""
        return f"{namespace}{key}"

    @staticmethod
    def fixed_window(prefix: str, identifier: str, window_start_ms: int) -> str:
        """Fixed-window counter for the window starting at ``window_start_ms``."""
        return f"{prefix}{identifier}:{window_start_ms}"

    @classmethod
    def sliding_window(cls, prefix: str, identifier: str) -> str:
        """Sorted set of request timestamps for an identifier."""
        return f"{prefix}{cls.SLIDING}{identifier}"

    @staticmethod
    def lock(prefix: str, resource: str) -> str:
        """Distributed lock record."""
        return f"{prefix}{resource}"

    @staticmethod
    def channel(prefix: str, channel: str) -> str:
        """PubSub channel name."""
        return f"{prefix}{channel}"

    @staticmethod
    def session(prefix: str, session_id: str) -> str:
        """Session record."""
        return f"{prefix}{session_id}"

    @classmethod
    def user_index(cls, prefix: str, user_id: str | int) -> str:
        """Set of session ids belonging to a user."""
        return f"{prefix}{cls.USER_INDEX}{user_id}"

    @classmethod
    def device_index(cls, prefix: str, device_id: str) -> str:
        """Set of session ids belonging to a device."""
        return f"{prefix}{cls.DEVICE_INDEX}{device_id}"

    @classmethod
    def user_device_index(cls, prefix: str, user_id: str | int, device_id: str) -> str:
        """Set of session ids for one user on one device."""
        return f"{prefix}{cls.USER_DEVICE_INDEX}{user_id}:{device_id}"

    @classmethod
    def is_session_index(cls, prefix: str, key: str) -> bool:
        """True for index keys living under the session prefix."""
        rest = key[len(prefix):] if key.startswith(prefix) else key
        return rest.startswith((cls.USER_INDEX, cls.DEVICE_INDEX, cls.USER_DEVICE_INDEX))

    @staticmethod
    def strip_prefix(prefix: str, key: str) -> str:
        """Remove a component prefix from a full key."""
        return key[len(prefix):] if key.startswith(prefix) else key
