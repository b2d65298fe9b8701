"""Key conventions shared by the cache, outbox, broadcaster and server.

Keys name one logical collection each ("teachers", "gallery", ...). A small
fixed set of keys holds credentials; those never leave the local context.
"""

from collections.abc import Iterable

# Credential storage, never persisted remotely or broadcast
SENSITIVE_KEYS = frozenset(
    {
        "admin-credentials",
        "principal-credentials",
        "teacher-credentials",
        "admin-auth",
        "principal-auth",
        "teacher-auth",
    }
)

# Characters with meaning in MQTT topics or URL paths
_FORBIDDEN_CHARS = ("/", "+", "#")


class SensitiveKeyError(ValueError):
    """Raised when a sensitive key is about to cross the context boundary."""

    def __init__(self, key: str):
        super().__init__(f"Key '{key}' is sensitive and stays local")
        self.key = key


def is_sensitive(key: str, extra: Iterable[str] = ()) -> bool:
    """Check whether a key is in the built-in or configured sensitive set."""
    return key in SENSITIVE_KEYS or key in set(extra)


def validate_key(key: str) -> None:
    """Reject keys that cannot be used as a topic segment or URL path part.

    Raises:
        ValueError: If the key is empty or contains a reserved character.
    """
    if not isinstance(key, str) or not key:
        raise ValueError("Key must be a non-empty string")
    for char in _FORBIDDEN_CHARS:
        if char in key:
            raise ValueError(f"Key '{key}' contains reserved character '{char}'")


def topic_for_key(prefix: str, key: str) -> str:
    """Build the change topic for a key: '<prefix>/kv/<key>'."""
    return f"{prefix.rstrip('/')}/kv/{key}"


def key_from_topic(prefix: str, topic: str) -> str | None:
    """Extract the key from a change topic, or None if it is not one."""
    base = f"{prefix.rstrip('/')}/kv/"
    if not topic.startswith(base):
        return None
    key = topic[len(base):]
    if not key or "/" in key:
        return None
    return key
