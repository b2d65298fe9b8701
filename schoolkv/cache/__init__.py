"""Per-context local cache.

The synchronous first stop for every read and write; a SQLite stand-in for
browser localStorage with the same kind of capacity ceiling.
"""

from .local_cache import Entry, LocalCache, QuotaExceededError, encode_value

__all__ = ["Entry", "LocalCache", "QuotaExceededError", "encode_value"]
