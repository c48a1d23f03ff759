"""Storage package providing persistence for notification dedup state."""

from .dedup_cache import NotificationDedupCache, make_key

__all__ = ["NotificationDedupCache", "make_key"]
