"""
Data models for storage layer.

Defines the records written to the shared store.
"""

from dataclasses import dataclass
from typing import Any, Dict

# Keys added to a response when it is cached
CACHE_METADATA_FIELDS = ("cached_at", "cache_key", "cache_ttl", "task")


@dataclass(frozen=True)
class CacheEntry:
    """Immutable cached AI response.

    Entries are written once on a validated, successful response and are
    never modified; they disappear when their TTL runs out.
    """
    response: Dict[str, Any]
    task: str
    cache_key: str
    cached_at: float
    cache_ttl: int

    def __post_init__(self):
        """Validate TTL is positive."""
        if self.cache_ttl <= 0:
            raise ValueError("cache_ttl must be > 0")

    def to_payload(self) -> Dict[str, Any]:
        """Flatten into the stored form: the response plus cache metadata."""
        payload = dict(self.response)
        payload.update({
            "cached_at": self.cached_at,
            "cache_key": self.cache_key,
            "cache_ttl": self.cache_ttl,
            "task": self.task,
        })
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CacheEntry":
        """Rebuild an entry from its stored form."""
        response = {k: v for k, v in payload.items() if k not in CACHE_METADATA_FIELDS}
        return cls(
            response=response,
            task=payload["task"],
            cache_key=payload["cache_key"],
            cached_at=payload["cached_at"],
            cache_ttl=payload["cache_ttl"],
        )
