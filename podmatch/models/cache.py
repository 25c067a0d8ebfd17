from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class CacheEntry(BaseModel, Generic[T]):
    """A cached value keyed by the structural hash of the inputs that produced it.

    An entry may only be served while `now < expires_at`.
    """
    key: str
    value: T
    timestamp: datetime
    expires_at: datetime
    usage_count: int = Field(0, ge=0)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class CacheStats(BaseModel):
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0
