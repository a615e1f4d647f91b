"""
Batch model: line items awaiting or undergoing generation
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from billex.models.invoice import CanonicalLineItem


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Batch(BaseModel):
    """
    A set of canonical line items derived from one uploaded document.

    Owned by the user that uploaded it until confirmed; read-only until
    generation, then consumed (deleted) whatever the per-item outcome.
    """
    batch_id: str = Field(default_factory=lambda: uuid4().hex)
    owner_id: str = Field(..., min_length=1)
    tenant_id: str = Field(..., min_length=1)
    customer_id: str = Field(..., min_length=1)
    line_items: List[CanonicalLineItem] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    client_label: Optional[str] = None
    source_format: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def create(
        cls,
        owner_id: str,
        tenant_id: str,
        customer_id: str,
        line_items: List[CanonicalLineItem],
        ttl_seconds: int,
        now: Optional[datetime] = None,
        **extra: Any
    ) -> 'Batch':
        """Build a batch stamped with created_at/expires_at from a TTL"""
        created = now or utcnow()
        return cls(
            owner_id=owner_id,
            tenant_id=tenant_id,
            customer_id=customer_id,
            line_items=line_items,
            created_at=created,
            expires_at=created + timedelta(seconds=ttl_seconds),
            **extra
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    @property
    def item_count(self) -> int:
        return len(self.line_items)
