"""
Batch State Store

Keeps batches that were reviewed but not yet confirmed in the shared store,
keyed by (owner, batch id) so one user can never load or confirm another's
batch. Expiry is the store's TTL; the batch's own expires_at is checked as a
second guard.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from billex.config.billex_config import BillexConfig
from billex.exceptions import BatchExpiredError, BatchNotFoundError, StoreError
from billex.models.batch import Batch
from billex.store.base import KeyValueStore

logger = logging.getLogger(__name__)


def batch_key(owner_id: str, batch_id: str) -> str:
    return f"batch:{owner_id}:{batch_id}"


class BatchStateStore:
    """
    Save/load/delete batches addressed by (owner_id, batch_id)

    Usage:
        batches = BatchStateStore(store, default_ttl=900)
        batch_id = batches.generate_batch_id()
        await batches.save(owner_id, batch_id, batch)
        batch = await batches.load(owner_id, batch_id)
        await batches.delete(owner_id, batch_id)
    """

    def __init__(self, store: KeyValueStore, default_ttl: float = 900.0):
        self.store = store
        self.default_ttl = default_ttl

    @classmethod
    def from_config(cls, store: KeyValueStore, config: Optional[BillexConfig] = None) -> 'BatchStateStore':
        config = config or BillexConfig()
        return cls(store, default_ttl=float(config.get('batches.ttl_seconds', 900)))

    @staticmethod
    def generate_batch_id() -> str:
        """Opaque, collision-resistant batch id"""
        return uuid4().hex

    async def save(self, owner_id: str, batch_id: str, batch: Batch, ttl: Optional[float] = None) -> Batch:
        """
        Persist a batch under (owner_id, batch_id)

        The stored copy carries the given owner and batch id, and expires_at
        is stamped from the TTL if the batch has none.

        Raises:
            StoreError: The shared store rejected the write
        """
        ttl = self.default_ttl if ttl is None else ttl
        updates = {'owner_id': owner_id, 'batch_id': batch_id}
        if batch.expires_at is None:
            updates['expires_at'] = datetime.now(timezone.utc) + timedelta(seconds=ttl)
        stored = batch.model_copy(update=updates)

        await self.store.set(batch_key(owner_id, batch_id), stored.model_dump_json(), ttl=ttl)
        logger.info(
            f"Saved batch {batch_id} for owner {owner_id} "
            f"({stored.item_count} line items, ttl={ttl:g}s)"
        )
        return stored

    async def load(self, owner_id: str, batch_id: str, now: Optional[datetime] = None) -> Batch:
        """
        Load a batch

        Raises:
            BatchNotFoundError: Nothing stored under the key (never saved,
                deleted, or evicted by the store TTL), or it belongs to
                another owner
            BatchExpiredError: The batch is still stored but past expires_at
        """
        raw = await self.store.get(batch_key(owner_id, batch_id))
        if raw is None:
            raise BatchNotFoundError(
                f"Batch {batch_id} not found or expired",
                owner_id=owner_id,
                batch_id=batch_id
            )

        try:
            batch = Batch.model_validate_json(raw)
        except PydanticValidationError as e:
            raise StoreError(f"Stored batch {batch_id} is unreadable: {e}") from e

        if batch.owner_id != owner_id:
            logger.warning(f"Batch {batch_id} requested by {owner_id} belongs to another owner")
            raise BatchNotFoundError(
                f"Batch {batch_id} not found or expired",
                owner_id=owner_id,
                batch_id=batch_id
            )

        if batch.is_expired(now):
            raise BatchExpiredError(
                f"Batch {batch_id} expired at {batch.expires_at.isoformat()}",
                owner_id=owner_id,
                batch_id=batch_id
            )

        return batch

    async def delete(self, owner_id: str, batch_id: str) -> bool:
        """Delete a batch; deleting a missing batch is not an error"""
        deleted = await self.store.delete(batch_key(owner_id, batch_id))
        if deleted:
            logger.info(f"Deleted batch {batch_id} for owner {owner_id}")
        return deleted
