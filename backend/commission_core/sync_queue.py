"""
SYNC QUEUE - DURABLE MUTATION LOG

This module provides:
1. Append-only log of local mutations awaiting delivery to the remote backend
2. FIFO draining ordered by (created_at, seq)
3. Per-item attempt accounting
4. Retention purge of processed items

The queue is independent of the business schema. Payloads are snapshots
taken at enqueue time; three updates of one record are three items,
replayed in order. No dedup, no compaction.
"""

from datetime import timedelta
from typing import Optional, Dict, Any, List
import logging

from .errors import ValidationError
from .local_store import LocalStore, SYNC_QUEUE
from .models import SyncQueueItem
from .sequences import AtomicSequence

logger = logging.getLogger(__name__)

SYNC_ACTIONS = ("INSERT", "UPDATE", "DELETE")


class SyncQueue:
    """
    Mutation log stored in the `sync_queue` collection.

    Usage:
        queue = SyncQueue(store)
        await queue.enqueue("INSERT", "payments", payment_id, payment)
        for item in await queue.drain_pending(50):
            ...
            await queue.mark_processed(item.id)
    """

    def __init__(self, store: LocalStore, sequences: Optional[AtomicSequence] = None):
        self.store = store
        self.sequences = sequences or AtomicSequence(store.db, store.clock)

    async def enqueue(
        self,
        action: str,
        table: str,
        record_id: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Append a mutation to the log.

        Returns:
            The queue item id
        """
        if action not in SYNC_ACTIONS:
            raise ValidationError(
                f"Invalid sync action '{action}'. Expected one of {', '.join(SYNC_ACTIONS)}"
            )
        if not table or not record_id:
            raise ValidationError("Sync queue entries require a table and a record id")

        seq = await self.sequences.next_value(SYNC_QUEUE)
        queue_id = await self.store.add(SYNC_QUEUE, {
            "action": action,
            "table": table,
            "record_id": record_id,
            "payload": dict(payload or {}),
            "attempts": 0,
            "processed": False,
            "seq": seq,
            "last_error": None,
        })

        logger.debug(f"[QUEUE] Enqueued {action} {table}:{record_id} (seq={seq})")
        return queue_id

    async def drain_pending(self, limit: int = 50) -> List[SyncQueueItem]:
        """Unprocessed items, oldest first, at most `limit` of them"""
        docs = await self.store.find(
            SYNC_QUEUE,
            {"processed": False},
            sort=[("created_at", 1), ("seq", 1)],
            limit=limit
        )
        return [SyncQueueItem(**doc) for doc in docs]

    async def get(self, queue_id: str) -> Optional[SyncQueueItem]:
        doc = await self.store.get(SYNC_QUEUE, queue_id)
        return SyncQueueItem(**doc) if doc else None

    async def mark_processed(self, queue_id: str) -> None:
        await self.store.update_fields(
            SYNC_QUEUE,
            queue_id,
            set_fields={"processed": True, "last_error": None}
        )

    async def increment_attempts(self, queue_id: str, error: Optional[str] = None) -> int:
        """Count a failed delivery; returns the new attempt count"""
        doc = await self.store.update_fields(
            SYNC_QUEUE,
            queue_id,
            set_fields={"last_error": error},
            inc_fields={"attempts": 1}
        )
        logger.warning(f"[QUEUE] Delivery attempt {doc['attempts']} failed for {queue_id}: {error}")
        return doc["attempts"]

    async def purge_processed_older_than(self, duration: timedelta) -> int:
        """Delete processed items created before now - duration"""
        cutoff = self.store.clock.now() - duration
        removed = await self.store.delete_many(
            SYNC_QUEUE,
            {"processed": True, "created_at": {"$lt": cutoff}}
        )
        if removed:
            logger.info(f"[QUEUE] Purged {removed} processed items older than {cutoff.isoformat()}")
        return removed

    async def count_pending(self) -> int:
        return await self.store.count(SYNC_QUEUE, {"processed": False})

    async def has_pending_delete(self, table: str, record_id: str) -> bool:
        """True when an undelivered DELETE for the record is waiting in the log"""
        found = await self.store.find_one(SYNC_QUEUE, {
            "table": table,
            "record_id": record_id,
            "action": "DELETE",
            "processed": False
        })
        return found is not None

    async def list_exhausted(self, max_attempts: int) -> List[SyncQueueItem]:
        """Unprocessed items that already failed `max_attempts` times or more"""
        docs = await self.store.find(
            SYNC_QUEUE,
            {"processed": False, "attempts": {"$gte": max_attempts}},
            sort=[("created_at", 1), ("seq", 1)]
        )
        return [SyncQueueItem(**doc) for doc in docs]
