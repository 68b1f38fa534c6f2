"""
ATOMIC SEQUENCES

Monotonic counters backed by the `sequences` collection.
Uses findOneAndUpdate with $inc, so concurrent callers never share a value.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError
from typing import Optional
import logging

from .clock import Clock
from .errors import StorageError
from .local_store import SEQUENCES

logger = logging.getLogger(__name__)


class AtomicSequence:
    """
    Named counter generator.

    Usage:
        sequences = AtomicSequence(db)
        seq = await sequences.next_value("sync_queue")
    """

    def __init__(self, db: AsyncIOMotorDatabase, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or Clock()

    async def next_value(self, name: str) -> int:
        """
        Get next atomic sequence number.
        Returns the NEW value after increment (first call returns 1).
        """
        now = self.clock.now()
        try:
            result = await self.db[SEQUENCES].find_one_and_update(
                {"_id": name},
                {
                    "$inc": {"current_value": 1},
                    "$set": {"updated_at": now},
                    "$setOnInsert": {"created_at": now}
                },
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            logger.error(f"Sequence generation error for {name}: {str(e)}")
            raise StorageError(f"Failed to advance sequence {name}: {e}")

        return result["current_value"]

    async def current_value(self, name: str) -> int:
        doc = await self.db[SEQUENCES].find_one({"_id": name})
        return doc["current_value"] if doc else 0
