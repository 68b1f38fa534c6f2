from typing import Dict, Any, Optional
import logging

from .errors import NotFoundError
from .local_store import LocalStore
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)


class DomainService:
    """
    Base for the domain managers.

    Every write goes to the local store and is appended to the sync queue in
    the same logical step, with the stored record as payload snapshot.
    """

    def __init__(self, store: LocalStore, queue: SyncQueue):
        self.store = store
        self.queue = queue

    @property
    def clock(self):
        return self.store.clock

    async def _require(self, collection: str, record_id: str, entity: Optional[str] = None) -> Dict[str, Any]:
        record = await self.store.get(collection, record_id) if record_id else None
        if record is None:
            raise NotFoundError(entity or collection, record_id)
        return record

    async def _insert(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        record_id = await self.store.add(collection, record)
        stored = await self.store.get(collection, record_id)
        await self.queue.enqueue("INSERT", collection, record_id, stored)
        return stored

    async def _replace(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        await self.store.update(collection, record)
        stored = await self.store.get(collection, record["id"])
        await self.queue.enqueue("UPDATE", collection, record["id"], stored)
        return stored

    async def _remove(self, collection: str, record: Dict[str, Any]) -> None:
        await self.store.delete(collection, record["id"])
        await self.queue.enqueue("DELETE", collection, record["id"], record)
