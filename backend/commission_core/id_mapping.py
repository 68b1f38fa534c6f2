"""
LOCAL -> REMOTE ID MAPPING

When the backend assigns its own id to a pushed record, the pair is stored
in `id_mappings` instead of rewriting local ids in place. Pulled records are
translated back to local ids before merging.
"""

from typing import Optional, Dict, Any
import logging

from .errors import IntegrityError
from .local_store import LocalStore, ID_MAPPINGS

logger = logging.getLogger(__name__)


class IdMapper:

    def __init__(self, store: LocalStore):
        self.store = store

    async def record(self, table: str, local_id: str, remote_id: str) -> None:
        """Remember that `local_id` is known remotely as `remote_id` (idempotent)"""
        if not remote_id or remote_id == local_id:
            return

        existing = await self.store.find_one(ID_MAPPINGS, {"table": table, "local_id": local_id})
        if existing:
            if existing["remote_id"] != remote_id:
                await self.store.update_fields(ID_MAPPINGS, existing["id"], set_fields={"remote_id": remote_id})
            return

        try:
            await self.store.add(ID_MAPPINGS, {
                "table": table,
                "local_id": local_id,
                "remote_id": remote_id,
            })
        except IntegrityError:
            # Concurrent writer stored the same pair
            logger.debug(f"[SYNC] Mapping {table}:{local_id} already recorded")
            return
        logger.info(f"[SYNC] Mapped {table}:{local_id} -> {remote_id}")

    async def remote_id(self, table: str, local_id: str) -> str:
        """Remote id for a local record (the local id itself when unmapped)"""
        doc = await self.store.find_one(ID_MAPPINGS, {"table": table, "local_id": local_id})
        return doc["remote_id"] if doc else local_id

    async def local_id(self, table: str, remote_id: str) -> Optional[str]:
        doc = await self.store.find_one(ID_MAPPINGS, {"table": table, "remote_id": remote_id})
        return doc["local_id"] if doc else None

    async def to_local(self, table: str, remote_record: Dict[str, Any]) -> Dict[str, Any]:
        """Copy of a pulled record carrying its local id"""
        record = dict(remote_record)
        remote_id = record.get("id")
        if remote_id is not None:
            record["id"] = await self.local_id(table, str(remote_id)) or str(remote_id)
        return record
