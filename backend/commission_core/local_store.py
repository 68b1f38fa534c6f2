"""
LOCAL STORE - DURABLE KEYED PERSISTENCE

Wraps an AsyncIOMotorDatabase with the small contract the rest of the core
relies on:
1. Named collections keyed by a string id (stored as Mongo _id)
2. Declared secondary indices, queried by index name
3. created_at / updated_at stamping on every write
4. Driver faults classified into IntegrityError / StorageError

Each call is atomic for its own collection only. There is NO cross-collection
transaction: a business operation touching several collections commits each
write independently (see settlement_journal for crash recovery).
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from typing import Optional, Dict, Any, List, Tuple, Union
from dataclasses import dataclass
import logging
import uuid

from .clock import Clock
from .errors import IntegrityError, NotFoundError, StorageError, ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# COLLECTION DECLARATIONS
# =============================================================================

COMPANIES = "companies"
CONTRACTS = "contracts"
CERTIFICATIONS = "certifications"
PAYMENTS = "payments"
DISTRIBUTIONS = "distributions"
SYNC_QUEUE = "sync_queue"
SYNC_CONFLICTS = "sync_conflicts"
ID_MAPPINGS = "id_mappings"
SETTLEMENT_JOURNAL = "settlement_journal"
SEQUENCES = "sequences"
APP_CONFIG = "app_config"

# Domain tables replicated to the remote backend, in dependency order
SYNCED_TABLES = [COMPANIES, CONTRACTS, CERTIFICATIONS, PAYMENTS, DISTRIBUTIONS]


@dataclass(frozen=True)
class IndexSpec:
    """A named secondary index over one or more fields"""
    name: str
    fields: Tuple[str, ...]
    unique: bool = False


COLLECTION_INDEXES: Dict[str, List[IndexSpec]] = {
    COMPANIES: [
        IndexSpec("user_id", ("user_id",)),
        IndexSpec("status", ("status",)),
    ],
    CONTRACTS: [
        IndexSpec("company_id", ("company_id",)),
        IndexSpec("status", ("status",)),
    ],
    CERTIFICATIONS: [
        IndexSpec("contract_id", ("contract_id",)),
        IndexSpec("period", ("period",)),
        IndexSpec("contract_period", ("contract_id", "period"), unique=True),
        IndexSpec("payment_id", ("payment_id",)),
        IndexSpec("paid", ("paid",)),
    ],
    PAYMENTS: [
        IndexSpec("company_id", ("company_id",)),
        IndexSpec("date", ("date",)),
        IndexSpec("scope", ("scope",)),
    ],
    DISTRIBUTIONS: [
        IndexSpec("payment_id", ("payment_id",)),
        IndexSpec("contract_id", ("contract_id",)),
        IndexSpec("certification_id", ("certification_id",)),
    ],
    SYNC_QUEUE: [
        IndexSpec("processed", ("processed",)),
        IndexSpec("table", ("table",)),
        IndexSpec("created_at", ("created_at", "seq")),
        IndexSpec("record", ("table", "record_id")),
    ],
    SYNC_CONFLICTS: [
        IndexSpec("status", ("status",)),
        IndexSpec("record", ("table", "record_id")),
    ],
    ID_MAPPINGS: [
        IndexSpec("local", ("table", "local_id"), unique=True),
        IndexSpec("remote", ("table", "remote_id")),
    ],
    SETTLEMENT_JOURNAL: [
        IndexSpec("applied", ("applied",)),
        IndexSpec("payment_id", ("payment_id",)),
    ],
    SEQUENCES: [],
    APP_CONFIG: [],
}


def generate_id() -> str:
    """New client-side record identifier"""
    return str(uuid.uuid4())


def _to_record(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Strip the Mongo primary key; callers only ever see `id`"""
    if doc is None:
        return None
    record = dict(doc)
    record_id = record.pop("_id", None)
    record.setdefault("id", record_id)
    return record


# =============================================================================
# LOCAL STORE
# =============================================================================

class LocalStore:
    """
    Durable keyed store over MongoDB collections.

    Usage:
        store = LocalStore(db)
        await store.create_indexes()
        cert_id = await store.add("certifications", {...})
        pending = await store.get_by_index("certifications", "contract_id", contract_id)
    """

    def __init__(self, db: AsyncIOMotorDatabase, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or Clock()

    # =========================================================================
    # SCHEMA
    # =========================================================================

    async def create_indexes(self) -> None:
        """Create every declared secondary index (idempotent)"""
        for collection, specs in COLLECTION_INDEXES.items():
            for spec in specs:
                try:
                    await self.db[collection].create_index(
                        [(field, 1) for field in spec.fields],
                        unique=spec.unique,
                        name=f"idx_{collection}_{spec.name}"
                    )
                except PyMongoError as e:
                    # Index may already exist with different options
                    logger.warning(f"[STORE] Index creation result for {collection}.{spec.name}: {e}")
        logger.info("[STORE] Local store indexes ensured")

    def _index(self, collection: str, index: str) -> IndexSpec:
        for spec in COLLECTION_INDEXES.get(collection, []):
            if spec.name == index:
                return spec
        raise ValidationError(f"Unknown index '{index}' on collection '{collection}'")

    # =========================================================================
    # WRITES
    # =========================================================================

    async def add(
        self,
        collection: str,
        record: Dict[str, Any],
        keep_timestamps: bool = False
    ) -> str:
        """
        Insert a record and return its id.

        Args:
            collection: Target collection name
            record: Record payload; an id is generated when absent
            keep_timestamps: Keep supplied created_at/updated_at (remote merges)

        Raises:
            IntegrityError: id or a unique index already taken
            StorageError: any other driver fault
        """
        doc = dict(record)
        record_id = doc.get("id") or generate_id()
        now = self.clock.now()

        doc["id"] = record_id
        doc["_id"] = record_id
        if not keep_timestamps or not doc.get("created_at"):
            doc["created_at"] = now
        if not keep_timestamps or not doc.get("updated_at"):
            doc["updated_at"] = doc["created_at"] if keep_timestamps else now

        try:
            await self.db[collection].insert_one(doc)
        except DuplicateKeyError as e:
            raise IntegrityError(
                violation_type="DUPLICATE_KEY",
                message=f"Duplicate key in {collection} for record {record_id}",
                details={"collection": collection, "record_id": record_id, "driver_error": str(e)}
            )
        except PyMongoError as e:
            logger.error(f"[STORE] add({collection}) failed: {e}")
            raise StorageError(f"Failed to add record to {collection}: {e}")

        logger.debug(f"[STORE] Added {collection}:{record_id}")
        return record_id

    async def update(
        self,
        collection: str,
        record: Dict[str, Any],
        touch: bool = True
    ) -> bool:
        """
        Replace a stored record with the given full record.

        Raises NotFoundError when no record carries the given id.
        """
        record_id = record.get("id")
        if not record_id:
            raise ValidationError(f"Cannot update {collection} record without id")

        doc = dict(record)
        doc["_id"] = record_id
        if touch or not doc.get("updated_at"):
            doc["updated_at"] = self.clock.now()

        try:
            result = await self.db[collection].replace_one({"_id": record_id}, doc)
        except DuplicateKeyError as e:
            raise IntegrityError(
                violation_type="DUPLICATE_KEY",
                message=f"Update of {collection}:{record_id} violates a unique index",
                details={"collection": collection, "record_id": record_id, "driver_error": str(e)}
            )
        except PyMongoError as e:
            logger.error(f"[STORE] update({collection}, {record_id}) failed: {e}")
            raise StorageError(f"Failed to update {collection}:{record_id}: {e}")

        if result.matched_count == 0:
            raise NotFoundError(collection, record_id)

        logger.debug(f"[STORE] Updated {collection}:{record_id}")
        return True

    async def update_fields(
        self,
        collection: str,
        record_id: str,
        set_fields: Optional[Dict[str, Any]] = None,
        inc_fields: Optional[Dict[str, int]] = None,
        touch: bool = True
    ) -> Dict[str, Any]:
        """
        Atomically patch fields of one record and return the updated record.

        Used for counters and flags ($set / $inc) where a read-modify-write
        would race with other writers.
        """
        set_doc = dict(set_fields or {})
        if touch:
            set_doc["updated_at"] = self.clock.now()

        update: Dict[str, Any] = {}
        if set_doc:
            update["$set"] = set_doc
        if inc_fields:
            update["$inc"] = dict(inc_fields)
        if not update:
            raise ValidationError("update_fields called without changes")

        try:
            doc = await self.db[collection].find_one_and_update(
                {"_id": record_id},
                update,
                return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            logger.error(f"[STORE] update_fields({collection}, {record_id}) failed: {e}")
            raise StorageError(f"Failed to patch {collection}:{record_id}: {e}")

        if doc is None:
            raise NotFoundError(collection, record_id)
        return _to_record(doc)

    async def delete(self, collection: str, record_id: str) -> bool:
        """
        Delete a record by id.

        Returns True when a record was removed, False when it was already absent.
        """
        try:
            result = await self.db[collection].delete_one({"_id": record_id})
        except PyMongoError as e:
            logger.error(f"[STORE] delete({collection}, {record_id}) failed: {e}")
            raise StorageError(f"Failed to delete {collection}:{record_id}: {e}")

        logger.debug(f"[STORE] Deleted {collection}:{record_id} ({result.deleted_count})")
        return result.deleted_count > 0

    async def delete_many(self, collection: str, query: Dict[str, Any]) -> int:
        """Delete every record matching a query, returning the count removed"""
        try:
            result = await self.db[collection].delete_many(query)
        except PyMongoError as e:
            logger.error(f"[STORE] delete_many({collection}) failed: {e}")
            raise StorageError(f"Failed to delete from {collection}: {e}")
        return result.deleted_count

    # =========================================================================
    # READS
    # =========================================================================

    async def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one record by id, None when absent"""
        try:
            doc = await self.db[collection].find_one({"_id": record_id})
        except PyMongoError as e:
            logger.error(f"[STORE] get({collection}, {record_id}) failed: {e}")
            raise StorageError(f"Failed to read {collection}:{record_id}: {e}")
        return _to_record(doc)

    async def get_all(self, collection: str) -> List[Dict[str, Any]]:
        """Every record of a collection"""
        return await self.find(collection, {})

    async def get_by_index(
        self,
        collection: str,
        index: str,
        key: Union[Any, Tuple[Any, ...]]
    ) -> List[Dict[str, Any]]:
        """
        Records whose indexed field(s) equal `key`.

        Compound indices take a tuple key with one value per indexed field.
        """
        spec = self._index(collection, index)
        values = key if len(spec.fields) > 1 else (key,)
        if not isinstance(values, tuple) or len(values) != len(spec.fields):
            raise ValidationError(
                f"Index '{index}' on '{collection}' expects {len(spec.fields)} key values"
            )
        query = dict(zip(spec.fields, values))
        return await self.find(collection, query)

    async def find(
        self,
        collection: str,
        query: Optional[Dict[str, Any]] = None,
        sort: Optional[List[Tuple[str, int]]] = None,
        limit: int = 0
    ) -> List[Dict[str, Any]]:
        """Filtered scan with optional sort and limit (0 = unbounded)"""
        kwargs: Dict[str, Any] = {}
        if sort:
            kwargs["sort"] = sort
        if limit:
            kwargs["limit"] = limit

        try:
            docs = await self.db[collection].find(query or {}, **kwargs).to_list(length=None)
        except PyMongoError as e:
            logger.error(f"[STORE] find({collection}) failed: {e}")
            raise StorageError(f"Failed to query {collection}: {e}")
        return [_to_record(doc) for doc in docs]

    async def find_one(self, collection: str, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """First record matching a query, None when nothing matches"""
        try:
            doc = await self.db[collection].find_one(query)
        except PyMongoError as e:
            logger.error(f"[STORE] find_one({collection}) failed: {e}")
            raise StorageError(f"Failed to query {collection}: {e}")
        return _to_record(doc)

    async def count(self, collection: str, query: Optional[Dict[str, Any]] = None) -> int:
        try:
            return await self.db[collection].count_documents(query or {})
        except PyMongoError as e:
            logger.error(f"[STORE] count({collection}) failed: {e}")
            raise StorageError(f"Failed to count {collection}: {e}")
