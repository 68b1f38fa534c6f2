"""
CONFLICT RESOLUTION

This module provides:
1. Strategy registry: last-write-wins, server-wins, manual
2. Tagged resolution outcome: Resolved | PendingManualResolution
3. Persistence of manual conflicts in the `sync_conflicts` collection

A conflict exists when a remote version of a record is newer than the local
version. Strategies decide which version wins; `manual` defers the decision
and the local record stays untouched until resolve_conflict() is called.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List, Union, Callable
import logging

from .clock import record_timestamp
from .errors import NotFoundError, ValidationError
from .local_store import LocalStore, SYNC_CONFLICTS
from .models import SyncConflict

logger = logging.getLogger(__name__)

LAST_WRITE_WINS = "last-write-wins"
SERVER_WINS = "server-wins"
MANUAL = "manual"


# =============================================================================
# RESOLUTION OUTCOMES
# =============================================================================

@dataclass(frozen=True)
class Resolved:
    """The strategy picked a winner; `record` is the version to keep"""
    winner: str
    record: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PendingManualResolution:
    """No automatic winner; both versions wait for an explicit decision"""
    local: Dict[str, Any] = field(default_factory=dict)
    remote: Dict[str, Any] = field(default_factory=dict)


Resolution = Union[Resolved, PendingManualResolution]


def is_remote_newer(local: Dict[str, Any], remote: Dict[str, Any]) -> bool:
    """True when the remote record was modified after the local one"""
    local_ts = record_timestamp(local) or datetime.min
    remote_ts = record_timestamp(remote) or datetime.min
    return remote_ts > local_ts


# =============================================================================
# STRATEGIES
# =============================================================================

def _last_write_wins(local: Dict[str, Any], remote: Dict[str, Any]) -> Resolution:
    if is_remote_newer(local, remote):
        return Resolved(winner="remote", record=remote)
    return Resolved(winner="local", record=local)


def _server_wins(local: Dict[str, Any], remote: Dict[str, Any]) -> Resolution:
    return Resolved(winner="remote", record=remote)


def _manual(local: Dict[str, Any], remote: Dict[str, Any]) -> Resolution:
    return PendingManualResolution(local=local, remote=remote)


STRATEGIES: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], Resolution]] = {
    LAST_WRITE_WINS: _last_write_wins,
    SERVER_WINS: _server_wins,
    MANUAL: _manual,
}


def validate_strategy(strategy: str) -> str:
    if strategy not in STRATEGIES:
        raise ValidationError(
            f"Unknown conflict strategy '{strategy}'. Expected one of {', '.join(STRATEGIES)}"
        )
    return strategy


class ConflictResolver:
    """
    Applies the configured strategy to a local/remote pair.

    Usage:
        resolver = ConflictResolver("server-wins")
        outcome = resolver.resolve(local_record, remote_record)
        if isinstance(outcome, Resolved):
            ...
    """

    def __init__(self, strategy: str = LAST_WRITE_WINS):
        self.strategy = validate_strategy(strategy)

    def set_strategy(self, strategy: str) -> None:
        self.strategy = validate_strategy(strategy)

    def resolve(self, local: Dict[str, Any], remote: Dict[str, Any]) -> Resolution:
        outcome = STRATEGIES[self.strategy](local, remote)
        if isinstance(outcome, Resolved):
            logger.info(
                f"[CONFLICT] {self.strategy}: {outcome.winner} wins for record {remote.get('id') or local.get('id')}"
            )
        else:
            logger.info(f"[CONFLICT] Manual resolution required for record {remote.get('id') or local.get('id')}")
        return outcome


# =============================================================================
# MANUAL CONFLICT PERSISTENCE
# =============================================================================

class ConflictStore:
    """Pending/resolved conflicts kept in `sync_conflicts`"""

    def __init__(self, store: LocalStore):
        self.store = store

    async def save(
        self,
        table: str,
        record_id: str,
        local: Dict[str, Any],
        remote: Dict[str, Any],
        strategy: str,
        sync_item_id: Optional[str] = None
    ) -> str:
        """
        Record a pending conflict.

        A record has at most one pending conflict: a later divergence for the
        same record refreshes the stored remote version.
        """
        existing = await self.pending_for(table, record_id)
        now = self.store.clock.now()
        if existing:
            await self.store.update_fields(SYNC_CONFLICTS, existing.id, set_fields={
                "local_data": local,
                "remote_data": remote,
                "local_timestamp": record_timestamp(local),
                "remote_timestamp": record_timestamp(remote),
                "sync_item_id": sync_item_id or existing.sync_item_id,
            })
            logger.info(f"[CONFLICT] Refreshed pending conflict {existing.id} for {table}:{record_id}")
            return existing.id

        conflict_id = await self.store.add(SYNC_CONFLICTS, {
            "table": table,
            "record_id": record_id,
            "sync_item_id": sync_item_id,
            "local_data": local,
            "remote_data": remote,
            "local_timestamp": record_timestamp(local),
            "remote_timestamp": record_timestamp(remote),
            "strategy": strategy,
            "status": "pending",
            "resolution": None,
            "detected_at": now,
            "resolved_at": None,
        })
        logger.warning(f"[CONFLICT] Stored conflict {conflict_id} for {table}:{record_id}")
        return conflict_id

    async def get(self, conflict_id: str) -> Optional[SyncConflict]:
        doc = await self.store.get(SYNC_CONFLICTS, conflict_id)
        return SyncConflict(**doc) if doc else None

    async def require(self, conflict_id: str) -> SyncConflict:
        conflict = await self.get(conflict_id)
        if conflict is None:
            raise NotFoundError("sync_conflict", conflict_id)
        return conflict

    async def pending_for(self, table: str, record_id: str) -> Optional[SyncConflict]:
        doc = await self.store.find_one(SYNC_CONFLICTS, {
            "table": table,
            "record_id": record_id,
            "status": "pending"
        })
        return SyncConflict(**doc) if doc else None

    async def has_pending_for_item(self, sync_item_id: str) -> bool:
        doc = await self.store.find_one(SYNC_CONFLICTS, {
            "sync_item_id": sync_item_id,
            "status": "pending"
        })
        return doc is not None

    async def resolved_locally(self, sync_item_id: str) -> bool:
        """True when a user already chose the local version for this queue item"""
        doc = await self.store.find_one(SYNC_CONFLICTS, {
            "sync_item_id": sync_item_id,
            "status": "resolved",
            "resolution": "local"
        })
        return doc is not None

    async def list_pending(self) -> List[SyncConflict]:
        docs = await self.store.find(
            SYNC_CONFLICTS,
            {"status": "pending"},
            sort=[("detected_at", 1)]
        )
        return [SyncConflict(**doc) for doc in docs]

    async def mark_resolved(self, conflict_id: str, resolution: str) -> None:
        await self.store.update_fields(SYNC_CONFLICTS, conflict_id, set_fields={
            "status": "resolved",
            "resolution": resolution,
            "resolved_at": self.store.clock.now(),
        })

