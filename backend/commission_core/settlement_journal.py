"""
SETTLEMENT JOURNAL

Write-ahead log for payment settlements. The local store commits each
collection write independently, so an allocation or reversal touching
distributions, certifications and payments is first recorded here with its
complete plan. Writes are then applied idempotently and the entry is marked
applied. Entries still unapplied after a crash are replayed by
PaymentAllocationEngine.recover().

Entry layout:
    {
        "id": "...",
        "kind": "allocate" | "reverse",
        "payment_id": "...",
        "distributions": [...],            # to insert (allocate) / delete (reverse)
        "certification_updates": [...],    # target {id, paid, payment_id}
        "payment_update": {...} | None,    # fields to set on the payment
        "delete_payment": bool,
        "applied": False,
        "applied_at": None
    }
"""

from typing import Optional, Dict, Any, List
import logging

from .local_store import LocalStore, SETTLEMENT_JOURNAL

logger = logging.getLogger(__name__)

ALLOCATE = "allocate"
REVERSE = "reverse"


class SettlementJournal:

    def __init__(self, store: LocalStore):
        self.store = store

    async def open(
        self,
        kind: str,
        payment_id: str,
        distributions: List[Dict[str, Any]],
        certification_updates: List[Dict[str, Any]],
        payment_update: Optional[Dict[str, Any]] = None,
        delete_payment: bool = False
    ) -> str:
        """Persist a settlement plan before any of its writes happen"""
        entry_id = await self.store.add(SETTLEMENT_JOURNAL, {
            "kind": kind,
            "payment_id": payment_id,
            "distributions": distributions,
            "certification_updates": certification_updates,
            "payment_update": payment_update,
            "delete_payment": delete_payment,
            "applied": False,
            "applied_at": None,
        })
        logger.info(
            f"[JOURNAL] Opened {kind} entry {entry_id} for payment {payment_id} "
            f"({len(distributions)} distributions, {len(certification_updates)} certifications)"
        )
        return entry_id

    async def mark_applied(self, entry_id: str) -> None:
        await self.store.update_fields(SETTLEMENT_JOURNAL, entry_id, set_fields={
            "applied": True,
            "applied_at": self.store.clock.now(),
        })
        logger.info(f"[JOURNAL] Entry {entry_id} applied")

    async def get(self, entry_id: str) -> Optional[Dict[str, Any]]:
        return await self.store.get(SETTLEMENT_JOURNAL, entry_id)

    async def unapplied(self) -> List[Dict[str, Any]]:
        """Entries opened but never marked applied, oldest first"""
        return await self.store.find(
            SETTLEMENT_JOURNAL,
            {"applied": False},
            sort=[("created_at", 1)]
        )
