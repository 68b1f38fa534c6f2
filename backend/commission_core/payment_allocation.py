"""
PAYMENT ALLOCATION ENGINE

Implements:
1. Specific allocation: settle one contract's oldest certifications in full
2. Global allocation: spread a payment proportionally across every pending
   certification of a company
3. Reversal: undo an allocation without residue
4. Crash recovery: replay journaled settlements that never finished

ALL calculations use Decimal for precision (2 places, half up).
ALL plans are checked against the sum invariant before the first write.
ALL writes are enqueued for sync.

LOCKED FORMULAS:
- specific: walk pending certifications by period; settle while
  remaining >= owed; stop at the first one that cannot be covered
- global:   P = SUM(owed); raw_i = amount * owed_i / P;
            assigned_i = MIN(raw_i, owed_i, remaining)
            paid_i = assigned_i >= owed_i - 0.01
- completion: SUM(assigned) == total_amount within 0.01
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Dict, Any, List
import asyncio
import logging

from .errors import IntegrityError, NotFoundError
from .financial_precision import (
    round_financial, to_float,
    validate_positive, safe_divide, safe_multiply, safe_subtract, safe_sum,
    amounts_match, covers, owed_commission,
    SETTLEMENT_EPSILON
)
from .local_store import (
    LocalStore, generate_id,
    CONTRACTS, CERTIFICATIONS, PAYMENTS, DISTRIBUTIONS
)
from .settlement_journal import SettlementJournal, ALLOCATE, REVERSE
from .state_machine import build_payment_state_machine
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class PlannedLine:
    """One certification touched by an allocation plan"""
    certification: Dict[str, Any]
    owed: Decimal
    assigned: Decimal
    paid: bool


@dataclass
class AllocationPlan:
    lines: List[PlannedLine] = field(default_factory=list)
    amount: Decimal = Decimal('0')

    @property
    def assigned_total(self) -> Decimal:
        return safe_sum(line.assigned for line in self.lines)

    @property
    def unapplied(self) -> Decimal:
        return round_financial(safe_subtract(self.amount, self.assigned_total))


@dataclass
class AllocationResult:
    payment_id: str
    distributions: List[Dict[str, Any]] = field(default_factory=list)
    paid_certification_ids: List[str] = field(default_factory=list)
    assigned_total: float = 0.0
    unapplied_amount: float = 0.0
    completed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "distributions": self.distributions,
            "paid_certification_ids": self.paid_certification_ids,
            "assigned_total": self.assigned_total,
            "unapplied_amount": self.unapplied_amount,
            "completed": self.completed,
        }


@dataclass
class ReversalResult:
    payment_id: str
    reset_certification_ids: List[str] = field(default_factory=list)
    deleted_distribution_ids: List[str] = field(default_factory=list)
    payment_deleted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "reset_certification_ids": self.reset_certification_ids,
            "deleted_distribution_ids": self.deleted_distribution_ids,
            "payment_deleted": self.payment_deleted,
        }


# =============================================================================
# PLANNING (pure)
# =============================================================================

def plan_specific(certifications: List[Dict[str, Any]], amount) -> AllocationPlan:
    """
    Settle certifications oldest period first, each one in full.

    Stops at the first certification the remaining amount cannot cover;
    that one and every later one stay untouched. There is no partial-paid
    state. Whatever is left over is reported as unapplied.
    """
    amount_d = round_financial(amount)
    plan = AllocationPlan(amount=amount_d)
    remaining = amount_d

    for cert in sorted(certifications, key=lambda c: (c.get("period") or "", c.get("id") or "")):
        owed = owed_commission(cert)
        if remaining < owed:
            break
        plan.lines.append(PlannedLine(certification=cert, owed=owed, assigned=owed, paid=True))
        remaining = safe_subtract(remaining, owed)

    return plan


def plan_global(certifications: List[Dict[str, Any]], amount) -> AllocationPlan:
    """
    Spread an amount proportionally to each certification's owed commission.

    Lines are rounded to cents; the residual left by per-line rounding goes
    to the last line first (then earlier ones), never beyond a line's owed.
    """
    amount_d = round_financial(amount)
    plan = AllocationPlan(amount=amount_d)

    owed_values = [owed_commission(cert) for cert in certifications]
    total_owed = safe_sum(owed_values)
    if total_owed <= Decimal('0'):
        return plan

    remaining = amount_d
    for cert, owed in zip(certifications, owed_values):
        raw = safe_multiply(amount_d, safe_divide(owed, total_owed))
        assigned = round_financial(min(raw, owed, remaining))
        remaining = safe_subtract(remaining, assigned)
        plan.lines.append(PlannedLine(certification=cert, owed=owed, assigned=assigned, paid=False))

    # Rounding residual
    target = min(amount_d, total_owed)
    residual = round_financial(safe_subtract(target, plan.assigned_total))
    for line in reversed(plan.lines):
        if residual <= Decimal('0'):
            break
        room = safe_subtract(line.owed, line.assigned)
        extra = min(room, residual)
        if extra > Decimal('0'):
            line.assigned = round_financial(line.assigned + extra)
            residual = safe_subtract(residual, extra)

    for line in plan.lines:
        line.paid = covers(line.assigned, line.owed)

    return plan


def verify_plan(plan: AllocationPlan, payment_id: str) -> None:
    """
    Enforce the settlement invariants on a plan.
    Raises IntegrityError; nothing has been written at this point.
    """
    for line in plan.lines:
        if line.assigned < Decimal('0'):
            raise IntegrityError(
                violation_type="NEGATIVE_DISTRIBUTION",
                message=f"Negative distribution planned for certification {line.certification.get('id')}",
                details={"payment_id": payment_id, "assigned": to_float(line.assigned)}
            )
        if line.assigned > line.owed:
            raise IntegrityError(
                violation_type="OVER_SETTLEMENT",
                message=(
                    f"Distribution {line.assigned} exceeds owed {line.owed} "
                    f"for certification {line.certification.get('id')}"
                ),
                details={"payment_id": payment_id}
            )

    assigned_total = plan.assigned_total
    if assigned_total > plan.amount:
        raise IntegrityError(
            violation_type="DISTRIBUTION_EXCEEDS_PAYMENT",
            message=f"Distributions total {assigned_total} exceeds payment amount {plan.amount}",
            details={
                "payment_id": payment_id,
                "assigned_total": to_float(assigned_total),
                "total_amount": to_float(plan.amount)
            }
        )


# =============================================================================
# ENGINE
# =============================================================================

class PaymentAllocationEngine:
    """
    Applies allocation plans to the local store.

    Payment mutations are serialized by an engine-level lock. Every
    settlement is journaled before its first write so recover() can finish
    it after a crash.
    """

    def __init__(
        self,
        store: LocalStore,
        queue: SyncQueue,
        journal: Optional[SettlementJournal] = None
    ):
        self.store = store
        self.queue = queue
        self.journal = journal or SettlementJournal(store)
        self.payment_states = build_payment_state_machine()
        self._lock = asyncio.Lock()

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def _pending_for_contract(self, contract_id: str) -> List[Dict[str, Any]]:
        certs = await self.store.get_by_index(CERTIFICATIONS, "contract_id", contract_id)
        pending = [c for c in certs if not c.get("paid")]
        return sorted(pending, key=lambda c: (c.get("period") or "", c.get("id") or ""))

    async def _pending_for_company(self, company_id: str) -> List[Dict[str, Any]]:
        contracts = await self.store.get_by_index(CONTRACTS, "company_id", company_id)
        contracts.sort(key=lambda c: (c.get("created_at"), c.get("id") or ""))

        pending = []
        for contract in contracts:
            pending.extend(await self._pending_for_contract(contract["id"]))
        return pending

    # =========================================================================
    # ALLOCATION
    # =========================================================================

    async def allocate_specific(self, payment: Dict[str, Any], contract_id: str, amount) -> AllocationResult:
        """
        Settle the contract's pending certifications oldest first.

        Raises:
            ValidationError: amount <= 0
            NotFoundError: unknown contract, or no pending certifications
            IntegrityError: plan breaks the sum invariant (nothing written)
        """
        validate_positive(amount, "amount")
        async with self._lock:
            contract = await self.store.get(CONTRACTS, contract_id)
            if contract is None:
                raise NotFoundError("contract", contract_id)

            pending = await self._pending_for_contract(contract_id)
            if not pending:
                raise NotFoundError(
                    "certification", None,
                    f"No pending certifications for contract {contract_id}"
                )

            plan = plan_specific(pending, amount)
            logger.info(
                f"[ALLOCATION] Specific payment {payment['id']}: {len(plan.lines)} certifications settled, "
                f"unapplied {plan.unapplied}"
            )
            return await self._settle(payment, plan)

    async def allocate_global(self, payment: Dict[str, Any], amount) -> AllocationResult:
        """
        Distribute proportionally across every pending certification of the
        payment's company (stable order: contract, then period).

        Raises:
            ValidationError: amount <= 0
            NotFoundError: no pending certifications
            IntegrityError: plan breaks the sum invariant (nothing written)
        """
        validate_positive(amount, "amount")
        async with self._lock:
            pending = await self._pending_for_company(payment["company_id"])
            if not pending:
                raise NotFoundError(
                    "certification", None,
                    f"No pending certifications for company {payment['company_id']}"
                )

            plan = plan_global(pending, amount)
            logger.info(
                f"[ALLOCATION] Global payment {payment['id']}: {len(plan.lines)} lines, "
                f"assigned {plan.assigned_total} of {plan.amount}"
            )
            return await self._settle(payment, plan)

    async def _settle(self, payment: Dict[str, Any], plan: AllocationPlan) -> AllocationResult:
        payment_id = payment["id"]
        verify_plan(plan, payment_id)

        distributions = []
        certification_updates = []
        for line in plan.lines:
            cert = line.certification
            if line.assigned > Decimal('0'):
                distributions.append({
                    "id": generate_id(),
                    "payment_id": payment_id,
                    "contract_id": cert["contract_id"],
                    "certification_id": cert["id"],
                    "assigned_amount": to_float(line.assigned),
                    "assigned_percent": to_float(
                        safe_multiply(safe_divide(line.assigned, plan.amount), 100)
                    ),
                })
            if line.paid:
                certification_updates.append({"id": cert["id"], "paid": True, "payment_id": payment_id})

        completed = plan.lines != [] and amounts_match(plan.assigned_total, plan.amount, SETTLEMENT_EPSILON)
        payment_update = None
        if completed:
            current_state = payment.get("state", "pending")
            payment_update = {"state": self.payment_states.transition(current_state, "completed")}

        entry_id = await self.journal.open(
            ALLOCATE, payment_id, distributions, certification_updates, payment_update
        )
        await self._apply(
            payment_id, distributions, certification_updates,
            payment_update=payment_update, delete_payment=False,
            insert_distributions=True, replay=False
        )
        await self.journal.mark_applied(entry_id)

        return AllocationResult(
            payment_id=payment_id,
            distributions=distributions,
            paid_certification_ids=[u["id"] for u in certification_updates],
            assigned_total=to_float(plan.assigned_total),
            unapplied_amount=to_float(plan.unapplied),
            completed=completed
        )

    # =========================================================================
    # REVERSAL
    # =========================================================================

    async def reverse(self, payment_id: str) -> ReversalResult:
        """
        Undo every effect of a payment: certifications back to unpaid,
        distributions and the payment deleted. Safe to call repeatedly.
        """
        async with self._lock:
            distributions = await self.store.get_by_index(DISTRIBUTIONS, "payment_id", payment_id)
            carrying = await self.store.get_by_index(CERTIFICATIONS, "payment_id", payment_id)
            payment = await self.store.get(PAYMENTS, payment_id)

            cert_ids = []
            for cert in carrying:
                cert_ids.append(cert["id"])
            for dist in distributions:
                if dist["certification_id"] in cert_ids:
                    continue
                cert = await self.store.get(CERTIFICATIONS, dist["certification_id"])
                # Settled since by another payment: not ours to reset
                if cert is None or cert.get("payment_id") not in (None, payment_id):
                    continue
                cert_ids.append(cert["id"])

            certification_updates = [
                {"id": cert_id, "paid": False, "payment_id": None} for cert_id in cert_ids
            ]

            if not distributions and not certification_updates and payment is None:
                logger.info(f"[ALLOCATION] Nothing to reverse for payment {payment_id}")
                return ReversalResult(payment_id=payment_id)

            entry_id = await self.journal.open(
                REVERSE, payment_id, distributions, certification_updates,
                payment_update=None, delete_payment=True
            )
            await self._apply(
                payment_id, distributions, certification_updates,
                payment_update=None, delete_payment=True,
                insert_distributions=False, replay=False
            )
            await self.journal.mark_applied(entry_id)

            logger.info(
                f"[ALLOCATION] Reversed payment {payment_id}: {len(cert_ids)} certifications reset, "
                f"{len(distributions)} distributions deleted"
            )
            return ReversalResult(
                payment_id=payment_id,
                reset_certification_ids=cert_ids,
                deleted_distribution_ids=[d["id"] for d in distributions],
                payment_deleted=payment is not None
            )

    # =========================================================================
    # WRITE APPLICATION (idempotent)
    # =========================================================================

    async def _apply(
        self,
        payment_id: str,
        distributions: List[Dict[str, Any]],
        certification_updates: List[Dict[str, Any]],
        payment_update: Optional[Dict[str, Any]],
        delete_payment: bool,
        insert_distributions: bool,
        replay: bool
    ) -> None:
        """
        Bring the store to the state a journal entry describes.

        Each step checks the current state first, so re-running a partially
        applied entry only performs the missing writes. During replay every
        step is re-enqueued: the crash may have hit between a write and its
        queue entry, and remote writes are idempotent.
        """
        # Distributions
        for dist in distributions:
            exists = await self.store.get(DISTRIBUTIONS, dist["id"]) is not None
            if insert_distributions:
                if not exists:
                    await self.store.add(DISTRIBUTIONS, dist)
                if not exists or replay:
                    await self.queue.enqueue("INSERT", DISTRIBUTIONS, dist["id"], dist)
            else:
                if exists:
                    await self.store.delete(DISTRIBUTIONS, dist["id"])
                if exists or replay:
                    await self.queue.enqueue("DELETE", DISTRIBUTIONS, dist["id"], dist)

        # Certifications
        for target in certification_updates:
            cert = await self.store.get(CERTIFICATIONS, target["id"])
            if cert is None:
                logger.warning(f"[ALLOCATION] Certification {target['id']} vanished during settlement")
                continue
            changed = cert.get("paid") != target["paid"] or cert.get("payment_id") != target["payment_id"]
            if changed:
                cert["paid"] = target["paid"]
                cert["payment_id"] = target["payment_id"]
                await self.store.update(CERTIFICATIONS, cert)
                cert = await self.store.get(CERTIFICATIONS, target["id"])
            if changed or replay:
                await self.queue.enqueue("UPDATE", CERTIFICATIONS, cert["id"], cert)

        # Payment
        payment = await self.store.get(PAYMENTS, payment_id)
        if delete_payment:
            if payment is not None:
                await self.store.delete(PAYMENTS, payment_id)
            if payment is not None or replay:
                await self.queue.enqueue("DELETE", PAYMENTS, payment_id, payment or {"id": payment_id})
        elif payment_update and payment is not None:
            changed = any(payment.get(k) != v for k, v in payment_update.items())
            if changed:
                payment.update(payment_update)
                await self.store.update(PAYMENTS, payment)
                payment = await self.store.get(PAYMENTS, payment_id)
            if changed or replay:
                await self.queue.enqueue("UPDATE", PAYMENTS, payment_id, payment)

    # =========================================================================
    # RECOVERY
    # =========================================================================

    async def recover(self) -> int:
        """
        Replay every journaled settlement that was opened but never marked
        applied. Returns the number of entries completed.
        """
        recovered = 0
        async with self._lock:
            for entry in await self.journal.unapplied():
                logger.warning(
                    f"[JOURNAL] Replaying {entry['kind']} entry {entry['id']} for payment {entry['payment_id']}"
                )
                await self._apply(
                    entry["payment_id"],
                    entry.get("distributions") or [],
                    entry.get("certification_updates") or [],
                    payment_update=entry.get("payment_update"),
                    delete_payment=entry.get("delete_payment", False),
                    insert_distributions=entry["kind"] == ALLOCATE,
                    replay=True
                )
                await self.journal.mark_applied(entry["id"])
                recovered += 1

        if recovered:
            logger.info(f"[JOURNAL] Recovered {recovered} settlements")
        return recovered
