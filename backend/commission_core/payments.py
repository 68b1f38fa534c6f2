"""
PAYMENT MANAGEMENT

Payments settle commission owed by certifications:
- specific: one contract, oldest pending certification first
- global:   proportional across every pending certification of the company

The distribution itself is the allocation engine's job; this manager owns
validation, the payment record and the read side (listing, statistics).
A payment's amount is fixed once allocated: delete it (which reverses every
effect) and record a new one instead.
"""

from typing import Optional, Dict, Any, List
from collections import defaultdict
from datetime import timedelta
import logging

from .errors import IntegrityError, NotFoundError, ValidationError
from .contracts import ContractManager
from .domain_service import DomainService
from .financial_precision import to_float, safe_sum, amounts_match
from .local_store import PAYMENTS, DISTRIBUTIONS
from .models import PaymentCreate, PaymentUpdate, PaymentFilters, parse_model
from .payment_allocation import PaymentAllocationEngine
from .responses import success, returns_result
from .session import SessionContext

logger = logging.getLogger(__name__)


class PaymentManager(DomainService):

    def __init__(self, store, queue, contracts: ContractManager, engine: PaymentAllocationEngine):
        super().__init__(store, queue)
        self.contracts = contracts
        self.engine = engine

    async def _require_payment(self, session: SessionContext, payment_id: str) -> Dict[str, Any]:
        company_id = session.require_company()
        payment = await self.store.get(PAYMENTS, payment_id) if payment_id else None
        if payment is None or payment.get("company_id") != company_id:
            raise NotFoundError("payment", payment_id)
        return payment

    async def _with_distributions(self, payment: Dict[str, Any]) -> Dict[str, Any]:
        distributions = await self.store.find(
            DISTRIBUTIONS, {"payment_id": payment["id"]}, sort=[("created_at", 1)]
        )
        return {**payment, "distributions": distributions}

    # =========================================================================
    # CREATE
    # =========================================================================

    @returns_result("Create payment")
    async def create_payment(self, session: SessionContext, data: Dict[str, Any]) -> Dict[str, Any]:
        company_id = session.require_company()
        payload = parse_model(PaymentCreate, data)

        contract_id = None
        if payload.scope == "specific":
            if not payload.contract_id:
                raise ValidationError("A specific payment requires a contract")
            contract = await self.contracts.require_contract(session, payload.contract_id)
            contract_id = contract["id"]

        payment = await self._insert(PAYMENTS, {
            "company_id": company_id,
            "scope": payload.scope,
            "contract_id": contract_id,
            "total_amount": to_float(payload.total_amount),
            "method": payload.method or "transfer",
            "date": payload.date or self.clock.now().date().isoformat(),
            "notes": payload.notes,
            "state": "pending",
        })
        logger.info(f"Payment created: {payment['id']} scope={payment['scope']} amount={payment['total_amount']}")

        try:
            if payload.scope == "specific":
                allocation = await self.engine.allocate_specific(payment, contract_id, payload.total_amount)
            else:
                allocation = await self.engine.allocate_global(payment, payload.total_amount)
        except NotFoundError as e:
            if e.entity != "certification":
                raise
            logger.info(f"Payment {payment['id']} recorded with nothing to settle")
            return success(
                {"payment": payment, "allocation": None},
                "Payment recorded; no pending certifications to settle"
            )
        except IntegrityError:
            # Nothing was distributed: drop the payment record again
            await self.engine.reverse(payment["id"])
            raise

        payment = await self.store.get(PAYMENTS, payment["id"])
        message = (
            f"Payment applied: {len(allocation.paid_certification_ids)} certifications settled"
            if allocation.paid_certification_ids else "Payment applied; no certification fully settled"
        )
        return success({"payment": payment, "allocation": allocation.to_dict()}, message)

    # =========================================================================
    # READ
    # =========================================================================

    @returns_result("Get payment")
    async def get_payment(self, session: SessionContext, payment_id: str) -> Dict[str, Any]:
        payment = await self._require_payment(session, payment_id)
        return success(await self._with_distributions(payment))

    @returns_result("List payments")
    async def list_payments(self, session: SessionContext, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        company_id = session.require_company()
        criteria = parse_model(PaymentFilters, filters or {})

        query: Dict[str, Any] = {"company_id": company_id}
        if criteria.scope:
            query["scope"] = criteria.scope
        if criteria.method:
            query["method"] = criteria.method
        if criteria.contract_id:
            query["contract_id"] = criteria.contract_id
        date_range: Dict[str, Any] = {}
        if criteria.date_from:
            date_range["$gte"] = criteria.date_from
        if criteria.date_to:
            date_range["$lte"] = criteria.date_to
        if date_range:
            query["date"] = date_range

        payments = await self.store.find(PAYMENTS, query, sort=[("date", -1), ("created_at", -1)])
        return success([await self._with_distributions(p) for p in payments])

    # =========================================================================
    # UPDATE / DELETE
    # =========================================================================

    @returns_result("Update payment")
    async def update_payment(self, session: SessionContext, payment_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        payment = await self._require_payment(session, payment_id)
        update = parse_model(PaymentUpdate, changes).model_dump(exclude_unset=True)

        if update.get("total_amount") is not None and not amounts_match(update["total_amount"], payment["total_amount"]):
            raise ValidationError(
                "The amount of a recorded payment cannot change; delete it and record a new one"
            )
        update.pop("total_amount", None)

        scope_changes = (
            (update.get("scope") and update["scope"] != payment["scope"])
            or ("contract_id" in update and update["contract_id"] != payment.get("contract_id"))
        )
        if scope_changes:
            distributions = await self.store.get_by_index(DISTRIBUTIONS, "payment_id", payment_id)
            if distributions:
                raise ValidationError(
                    "Cannot change the scope of a payment that already has distributions",
                    {"distributions": len(distributions)}
                )
            scope = update.get("scope") or payment["scope"]
            contract_id = update.get("contract_id", payment.get("contract_id"))
            if scope == "specific":
                if not contract_id:
                    raise ValidationError("A specific payment requires a contract")
                await self.contracts.require_contract(session, contract_id)
            else:
                contract_id = None
            update["scope"] = scope
            update["contract_id"] = contract_id
        else:
            update.pop("scope", None)
            update.pop("contract_id", None)

        for field in ("method", "date", "notes"):
            if field in update and update[field] is None:
                update.pop(field)

        payment.update(update)
        payment = await self._replace(PAYMENTS, payment)
        return success(payment, "Payment updated")

    @returns_result("Delete payment")
    async def delete_payment(self, session: SessionContext, payment_id: str) -> Dict[str, Any]:
        await self._require_payment(session, payment_id)
        reversal = await self.engine.reverse(payment_id)
        return success(
            reversal.to_dict(),
            f"Payment deleted; {len(reversal.reset_certification_ids)} certifications back to pending"
        )

    # =========================================================================
    # STATISTICS
    # =========================================================================

    @returns_result("Payment statistics")
    async def get_payment_statistics(self, session: SessionContext, months: int = 6) -> Dict[str, Any]:
        company_id = session.require_company()
        payments = await self.store.get_by_index(PAYMENTS, "company_id", company_id)

        specific = [p for p in payments if p.get("scope") == "specific"]
        global_ = [p for p in payments if p.get("scope") == "global"]

        by_method: Dict[str, List[float]] = defaultdict(list)
        for p in payments:
            by_method[p.get("method") or "transfer"].append(p["total_amount"])

        # Trailing monthly totals, oldest month first
        today = self.clock.now().date().replace(day=1)
        periods = []
        cursor = today
        for _ in range(max(months, 0)):
            periods.append(cursor.strftime("%Y-%m"))
            cursor = (cursor - timedelta(days=1)).replace(day=1)
        periods.reverse()
        monthly = [
            {
                "period": period,
                "amount": to_float(safe_sum(
                    p["total_amount"] for p in payments if (p.get("date") or "").startswith(period)
                )),
            }
            for period in periods
        ]

        return success({
            "total_payments": len(payments),
            "total_amount": to_float(safe_sum(p["total_amount"] for p in payments)),
            "specific_count": len(specific),
            "specific_amount": to_float(safe_sum(p["total_amount"] for p in specific)),
            "global_count": len(global_),
            "global_amount": to_float(safe_sum(p["total_amount"] for p in global_)),
            "by_method": {
                method: {"count": len(amounts), "amount": to_float(safe_sum(amounts))}
                for method, amounts in sorted(by_method.items())
            },
            "monthly": monthly,
        })
