"""
CONTRACT MANAGEMENT

This module provides:
1. Contract CRUD scoped to the session's company
2. Status changes through the contract state machine
3. Available balance bookkeeping (base_amount minus certified amounts)
4. Per-contract statistics
"""

from typing import Optional, Dict, Any
from decimal import Decimal
import logging

from .clock import parse_date_bound
from .errors import IntegrityError, NotFoundError, ValidationError
from .domain_service import DomainService
from .financial_precision import (
    to_decimal, to_float, round_financial, safe_add, safe_subtract, safe_sum,
    safe_divide, safe_multiply, owed_commission, SETTLEMENT_EPSILON
)
from .local_store import COMPANIES, CONTRACTS, CERTIFICATIONS
from .models import ContractCreate, ContractUpdate, parse_model
from .responses import success, returns_result
from .session import SessionContext
from .state_machine import build_contract_state_machine

logger = logging.getLogger(__name__)

CONTRACT_STATUSES = ("active", "completed", "cancelled")


class ContractManager(DomainService):

    def __init__(self, store, queue):
        super().__init__(store, queue)
        self.status_machine = build_contract_state_machine()

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def require_contract(self, session: SessionContext, contract_id: str) -> Dict[str, Any]:
        """Contract of the session's company, NotFoundError otherwise"""
        company_id = session.require_company()
        contract = await self.store.get(CONTRACTS, contract_id) if contract_id else None
        if contract is None or contract.get("company_id") != company_id:
            raise NotFoundError("contract", contract_id)
        return contract

    # =========================================================================
    # BALANCE
    # =========================================================================

    async def apply_balance_change(self, contract_id: str, delta) -> Dict[str, Any]:
        """
        Move a contract's available balance by `delta` (negative consumes).
        The balance never drops below zero.
        """
        contract = await self._require(CONTRACTS, contract_id, "contract")
        current = to_decimal(contract.get("available_balance") or 0)
        new_balance = round_financial(safe_add(current, delta))

        if new_balance < -SETTLEMENT_EPSILON:
            raise ValidationError(
                f"Amount exceeds the available balance of {to_float(current)}",
                {"contract_id": contract_id, "available_balance": to_float(current)}
            )

        contract["available_balance"] = to_float(max(new_balance, Decimal('0')))
        contract = await self._replace(CONTRACTS, contract)
        logger.info(f"Contract {contract_id} balance: {to_float(current)} -> {contract['available_balance']}")
        return contract

    # =========================================================================
    # CRUD
    # =========================================================================

    @returns_result("Create contract")
    async def create_contract(self, session: SessionContext, data: Dict[str, Any]) -> Dict[str, Any]:
        company_id = session.require_company()
        company = await self.store.get(COMPANIES, company_id)
        if company is None or company.get("deleted_at"):
            raise NotFoundError("company", company_id)

        payload = parse_model(ContractCreate, data)
        contract = await self._insert(CONTRACTS, {
            "company_id": company_id,
            "contract_number": payload.contract_number.strip(),
            "name": payload.name.strip(),
            "base_amount": to_float(payload.base_amount),
            "available_balance": to_float(payload.base_amount),
            "custom_commission_percent": payload.custom_commission_percent,
            "status": "active",
            "notes": payload.notes,
        })
        logger.info(f"Contract created: {contract['id']} ({contract['contract_number']})")
        return success(contract, "Contract created")

    @returns_result("Get contract")
    async def get_contract(self, session: SessionContext, contract_id: str) -> Dict[str, Any]:
        return success(await self.require_contract(session, contract_id))

    @returns_result("List contracts")
    async def list_contracts(
        self,
        session: SessionContext,
        status: Optional[str] = None,
        search: Optional[str] = None,
        created_from=None,
        created_to=None
    ) -> Dict[str, Any]:
        """Newest first; created_from / created_to bound the creation date, both inclusive"""
        company_id = session.require_company()
        query: Dict[str, Any] = {"company_id": company_id}
        if status:
            query["status"] = status

        created_range: Dict[str, Any] = {}
        lower = parse_date_bound(created_from)
        upper = parse_date_bound(created_to, end_of_day=True)
        if lower:
            created_range["$gte"] = lower
        if upper:
            created_range["$lte"] = upper
        if created_range:
            query["created_at"] = created_range
        contracts = await self.store.find(CONTRACTS, query, sort=[("created_at", -1)])

        term = (search or "").strip().lower()
        if term:
            contracts = [
                c for c in contracts
                if term in (c.get("contract_number") or "").lower()
                or term in (c.get("name") or "").lower()
                or term in (c.get("notes") or "").lower()
            ]
        return success(contracts)

    @returns_result("Update contract")
    async def update_contract(self, session: SessionContext, contract_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        contract = await self.require_contract(session, contract_id)
        update = parse_model(ContractUpdate, changes).model_dump(exclude_unset=True)

        for field in ("contract_number", "name"):
            if field in update:
                update[field] = (update[field] or "").strip()
                if not update[field]:
                    raise ValidationError(f"Contract {field.replace('_', ' ')} is required")

        if update.get("base_amount") is not None:
            # Certified amounts stay consumed: the balance moves with the base
            delta = safe_subtract(update["base_amount"], contract["base_amount"])
            new_balance = round_financial(safe_add(contract.get("available_balance") or 0, delta))
            if new_balance < -SETTLEMENT_EPSILON:
                raise ValidationError(
                    "Base amount is lower than the amount already certified",
                    {"contract_id": contract_id, "certified": to_float(
                        safe_subtract(contract["base_amount"], contract.get("available_balance") or 0)
                    )}
                )
            update["base_amount"] = to_float(update["base_amount"])
            update["available_balance"] = to_float(max(new_balance, Decimal('0')))
        else:
            update.pop("base_amount", None)

        contract.update(update)
        contract = await self._replace(CONTRACTS, contract)
        return success(contract, "Contract updated")

    @returns_result("Delete contract")
    async def delete_contract(self, session: SessionContext, contract_id: str) -> Dict[str, Any]:
        contract = await self.require_contract(session, contract_id)

        certs = await self.store.get_by_index(CERTIFICATIONS, "contract_id", contract_id)
        if certs:
            raise IntegrityError(
                violation_type="CONTRACT_HAS_CERTIFICATIONS",
                message="Cannot delete the contract because it has certifications",
                details={"contract_id": contract_id, "certifications": len(certs)}
            )

        await self._remove(CONTRACTS, contract)
        logger.info(f"Contract {contract_id} deleted")
        return success({"id": contract_id}, "Contract deleted")

    @returns_result("Change contract status")
    async def change_contract_status(self, session: SessionContext, contract_id: str, status: str) -> Dict[str, Any]:
        if status not in CONTRACT_STATUSES:
            raise ValidationError(f"Invalid contract status: {status}", {"allowed": list(CONTRACT_STATUSES)})

        contract = await self.require_contract(session, contract_id)
        current = contract.get("status", "active")
        if current == status:
            return success(contract, f"Contract already {status}")

        contract["status"] = self.status_machine.transition(current, status)
        contract = await self._replace(CONTRACTS, contract)
        return success(contract, f"Contract marked {status}")

    # =========================================================================
    # BALANCE OPERATIONS
    # =========================================================================

    @returns_result("Validate certifiable amount")
    async def validate_certifiable_amount(self, session: SessionContext, contract_id: str, amount) -> Dict[str, Any]:
        contract = await self.require_contract(session, contract_id)
        available = to_decimal(contract.get("available_balance") or 0)
        requested = to_decimal(amount)

        if requested <= Decimal('0'):
            raise ValidationError("Amount must be positive")
        if requested > available + SETTLEMENT_EPSILON:
            raise ValidationError(
                f"Amount exceeds the available balance of {to_float(available)}",
                {"available_balance": to_float(available), "requested": to_float(requested)}
            )
        return success({
            "available_balance": to_float(available),
            "remaining_after": to_float(safe_subtract(available, requested)),
        })

    @returns_result("Adjust available balance")
    async def adjust_available_balance(
        self,
        session: SessionContext,
        contract_id: str,
        amount,
        operation: str = "subtract"
    ) -> Dict[str, Any]:
        if operation not in ("subtract", "add"):
            raise ValidationError(f"Invalid balance operation: {operation}")
        await self.require_contract(session, contract_id)

        delta = to_decimal(amount)
        if operation == "subtract":
            delta = -delta
        contract = await self.apply_balance_change(contract_id, delta)
        return success(contract, "Available balance updated")

    # =========================================================================
    # STATISTICS
    # =========================================================================

    @returns_result("Contract statistics")
    async def get_contract_statistics(self, session: SessionContext, contract_id: str) -> Dict[str, Any]:
        contract = await self.require_contract(session, contract_id)
        certs = await self.store.get_by_index(CERTIFICATIONS, "contract_id", contract_id)

        certified = safe_sum(c.get("certified_amount") or 0 for c in certs)
        total_commission = safe_sum(owed_commission(c) for c in certs)
        paid_commission = safe_sum(owed_commission(c) for c in certs if c.get("paid"))

        base = to_decimal(contract.get("base_amount") or 0)
        progress = safe_multiply(safe_divide(certified, base), 100) if base > 0 else Decimal('0')

        return success({
            "total_certifications": len(certs),
            "base_amount": to_float(base),
            "certified_amount": to_float(certified),
            "available_balance": to_float(contract.get("available_balance") or 0),
            "progress_percent": to_float(progress),
            "total_commission": to_float(total_commission),
            "paid_commission": to_float(paid_commission),
            "pending_commission": to_float(safe_subtract(total_commission, paid_commission)),
        })
