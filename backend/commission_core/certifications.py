"""
CERTIFICATION MANAGEMENT

A certification records the amount certified on a contract for one period
(YYYY-MM) and the commission owed for it.

Rules:
- One certification per contract and period
- Period cannot be in the future
- Certified amount is drawn from the contract's available balance
- Commission percent: explicit > contract custom > company default > 1.00
- paid / payment_id are owned by the payment allocation engine
"""

from typing import Optional, Dict, Any, List
from decimal import Decimal
import logging

from .errors import CommissionError, IntegrityError, NotFoundError, ValidationError
from .contracts import ContractManager
from .domain_service import DomainService
from .financial_precision import (
    to_decimal, to_float, safe_sum, safe_subtract, safe_divide, safe_multiply,
    calculate_commission_values, owed_commission, DEFAULT_COMMISSION_PERCENT, SETTLEMENT_EPSILON
)
from .local_store import COMPANIES, CONTRACTS, CERTIFICATIONS, DISTRIBUTIONS
from .models import CertificationCreate, CertificationUpdate, parse_model
from .responses import success, returns_result
from .session import SessionContext

logger = logging.getLogger(__name__)

# Fields only the allocation engine may write
ENGINE_FIELDS = ("paid", "payment_id")
# Fields that change what a certification owes
AMOUNT_FIELDS = ("certified_amount", "commission_percent", "manual_commission_override", "clear_override")


class CertificationManager(DomainService):

    def __init__(self, store, queue, contracts: ContractManager):
        super().__init__(store, queue)
        self.contracts = contracts

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _current_period(self) -> str:
        return self.clock.now().strftime("%Y-%m")

    def _check_period(self, period: str) -> None:
        if period > self._current_period():
            raise ValidationError(f"Period {period} is in the future")

    async def _check_unique_period(self, contract_id: str, period: str, exclude_id: Optional[str] = None) -> None:
        existing = await self.store.get_by_index(CERTIFICATIONS, "contract_period", (contract_id, period))
        if any(c["id"] != exclude_id for c in existing):
            raise ValidationError(
                f"A certification already exists for period {period}",
                {"contract_id": contract_id, "period": period}
            )

    async def _resolve_percent(self, contract: Dict[str, Any], explicit: Optional[float]) -> Decimal:
        if explicit is not None:
            return to_decimal(explicit)
        if contract.get("custom_commission_percent") is not None:
            return to_decimal(contract["custom_commission_percent"])
        company = await self.store.get(COMPANIES, contract["company_id"])
        if company and company.get("default_commission_percent") is not None:
            return to_decimal(company["default_commission_percent"])
        return DEFAULT_COMMISSION_PERCENT

    async def _require_certification(self, session: SessionContext, certification_id: str) -> Dict[str, Any]:
        cert = await self.store.get(CERTIFICATIONS, certification_id) if certification_id else None
        if cert is None:
            raise NotFoundError("certification", certification_id)
        # Scoped through the contract to the session's company
        await self.contracts.require_contract(session, cert["contract_id"])
        return cert

    # =========================================================================
    # CRUD
    # =========================================================================

    @returns_result("Create certification")
    async def create_certification(self, session: SessionContext, data: Dict[str, Any]) -> Dict[str, Any]:
        payload = parse_model(CertificationCreate, data)
        contract = await self.contracts.require_contract(session, payload.contract_id)

        self._check_period(payload.period)
        await self._check_unique_period(contract["id"], payload.period)

        available = to_decimal(contract.get("available_balance") or 0)
        if to_decimal(payload.certified_amount) > available + SETTLEMENT_EPSILON:
            raise ValidationError(
                f"Certified amount exceeds the available balance of {to_float(available)}",
                {"available_balance": to_float(available), "requested": payload.certified_amount}
            )

        percent = await self._resolve_percent(contract, payload.commission_percent)
        values = calculate_commission_values(
            payload.certified_amount, percent, payload.manual_commission_override
        )

        record = {
            "contract_id": contract["id"],
            "period": payload.period,
            "certified_amount": values["certified_amount"],
            "commission_percent": values["commission_percent"],
            "computed_commission": values["computed_commission"],
            "manual_commission_override": (
                to_float(payload.manual_commission_override)
                if payload.manual_commission_override is not None else None
            ),
            "paid": False,
            "payment_id": None,
            "notes": payload.notes,
        }

        cert_id = await self.store.add(CERTIFICATIONS, record)
        try:
            await self.contracts.apply_balance_change(contract["id"], -to_decimal(payload.certified_amount))
        except CommissionError:
            # Not yet queued, so dropping the local row is enough
            await self.store.delete(CERTIFICATIONS, cert_id)
            raise

        cert = await self.store.get(CERTIFICATIONS, cert_id)
        await self.queue.enqueue("INSERT", CERTIFICATIONS, cert_id, cert)
        logger.info(
            f"Certification created: {cert_id} contract={contract['id']} period={cert['period']} "
            f"owed={owed_commission(cert)}"
        )
        return success(cert, "Certification created")

    @returns_result("Get certification")
    async def get_certification(self, session: SessionContext, certification_id: str) -> Dict[str, Any]:
        return success(await self._require_certification(session, certification_id))

    @returns_result("List certifications")
    async def list_certifications(self, session: SessionContext, contract_id: str) -> Dict[str, Any]:
        await self.contracts.require_contract(session, contract_id)
        certs = await self.store.find(
            CERTIFICATIONS, {"contract_id": contract_id}, sort=[("period", -1)]
        )
        return success(certs)

    @returns_result("Update certification")
    async def update_certification(
        self,
        session: SessionContext,
        certification_id: str,
        changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        changes = dict(changes or {})
        engine_fields = [f for f in ENGINE_FIELDS if f in changes]
        if engine_fields:
            raise ValidationError(
                "Payment status is managed by payments and cannot be edited",
                {"fields": engine_fields}
            )

        cert = await self._require_certification(session, certification_id)
        update = parse_model(CertificationUpdate, changes).model_dump(exclude_unset=True)

        if cert.get("paid") and any(f in update for f in AMOUNT_FIELDS):
            raise ValidationError(
                "Cannot change the amounts of a paid certification; delete its payment first",
                {"payment_id": cert.get("payment_id")}
            )

        if update.get("period") and update["period"] != cert["period"]:
            self._check_period(update["period"])
            await self._check_unique_period(cert["contract_id"], update["period"], exclude_id=cert["id"])
            cert["period"] = update["period"]

        if "notes" in update and update["notes"] is not None:
            cert["notes"] = update["notes"]

        delta = Decimal('0')
        if update.get("certified_amount") is not None:
            delta = safe_subtract(update["certified_amount"], cert["certified_amount"])
            if abs(delta) <= SETTLEMENT_EPSILON:
                delta = Decimal('0')
            if delta > 0:
                contract = await self.contracts.require_contract(session, cert["contract_id"])
                available = to_decimal(contract.get("available_balance") or 0)
                if delta > available + SETTLEMENT_EPSILON:
                    raise ValidationError(
                        f"Increase exceeds the available balance of {to_float(available)}",
                        {"available_balance": to_float(available), "increase": to_float(delta)}
                    )

        if any(f in update for f in AMOUNT_FIELDS):
            amount = update.get("certified_amount") or cert["certified_amount"]
            percent = update.get("commission_percent") or cert["commission_percent"]
            override = cert.get("manual_commission_override")
            if update.get("clear_override"):
                override = None
            elif update.get("manual_commission_override") is not None:
                override = update["manual_commission_override"]

            values = calculate_commission_values(amount, percent, override)
            cert["certified_amount"] = values["certified_amount"]
            cert["commission_percent"] = values["commission_percent"]
            cert["computed_commission"] = values["computed_commission"]
            cert["manual_commission_override"] = to_float(override) if override is not None else None

        cert = await self._replace(CERTIFICATIONS, cert)
        if delta != 0:
            await self.contracts.apply_balance_change(cert["contract_id"], -delta)

        return success(cert, "Certification updated")

    @returns_result("Delete certification")
    async def delete_certification(self, session: SessionContext, certification_id: str) -> Dict[str, Any]:
        cert = await self._require_certification(session, certification_id)

        if cert.get("paid"):
            raise ValidationError(
                "Cannot delete a paid certification; delete its payment first",
                {"payment_id": cert.get("payment_id")}
            )
        distributions = await self.store.get_by_index(DISTRIBUTIONS, "certification_id", cert["id"])
        if distributions:
            raise IntegrityError(
                violation_type="CERTIFICATION_HAS_DISTRIBUTIONS",
                message="Cannot delete a certification that received part of a payment",
                details={"payment_ids": sorted({d["payment_id"] for d in distributions})}
            )

        await self._remove(CERTIFICATIONS, cert)
        await self.contracts.apply_balance_change(cert["contract_id"], to_decimal(cert["certified_amount"]))
        logger.info(f"Certification {certification_id} deleted, balance restored")
        return success({"id": certification_id}, "Certification deleted")

    # =========================================================================
    # STATISTICS
    # =========================================================================

    @returns_result("Certification statistics")
    async def get_certification_statistics(self, session: SessionContext, contract_id: str) -> Dict[str, Any]:
        contract = await self.contracts.require_contract(session, contract_id)
        certs = await self.store.get_by_index(CERTIFICATIONS, "contract_id", contract_id)
        paid = [c for c in certs if c.get("paid")]
        pending = [c for c in certs if not c.get("paid")]

        total_commission = safe_sum(owed_commission(c) for c in certs)
        paid_commission = safe_sum(owed_commission(c) for c in paid)

        return success({
            "total_certifications": len(certs),
            "certified_amount": to_float(safe_sum(c["certified_amount"] for c in certs)),
            "total_commission": to_float(total_commission),
            "paid_count": len(paid),
            "pending_count": len(pending),
            "paid_commission": to_float(paid_commission),
            "pending_commission": to_float(safe_subtract(total_commission, paid_commission)),
            "paid_percent": to_float(safe_multiply(safe_divide(paid_commission, total_commission), 100)),
            "available_balance": to_float(contract.get("available_balance") or 0),
        })

    @returns_result("Certifications by month")
    async def get_certifications_by_month(self, session: SessionContext, year: int, month: int) -> Dict[str, Any]:
        """Every certification of the company's contracts for one period"""
        company_id = session.require_company()
        if not 1 <= int(month) <= 12:
            raise ValidationError(f"Invalid month: {month}")
        period = f"{int(year):04d}-{int(month):02d}"

        contracts = {c["id"]: c for c in await self.store.get_by_index(CONTRACTS, "company_id", company_id)}
        certs = await self.store.find(CERTIFICATIONS, {"period": period})
        rows = []
        for cert in certs:
            contract = contracts.get(cert["contract_id"])
            if contract is None:
                continue
            rows.append({
                **cert,
                "contract_number": contract.get("contract_number"),
                "contract_name": contract.get("name"),
            })
        rows.sort(key=lambda c: (c.get("contract_number") or "", c["id"]))

        return success({
            "period": period,
            "certifications": rows,
            "certified_amount": to_float(safe_sum(c["certified_amount"] for c in rows)),
            "commission": to_float(safe_sum(owed_commission(c) for c in rows)),
        })

    @returns_result("Annual summary")
    async def get_annual_summary(self, session: SessionContext, contract_id: str, year: int) -> Dict[str, Any]:
        """Month-by-month certified amounts and commissions for one year"""
        await self.contracts.require_contract(session, contract_id)
        certs = await self.store.get_by_index(CERTIFICATIONS, "contract_id", contract_id)
        by_period = {c["period"]: c for c in certs if c["period"].startswith(f"{year}-")}

        months: List[Dict[str, Any]] = []
        for month in range(1, 13):
            period = f"{year}-{month:02d}"
            cert = by_period.get(period)
            months.append({
                "period": period,
                "certified_amount": cert["certified_amount"] if cert else 0.0,
                "commission": to_float(owed_commission(cert)) if cert else 0.0,
                "paid": bool(cert and cert.get("paid")),
            })

        return success({
            "year": year,
            "months": months,
            "certified_amount": to_float(safe_sum(m["certified_amount"] for m in months)),
            "commission": to_float(safe_sum(m["commission"] for m in months)),
        })
