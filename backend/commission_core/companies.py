"""
COMPANY MANAGEMENT

Companies own contracts and carry the default commission percent applied
when neither the certification nor its contract sets one.

Deletion is soft by default (status inactive + deleted_at). A forced delete
removes the record and is refused while contracts reference the company.
"""

from typing import Optional, Dict, Any
import logging

from .clock import parse_date_bound
from .errors import IntegrityError, NotFoundError, ValidationError
from .domain_service import DomainService
from .financial_precision import to_decimal, to_float, safe_sum, safe_divide, round_financial
from .local_store import COMPANIES, CONTRACTS
from .models import CompanyCreate, CompanyUpdate, parse_model
from .responses import success, returns_result
from .session import SessionContext

logger = logging.getLogger(__name__)


class CompanyManager(DomainService):

    async def _owned(self, session: SessionContext, company_id: str, include_deleted: bool = False) -> Dict[str, Any]:
        company = await self.store.get(COMPANIES, company_id)
        if company is None or company.get("user_id") != session.user_id:
            raise NotFoundError("company", company_id)
        if company.get("deleted_at") and not include_deleted:
            raise NotFoundError("company", company_id)
        return company

    @returns_result("Create company")
    async def create_company(self, session: SessionContext, data: Dict[str, Any]) -> Dict[str, Any]:
        payload = parse_model(CompanyCreate, data)
        company = await self._insert(COMPANIES, {
            "user_id": session.user_id,
            "name": payload.name,
            "director": payload.director or "",
            "description": payload.description or "",
            "default_commission_percent": to_float(payload.default_commission_percent),
            "status": "active",
            "deleted_at": None,
        })
        logger.info(f"Company created: {company['id']} ({company['name']})")
        return success(company, "Company created")

    @returns_result("Get company")
    async def get_company(self, session: SessionContext, company_id: str) -> Dict[str, Any]:
        return success(await self._owned(session, company_id))

    @returns_result("List companies")
    async def list_companies(self, session: SessionContext, include_inactive: bool = False) -> Dict[str, Any]:
        companies = await self.store.get_by_index(COMPANIES, "user_id", session.user_id)
        if not include_inactive:
            companies = [c for c in companies if not c.get("deleted_at")]
        companies.sort(key=lambda c: (c.get("name") or "").lower())
        return success(companies)

    @returns_result("Update company")
    async def update_company(self, session: SessionContext, company_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        company = await self._owned(session, company_id)
        update = parse_model(CompanyUpdate, changes).model_dump(exclude_unset=True)

        if "default_commission_percent" in update and update["default_commission_percent"] is not None:
            update["default_commission_percent"] = to_float(update["default_commission_percent"])
        if "name" in update:
            update["name"] = (update["name"] or "").strip()
            if not update["name"]:
                raise ValidationError("Company name is required")

        company.update(update)
        company = await self._replace(COMPANIES, company)
        return success(company, "Company updated")

    @returns_result("Delete company")
    async def delete_company(self, session: SessionContext, company_id: str, force: bool = False) -> Dict[str, Any]:
        company = await self._owned(session, company_id, include_deleted=force)

        if not force:
            company["status"] = "inactive"
            company["deleted_at"] = self.clock.now()
            company = await self._replace(COMPANIES, company)
            logger.info(f"Company {company_id} marked inactive")
            return success(company, "Company marked inactive")

        contracts = await self.store.get_by_index(CONTRACTS, "company_id", company_id)
        if contracts:
            raise IntegrityError(
                violation_type="COMPANY_HAS_CONTRACTS",
                message="Cannot delete the company because it has contracts",
                details={"company_id": company_id, "contracts": len(contracts)}
            )
        await self._remove(COMPANIES, company)
        logger.info(f"Company {company_id} permanently deleted")
        return success({"id": company_id}, "Company permanently deleted")

    @returns_result("Search companies")
    async def search_companies(self, session: SessionContext, query: Optional[str]) -> Dict[str, Any]:
        result = await self.list_companies(session)
        companies = result["data"]
        term = (query or "").strip().lower()
        if term:
            companies = [
                c for c in companies
                if term in (c.get("name") or "").lower()
                or term in (c.get("director") or "").lower()
                or term in (c.get("description") or "").lower()
            ]
        return success(companies)

    @returns_result("Filter companies")
    async def filter_companies(self, session: SessionContext, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Filters:
            status: "active" | "inactive" (inactive includes soft-deleted)
            min_commission / max_commission: default commission percent bounds
            created_from / created_to: creation date range, both inclusive
        """
        filters = filters or {}
        status = filters.get("status")
        if status and status not in ("active", "inactive"):
            raise ValidationError(f"Invalid company status '{status}'")

        result = await self.list_companies(session, include_inactive=bool(status))
        companies = result["data"]
        if status:
            companies = [c for c in companies if c.get("status") == status]

        if filters.get("min_commission") is not None:
            low = to_decimal(filters["min_commission"])
            companies = [c for c in companies if to_decimal(c.get("default_commission_percent") or 0) >= low]
        if filters.get("max_commission") is not None:
            high = to_decimal(filters["max_commission"])
            companies = [c for c in companies if to_decimal(c.get("default_commission_percent") or 0) <= high]

        created_from = parse_date_bound(filters.get("created_from"))
        created_to = parse_date_bound(filters.get("created_to"), end_of_day=True)
        if created_from:
            companies = [c for c in companies if c["created_at"] >= created_from]
        if created_to:
            companies = [c for c in companies if c["created_at"] <= created_to]

        return success(companies)

    @returns_result("Company statistics")
    async def get_company_statistics(self, session: SessionContext) -> Dict[str, Any]:
        companies = await self.store.get_by_index(COMPANIES, "user_id", session.user_id)
        total = len(companies)
        active = len([c for c in companies if c.get("status") == "active"])
        average = safe_divide(
            safe_sum(c.get("default_commission_percent") or 0 for c in companies),
            total
        )
        return success({
            "total": total,
            "active": active,
            "inactive": total - active,
            "average_commission_percent": to_float(round_financial(average)),
        })
