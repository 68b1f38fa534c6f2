from dataclasses import dataclass, replace
from typing import Optional

from .errors import ValidationError


@dataclass(frozen=True)
class SessionContext:
    """
    Who is acting and on which company.

    Passed explicitly to every domain manager call; nothing in the core keeps
    a current user or current company in module state.
    """
    user_id: str
    company_id: Optional[str] = None

    def with_company(self, company_id: str) -> "SessionContext":
        return replace(self, company_id=company_id)

    def require_company(self) -> str:
        if not self.company_id:
            raise ValidationError("Select a company first")
        return self.company_id
