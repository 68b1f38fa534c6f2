from pydantic import BaseModel, Field, field_validator, ValidationError as PydanticValidationError
from typing import Optional, Dict, Any, Literal, Type, TypeVar
from datetime import datetime
import re

from .errors import ValidationError

PERIOD_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

SyncAction = Literal["INSERT", "UPDATE", "DELETE"]
PaymentScope = Literal["specific", "global"]

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_model(model: Type[ModelT], data: Dict[str, Any]) -> ModelT:
    """Validate a payload against a model, raising the core ValidationError"""
    try:
        return model(**(data or {}))
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or model.__name__
        raise ValidationError(
            f"Invalid {field}: {first.get('msg')}",
            {"errors": [
                {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
                for err in e.errors()
            ]}
        )


def _check_percent(value: Optional[float]) -> Optional[float]:
    if value is not None and not (0.1 <= value <= 100):
        raise ValueError("commission percent must be between 0.1 and 100")
    return value


def _check_period(value: Optional[str]) -> Optional[str]:
    if value is not None and not PERIOD_PATTERN.match(value):
        raise ValueError("period must use the YYYY-MM format")
    return value


# ============================================
# SYNC QUEUE ITEM
# ============================================
class SyncQueueItem(BaseModel):
    id: str
    action: SyncAction
    table: str
    record_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    processed: bool = False
    seq: int = 0
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


# ============================================
# SYNC CONFLICT MODEL
# ============================================
class SyncConflict(BaseModel):
    id: str
    table: str
    record_id: str
    sync_item_id: Optional[str] = None
    local_data: Dict[str, Any]
    remote_data: Dict[str, Any]
    local_timestamp: Optional[datetime] = None
    remote_timestamp: Optional[datetime] = None
    strategy: str
    status: Literal["pending", "resolved"] = "pending"
    resolution: Optional[Literal["local", "remote"]] = None
    detected_at: datetime
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ============================================
# COMPANY MODELS
# ============================================
class CompanyCreate(BaseModel):
    name: str = Field(min_length=1)
    director: Optional[str] = None
    description: Optional[str] = None
    default_commission_percent: float = 1.0

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("company name is required")
        return v

    @field_validator("default_commission_percent")
    @classmethod
    def check_percent(cls, v: float) -> float:
        return _check_percent(v)


class CompanyUpdate(BaseModel):
    name: Optional[str] = None
    director: Optional[str] = None
    description: Optional[str] = None
    default_commission_percent: Optional[float] = None
    status: Optional[Literal["active", "inactive"]] = None

    @field_validator("default_commission_percent")
    @classmethod
    def check_percent(cls, v: Optional[float]) -> Optional[float]:
        return _check_percent(v)


# ============================================
# CONTRACT MODELS
# ============================================
class ContractCreate(BaseModel):
    contract_number: str = Field(min_length=1)
    name: str = Field(min_length=1)
    base_amount: float = Field(gt=0)
    custom_commission_percent: Optional[float] = None
    notes: str = ""

    @field_validator("custom_commission_percent")
    @classmethod
    def check_percent(cls, v: Optional[float]) -> Optional[float]:
        return _check_percent(v)


class ContractUpdate(BaseModel):
    contract_number: Optional[str] = None
    name: Optional[str] = None
    base_amount: Optional[float] = Field(default=None, gt=0)
    custom_commission_percent: Optional[float] = None
    notes: Optional[str] = None

    @field_validator("custom_commission_percent")
    @classmethod
    def check_percent(cls, v: Optional[float]) -> Optional[float]:
        return _check_percent(v)


# ============================================
# CERTIFICATION MODELS
# ============================================
class CertificationCreate(BaseModel):
    contract_id: str = Field(min_length=1)
    period: str
    certified_amount: float = Field(gt=0)
    commission_percent: Optional[float] = None
    manual_commission_override: Optional[float] = Field(default=None, ge=0)
    notes: str = ""

    @field_validator("period")
    @classmethod
    def check_period(cls, v: str) -> str:
        return _check_period(v)

    @field_validator("commission_percent")
    @classmethod
    def check_percent(cls, v: Optional[float]) -> Optional[float]:
        return _check_percent(v)


class CertificationUpdate(BaseModel):
    period: Optional[str] = None
    certified_amount: Optional[float] = Field(default=None, gt=0)
    commission_percent: Optional[float] = None
    manual_commission_override: Optional[float] = Field(default=None, ge=0)
    clear_override: bool = False
    notes: Optional[str] = None

    @field_validator("period")
    @classmethod
    def check_period(cls, v: Optional[str]) -> Optional[str]:
        return _check_period(v)

    @field_validator("commission_percent")
    @classmethod
    def check_percent(cls, v: Optional[float]) -> Optional[float]:
        return _check_percent(v)


# ============================================
# PAYMENT MODELS
# ============================================
class PaymentCreate(BaseModel):
    scope: PaymentScope
    contract_id: Optional[str] = None
    total_amount: float = Field(gt=0)
    method: str = "transfer"
    date: Optional[str] = None
    notes: str = ""


class PaymentUpdate(BaseModel):
    scope: Optional[PaymentScope] = None
    contract_id: Optional[str] = None
    total_amount: Optional[float] = None
    method: Optional[str] = None
    date: Optional[str] = None
    notes: Optional[str] = None


class PaymentFilters(BaseModel):
    scope: Optional[PaymentScope] = None
    method: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    contract_id: Optional[str] = None

