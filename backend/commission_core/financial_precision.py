"""
DECIMAL PRECISION & FINANCIAL UTILITIES

This module provides:
1. Decimal precision lock (2-decimal places)
2. Safe financial calculations
3. Value validation (no negative amounts)
4. Rounding at calculation boundary only
5. Epsilon comparison for settlement checks
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union, Iterable
import logging

from .errors import ValidationError

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')

# Tolerance used to decide whether an obligation or a payment is fully settled
SETTLEMENT_EPSILON = Decimal('0.01')

DEFAULT_COMMISSION_PERCENT = Decimal('1.00')

Numeric = Union[float, int, str, Decimal]


class FinancialPrecisionError(ValidationError):
    """Raised when a value cannot be interpreted as money"""
    pass


class NegativeValueError(ValidationError):
    """Raised when a negative financial value is detected"""
    pass


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            raise FinancialPrecisionError(f"Invalid amount: {value!r}")
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Numeric) -> Decimal:
    """
    Round a value to 2 decimal places (half up).
    This should be called ONLY at calculation boundaries.
    """
    decimal_value = to_decimal(value)
    return decimal_value.quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Numeric) -> float:
    """
    Convert Decimal back to float for MongoDB storage.
    Rounds to 2 decimal places first.
    """
    return float(round_financial(value))


def validate_non_negative(value: Numeric, field_name: str) -> None:
    """
    Validate that a financial value is not negative.
    Raises NegativeValueError if validation fails.
    """
    decimal_value = to_decimal(value)
    if decimal_value < Decimal('0'):
        raise NegativeValueError(
            f"Financial value '{field_name}' cannot be negative: {value}"
        )


def validate_positive(value: Numeric, field_name: str) -> None:
    """
    Validate that a financial value is strictly positive (> 0).
    Raises NegativeValueError if validation fails.
    """
    decimal_value = to_decimal(value)
    if decimal_value <= Decimal('0'):
        raise NegativeValueError(
            f"Financial value '{field_name}' must be positive: {value}"
        )


def safe_multiply(a: Numeric, b: Numeric) -> Decimal:
    """Safe multiplication preserving precision"""
    return to_decimal(a) * to_decimal(b)


def safe_divide(numerator: Numeric, denominator: Numeric) -> Decimal:
    """Safe division with zero check"""
    denom = to_decimal(denominator)
    if denom == Decimal('0'):
        return Decimal('0')
    return to_decimal(numerator) / denom


def safe_subtract(a: Numeric, b: Numeric) -> Decimal:
    """Safe subtraction preserving precision"""
    return to_decimal(a) - to_decimal(b)


def safe_add(*values: Numeric) -> Decimal:
    """Safe addition of multiple values"""
    result = Decimal('0')
    for v in values:
        result += to_decimal(v)
    return result


def safe_sum(values: Iterable[Numeric]) -> Decimal:
    """Sum an iterable of amounts with Decimal precision"""
    return safe_add(*list(values))


def calculate_percentage(amount: Numeric, percentage: Numeric) -> Decimal:
    """
    Calculate percentage of an amount.
    Example: calculate_percentage(1000, 10) = 100
    """
    return safe_multiply(to_decimal(amount), safe_divide(to_decimal(percentage), Decimal('100')))


def amounts_match(a: Numeric, b: Numeric, epsilon: Decimal = SETTLEMENT_EPSILON) -> bool:
    """True when two amounts are equal within the settlement epsilon"""
    return abs(safe_subtract(a, b)) <= epsilon


def covers(assigned: Numeric, owed: Numeric, epsilon: Decimal = SETTLEMENT_EPSILON) -> bool:
    """True when an assigned amount settles an owed amount (assigned >= owed - epsilon)"""
    return to_decimal(assigned) >= safe_subtract(owed, epsilon)


# Certification calculations with precision
def calculate_commission_values(
    certified_amount: Numeric,
    commission_percent: Numeric,
    manual_commission_override: Union[Numeric, None] = None
) -> dict:
    """
    Calculate Certification commission values with decimal precision.

    LOCKED FORMULAS:
    - computed_commission = certified_amount * (commission_percent / 100)
    - owed_commission = manual_commission_override if set, else computed_commission

    Returns rounded values ready for storage.
    """
    validate_positive(certified_amount, 'certified_amount')
    validate_positive(commission_percent, 'commission_percent')
    if manual_commission_override is not None:
        validate_non_negative(manual_commission_override, 'manual_commission_override')

    computed = calculate_percentage(certified_amount, commission_percent)
    owed = computed if manual_commission_override is None else to_decimal(manual_commission_override)

    return {
        'certified_amount': to_float(certified_amount),
        'commission_percent': to_float(commission_percent),
        'computed_commission': to_float(computed),
        'owed_commission': to_float(owed),
    }


def owed_commission(certification: dict) -> Decimal:
    """
    Commission owed by a certification record.
    The manual override wins over the computed commission whenever it is set.
    """
    override = certification.get("manual_commission_override")
    if override is not None:
        return round_financial(override)
    return round_financial(certification.get("computed_commission") or 0)
