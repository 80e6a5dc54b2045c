"""
Migration SDK - Exchange-rate and decimal arithmetic.

============================================================
RULES
============================================================
- All amounts are integers in base units (no floats anywhere)
- Exchange rates are basis points: 10000 = 1:1
- Rate conversion rounds half to even on the remainder
- Penalties truncate toward zero
- Every input and result must fit in an unsigned 64-bit integer
============================================================
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_DOWN, localcontext
from typing import Optional, Union

from migration_sdk.exceptions import AmountOverflowError, ErrorCode, ValidationError


logger = logging.getLogger(__name__)


BPS_DENOMINATOR = 10_000
U64_MAX = 2**64 - 1
MAX_DECIMALS = 18


@dataclass(frozen=True)
class PenaltyResult:
    """Split of an amount into the penalty and what is left after it."""
    penalty: int
    remainder: int


# ============================================================
# VALIDATION
# ============================================================

def _require_amount(amount: int, field_name: str = "amount") -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(
            f"{field_name} must be an integer number of base units, got {type(amount).__name__}",
            field_name=field_name,
            value=amount,
        )
    if amount < 0:
        raise ValidationError(f"{field_name} must not be negative", field_name=field_name, value=amount)
    if amount > U64_MAX:
        raise AmountOverflowError(f"{field_name} exceeds the u64 range", value=amount)
    return amount


def _require_decimals(decimals: int, field_name: str = "decimals") -> int:
    if isinstance(decimals, bool) or not isinstance(decimals, int):
        raise ValidationError(f"{field_name} must be an integer", field_name=field_name, value=decimals)
    if not 0 <= decimals <= MAX_DECIMALS:
        raise ValidationError(
            f"{field_name} must be between 0 and {MAX_DECIMALS}",
            field_name=field_name,
            value=decimals,
        )
    return decimals


def _require_bps(bps: int, field_name: str, upper: Optional[int] = BPS_DENOMINATOR) -> int:
    if isinstance(bps, bool) or not isinstance(bps, int):
        raise ValidationError(f"{field_name} must be an integer", field_name=field_name, value=bps)
    if bps < 0 or (upper is not None and bps > upper):
        raise ValidationError(
            f"{field_name} must be between 0 and {upper}",
            field_name=field_name,
            value=bps,
        )
    return bps


def _check_result(value: int, stage: str) -> int:
    if value > U64_MAX:
        raise AmountOverflowError(f"Converted amount exceeds the u64 range {stage}", value=value)
    return value


# ============================================================
# ARITHMETIC
# ============================================================

def round_half_even_div(numerator: int, denominator: int) -> int:
    """Integer division of non-negative ints, ties rounded to the even quotient."""
    quotient, remainder = divmod(numerator, denominator)
    doubled = remainder * 2
    if doubled > denominator or (doubled == denominator and quotient % 2 == 1):
        quotient += 1
    return quotient


def rescale(amount: int, from_decimals: int, to_decimals: int) -> int:
    """
    Move an amount between decimal precisions.

    Scaling down truncates; scaling up multiplies exactly.

    Raises:
        ValidationError: On invalid inputs
        AmountOverflowError: If the result does not fit in u64
    """
    _require_amount(amount)
    _require_decimals(from_decimals, "from_decimals")
    _require_decimals(to_decimals, "to_decimals")

    if to_decimals >= from_decimals:
        scaled = amount * 10 ** (to_decimals - from_decimals)
    else:
        scaled = amount // 10 ** (from_decimals - to_decimals)
    return _check_result(scaled, "after rescaling")


def convert_by_exchange_rate(
    amount: int,
    rate_bps: int,
    from_decimals: int,
    to_decimals: int,
) -> int:
    """
    Convert an amount at an exchange rate, then rescale decimals.

    Args:
        amount: Source amount in base units
        rate_bps: Exchange rate in basis points (10000 = 1:1)
        from_decimals: Decimals of the source token
        to_decimals: Decimals of the target token

    Returns:
        Target amount in base units

    Raises:
        ValidationError: On invalid inputs
        AmountOverflowError: If the amount or the result exceeds u64
    """
    _require_amount(amount)
    _require_bps(rate_bps, "rate_bps", upper=None)
    _require_decimals(from_decimals, "from_decimals")
    _require_decimals(to_decimals, "to_decimals")

    converted = round_half_even_div(amount * rate_bps, BPS_DENOMINATOR)
    _check_result(converted, "before rescaling")
    return rescale(converted, from_decimals, to_decimals)


def apply_penalty(amount: int, penalty_bps: int) -> PenaltyResult:
    """Deduct a basis-point penalty, truncating the penalty toward zero."""
    _require_amount(amount)
    _require_bps(penalty_bps, "penalty_bps")

    penalty = amount * penalty_bps // BPS_DENOMINATOR
    return PenaltyResult(penalty=penalty, remainder=amount - penalty)


# ============================================================
# DISPLAY
# ============================================================

def format_token_amount(amount: int, decimals: int) -> str:
    """
    Render base units as a decimal string without trailing zeros.

    Example:
        format_token_amount(1_500_000_000, 9)  # => "1.5"
    """
    _require_amount(amount)
    _require_decimals(decimals)

    if decimals == 0:
        return str(amount)

    whole, fraction = divmod(amount, 10**decimals)
    fraction_text = str(fraction).rjust(decimals, "0").rstrip("0")
    if not fraction_text:
        return str(whole)
    return f"{whole}.{fraction_text}"


def parse_token_amount(value: Union[str, int, Decimal], decimals: int) -> int:
    """
    Parse a human-entered amount into base units.

    Digits beyond `decimals` are truncated. Commas and surrounding
    whitespace are ignored.

    Raises:
        ValidationError: If the value is not a non-negative number
        AmountOverflowError: If the result exceeds u64
    """
    _require_decimals(decimals)

    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(
            "Amount must be a string, int or Decimal",
            field_name="amount",
            value=value,
        )

    text = str(value).strip().replace(",", "")
    try:
        parsed = Decimal(text)
    except InvalidOperation as e:
        raise ValidationError(
            f"Invalid amount: {value!r}",
            field_name="amount",
            value=value,
            original_error=e,
        )

    if not parsed.is_finite() or parsed < 0:
        raise ValidationError(f"Invalid amount: {value!r}", field_name="amount", value=value)
    if parsed.adjusted() + decimals > 20:
        raise AmountOverflowError("Amount exceeds the u64 range", value=value)

    with localcontext() as ctx:
        ctx.prec = 80
        base_units = int((parsed * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))
    if base_units > U64_MAX:
        raise AmountOverflowError("Amount exceeds the u64 range", value=base_units)
    return base_units


def format_exchange_rate(rate_bps: int) -> str:
    """
    Human-readable exchange rate.

    10000 -> "1:1", 20000 -> "2:1", 5000 -> "1:2", 15000 -> "1.5:1"
    """
    _require_bps(rate_bps, "rate_bps", upper=None)
    if rate_bps == 0:
        return "0:1"

    if rate_bps >= BPS_DENOMINATOR:
        ratio = Decimal(rate_bps) / BPS_DENOMINATOR
        return f"{_trim(ratio)}:1"

    inverse = Decimal(BPS_DENOMINATOR) / Decimal(rate_bps)
    if inverse == inverse.to_integral_value():
        return f"1:{_trim(inverse)}"
    return f"{_trim(Decimal(rate_bps) / BPS_DENOMINATOR)}:1"


def format_percentage(bps: int) -> str:
    """Basis points as a percentage, e.g. 250 -> "2.5%"."""
    _require_bps(bps, "bps", upper=None)
    return f"{_trim(Decimal(bps) / 100)}%"


def _trim(value: Decimal) -> str:
    text = format(value.quantize(Decimal("0.0001")), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def validate_amount(amount: int) -> int:
    """Validate a transaction amount: a positive u64."""
    _require_amount(amount)
    if amount == 0:
        raise ValidationError(
            "Amount must be greater than zero",
            code=ErrorCode.INVALID_AMOUNT,
            field_name="amount",
            value=amount,
        )
    return amount
