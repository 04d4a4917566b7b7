# Helpers for Jarbook application

import math
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from errors import InvalidAmountError

CENT = Decimal('0.01')

# Money columns are DECIMAL(15,2): at most 13 integer digits
MAX_AMOUNT = Decimal(10) ** 13


class AmountTooLargeError(ValueError):
    """Amount does not fit the money columns."""


def generate_uid():
    """
    Generate unique record ID using UUID + timestamp.
    """
    uuid_part = uuid.uuid4().hex[:6]
    timestamp_part = str(int(datetime.now().timestamp()))[-4:]
    return f"{uuid_part}{timestamp_part}"


def utc_now() -> datetime:
    """Current instant as a naive UTC datetime (the stored representation)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def empty_to_none(value):
    """Convert empty string or whitespace-only string to None.

    This ensures we store NULL in the database instead of empty strings,
    maintaining data integrity and query consistency.

    Args:
        value: Any value, typically a string from a JSON body

    Returns:
        None if value is empty/whitespace/None, otherwise the value
    """
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return value


def validate_date_format(date_str: str) -> bool:
    """
    Validate date string is in YYYY-MM-DD format.

    Returns True if valid, False otherwise.
    """
    try:
        datetime.strptime(date_str, '%Y-%m-%d')
        return True
    except (ValueError, TypeError):
        return False


def to_decimal(value) -> Decimal:
    """
    Convert int/float/str/Decimal to a two-decimal Decimal.

    Raises:
        ValueError: If value is not a finite number (booleans rejected) or
            does not fit the DECIMAL(15,2) money columns
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Not a number: {value!r}")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Not a finite number: {value!r}")
        value = str(value)
    try:
        number = Decimal(str(value).strip()) if isinstance(value, str) else Decimal(value)
        if not number.is_finite():
            raise ValueError(f"Not a finite number: {value!r}")
        if number and number.adjusted() >= 13:
            raise AmountTooLargeError(f"Amount is too large: {value!r}")
        number = number.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError):
        raise ValueError(f"Not a number: {value!r}")
    # Rounding can carry a value just under the limit over it
    if abs(number) >= MAX_AMOUNT:
        raise AmountTooLargeError(f"Amount is too large: {value!r}")
    return number


def parse_amount(value) -> Decimal:
    """
    Parse a money amount that must be strictly positive.

    Raises:
        InvalidAmountError: If value is not a number > 0 or is too large
    """
    try:
        amount = to_decimal(value)
    except AmountTooLargeError:
        raise InvalidAmountError("Amount is too large")
    except ValueError:
        raise InvalidAmountError("Amount must be > 0")
    if amount <= 0:
        raise InvalidAmountError("Amount must be > 0")
    return amount


def format_money(amount, currency: str = 'THB') -> str:
    """Format amount for user-facing messages, e.g. 'THB 5,000'."""
    amount = Decimal(amount)
    if amount == amount.to_integral_value():
        return f"{currency} {int(amount):,}"
    return f"{currency} {amount:,.2f}"
