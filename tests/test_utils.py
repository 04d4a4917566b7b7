import pytest
from decimal import Decimal
from errors import InvalidAmountError
from utils import (
    generate_uid,
    empty_to_none,
    validate_date_format,
    to_decimal,
    parse_amount,
    format_money,
)


def test_generate_uid_returns_string():
    """UID should be a 10 character string."""
    uid = generate_uid()
    assert isinstance(uid, str)
    assert len(uid) == 10


def test_generate_uid_is_unique():
    """Each call should generate a unique id."""
    assert generate_uid() != generate_uid()


def test_empty_to_none():
    assert empty_to_none(None) is None
    assert empty_to_none("") is None
    assert empty_to_none("   ") is None
    assert empty_to_none("memo") == "memo"
    assert empty_to_none(0) == 0


def test_validate_date_format():
    assert validate_date_format("2024-02-29")
    assert not validate_date_format("2023-02-29")
    assert not validate_date_format("29/02/2024")
    assert not validate_date_format(None)


def test_to_decimal_quantizes_to_cents():
    """Floats, ints and strings become two-decimal Decimals."""
    assert to_decimal(10) == Decimal("10.00")
    assert to_decimal(0.1) == Decimal("0.10")
    assert to_decimal("12.345") == Decimal("12.35")
    assert to_decimal(Decimal("5")) == Decimal("5.00")


@pytest.mark.parametrize("value", [None, True, "abc", float("nan"), float("inf"), "Infinity"])
def test_to_decimal_rejects_non_numbers(value):
    with pytest.raises(ValueError):
        to_decimal(value)


def test_parse_amount_accepts_positive():
    assert parse_amount("5000") == Decimal("5000")


@pytest.mark.parametrize("value", [0, -1, "0", "-0.01", None, "", "ten"])
def test_parse_amount_rejects_non_positive(value):
    """Amount must be strictly positive."""
    with pytest.raises(InvalidAmountError, match="Amount must be > 0"):
        parse_amount(value)


def test_format_money():
    assert format_money(Decimal("5000")) == "THB 5,000"
    assert format_money(Decimal("1234.50")) == "THB 1,234.50"
    assert format_money(30000, "EUR") == "EUR 30,000"


@pytest.mark.parametrize("value", [1e100, "1E+1000", 10 ** 13, "9999999999999.995", -1e20])
def test_to_decimal_rejects_amounts_beyond_money_columns(value):
    """Money columns hold at most 13 integer digits."""
    with pytest.raises(ValueError, match="too large"):
        to_decimal(value)


def test_to_decimal_accepts_largest_column_value():
    assert to_decimal("9999999999999.99") == Decimal("9999999999999.99")


def test_parse_amount_rejects_huge_amount():
    with pytest.raises(InvalidAmountError, match="Amount is too large"):
        parse_amount(1e100)
