import pytest

from proofpay.errors import InvalidAmount, ValidationError
from proofpay.wallet.addresses import (
    NATIVE_TOKEN,
    is_address,
    is_native,
    normalize_address,
    same_address,
)
from proofpay.wallet.units import format_units, parse_decimal, parse_units


def test_parse_units_scales_by_token_decimals():
    assert parse_units("10.0", 6) == 10_000_000
    assert parse_units("1.5", 18) == 1_500_000_000_000_000_000
    assert parse_units("0.000001", 6) == 1


def test_parse_units_rejects_more_precision_than_token():
    with pytest.raises(InvalidAmount):
        parse_units("0.0000001", 6)


@pytest.mark.parametrize("amount", ["0", "-1", "abc", "", "NaN", "Infinity"])
def test_parse_decimal_rejects_non_positive_or_garbage(amount):
    with pytest.raises(InvalidAmount):
        parse_decimal(amount)


def test_invalid_amount_is_a_validation_error():
    with pytest.raises(ValidationError):
        parse_decimal("-5")


def test_format_units_strips_trailing_zeros():
    assert format_units(10_000_000, 6) == "10"
    assert format_units(1_500_000_000_000_000_000, 18) == "1.5"
    assert format_units(1, 6) == "0.000001"


def test_addresses_are_case_insensitive():
    mixed = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"
    assert normalize_address(mixed) == mixed.lower()
    assert same_address(mixed, mixed.lower())
    assert is_native(NATIVE_TOKEN)
    with pytest.raises(ValidationError):
        normalize_address("0x1234")


@pytest.mark.parametrize(
    "value, valid",
    [
        ("0x" + "ab" * 20, True),
        ("  0x" + "AB" * 20 + " ", True),
        ("ab" * 20, False),
        ("0x" + "zz" * 20, False),
        ("0x" + "ab" * 21, False),
        (None, False),
        (b"\x01" * 20, False),
    ],
)
def test_is_address(value, valid):
    assert is_address(value) is valid
