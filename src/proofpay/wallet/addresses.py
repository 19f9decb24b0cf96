"""Address helpers.

Addresses are compared case-insensitively everywhere and stored in lowercase.
"""

from __future__ import annotations

from web3 import Web3

from proofpay.errors import ValidationError

NATIVE_TOKEN = "0x0000000000000000000000000000000000000000"


def is_address(value: str | None) -> bool:
    """``0x``-prefixed 20-byte hex, in any letter case."""
    if not isinstance(value, str):
        return False
    text = value.strip()
    return text.startswith("0x") and Web3.is_address(text.lower())


def normalize_address(value: str) -> str:
    """Return the canonical lowercase form of *value*.

    Raises :class:`~proofpay.errors.ValidationError` if *value* is not a
    ``0x``-prefixed 20-byte hex address.
    """
    if not isinstance(value, str) or not is_address(value):
        raise ValidationError(
            f"Invalid wallet address {value!r}: expected 0x followed by 40 hex characters."
        )
    return value.strip().lower()


def same_address(a: str | None, b: str | None) -> bool:
    if a is None or b is None:
        return False
    return a.strip().lower() == b.strip().lower()


def is_native(token_address: str) -> bool:
    return same_address(token_address, NATIVE_TOKEN)


def shorten(address: str) -> str:
    """``0x1234...abcd`` for display."""
    if len(address) <= 12:
        return address
    return f"{address[:6]}...{address[-4:]}"
