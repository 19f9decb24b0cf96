"""Conversion between human decimal amounts and on-chain integer units.

Amounts are stored as the decimal string the user entered. Scaling happens
only here, at the chain boundary, using the token's real ``decimals``.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, localcontext

from proofpay.errors import InvalidAmount


def parse_decimal(amount: str) -> Decimal:
    """Parse a strictly positive, finite decimal string."""
    if not isinstance(amount, str) or not amount.strip():
        raise InvalidAmount("Amount is required.")
    try:
        value = Decimal(amount.strip())
    except InvalidOperation as exc:
        raise InvalidAmount(f"Amount {amount!r} is not a decimal number.") from exc
    if not value.is_finite():
        raise InvalidAmount(f"Amount {amount!r} is not a finite number.")
    if value <= 0:
        raise InvalidAmount(f"Amount {amount!r} must be greater than zero.")
    return value


def parse_units(amount: str, decimals: int) -> int:
    """Scale *amount* to integer token units.

    ``parse_units("10.0", 6) == 10_000_000``. Raises
    :class:`~proofpay.errors.InvalidAmount` when the amount has more
    fractional digits than the token supports, since no on-chain value could
    ever equal it.
    """
    if decimals < 0:
        raise ValueError(f"decimals must be non-negative, got {decimals}")
    value = parse_decimal(amount)
    with localcontext() as ctx:
        ctx.prec = 96
        scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise InvalidAmount(
            f"Amount {amount} has more than {decimals} decimal places."
        )
    return int(scaled)


def format_units(value: int, decimals: int) -> str:
    """Inverse of :func:`parse_units`, without trailing zeros."""
    if decimals < 0:
        raise ValueError(f"decimals must be non-negative, got {decimals}")
    with localcontext() as ctx:
        ctx.prec = 96
        scaled = Decimal(value).scaleb(-decimals)
    text = format(scaled, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
