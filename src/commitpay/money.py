"""Money conversion helpers for a 6-decimal stable asset (USDC base units)."""

from __future__ import annotations

from decimal import Decimal, ROUND_CEILING


USDC_DECIMALS = 6
UNITS_PER_USDC = 10**USDC_DECIMALS
MAX_AMOUNT = 2**64 - 1
_USDC_QUANT = Decimal("0.000001")


def usdc_to_units(value: Decimal | float | int | str) -> int:
    """Convert a human USDC amount to base units, rounding up (conservative)."""
    dec = Decimal(str(value)).quantize(_USDC_QUANT, rounding=ROUND_CEILING)
    if dec < 0:
        raise ValueError(f"Amount must not be negative: {value}")
    return int(dec * UNITS_PER_USDC)


def units_to_usdc(value: int) -> Decimal:
    """Convert integer base units to Decimal USDC."""
    return (Decimal(value) / Decimal(UNITS_PER_USDC)).quantize(_USDC_QUANT)


def format_units(value: int) -> str:
    """Format integer base units as a USDC string."""
    return f"{units_to_usdc(value):,.2f} USDC"


def validate_amount(amount: int) -> int:
    """Reject amounts outside the unsigned 64-bit range."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"Amount must be an integer number of base units: {amount!r}")
    if amount < 0 or amount > MAX_AMOUNT:
        raise ValueError(f"Amount out of range (0..{MAX_AMOUNT}): {amount}")
    return amount
