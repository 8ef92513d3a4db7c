"""Conversions between decimal marketplace amounts and the token's integer units"""

from decimal import Decimal, InvalidOperation
from typing import Union

from utils.exceptions import BadInputError

TOKEN_DECIMALS = 18
WEI_PER_TOKEN = 10 ** TOKEN_DECIMALS


def to_wei(amount: Union[Decimal, str, int]) -> int:
    """
    Convert a decimal amount to integer units (x 10^18).

    Exact integer arithmetic; amounts with more than 18 fractional digits are
    rejected rather than silently rounded.
    """
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise BadInputError(f"Invalid amount: {amount}") from e

    if not value.is_finite() or value < 0:
        raise BadInputError(f"Amount must be a non-negative finite number: {amount}")

    sign, digits, exponent = value.normalize().as_tuple()
    if exponent < -TOKEN_DECIMALS:
        raise BadInputError(f"Amount has more than {TOKEN_DECIMALS} fractional digits: {amount}")

    coefficient = int("".join(str(d) for d in digits)) if digits else 0
    return coefficient * 10 ** (exponent + TOKEN_DECIMALS)


def from_wei(value: Union[int, str]) -> Decimal:
    return Decimal(int(value)) / Decimal(WEI_PER_TOKEN)


def usd_to_token_units(amount_usd: Union[Decimal, str]) -> int:
    """Internal token is pegged 1:1 to USD"""
    return to_wei(amount_usd)
