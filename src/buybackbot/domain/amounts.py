from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation

LAMPORTS_PER_SOL = 1_000_000_000
MAX_U64 = 2**64 - 1
BPS_DENOMINATOR = 10_000


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid decimal value: {value!r}") from exc


def lamports_to_sol(lamports: int) -> Decimal:
    """Display-only conversion; planning and validation stay in integers."""
    return Decimal(int(lamports)) / Decimal(LAMPORTS_PER_SOL)


def sol_to_lamports(sol: Decimal | int | float | str) -> int:
    scaled = to_decimal(sol) * LAMPORTS_PER_SOL
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def percentage_of(amount: int, percent: Decimal | int | float | str) -> int:
    """Truncating integer percentage of a smallest-unit amount."""
    scaled = Decimal(int(amount)) * to_decimal(percent) / Decimal(100)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def calculate_bps(original: int, changed: int) -> int:
    if original == 0:
        return 0
    return abs(changed - original) * BPS_DENOMINATOR // abs(original)


def apply_slippage(amount: int, slippage_bps: int) -> int:
    return amount - (amount * slippage_bps) // BPS_DENOMINATOR


def format_token_amount(amount: int, decimals: int) -> str:
    """Exact decimal rendering of a base-unit token amount, trailing zeros dropped."""
    divisor = 10**decimals
    whole, fraction = divmod(int(amount), divisor)
    if fraction == 0:
        return str(whole)
    trimmed = str(fraction).rjust(decimals, "0").rstrip("0")
    return f"{whole}.{trimmed}"


def format_sol(lamports: int, places: int = 4) -> str:
    quantum = Decimal(1).scaleb(-places)
    return str(lamports_to_sol(lamports).quantize(quantum, rounding=ROUND_DOWN))
