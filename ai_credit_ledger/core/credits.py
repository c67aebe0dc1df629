"""
Token to credit conversion.

Credits are a billing-facing view of tokens. They are never stored
independently: every credit figure is recomputed from token counts.
"""

from decimal import Decimal, ROUND_HALF_UP


def _check_rate(tokens_per_credit: int) -> None:
    if tokens_per_credit <= 0:
        raise ValueError("tokens_per_credit must be > 0")


def credits_for_tokens(tokens: int, tokens_per_credit: int) -> float:
    """Fractional credits for a token amount, as charged on a usage event.

    Args:
        tokens: Token amount (may be negative for admin adjustments)
        tokens_per_credit: Conversion rate in effect

    Returns:
        Credits rounded to 6 decimal places
    """
    _check_rate(tokens_per_credit)
    credits = Decimal(tokens) / Decimal(tokens_per_credit)
    return float(credits.quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP))


def whole_credits(tokens: int, tokens_per_credit: int) -> int:
    """Whole credits for display: ``floor(tokens / tokens_per_credit)``."""
    _check_rate(tokens_per_credit)
    return tokens // tokens_per_credit


def usage_percentage(tokens_used: int, tokens_granted: int) -> int:
    """Percentage of the allowance used, rounded half up. 0 when nothing is granted."""
    if tokens_granted <= 0:
        return 0
    ratio = Decimal(100 * tokens_used) / Decimal(tokens_granted)
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
