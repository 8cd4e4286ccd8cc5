"""
Platform fee calculation.

The fee rate always comes from the freshly read GlobalPolicy; this module is
pure arithmetic with no side effects.
"""
from dataclasses import dataclass

from .errors import ErrorCode, ErrorKind, Stage, SwapError

BPS_DENOMINATOR = 10_000
U64_MAX = 2 ** 64 - 1
U16_MAX = 2 ** 16 - 1


@dataclass(frozen=True)
class FeeSplit:
    fee: int
    net_amount: int
    fee_bps: int


def compute_platform_fee(amount_in: int, fee_bps: int) -> FeeSplit:
    """
    Split an input amount into platform fee and net swap amount.

    fee = floor(amount_in * fee_bps / 10000), computed in integers so
    fee + net_amount == amount_in always holds.

    Args:
        amount_in: Raw input amount (u64, > 0)
        fee_bps: Platform fee in basis points (u16, <= 10000)

    Returns:
        FeeSplit

    Raises:
        SwapError: Structural, stage=fee, when either argument is out of range
    """
    if isinstance(amount_in, bool) or not isinstance(amount_in, int) or amount_in <= 0 or amount_in > U64_MAX:
        raise SwapError(Stage.FEE, ErrorKind.STRUCTURAL, ErrorCode.INVALID_ARGUMENT,
                        f"amount_in must be a u64 greater than zero, got {amount_in!r}")
    if (isinstance(fee_bps, bool) or not isinstance(fee_bps, int) or fee_bps < 0
            or fee_bps > U16_MAX or fee_bps > BPS_DENOMINATOR):
        raise SwapError(Stage.FEE, ErrorKind.STRUCTURAL, ErrorCode.INVALID_ARGUMENT,
                        f"fee_bps must be within 0..{BPS_DENOMINATOR}, got {fee_bps!r}")

    fee = amount_in * fee_bps // BPS_DENOMINATOR
    return FeeSplit(fee=fee, net_amount=amount_in - fee, fee_bps=fee_bps)
