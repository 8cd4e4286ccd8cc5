"""
Utility functions for the vault swap engine.
"""
import logging
import sys
from typing import Dict, Sequence

# Well-known mints used by the direction shortcuts
SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

MINT_DECIMALS: Dict[str, int] = {
    SOL_MINT: 9,
    USDC_MINT: 6,
}

MINT_SYMBOLS: Dict[str, str] = {
    SOL_MINT: "SOL",
    USDC_MINT: "USDC",
}


def get_terminal_colors() -> Dict[str, str]:
    """
    Get ANSI color codes for terminal output.

    Returns empty strings if output is not a TTY (e.g., redirected to file).
    This keeps log files free of ANSI escape codes.

    Returns:
        Dictionary with color codes: GREEN, CYAN, YELLOW, RED, DIM, RESET
    """
    use_color = sys.stdout.isatty()
    return {
        'GREEN': '\033[92m' if use_color else '',   # Amounts, balances, counts
        'CYAN': '\033[96m' if use_color else '',    # Addresses, signatures, stages
        'YELLOW': '\033[93m' if use_color else '',  # Fees, slippage, thresholds
        'RED': '\033[91m' if use_color else '',     # Failures and structural faults
        'DIM': '\033[90m' if use_color else '',     # Low-importance service messages
        'RESET': '\033[0m' if use_color else ''
    }


def ui_to_raw(ui_amount: float, mint: str) -> int:
    """
    Convert a human-unit amount into raw token units (floored).

    Raises:
        ValueError: If the mint's decimals are unknown
    """
    if mint not in MINT_DECIMALS:
        raise ValueError(f"Unknown decimals for mint {mint}; pass a raw amount instead")
    return int(ui_amount * (10 ** MINT_DECIMALS[mint]))


def format_amount(amount: int, mint: str) -> str:
    """Format raw units as "X.XXXX SYMBOL" for known mints, raw integer otherwise."""
    if mint == SOL_MINT:
        return f"{amount / 1e9:.4f} SOL"
    if mint == USDC_MINT:
        return f"{amount / 1e6:.2f} USDC"
    return f"{amount}"


def short_address(address: str, width: int = 8) -> str:
    return f"{address[:width]}..." if len(address) > width else address


def format_sim_logs(logs: Sequence[str], tail: int = 20) -> str:
    """
    Format simulation logs, showing only the last N lines to avoid spam.

    Full logs are shown when the root logger is at DEBUG.
    """
    if not logs:
        return "  (no logs)"

    if logging.getLogger().isEnabledFor(logging.DEBUG):
        lines_to_show = list(logs)
    else:
        lines_to_show = list(logs)[-tail:]

    return "\n".join(f"  {line}" for line in lines_to_show)
