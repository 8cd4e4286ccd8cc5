"""
Tests for utils.py
"""
import logging
from unittest.mock import patch

import pytest

from vaultswap.utils import format_amount, format_sim_logs, get_terminal_colors, short_address, ui_to_raw


class TestGetTerminalColors:
    """Tests for get_terminal_colors function."""

    def test_get_terminal_colors_with_tty(self):
        """Color codes are returned when stdout is a TTY."""
        with patch('sys.stdout.isatty', return_value=True):
            colors = get_terminal_colors()
            assert colors['GREEN'] == '\033[92m'
            assert colors['RED'] == '\033[91m'
            assert colors['RESET'] == '\033[0m'

    def test_get_terminal_colors_without_tty(self):
        """Empty strings are returned when stdout is redirected."""
        with patch('sys.stdout.isatty', return_value=False):
            colors = get_terminal_colors()
            assert all(value == '' for value in colors.values())


class TestAmounts:

    def test_ui_to_raw_sol(self, sol_mint):
        assert ui_to_raw(0.5, sol_mint) == 500_000_000

    def test_ui_to_raw_usdc(self, usdc_mint):
        assert ui_to_raw(12.25, usdc_mint) == 12_250_000

    def test_ui_to_raw_floors(self, usdc_mint):
        assert ui_to_raw(0.0000019, usdc_mint) == 1

    def test_ui_to_raw_unknown_mint(self):
        with pytest.raises(ValueError, match="Unknown decimals"):
            ui_to_raw(1.0, "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN")

    def test_format_amount(self, sol_mint, usdc_mint):
        assert format_amount(1_500_000_000, sol_mint) == "1.5000 SOL"
        assert format_amount(2_500_000, usdc_mint) == "2.50 USDC"
        assert format_amount(42, "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN") == "42"

    def test_short_address(self, sol_mint):
        assert short_address(sol_mint) == "So111111..."
        assert short_address("abc") == "abc"


class TestFormatSimLogs:

    def test_empty_logs(self):
        assert format_sim_logs([]) == "  (no logs)"

    def test_tail_only_at_info(self):
        logging.getLogger().setLevel(logging.INFO)
        logs = [f"line {i}" for i in range(30)]
        formatted = format_sim_logs(logs, tail=5)
        assert formatted.splitlines() == [f"  line {i}" for i in range(25, 30)]
