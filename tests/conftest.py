"""
Pytest configuration and fixtures for vault swap engine tests.
"""
from typing import Optional

import pytest
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import AccountMeta
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from vaultswap.config import DEFAULT_VAULT_PROGRAM_ID, JUPITER_PROGRAM_ID, EngineConfig
from vaultswap.jupiter_client import JupiterQuote, JupiterSwapResponse
from tests.factories import SOL, USDC, FakeSolana, build_aggregator_transaction


@pytest.fixture
def mock_keypair():
    """Create a keypair for testing."""
    return Keypair()


@pytest.fixture
def sol_mint():
    """SOL mint address."""
    return SOL


@pytest.fixture
def usdc_mint():
    """USDC mint address."""
    return USDC


@pytest.fixture
def program_id():
    return Pubkey.from_string(DEFAULT_VAULT_PROGRAM_ID)


@pytest.fixture
def aggregator_program():
    return Pubkey.from_string(JUPITER_PROGRAM_ID)


@pytest.fixture
def fake_solana():
    return FakeSolana()


@pytest.fixture
def engine_config():
    return EngineConfig(
        route_attempts=2,
        max_send_attempts=3,
        send_backoff_base_seconds=0.2,
        confirm_timeout_seconds=1.0,
        log_file=None,
    )


@pytest.fixture
def make_quote():
    """Factory for validated quotes (raw body included)."""
    def _make(input_mint: str, output_mint: str, in_amount: int, out_amount: int = 0,
              other_amount_threshold: Optional[int] = 0, price_impact_pct: float = 0.01) -> JupiterQuote:
        raw = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "inAmount": str(in_amount),
            "outAmount": str(out_amount),
            "otherAmountThreshold": str(other_amount_threshold if other_amount_threshold is not None else out_amount),
            "swapMode": "ExactIn",
            "slippageBps": 100,
            "priceImpactPct": str(price_impact_pct),
            "routePlan": [{"swapInfo": {"label": "Raydium", "ammKey": "58oQChx4yWmvKdwLLZzBi4ChoCc2fqCUWBkwMihLYQo2"},
                           "percent": 100}],
        }
        return JupiterQuote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=in_amount,
            out_amount=out_amount,
            other_amount_threshold=other_amount_threshold,
            price_impact_pct=price_impact_pct,
            route_plan=raw["routePlan"],
            raw=raw,
        )
    return _make


@pytest.fixture
def route_world(fake_solana, aggregator_program):
    """
    A lookup table with two pool accounts, registered with the fake RPC, and
    a builder for aggregator transactions that reference it.
    """
    pool_writable = Keypair().pubkey()
    pool_readonly = Keypair().pubkey()
    table_address = Keypair().pubkey()
    table = AddressLookupTableAccount(table_address, [pool_writable, pool_readonly])
    fake_solana.tables[table_address] = table

    def _build(trade_owner: Pubkey, **kwargs) -> str:
        extra = [
            AccountMeta(pubkey=pool_writable, is_signer=False, is_writable=True),
            AccountMeta(pubkey=pool_readonly, is_signer=False, is_writable=False),
        ]
        kwargs.setdefault("extra_accounts", extra)
        return build_aggregator_transaction(trade_owner, aggregator_program, lookup_table=table, **kwargs)

    return {
        "table": table,
        "table_address": table_address,
        "pool_writable": pool_writable,
        "pool_readonly": pool_readonly,
        "build": _build,
    }


@pytest.fixture
def make_swap_response():
    def _make(swap_transaction: str, last_valid_block_height: int = 2_000,
              compute_unit_limit=None) -> JupiterSwapResponse:
        return JupiterSwapResponse(swap_transaction=swap_transaction, last_valid_block_height=last_valid_block_height,
                                   compute_unit_limit=compute_unit_limit)
    return _make
