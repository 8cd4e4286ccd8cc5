"""
Tests for main.py and the run.py launcher
"""
import json

import base58
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from solders.keypair import Keypair

from vaultswap.config import EngineConfig
from vaultswap.errors import ErrorCode, ErrorKind, Stage, SwapError
from vaultswap.main import load_backend_keypair, main
from vaultswap.orchestrator import SwapRequest
from run import build_parser, request_from_args


class TestLoadBackendKeypair:

    def test_base58(self, mock_keypair):
        config = EngineConfig(backend_private_key=base58.b58encode(bytes(mock_keypair)).decode())
        assert load_backend_keypair(config).pubkey() == mock_keypair.pubkey()

    def test_json_file(self, tmp_path, mock_keypair):
        path = tmp_path / "id.json"
        path.write_text(json.dumps(list(bytes(mock_keypair))))
        config = EngineConfig(backend_wallet_path=str(path))
        assert load_backend_keypair(config).pubkey() == mock_keypair.pubkey()

    def test_missing(self):
        with pytest.raises(ValueError, match="No backend key"):
            load_backend_keypair(EngineConfig())


class TestMain:

    @pytest.fixture
    def config(self, mock_keypair):
        return EngineConfig(backend_private_key=base58.b58encode(bytes(mock_keypair)).decode(), log_file=None)

    @pytest.fixture
    def orchestrator(self):
        orchestrator = MagicMock()
        orchestrator.solana.close = AsyncMock()
        orchestrator.jupiter.close = AsyncMock()
        return orchestrator

    @pytest.mark.asyncio
    async def test_success(self, config, orchestrator):
        orchestrator.execute_swap = AsyncMock(return_value=MagicMock(to_dict=lambda: {"status": "confirmed"}))
        with patch("vaultswap.main.build_orchestrator", return_value=orchestrator), \
                patch("vaultswap.main.setup_logging"):
            output = await main(SwapRequest(direction="SOL_TO_USDC", amount=1), config)

        assert output == {"success": True, "result": {"status": "confirmed"}}
        orchestrator.solana.close.assert_awaited_once()
        orchestrator.jupiter.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_swap_error_reported(self, config, orchestrator):
        error = SwapError(Stage.ROUTE, ErrorKind.ECONOMIC, ErrorCode.NO_ROUTE, "no route")
        orchestrator.execute_swap = AsyncMock(side_effect=error)
        with patch("vaultswap.main.build_orchestrator", return_value=orchestrator), \
                patch("vaultswap.main.setup_logging"):
            output = await main(SwapRequest(direction="SOL_TO_USDC", amount=1), config)

        assert output["success"] is False
        assert output["error"]["stage"] == "route"
        assert output["error"]["code"] == "NO_ROUTE"
        orchestrator.solana.close.assert_awaited_once()


class TestLauncher:

    def test_execute_arguments(self):
        owner = str(Keypair().pubkey())
        args = build_parser().parse_args([
            "execute", "--owner", owner, "--strategy", owner, "--direction", "SOL_TO_USDC",
            "--raw-amount", "500000", "--slippage-bps", "50", "--dry-run",
        ])
        request = request_from_args(args)
        assert request.owner == owner
        assert request.direction == "SOL_TO_USDC"
        assert request.amount == 500_000
        assert request.ui_amount is None
        assert request.slippage_bps == 50
        assert request.dry_run is True

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])
