"""
Main entry point for the vault swap engine.
"""
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import base58
from solders.keypair import Keypair

from .config import EngineConfig, load_config
from .errors import SwapError
from .jupiter_client import JupiterClient
from .orchestrator import SwapOrchestrator, SwapRequest
from .solana_client import SolanaClient

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO", log_file: Optional[str] = "vaultswap.log") -> None:
    """Configure root logging: stdout plus an optional log file."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def load_backend_keypair(config: EngineConfig) -> Keypair:
    """
    Load the backend fee-payer key.

    Accepts a base58 secret key (BACKEND_WALLET_PRIVATE_KEY) or a JSON byte
    array file as written by solana-keygen (BACKEND_WALLET_PATH).

    Raises:
        ValueError: If no key is configured or the key cannot be decoded
    """
    if config.backend_private_key:
        key_bytes = base58.b58decode(config.backend_private_key)
        return Keypair.from_bytes(key_bytes)

    if config.backend_wallet_path:
        path = Path(config.backend_wallet_path).expanduser()
        with open(path, 'r') as f:
            secret = json.load(f)
        return Keypair.from_bytes(bytes(secret))

    raise ValueError("No backend key: set BACKEND_WALLET_PRIVATE_KEY or BACKEND_WALLET_PATH")


def build_orchestrator(config: EngineConfig, backend: Keypair) -> SwapOrchestrator:
    solana = SolanaClient(config.rpc_url, fallback_rpc_url=config.secondary_rpc_url,
                          commitment=config.confirm_commitment)
    jupiter = JupiterClient(config.jupiter_api_url, api_key=config.jupiter_api_key)
    return SwapOrchestrator(config, solana, jupiter, backend)


async def main(request: SwapRequest, config: Optional[EngineConfig] = None) -> Dict[str, Any]:
    """
    Run one swap and return the JSON-ready result.

    Returns:
        {"success": True, "result": {...}} or {"success": False, "error": {...}}
    """
    config = config or load_config()
    setup_logging(config.log_level, config.log_file)
    logger.info("Starting vault swap engine")

    backend = load_backend_keypair(config)
    logger.info(f"Backend wallet: {backend.pubkey()}")

    orchestrator = build_orchestrator(config, backend)
    try:
        result = await orchestrator.execute_swap(request)
        return {"success": True, "result": result.to_dict()}
    except SwapError as e:
        logger.error(f"Swap failed at {e.stage.value} ({e.kind.value}/{e.code.value}): {e.message}")
        return {"success": False, "error": e.to_dict()}
    finally:
        await orchestrator.solana.close()
        await orchestrator.jupiter.close()
