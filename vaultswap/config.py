"""
Configuration loading: .env (python-dotenv), optional config.json, environment variables.

Precedence: environment variable > config.json > built-in default.
"""
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import dotenv

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
DEFAULT_VAULT_PROGRAM_ID = "64XogE2RvY7g4fDp8XxWZxFTycANjDK37n88GZizm5nx"
JUPITER_PROGRAM_ID = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"
DEFAULT_JUPITER_API_URL = "https://api.jup.ag"

PROJECT_ROOT = Path(__file__).parent.parent


@dataclass
class EngineConfig:
    """Runtime settings for one engine instance."""
    rpc_url: str = DEFAULT_RPC_URL
    secondary_rpc_url: Optional[str] = DEFAULT_RPC_URL
    vault_program_id: str = DEFAULT_VAULT_PROGRAM_ID
    aggregator_program_id: str = JUPITER_PROGRAM_ID
    jupiter_api_url: str = DEFAULT_JUPITER_API_URL
    jupiter_api_key: Optional[str] = None
    backend_private_key: Optional[str] = None
    backend_wallet_path: Optional[str] = None

    # Routing
    slippage_bps: int = 100
    max_slippage_bps: int = 500
    max_price_impact_pct: float = 5.0
    route_dexes: List[str] = field(default_factory=lambda: ["Raydium"])
    only_direct_routes: bool = True
    route_attempts: int = 2

    # Submission
    max_send_attempts: int = 3
    send_backoff_base_seconds: float = 0.2
    confirm_timeout_seconds: float = 30.0
    confirm_commitment: str = "confirmed"
    compute_unit_limit: Optional[int] = None
    compute_unit_price_microlamports: Optional[int] = None

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = "vaultswap.log"

    def effective_slippage_bps(self, requested: Optional[int] = None) -> int:
        """
        Slippage for one pass, clamped to max_slippage_bps.

        Args:
            requested: Caller override (None = configured default)

        Returns:
            Slippage in basis points, never above the cap
        """
        slippage = self.slippage_bps if requested is None else requested
        if slippage < 0:
            raise ValueError(f"slippage_bps must be >= 0, got {slippage}")
        if slippage > self.max_slippage_bps:
            logger.warning(
                f"Slippage {slippage} bps exceeds MAX_SLIPPAGE_BPS ({self.max_slippage_bps}), "
                f"capping to {self.max_slippage_bps} bps"
            )
            return self.max_slippage_bps
        return slippage


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip():
        return None
    return int(value)


def load_file_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Load config.json (empty dict when absent)."""
    config_path = config_path or PROJECT_ROOT / 'config.json'
    if not config_path.exists():
        logger.debug(f"config.json not found at {config_path}")
        return {}
    with open(config_path, 'r') as f:
        return json.load(f)


def build_config(env: Dict[str, str], file_config: Optional[Dict[str, Any]] = None) -> EngineConfig:
    """
    Build EngineConfig from an environment mapping and config.json contents.

    Raises:
        ValueError: On unparsable numeric values or an inconsistent slippage cap
    """
    file_config = file_config or {}
    routing = file_config.get('routing', {})
    submission = file_config.get('submission', {})
    defaults = EngineConfig()

    def pick(env_key: str, section: Dict[str, Any], file_key: str, default: Any) -> Any:
        if env.get(env_key) not in (None, ""):
            return env[env_key]
        if file_key in section:
            return section[file_key]
        return default

    dexes_raw = pick('ROUTE_DEXES', routing, 'dexes', defaults.route_dexes)
    if isinstance(dexes_raw, str):
        dexes = [d.strip() for d in dexes_raw.split(',') if d.strip()]
    else:
        dexes = list(dexes_raw)

    only_direct = pick('ONLY_DIRECT_ROUTES', routing, 'only_direct_routes', defaults.only_direct_routes)
    if isinstance(only_direct, str):
        only_direct = _parse_bool(only_direct)

    config = EngineConfig(
        rpc_url=pick('RPC_URL', file_config, 'rpc_url', defaults.rpc_url),
        secondary_rpc_url=pick('SECONDARY_RPC_URL', file_config, 'secondary_rpc_url', defaults.secondary_rpc_url),
        vault_program_id=pick('VAULT_PROGRAM_ID', file_config, 'vault_program_id', defaults.vault_program_id),
        aggregator_program_id=pick('AGGREGATOR_PROGRAM_ID', file_config, 'aggregator_program_id',
                                   defaults.aggregator_program_id),
        jupiter_api_url=pick('JUPITER_API_URL', file_config, 'jupiter_api_url', defaults.jupiter_api_url),
        jupiter_api_key=env.get('JUPITER_API_KEY') or None,
        backend_private_key=env.get('BACKEND_WALLET_PRIVATE_KEY') or None,
        backend_wallet_path=env.get('BACKEND_WALLET_PATH') or None,
        slippage_bps=int(pick('SLIPPAGE_BPS', routing, 'slippage_bps', defaults.slippage_bps)),
        max_slippage_bps=int(pick('MAX_SLIPPAGE_BPS', routing, 'max_slippage_bps', defaults.max_slippage_bps)),
        max_price_impact_pct=float(pick('MAX_PRICE_IMPACT_PCT', routing, 'max_price_impact_pct',
                                        defaults.max_price_impact_pct)),
        route_dexes=dexes,
        only_direct_routes=bool(only_direct),
        route_attempts=int(pick('ROUTE_ATTEMPTS', routing, 'route_attempts', defaults.route_attempts)),
        max_send_attempts=int(pick('MAX_SEND_ATTEMPTS', submission, 'max_send_attempts',
                                   defaults.max_send_attempts)),
        send_backoff_base_seconds=float(pick('SEND_BACKOFF_BASE_SECONDS', submission, 'backoff_base_seconds',
                                             defaults.send_backoff_base_seconds)),
        confirm_timeout_seconds=float(pick('CONFIRM_TIMEOUT_SECONDS', submission, 'confirm_timeout_seconds',
                                           defaults.confirm_timeout_seconds)),
        confirm_commitment=str(pick('CONFIRM_COMMITMENT', submission, 'confirm_commitment',
                                    defaults.confirm_commitment)).lower(),
        compute_unit_limit=_parse_optional_int(
            str(pick('COMPUTE_UNIT_LIMIT', submission, 'compute_unit_limit', '') or '')),
        compute_unit_price_microlamports=_parse_optional_int(
            str(pick('COMPUTE_UNIT_PRICE_MICROLAMPORTS', submission, 'compute_unit_price_microlamports', '') or '')),
        log_level=str(pick('LOG_LEVEL', file_config, 'log_level', defaults.log_level)).upper(),
        log_file=pick('LOG_FILE', file_config, 'log_file', defaults.log_file) or None,
    )

    if config.max_slippage_bps < 0 or config.max_slippage_bps > 10_000:
        raise ValueError(f"MAX_SLIPPAGE_BPS must be within 0..10000, got {config.max_slippage_bps}")
    if config.max_send_attempts < 1:
        raise ValueError(f"MAX_SEND_ATTEMPTS must be >= 1, got {config.max_send_attempts}")
    if config.route_attempts < 1:
        raise ValueError(f"ROUTE_ATTEMPTS must be >= 1, got {config.route_attempts}")
    if config.confirm_commitment not in ("processed", "confirmed", "finalized"):
        raise ValueError(f"CONFIRM_COMMITMENT must be processed/confirmed/finalized, got {config.confirm_commitment}")

    # Validate slippage: SLIPPAGE_BPS must be <= MAX_SLIPPAGE_BPS
    config.slippage_bps = config.effective_slippage_bps()
    return config


def load_config(env_path: Optional[Path] = None, config_path: Optional[Path] = None) -> EngineConfig:
    """Load configuration from .env and config.json."""
    env_path = env_path or PROJECT_ROOT / '.env'
    if env_path.exists():
        dotenv.load_dotenv(env_path)
    else:
        logger.warning(f".env file not found at {env_path}")

    return build_config(dict(os.environ), load_file_config(config_path))
