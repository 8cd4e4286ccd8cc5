"""
Read-only models of the vault program's on-chain accounts.

Accounts are Anchor-serialized: 8-byte discriminator followed by
little-endian Borsh fields. The engine only decodes them; it never writes.
"""
import logging
import struct
from dataclasses import dataclass, field
from typing import List, Optional

from solders.pubkey import Pubkey

from .errors import ErrorCode, ErrorKind, Stage, SwapError

logger = logging.getLogger(__name__)

GLOBAL_CONFIG_DISCRIMINATOR = bytes([149, 8, 156, 202, 160, 252, 176, 217])
TRADER_STATE_DISCRIMINATOR = bytes([124, 33, 101, 17, 158, 79, 26, 140])
USER_VAULT_DISCRIMINATOR = bytes([23, 76, 96, 159, 210, 10, 5, 22])

DISCRIMINATOR_LEN = 8
PUBKEY_LEN = 32


class AccountDecodeError(ValueError):
    """Account data does not match the expected layout."""


def _check(data: bytes, discriminator: bytes, min_len: int, name: str) -> None:
    if len(data) < min_len:
        raise AccountDecodeError(f"{name}: expected at least {min_len} bytes, got {len(data)}")
    if bytes(data[:DISCRIMINATOR_LEN]) != discriminator:
        raise AccountDecodeError(f"{name}: discriminator mismatch")


def _pubkey_at(data: bytes, offset: int) -> Pubkey:
    return Pubkey.from_bytes(bytes(data[offset:offset + PUBKEY_LEN]))


@dataclass(frozen=True)
class GlobalPolicy:
    """GlobalConfig account: the only source of the platform fee rate."""
    address: Pubkey
    admin: Pubkey
    platform_fee_bps: int
    performance_fee_bps: int
    legacy_trading_enabled: bool

    # 8 disc + admin(32) + u16 + u16 + bool
    SIZE = 45

    @classmethod
    def decode(cls, address: Pubkey, data: bytes) -> "GlobalPolicy":
        _check(data, GLOBAL_CONFIG_DISCRIMINATOR, cls.SIZE, "GlobalConfig")
        platform_fee_bps, performance_fee_bps = struct.unpack_from("<HH", data, 40)
        return cls(
            address=address,
            admin=_pubkey_at(data, 8),
            platform_fee_bps=platform_fee_bps,
            performance_fee_bps=performance_fee_bps,
            legacy_trading_enabled=data[44] != 0,
        )


@dataclass(frozen=True)
class StrategyLedger:
    """
    TraderState account: the value record for one strategy inside a vault.

    `recorded_value` is denominated in the vault's base asset and only moves
    when a trade lands back in the base asset.
    """
    address: Pubkey
    owner: Pubkey
    strategy_id: Pubkey
    vault: Pubkey
    bump: int
    recorded_value: int
    high_water_mark: int
    cumulative_realized_pnl: int
    is_paused: bool
    is_settled: bool
    is_initialized: bool

    # 8 disc + 3 * 32 + u8 + u64 + u64 + i64 + 3 * bool
    SIZE = 132

    @classmethod
    def decode(cls, address: Pubkey, data: bytes) -> "StrategyLedger":
        _check(data, TRADER_STATE_DISCRIMINATOR, cls.SIZE, "TraderState")
        recorded_value, high_water_mark, cumulative = struct.unpack_from("<QQq", data, 105)
        return cls(
            address=address,
            owner=_pubkey_at(data, 8),
            strategy_id=_pubkey_at(data, 40),
            vault=_pubkey_at(data, 72),
            bump=data[104],
            recorded_value=recorded_value,
            high_water_mark=high_water_mark,
            cumulative_realized_pnl=cumulative,
            is_paused=data[129] != 0,
            is_settled=data[130] != 0,
            is_initialized=data[131] != 0,
        )


@dataclass(frozen=True)
class Vault:
    """UserVault account."""
    address: Pubkey
    owner: Pubkey
    backend_authority: Pubkey
    bump: int
    is_paused: bool
    trade_amount_lamports: int
    base_asset: Pubkey
    allowed_assets: List[Pubkey] = field(default_factory=list)

    # Fixed part: 8 disc + owner + authority + u8 + bool + u64 + base_mint + vec len
    FIXED_SIZE = 118

    @classmethod
    def decode(cls, address: Pubkey, data: bytes) -> "Vault":
        _check(data, USER_VAULT_DISCRIMINATOR, cls.FIXED_SIZE, "UserVault")
        trade_amount = struct.unpack_from("<Q", data, 74)[0]
        count = struct.unpack_from("<I", data, 114)[0]
        end = cls.FIXED_SIZE + count * PUBKEY_LEN
        if len(data) < end:
            raise AccountDecodeError(f"UserVault: allowed_mints truncated ({count} entries, {len(data)} bytes)")
        allowed = [_pubkey_at(data, cls.FIXED_SIZE + i * PUBKEY_LEN) for i in range(count)]
        return cls(
            address=address,
            owner=_pubkey_at(data, 8),
            backend_authority=_pubkey_at(data, 40),
            bump=data[72],
            is_paused=data[73] != 0,
            trade_amount_lamports=trade_amount,
            base_asset=_pubkey_at(data, 82),
            allowed_assets=allowed,
        )

    def allows(self, mint: Pubkey) -> bool:
        """Base asset is always tradable; an empty allow-list permits everything."""
        if mint == self.base_asset:
            return True
        return not self.allowed_assets or mint in self.allowed_assets


async def _fetch(solana, address: Pubkey, decoder, name: str):
    data: Optional[bytes] = await solana.get_account_data(address)
    if data is None:
        raise SwapError(Stage.VALIDATE, ErrorKind.BALANCE, ErrorCode.MISSING_ACCOUNT,
                        f"{name} account {address} does not exist")
    try:
        return decoder(address, data)
    except AccountDecodeError as e:
        logger.error(f"Cannot decode {name} at {address}: {e}")
        raise SwapError(Stage.VALIDATE, ErrorKind.STRUCTURAL, ErrorCode.MALFORMED_RESPONSE,
                        f"Cannot decode {name} at {address}: {e}") from e


async def fetch_global_policy(solana, address: Pubkey) -> GlobalPolicy:
    return await _fetch(solana, address, GlobalPolicy.decode, "GlobalConfig")


async def fetch_strategy_ledger(solana, address: Pubkey) -> StrategyLedger:
    return await _fetch(solana, address, StrategyLedger.decode, "TraderState")


async def fetch_vault(solana, address: Pubkey) -> Vault:
    return await _fetch(solana, address, Vault.decode, "UserVault")
