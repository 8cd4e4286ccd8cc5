"""
Account Resolver: the single place where program-derived and token
account addresses are computed.

Derivations are pure. `ensure_token_account` is the only method that
touches the network: it provisions a missing associated token account in
its own transaction, never bundled with a swap.
"""
import logging
from typing import Optional

from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction
from spl.token.instructions import create_idempotent_associated_token_account, get_associated_token_address

from .errors import ErrorCode, ErrorKind, RpcError, Stage, SwapError
from .utils import get_terminal_colors, short_address

logger = logging.getLogger(__name__)
colors = get_terminal_colors()

GLOBAL_CONFIG_SEED = b"global_config"
USER_VAULT_SEED = b"user_vault_v1"
TRADER_STATE_SEED = b"trader_state"


def _as_pubkey(value) -> Pubkey:
    return value if isinstance(value, Pubkey) else Pubkey.from_string(str(value))


class AccountResolver:
    """Derives every address the swap instruction needs."""

    def __init__(self, program_id, solana=None, payer: Optional[Keypair] = None,
                 confirm_timeout_seconds: float = 30.0):
        """
        Args:
            program_id: Vault program id
            solana: SolanaClient used by ensure_token_account (optional for pure derivations)
            payer: Backend key paying for provisioned accounts
            confirm_timeout_seconds: How long to wait for a provisioning transaction
        """
        self.program_id = _as_pubkey(program_id)
        self.solana = solana
        self.payer = payer
        self.confirm_timeout_seconds = confirm_timeout_seconds

    def global_policy(self) -> Pubkey:
        pda, _ = Pubkey.find_program_address([GLOBAL_CONFIG_SEED], self.program_id)
        return pda

    def vault(self, owner) -> Pubkey:
        pda, _ = Pubkey.find_program_address([USER_VAULT_SEED, bytes(_as_pubkey(owner))], self.program_id)
        return pda

    def strategy_ledger(self, owner, strategy_id) -> Pubkey:
        pda, _ = Pubkey.find_program_address(
            [TRADER_STATE_SEED, bytes(_as_pubkey(owner)), bytes(_as_pubkey(strategy_id))],
            self.program_id,
        )
        return pda

    @staticmethod
    def token_account(owner, mint) -> Pubkey:
        """Associated token account; `owner` may be a PDA (off-curve)."""
        return get_associated_token_address(_as_pubkey(owner), _as_pubkey(mint))

    def fee_destination(self, admin, mint) -> Pubkey:
        """Platform fee account: the admin's associated token account for the input mint."""
        return self.token_account(admin, mint)

    async def ensure_token_account(self, owner, mint) -> Pubkey:
        """
        Make sure the associated token account for (owner, mint) exists.

        A missing account is created with the idempotent create instruction in a
        separate transaction paid by the backend key, then confirmed.

        Returns:
            The token account address

        Raises:
            SwapError: Balance/MISSING_ACCOUNT at stage provision on any failure
        """
        if self.solana is None or self.payer is None:
            raise SwapError(Stage.PROVISION, ErrorKind.STRUCTURAL, ErrorCode.INVALID_ARGUMENT,
                            "AccountResolver has no RPC client or payer for provisioning")

        owner = _as_pubkey(owner)
        mint = _as_pubkey(mint)
        ata = self.token_account(owner, mint)

        try:
            if await self.solana.account_exists(ata):
                logger.debug(f"Token account {ata} exists")
                return ata

            logger.info(
                f"Creating token account {colors['CYAN']}{short_address(str(ata))}{colors['RESET']} "
                f"(owner {short_address(str(owner))}, mint {short_address(str(mint))})"
            )
            ix = create_idempotent_associated_token_account(self.payer.pubkey(), owner, mint)
            blockhash = await self.solana.get_latest_blockhash()
            message = MessageV0.try_compile(self.payer.pubkey(), [ix], [], blockhash.blockhash)
            tx = VersionedTransaction(message, [self.payer])
            signature = await self.solana.send_raw_transaction(bytes(tx))
            status = await self.solana.confirm_transaction(signature, timeout=self.confirm_timeout_seconds)
        except RpcError as e:
            raise SwapError(Stage.PROVISION, ErrorKind.BALANCE, ErrorCode.MISSING_ACCOUNT,
                            f"Could not provision token account {ata}: {e}", logs=e.logs) from e

        if status is None:
            raise SwapError(Stage.PROVISION, ErrorKind.BALANCE, ErrorCode.MISSING_ACCOUNT,
                            f"Provisioning of token account {ata} not confirmed ({signature})")
        if status.err is not None:
            raise SwapError(Stage.PROVISION, ErrorKind.BALANCE, ErrorCode.MISSING_ACCOUNT,
                            f"Provisioning of token account {ata} failed: {status.err}")

        logger.info(f"{colors['GREEN']}Token account created{colors['RESET']}: {ata} ({signature})")
        return ata
