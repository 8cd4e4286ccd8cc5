"""
CPI Assembler: wraps a rewritten route into the vault program's
execute_trader_swap instruction and compiles the v0 transaction.

Only the backend key ever signs. The ledger PDA's authority is asserted by
the vault program itself, never by this engine.
"""
import logging
import struct
from typing import List, Optional, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from spl.token.constants import TOKEN_PROGRAM_ID

from .errors import ErrorCode, ErrorKind, Stage, SwapError
from .rewriter import ResolvedAccount, RewrittenRoute

logger = logging.getLogger(__name__)

EXECUTE_TRADER_SWAP_DISCRIMINATOR = bytes([129, 230, 174, 191, 180, 66, 1, 230])
INSTRUCTIONS_SYSVAR_ID = Pubkey.from_string("Sysvar1nstructions1111111111111111111111111")

# Solana packet data limit for a serialized transaction
MAX_TRANSACTION_SIZE = 1232

# Per-transaction compute ceiling, and the allowance for the vault program's
# own checks around the aggregator CPI
MAX_COMPUTE_UNITS = 1_400_000
VAULT_COMPUTE_HEADROOM = 60_000


def encode_execute_swap_data(amount_in: int, min_amount_out: int, payload: bytes) -> bytes:
    """discriminator + amount_in u64 LE + min_amount_out u64 LE + borsh bytes (u32 LE length + payload)."""
    return (
        EXECUTE_TRADER_SWAP_DISCRIMINATOR
        + struct.pack("<QQ", amount_in, min_amount_out)
        + struct.pack("<I", len(payload))
        + payload
    )


def build_execute_swap_instruction(
    program_id: Pubkey,
    authority: Pubkey,
    vault: Pubkey,
    strategy_ledger: Pubkey,
    input_token_account: Pubkey,
    output_token_account: Pubkey,
    fee_destination: Pubkey,
    global_policy: Pubkey,
    aggregator_program: Pubkey,
    amount_in: int,
    min_amount_out: int,
    route: RewrittenRoute,
) -> Instruction:
    """
    Build the execute_trader_swap instruction.

    Fixed accounts come first in the program's declared order, followed by
    the route's accounts as remaining accounts.

    Raises:
        SwapError: Structural (stage=assemble) when a remaining account is
            unresolved or claims signer status
    """
    remaining: List[AccountMeta] = []
    for position, account in enumerate(route.accounts):
        if not isinstance(account, ResolvedAccount):
            raise SwapError(Stage.ASSEMBLE, ErrorKind.STRUCTURAL, ErrorCode.ACCOUNT_ORDERING,
                            f"Remaining account #{position} is not resolved: {account!r}")
        if account.is_signer:
            raise SwapError(Stage.ASSEMBLE, ErrorKind.STRUCTURAL, ErrorCode.SIGNER_MISMATCH,
                            f"Remaining account #{position} ({account.pubkey}) claims signer status")
        remaining.append(AccountMeta(pubkey=account.pubkey, is_signer=False, is_writable=account.is_writable))

    accounts = [
        AccountMeta(pubkey=authority, is_signer=True, is_writable=True),
        AccountMeta(pubkey=vault, is_signer=False, is_writable=False),
        AccountMeta(pubkey=strategy_ledger, is_signer=False, is_writable=True),
        AccountMeta(pubkey=input_token_account, is_signer=False, is_writable=True),
        AccountMeta(pubkey=output_token_account, is_signer=False, is_writable=True),
        AccountMeta(pubkey=fee_destination, is_signer=False, is_writable=True),
        AccountMeta(pubkey=global_policy, is_signer=False, is_writable=False),
        AccountMeta(pubkey=aggregator_program, is_signer=False, is_writable=False),
        AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=INSTRUCTIONS_SYSVAR_ID, is_signer=False, is_writable=False),
    ] + remaining

    return Instruction(
        program_id=program_id,
        accounts=accounts,
        data=encode_execute_swap_data(amount_in, min_amount_out, route.payload),
    )


def route_compute_unit_limit(aggregator_units: Optional[int]) -> Optional[int]:
    """Compute-unit limit for the wrapped swap, from the aggregator's own estimate."""
    if not aggregator_units:
        return None
    return min(aggregator_units + VAULT_COMPUTE_HEADROOM, MAX_COMPUTE_UNITS)


def compute_budget_instructions(unit_limit: Optional[int], unit_price_microlamports: Optional[int]) -> List[Instruction]:
    instructions = []
    if unit_limit:
        instructions.append(set_compute_unit_limit(unit_limit))
    if unit_price_microlamports:
        instructions.append(set_compute_unit_price(unit_price_microlamports))
    return instructions


def unsigned_copy(message: MessageV0) -> VersionedTransaction:
    """Transaction with placeholder signatures; only valid for sig_verify=False simulation and sizing."""
    placeholders = [Signature.default()] * message.header.num_required_signatures
    return VersionedTransaction.populate(message, placeholders)


def transaction_size(message: MessageV0) -> int:
    return len(bytes(unsigned_copy(message)))


def compile_transaction(
    instructions: Sequence[Instruction],
    payer: Pubkey,
    lookup_tables: Sequence[AddressLookupTableAccount],
    blockhash: Hash,
    compute_unit_limit: Optional[int] = None,
    compute_unit_price_microlamports: Optional[int] = None,
) -> MessageV0:
    """
    Compile a v0 message, optionally prefixed by compute-budget instructions.

    Raises:
        SwapError: Structural TRANSACTION_TOO_LARGE above the packet limit,
            SIGNER_MISMATCH if anything other than the payer must sign
    """
    all_instructions = compute_budget_instructions(compute_unit_limit, compute_unit_price_microlamports)
    all_instructions.extend(instructions)

    try:
        message = MessageV0.try_compile(payer, all_instructions, list(lookup_tables), blockhash)
    except Exception as e:
        raise SwapError(Stage.ASSEMBLE, ErrorKind.STRUCTURAL, ErrorCode.ACCOUNT_ORDERING,
                        f"Cannot compile transaction: {e}") from e

    signers = list(message.account_keys)[:message.header.num_required_signatures]
    if signers != [payer]:
        raise SwapError(Stage.ASSEMBLE, ErrorKind.STRUCTURAL, ErrorCode.SIGNER_MISMATCH,
                        f"Transaction requires signers {[str(s) for s in signers]}, only {payer} may sign")

    size = transaction_size(message)
    if size > MAX_TRANSACTION_SIZE:
        logger.error(f"Transaction too large: {size} bytes > {MAX_TRANSACTION_SIZE}")
        raise SwapError(Stage.ASSEMBLE, ErrorKind.STRUCTURAL, ErrorCode.TRANSACTION_TOO_LARGE,
                        f"Serialized transaction is {size} bytes, limit is {MAX_TRANSACTION_SIZE}")

    logger.debug(f"Compiled v0 message: {size} bytes, {len(list(message.account_keys))} static keys, "
                 f"{len(list(message.address_table_lookups))} lookups")
    return message
