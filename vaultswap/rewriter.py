"""
Instruction Rewriter: turns the aggregator's serialized swap transaction into
an opaque payload plus a fully resolved, signer-free account list that can be
forwarded through the vault program's swap instruction.

The aggregator response is untrusted. Nothing in it may grant signing
authority: every account's signer flag is cleared no matter what the
message header says.
"""
import base64
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from .errors import ErrorCode, ErrorKind, RpcError, Stage, SwapError
from .utils import get_terminal_colors, short_address

logger = logging.getLogger(__name__)
colors = get_terminal_colors()


@dataclass(frozen=True)
class AddressTableReference:
    """An account addressed through a lookup table; unusable until resolved."""
    table: Pubkey
    index: int
    writable: bool


@dataclass(frozen=True)
class ResolvedAccount:
    pubkey: Pubkey
    is_writable: bool
    is_signer: bool = False


@dataclass(frozen=True)
class RewrittenRoute:
    payload: bytes
    accounts: Tuple[ResolvedAccount, ...]
    lookup_tables: Tuple[AddressLookupTableAccount, ...]

    def writable_count(self) -> int:
        return sum(1 for account in self.accounts if account.is_writable)


def _structural(code: ErrorCode, message: str) -> SwapError:
    logger.error(f"{colors['RED']}Rewrite rejected{colors['RESET']}: {message}")
    return SwapError(Stage.REWRITE, ErrorKind.STRUCTURAL, code, message)


class LookupTableCache:
    """
    Per-pass cache of address lookup tables.

    A table is fetched at most once per pass, so the same reference always
    resolves to the same address within that pass.
    """

    def __init__(self, solana):
        self.solana = solana
        self._tables: Dict[Pubkey, AddressLookupTableAccount] = {}
        self.fetch_count = 0

    async def get(self, table: Pubkey) -> AddressLookupTableAccount:
        if table in self._tables:
            return self._tables[table]

        self.fetch_count += 1
        try:
            account = await self.solana.get_address_lookup_table(table)
        except RpcError as e:
            raise e.to_swap_error(Stage.REWRITE) from e
        if account is None:
            raise _structural(ErrorCode.MALFORMED_RESPONSE, f"Lookup table {table} not found on any endpoint")

        self._tables[table] = account
        logger.debug(f"ALT {short_address(str(table))}: {len(account.addresses)} addresses")
        return account

    async def resolve(self, reference: AddressTableReference) -> ResolvedAccount:
        table = await self.get(reference.table)
        if reference.index < 0 or reference.index >= len(table.addresses):
            raise _structural(
                ErrorCode.ACCOUNT_ORDERING,
                f"Lookup index {reference.index} out of range for table {reference.table} "
                f"({len(table.addresses)} addresses)",
            )
        return ResolvedAccount(pubkey=table.addresses[reference.index], is_writable=reference.writable)

    def tables(self) -> Tuple[AddressLookupTableAccount, ...]:
        return tuple(self._tables.values())


AccountSlot = Union[ResolvedAccount, AddressTableReference]


def message_account_slots(message) -> List[AccountSlot]:
    """
    Lay out the message's full account index space.

    Static keys come first (writability from the header), then every table's
    writable indexes, then every table's readonly indexes.
    """
    header = message.header
    static_keys = list(message.account_keys)
    num_signers = header.num_required_signatures
    writable_signers = num_signers - header.num_readonly_signed_accounts
    writable_unsigned_end = len(static_keys) - header.num_readonly_unsigned_accounts

    slots: List[AccountSlot] = []
    for i, key in enumerate(static_keys):
        if i < num_signers:
            writable = i < writable_signers
        else:
            writable = i < writable_unsigned_end
        slots.append(ResolvedAccount(pubkey=key, is_writable=writable))

    lookups = list(getattr(message, "address_table_lookups", None) or [])
    for lookup in lookups:
        for index in list(lookup.writable_indexes):
            slots.append(AddressTableReference(table=lookup.account_key, index=index, writable=True))
    for lookup in lookups:
        for index in list(lookup.readonly_indexes):
            slots.append(AddressTableReference(table=lookup.account_key, index=index, writable=False))
    return slots


class InstructionRewriter:
    """Extracts the aggregator instruction from an untrusted swap transaction."""

    def __init__(self, solana, aggregator_program_id):
        self.solana = solana
        self.aggregator_program_id = (
            aggregator_program_id if isinstance(aggregator_program_id, Pubkey)
            else Pubkey.from_string(str(aggregator_program_id))
        )

    @staticmethod
    def decode(swap_transaction_b64: str) -> VersionedTransaction:
        try:
            raw = base64.b64decode(swap_transaction_b64, validate=True)
            return VersionedTransaction.from_bytes(raw)
        except Exception as e:
            raise _structural(ErrorCode.MALFORMED_RESPONSE, f"Swap transaction is not decodable: {e}") from e

    async def rewrite(
        self,
        swap_transaction_b64: str,
        trade_owner: Pubkey,
        cache: Optional[LookupTableCache] = None,
    ) -> RewrittenRoute:
        """
        Rewrite the aggregator transaction into a forwardable route.

        Args:
            swap_transaction_b64: Base64 transaction from the swap endpoint
            trade_owner: Account the route must be built for (strategy ledger PDA)
            cache: Lookup table cache for this pass (a fresh one by default)

        Returns:
            RewrittenRoute with every account resolved and no signer flags

        Raises:
            SwapError: Structural (stage=rewrite) for any integrity fault
        """
        cache = cache or LookupTableCache(self.solana)
        tx = self.decode(swap_transaction_b64)
        message = tx.message
        static_keys = list(message.account_keys)

        slots = message_account_slots(message)
        for slot in slots:
            if isinstance(slot, AddressTableReference):
                await cache.resolve(slot)

        instruction = None
        for compiled in message.instructions:
            if compiled.program_id_index >= len(static_keys):
                raise _structural(ErrorCode.ACCOUNT_ORDERING,
                                  f"Program id index {compiled.program_id_index} outside static keys")
            if static_keys[compiled.program_id_index] == self.aggregator_program_id:
                instruction = compiled
                break
        if instruction is None:
            raise _structural(ErrorCode.AGGREGATOR_INSTRUCTION_MISSING,
                              f"No instruction for aggregator program {self.aggregator_program_id}")

        accounts: List[ResolvedAccount] = []
        for index in list(instruction.accounts):
            if index >= len(slots):
                raise _structural(ErrorCode.ACCOUNT_ORDERING,
                                  f"Account index {index} outside message account space ({len(slots)})")
            slot = slots[index]
            if isinstance(slot, AddressTableReference):
                slot = await cache.resolve(slot)
            # Signer flag is never carried over
            accounts.append(ResolvedAccount(pubkey=slot.pubkey, is_writable=slot.is_writable, is_signer=False))

        if not any(account.pubkey == trade_owner for account in accounts):
            raise _structural(ErrorCode.MALFORMED_RESPONSE,
                              f"Route was not built for trade owner {trade_owner}")

        route = RewrittenRoute(
            payload=bytes(instruction.data),
            accounts=tuple(accounts),
            lookup_tables=cache.tables(),
        )
        logger.info(
            f"Route rewritten: {len(route.accounts)} accounts "
            f"({route.writable_count()} writable), payload {len(route.payload)} bytes, "
            f"{len(route.lookup_tables)} lookup tables"
        )
        return route
