"""
Solana RPC client for account reads, simulation, sending and confirmation.

Every failure leaves this module as an RpcError whose `reason` says whether
it belongs to the retryable set.
"""
import asyncio
import logging
import struct
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.address_lookup_table_account import AddressLookupTable, AddressLookupTableAccount
from solders.commitment_config import CommitmentLevel
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.rpc.config import RpcSimulateTransactionConfig
from solders.rpc.requests import SimulateVersionedTransaction
from solders.rpc.responses import SimulateTransactionResp
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from .errors import RpcError, TransientReason

logger = logging.getLogger(__name__)

# SPL token account: mint(32) + owner(32) + amount(u64)
TOKEN_AMOUNT_OFFSET = 64

_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}
_COMMITMENT_LEVEL = {
    "processed": CommitmentLevel.Processed,
    "confirmed": CommitmentLevel.Confirmed,
    "finalized": CommitmentLevel.Finalized,
}

# JSON-RPC codes a lagging or unhealthy node answers with
_NODE_BEHIND_CODES = (-32004, -32005, -32007, -32014, -32016)


@dataclass
class BlockhashInfo:
    blockhash: Hash
    last_valid_block_height: int


@dataclass
class SimulationResult:
    err: Any
    logs: List[str] = field(default_factory=list)
    units_consumed: Optional[int] = None


@dataclass
class TxStatus:
    """Landed transaction status (err is None for success)."""
    slot: int
    err: Any
    confirmation_status: Optional[str]


def confirmation_status_name(status) -> Optional[str]:
    if status is None:
        return None
    for name, member in (
        ("processed", TransactionConfirmationStatus.Processed),
        ("confirmed", TransactionConfirmationStatus.Confirmed),
        ("finalized", TransactionConfirmationStatus.Finalized),
    ):
        if status == member:
            return name
    return str(status).split(".")[-1].lower()


def _reason_from_text(text: str) -> Optional[TransientReason]:
    lowered = text.lower()
    if "blockhashnotfound" in lowered or "blockhash not found" in lowered:
        return TransientReason.BLOCKHASH_NOT_FOUND
    if "fee too low" in lowered or "prioritization fee" in lowered or "priority fee" in lowered:
        return TransientReason.FEE_TOO_LOW
    if "429" in lowered or "rate limit" in lowered or "too many requests" in lowered:
        return TransientReason.RATE_LIMITED
    if "node is behind" in lowered or "node is unhealthy" in lowered or "slot was skipped" in lowered:
        return TransientReason.NODE_BEHIND
    return None


def classify_rpc_exception(error: Exception) -> RpcError:
    """
    Turn an AsyncClient failure into an RpcError.

    Transport failures (timeouts, 5xx, refused connections) count as node
    lag; HTTP 429 as rate limiting; JSON-RPC errors are read by code first
    and by message text second. Only an explicit answer from the node or a
    refused connection marks the request as never delivered.
    """
    if isinstance(error, RpcError):
        return error

    cause = error.__cause__ if isinstance(error, SolanaRpcException) and error.__cause__ else error

    if isinstance(cause, httpx.HTTPStatusError):
        status = cause.response.status_code
        if status == 429:
            return RpcError(f"HTTP 429 from RPC: {cause}", TransientReason.RATE_LIMITED, status, never_delivered=True)
        if status >= 500:
            # A gateway error may come after the node already took the request
            return RpcError(f"HTTP {status} from RPC: {cause}", TransientReason.NODE_BEHIND, status)
        return RpcError(f"HTTP {status} from RPC: {cause}", None, status, never_delivered=True)

    if isinstance(cause, (httpx.TimeoutException, httpx.NetworkError, asyncio.TimeoutError)):
        return RpcError(f"RPC unreachable: {type(cause).__name__}: {cause}", TransientReason.NODE_BEHIND,
                        never_delivered=isinstance(cause, (httpx.ConnectError, httpx.ConnectTimeout)))

    if isinstance(error, RPCException):
        payload = error.args[0] if error.args else None
        code = getattr(payload, "code", None)
        message = getattr(payload, "message", None) or str(error)
        data = getattr(payload, "data", None)
        logs = list(getattr(data, "logs", None) or [])
        inner = getattr(data, "err", None)
        text = f"{message} {inner}" if inner is not None else str(message)
        if code in _NODE_BEHIND_CODES:
            return RpcError(text, TransientReason.NODE_BEHIND, code, logs, never_delivered=True)
        if code in (429, -32429):
            return RpcError(text, TransientReason.RATE_LIMITED, code, logs, never_delivered=True)
        return RpcError(text, _reason_from_text(text), code, logs, never_delivered=True)

    text = f"{type(error).__name__}: {error}"
    return RpcError(text, _reason_from_text(text))


class SolanaClient:
    """Client for Solana RPC operations with failover support."""

    def __init__(self, rpc_url: str, fallback_rpc_url: Optional[str] = None,
                 commitment: str = "confirmed"):
        self.rpc_url_primary = rpc_url
        self.rpc_url_fallback = fallback_rpc_url if fallback_rpc_url != rpc_url else None
        self._active_rpc_url = rpc_url
        self._failover_used = False  # Track if failover has been used (for logging)
        self.commitment = commitment
        self.client = AsyncClient(rpc_url)
        self._secondary: Optional[AsyncClient] = None

    async def _switch_to_fallback(self, reason: str) -> bool:
        """
        Switch to fallback RPC if available.

        Args:
            reason: Reason for failover (for logging)

        Returns:
            True if switched to fallback, False if no fallback available
        """
        if self.rpc_url_fallback and self._active_rpc_url == self.rpc_url_primary:
            if not self._failover_used:
                # Don't log full URL (may carry an API key)
                primary_domain = self.rpc_url_primary.split('//')[-1].split('/')[0]
                fallback_domain = self.rpc_url_fallback.split('//')[-1].split('/')[0]
                logger.warning(
                    f"RPC failover: PRIMARY ({primary_domain}) -> FALLBACK ({fallback_domain}), reason: {reason}"
                )
                self._failover_used = True

            await self.client.close()
            self._active_rpc_url = self.rpc_url_fallback
            self.client = AsyncClient(self.rpc_url_fallback)
            return True
        return False

    async def _call(self, coro_func, *args, failover: bool = True, **kwargs):
        """
        Execute an RPC coroutine, failing over once on node-side trouble.

        Raises:
            RpcError: Classified failure (after failover if available)
        """
        try:
            return await coro_func(*args, **kwargs)
        except Exception as e:
            error = classify_rpc_exception(e)
            if not failover or error.reason not in (TransientReason.NODE_BEHIND, TransientReason.RATE_LIMITED):
                raise error from e
            if not await self._switch_to_fallback(error.message):
                raise error from e
        try:
            return await coro_func(*args, **kwargs)
        except Exception as e2:
            logger.error(f"Both primary and fallback RPC failed. Last error: {e2}")
            raise classify_rpc_exception(e2) from e2

    async def get_latest_blockhash(self) -> BlockhashInfo:
        async def _get():
            resp = await self.client.get_latest_blockhash(commitment=Confirmed)
            return BlockhashInfo(resp.value.blockhash, resp.value.last_valid_block_height)
        return await self._call(_get)

    async def is_blockhash_valid(self, blockhash: Hash) -> bool:
        async def _check():
            resp = await self.client.is_blockhash_valid(blockhash, commitment=Confirmed)
            return bool(resp.value)
        return await self._call(_check)

    async def get_account_data(self, address: Pubkey) -> Optional[bytes]:
        """Raw account data, or None when the account does not exist."""
        async def _get():
            resp = await self.client.get_account_info(address, commitment=Confirmed, encoding="base64")
            if resp.value is None:
                return None
            return bytes(resp.value.data)
        return await self._call(_get)

    async def account_exists(self, address: Pubkey) -> bool:
        return await self.get_account_data(address) is not None

    async def get_token_balance(self, token_account: Pubkey) -> int:
        """Raw token amount held by an SPL token account (0 if the account is missing)."""
        data = await self.get_account_data(token_account)
        if data is None or len(data) < TOKEN_AMOUNT_OFFSET + 8:
            return 0
        return struct.unpack_from("<Q", data, TOKEN_AMOUNT_OFFSET)[0]

    async def simulate_transaction(self, tx: VersionedTransaction) -> SimulationResult:
        """
        Simulate without signature verification (the transaction may be unsigned).

        The node swaps in its own recent blockhash (replaceRecentBlockhash), so
        the transaction can carry a placeholder hash. AsyncClient.simulate_transaction
        has no such option; the request goes through its provider directly.

        Returns:
            SimulationResult; a program failure is reported in `err`, not raised
        """
        config = RpcSimulateTransactionConfig(
            sig_verify=False,
            replace_recent_blockhash=True,
            commitment=_COMMITMENT_LEVEL.get(self.commitment, CommitmentLevel.Confirmed),
        )

        async def _simulate():
            body = SimulateVersionedTransaction(tx, config)
            resp = await self.client._provider.make_request(body, SimulateTransactionResp)
            return SimulationResult(
                err=resp.value.err,
                logs=list(resp.value.logs or []),
                units_consumed=resp.value.units_consumed,
            )
        result = await self._call(_simulate)
        if result.err is not None:
            logger.warning(f"Simulation error: {result.err}")
        return result

    async def send_raw_transaction(self, raw: bytes) -> Signature:
        """
        Send a signed transaction without preflight and without node-side retries.

        Retrying is the caller's decision; no failover here so a transaction is
        never pushed to two endpoints by this client.
        """
        async def _send():
            opts = TxOpts(skip_preflight=True, max_retries=0)
            resp = await self.client.send_raw_transaction(raw, opts=opts)
            if resp.value is None:
                raise RpcError("send_raw_transaction returned no signature")
            return resp.value
        signature = await self._call(_send, failover=False)
        logger.debug(f"Transaction sent: {signature}")
        return signature

    async def get_signature_status(self, signature: Signature) -> Optional[TxStatus]:
        """Current status of a signature, or None when the node has not seen it."""
        async def _get():
            resp = await self.client.get_signature_statuses([signature], search_transaction_history=False)
            status = resp.value[0] if resp.value else None
            if status is None:
                return None
            return TxStatus(
                slot=status.slot,
                err=status.err,
                confirmation_status=confirmation_status_name(status.confirmation_status),
            )
        return await self._call(_get)

    async def confirm_transaction(
        self,
        signature: Signature,
        commitment: Optional[str] = None,
        timeout: float = 30.0,
        poll_interval: float = 0.5,
    ) -> Optional[TxStatus]:
        """
        Poll until the signature reaches `commitment`.

        Args:
            signature: Transaction signature
            commitment: processed/confirmed/finalized (default: client commitment)
            timeout: Seconds to wait
            poll_interval: Seconds between polls

        Returns:
            TxStatus once the commitment is reached (check `err`), None on timeout
        """
        target = _COMMITMENT_RANK[(commitment or self.commitment).lower()]
        deadline = time.monotonic() + timeout
        while True:
            try:
                status = await self.get_signature_status(signature)
            except RpcError as e:
                if e.reason is None:
                    raise
                logger.debug(f"Status poll failed ({e.reason.value}), retrying")
                status = None
            if status is not None:
                if status.err is not None:
                    return status
                rank = _COMMITMENT_RANK.get(status.confirmation_status or "", -1)
                if rank >= target:
                    return status
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(poll_interval)

    async def _read_lookup_table(self, address: Pubkey,
                                 client: Optional[AsyncClient] = None) -> Optional[AddressLookupTableAccount]:
        resp = await (client or self.client).get_account_info(address, commitment=Confirmed, encoding="base64")
        if resp.value is None:
            return None
        table = AddressLookupTable.deserialize(bytes(resp.value.data))
        return AddressLookupTableAccount(address, table.addresses)

    async def get_address_lookup_table(self, address: Pubkey) -> Optional[AddressLookupTableAccount]:
        """
        Load an address lookup table, trying the secondary endpoint when the
        primary does not have it.

        Returns:
            AddressLookupTableAccount, or None when no endpoint has the table
        """
        try:
            table = await self._call(self._read_lookup_table, address)
        except RpcError as e:
            if self.rpc_url_fallback is None:
                raise
            logger.warning(f"ALT {address} not readable from primary RPC: {e}")
            table = None

        if table is not None:
            logger.debug(f"Loaded ALT account: {address} with {len(table.addresses)} addresses")
            return table

        if self.rpc_url_fallback is None:
            return None

        if self._secondary is None:
            self._secondary = AsyncClient(self.rpc_url_fallback)
        logger.info(f"ALT {address} not found on primary RPC, trying secondary endpoint")
        return await self._call(self._read_lookup_table, address, client=self._secondary, failover=False)

    async def close(self):
        """Close RPC clients."""
        await self.client.close()
        if self._secondary is not None:
            await self._secondary.close()
