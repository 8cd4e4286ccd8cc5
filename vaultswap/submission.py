"""
Submission Pipeline: simulate, sign, send and confirm one swap transaction.

States: Built -> Simulated -> Signed -> Sent -> Confirmed | Failed, plus
Unknown when confirmation timed out while the blockhash is still valid.

Simulation always runs on an unsigned copy compiled against a placeholder
blockhash that the node replaces, so a failing simulation never leaves a
signed transaction behind and the simulated bytes never match the sent ones.
Each retry rebuilds, re-simulates and re-signs from scratch, but only once
the previous signature can no longer land.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from .assembler import compile_transaction, unsigned_copy
from .errors import (ErrorCode, ErrorKind, RpcError, Stage, SwapError, TransientReason,
                     classify_program_failure, transient)
from .utils import format_sim_logs, get_terminal_colors

logger = logging.getLogger(__name__)
colors = get_terminal_colors()


class SubmissionState(str, Enum):
    BUILT = "built"
    SIMULATED = "simulated"
    SIGNED = "signed"
    SENT = "sent"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    UNKNOWN = "unknown"


@dataclass
class SubmissionOutcome:
    state: SubmissionState
    signature: Optional[str] = None
    attempts: int = 0
    simulation_logs: List[str] = field(default_factory=list)
    error: Optional[SwapError] = None
    units_consumed: Optional[int] = None
    history: List[SubmissionState] = field(default_factory=list)


class SubmissionPipeline:
    """Bounded-retry submission of a compiled swap."""

    def __init__(
        self,
        solana,
        signer: Keypair,
        max_attempts: int = 3,
        backoff_base_seconds: float = 0.2,
        confirm_commitment: str = "confirmed",
        confirm_timeout_seconds: float = 30.0,
        compute_unit_limit: Optional[int] = None,
        compute_unit_price_microlamports: Optional[int] = None,
        program_id=None,
        aggregator_program_id=None,
    ):
        """
        Args:
            solana: SolanaClient
            signer: Backend fee-payer key, the only signer
            max_attempts: Total build+send attempts for transient failures
            backoff_base_seconds: First retry delay; doubles on each retry
            confirm_commitment: Commitment a transaction must reach
            confirm_timeout_seconds: Confirmation polling budget per attempt
            program_id: Vault program, owner of the custom error table
            aggregator_program_id: Aggregator program invoked through the vault
        """
        self.solana = solana
        self.signer = signer
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.confirm_commitment = confirm_commitment
        self.confirm_timeout_seconds = confirm_timeout_seconds
        self.compute_unit_limit = compute_unit_limit
        self.compute_unit_price_microlamports = compute_unit_price_microlamports
        self.program_id = program_id
        self.aggregator_program_id = aggregator_program_id

    def backoff_delay(self, attempt: int) -> float:
        """Delay before attempt number `attempt` (2, 3, ...)."""
        return self.backoff_base_seconds * (2 ** (attempt - 2))

    def _classify(self, stage: Stage, err, logs) -> SwapError:
        return classify_program_failure(stage, err, logs, program_id=self.program_id,
                                        aggregator_program_id=self.aggregator_program_id)

    def _compile(self, instructions, lookup_tables, blockhash, compute_unit_limit=None):
        return compile_transaction(
            instructions,
            self.signer.pubkey(),
            lookup_tables,
            blockhash,
            compute_unit_limit=self.compute_unit_limit or compute_unit_limit,
            compute_unit_price_microlamports=self.compute_unit_price_microlamports,
        )

    async def _blockhash(self, stage: Stage):
        try:
            return await self.solana.get_latest_blockhash()
        except RpcError as e:
            raise e.to_swap_error(stage) from e

    async def simulate(
        self,
        instructions: Sequence[Instruction],
        lookup_tables: Sequence[AddressLookupTableAccount],
        outcome: SubmissionOutcome,
        compute_unit_limit: Optional[int] = None,
    ) -> None:
        """
        Simulate an unsigned copy carrying a placeholder blockhash.

        Raises:
            SwapError: Classified from the simulation error and its logs
        """
        message = self._compile(instructions, lookup_tables, Hash.default(), compute_unit_limit)
        outcome.history.append(SubmissionState.BUILT)

        try:
            result = await self.solana.simulate_transaction(unsigned_copy(message))
        except RpcError as e:
            raise e.to_swap_error(Stage.SIMULATE) from e

        outcome.simulation_logs = list(result.logs)
        outcome.units_consumed = result.units_consumed
        if result.err is not None:
            error = self._classify(Stage.SIMULATE, result.err, result.logs)
            if error.kind == ErrorKind.STRUCTURAL:
                logger.error(f"{colors['RED']}Simulation failed ({error.code.value}){colors['RESET']}: {result.err}\n"
                             f"{format_sim_logs(result.logs)}")
            else:
                logger.warning(f"Simulation failed ({error.kind.value}/{error.code.value}): {result.err}\n"
                               f"{format_sim_logs(result.logs)}")
            raise error

        outcome.history.append(SubmissionState.SIMULATED)
        logger.info(f"{colors['GREEN']}Simulation passed{colors['RESET']} "
                    f"(units consumed: {result.units_consumed})")

    async def _confirm(self, signature, blockhash, outcome: SubmissionOutcome) -> SubmissionOutcome:
        try:
            status = await self.solana.confirm_transaction(
                signature, commitment=self.confirm_commitment, timeout=self.confirm_timeout_seconds
            )
            if status is None:
                # Timed out: re-read before deciding anything
                status = await self.solana.get_signature_status(signature)
                if status is None:
                    if await self.solana.is_blockhash_valid(blockhash):
                        logger.warning(f"Confirmation of {signature} timed out, blockhash still valid: outcome unknown")
                        outcome.state = SubmissionState.UNKNOWN
                        outcome.history.append(SubmissionState.UNKNOWN)
                        return outcome
                    raise transient(Stage.CONFIRM, TransientReason.CONFIRMATION_TIMEOUT,
                                    f"Transaction {signature} not landed and blockhash expired")
        except RpcError as e:
            if e.reason is not None:
                # The transaction may still land; never resend on top of it
                logger.warning(f"Confirmation of {signature} interrupted ({e.reason.value}): outcome unknown")
                outcome.state = SubmissionState.UNKNOWN
                outcome.history.append(SubmissionState.UNKNOWN)
                return outcome
            raise e.to_swap_error(Stage.CONFIRM) from e

        if status.err is not None:
            error = self._classify(Stage.CONFIRM, status.err, outcome.simulation_logs)
            logger.error(f"{colors['RED']}Transaction {signature} failed on-chain{colors['RESET']}: {status.err}")
            outcome.state = SubmissionState.FAILED
            outcome.error = error
            outcome.history.append(SubmissionState.FAILED)
            return outcome

        outcome.state = SubmissionState.CONFIRMED
        outcome.history.append(SubmissionState.CONFIRMED)
        logger.info(f"{colors['GREEN']}Transaction confirmed{colors['RESET']}: "
                    f"{colors['CYAN']}{signature}{colors['RESET']} (slot {status.slot})")
        return outcome

    async def _attempt(
        self,
        instructions: Sequence[Instruction],
        lookup_tables: Sequence[AddressLookupTableAccount],
        outcome: SubmissionOutcome,
        dry_run: bool,
        compute_unit_limit: Optional[int] = None,
    ) -> SubmissionOutcome:
        await self.simulate(instructions, lookup_tables, outcome, compute_unit_limit)
        if dry_run:
            outcome.state = SubmissionState.SIMULATED
            return outcome

        real = await self._blockhash(Stage.SIGN)
        message = self._compile(instructions, lookup_tables, real.blockhash, compute_unit_limit)
        try:
            tx = VersionedTransaction(message, [self.signer])
        except Exception as e:
            raise SwapError(Stage.SIGN, ErrorKind.STRUCTURAL, ErrorCode.SIGNER_MISMATCH,
                            f"Cannot sign transaction: {e}") from e
        outcome.history.append(SubmissionState.SIGNED)
        signature = tx.signatures[0]

        try:
            await self.solana.send_raw_transaction(bytes(tx))
        except RpcError as e:
            if e.reason is None or e.never_delivered:
                raise e.to_swap_error(Stage.SEND) from e
            # The node may have taken it; settle this signature before any resend
            logger.warning(f"Send of {signature} unacknowledged ({e.reason.value}): checking whether it landed")

        outcome.signature = str(signature)
        outcome.history.append(SubmissionState.SENT)
        logger.info(f"Transaction sent: {colors['CYAN']}{signature}{colors['RESET']}")

        # Past this point the pass is committed; a cancelled caller still gets the outcome logged
        confirm_task = asyncio.ensure_future(self._confirm(signature, real.blockhash, outcome))
        try:
            return await asyncio.shield(confirm_task)
        except asyncio.CancelledError:
            logger.warning(f"Cancelled after send; waiting for outcome of {signature}")
            final = await confirm_task
            logger.warning(f"Outcome of {signature} after cancellation: {final.state.value}")
            raise

    async def submit(
        self,
        instructions: Sequence[Instruction],
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
        dry_run: bool = False,
        compute_unit_limit: Optional[int] = None,
    ) -> SubmissionOutcome:
        """
        Run the state machine with bounded retry on transient failures.

        Args:
            instructions: Swap instruction(s), compute budget is prepended here
            lookup_tables: Resolved lookup tables for v0 compilation
            dry_run: Stop after a successful simulation
            compute_unit_limit: Limit for this transaction when none is configured

        Returns:
            SubmissionOutcome; terminal failures come back with state FAILED and
            the typed error, never as an exception
        """
        outcome = SubmissionOutcome(state=SubmissionState.BUILT)
        attempt = 0
        while True:
            attempt += 1
            outcome.attempts = attempt
            if attempt > 1:
                delay = self.backoff_delay(attempt)
                logger.info(f"Retrying submission in {delay:.2f}s (attempt {attempt}/{self.max_attempts})")
                await asyncio.sleep(delay)
                # Fresh transaction every attempt
                outcome.signature = None
                outcome.error = None

            try:
                return await self._attempt(instructions, lookup_tables, outcome, dry_run, compute_unit_limit)
            except SwapError as e:
                outcome.error = e
                if e.transient_reason is None:
                    outcome.state = SubmissionState.FAILED
                    outcome.history.append(SubmissionState.FAILED)
                    return outcome
                logger.warning(f"Transient failure at {e.stage.value}: {e.transient_reason.value} ({e.message})")
                if attempt >= self.max_attempts:
                    logger.error(f"Giving up after {attempt} attempts: {e.transient_reason.value}")
                    outcome.state = SubmissionState.FAILED
                    outcome.history.append(SubmissionState.FAILED)
                    return outcome
