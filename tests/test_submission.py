"""
Tests for submission.py
"""
import pytest
from unittest.mock import AsyncMock, call, patch
from solders.hash import Hash
from solders.keypair import Keypair
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from vaultswap.assembler import build_execute_swap_instruction
from vaultswap.errors import ErrorCode, ErrorKind, RpcError, TransientReason
from vaultswap.rewriter import RewrittenRoute
from vaultswap.solana_client import BlockhashInfo, SimulationResult, TxStatus
from vaultswap.submission import SubmissionPipeline, SubmissionState


@pytest.fixture
def signer():
    return Keypair()


@pytest.fixture
def swap_instruction(signer, program_id, aggregator_program):
    keys = [Keypair().pubkey() for _ in range(6)]
    return build_execute_swap_instruction(
        program_id=program_id,
        authority=signer.pubkey(),
        vault=keys[0],
        strategy_ledger=keys[1],
        input_token_account=keys[2],
        output_token_account=keys[3],
        fee_destination=keys[4],
        global_policy=keys[5],
        aggregator_program=aggregator_program,
        amount_in=499_500,
        min_amount_out=0,
        route=RewrittenRoute(payload=b"\x01", accounts=(), lookup_tables=()),
    )


@pytest.fixture
def pipeline(fake_solana, signer):
    return SubmissionPipeline(fake_solana, signer, max_attempts=3, backoff_base_seconds=0.2,
                              confirm_timeout_seconds=1.0)


def flaky_send(fake_solana, failures):
    """Make the first `failures` sends be refused by the node."""
    real_send = fake_solana._send
    calls = []

    def _send(raw):
        calls.append(raw)
        if len(calls) <= failures:
            raise RpcError("node is behind", reason=TransientReason.NODE_BEHIND, never_delivered=True)
        return real_send(raw)

    fake_solana.send_raw_transaction.side_effect = _send
    return calls


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_confirmed(self, pipeline, fake_solana, swap_instruction, signer):
        outcome = await pipeline.submit([swap_instruction])

        assert outcome.state == SubmissionState.CONFIRMED
        assert outcome.attempts == 1
        assert outcome.error is None
        assert outcome.units_consumed == 120_000
        assert outcome.history == [SubmissionState.BUILT, SubmissionState.SIMULATED, SubmissionState.SIGNED,
                                   SubmissionState.SENT, SubmissionState.CONFIRMED]
        sent = VersionedTransaction.from_bytes(fake_solana.sent[0])
        assert outcome.signature == str(sent.signatures[0])
        assert sent.signatures[0] != Signature.default()
        assert list(sent.message.account_keys)[0] == signer.pubkey()

    @pytest.mark.asyncio
    async def test_simulates_unsigned_copy(self, pipeline, fake_solana, swap_instruction):
        await pipeline.submit([swap_instruction])

        simulated = fake_solana.simulate_transaction.call_args[0][0]
        assert list(simulated.signatures) == [Signature.default()]

    @pytest.mark.asyncio
    async def test_simulation_never_carries_the_real_blockhash(self, pipeline, fake_solana, swap_instruction):
        real = Hash(bytes([7]) * 32)
        fake_solana.get_latest_blockhash = AsyncMock(return_value=BlockhashInfo(real, 5_000))

        outcome = await pipeline.submit([swap_instruction])

        assert outcome.state == SubmissionState.CONFIRMED
        simulated = fake_solana.simulate_transaction.call_args[0][0]
        sent = VersionedTransaction.from_bytes(fake_solana.sent[0])
        assert simulated.message.recent_blockhash == Hash.default()
        assert sent.message.recent_blockhash == real

    @pytest.mark.asyncio
    async def test_dry_run_stops_after_simulation(self, pipeline, fake_solana, swap_instruction):
        outcome = await pipeline.submit([swap_instruction], dry_run=True)

        assert outcome.state == SubmissionState.SIMULATED
        assert outcome.signature is None
        assert outcome.simulation_logs == ["Program log: ok"]
        assert fake_solana.send_raw_transaction.await_count == 0

    @pytest.mark.asyncio
    async def test_late_status_after_timeout(self, pipeline, fake_solana, swap_instruction):
        fake_solana.confirm_transaction = AsyncMock(return_value=None)
        fake_solana.get_signature_status = AsyncMock(
            return_value=TxStatus(slot=99, err=None, confirmation_status="confirmed"))

        outcome = await pipeline.submit([swap_instruction])

        assert outcome.state == SubmissionState.CONFIRMED
        fake_solana.is_blockhash_valid.assert_not_awaited()


class TestFailures:

    @pytest.mark.asyncio
    async def test_simulation_error_never_sends(self, pipeline, fake_solana, swap_instruction):
        fake_solana.simulate_transaction = AsyncMock(return_value=SimulationResult(
            err="InstructionError", units_consumed=80_000,
            logs=["Program log: AnchorError occurred. Error Code: SlippageExceeded. Error Number: 6006."]))

        outcome = await pipeline.submit([swap_instruction])

        assert outcome.state == SubmissionState.FAILED
        assert outcome.attempts == 1
        assert outcome.error.kind == ErrorKind.ECONOMIC
        assert outcome.error.code == ErrorCode.SLIPPAGE_EXCEEDED
        assert "Error Number: 6006" in outcome.simulation_logs[0]
        assert fake_solana.send_raw_transaction.await_count == 0

    @pytest.mark.asyncio
    async def test_terminal_send_error_not_retried(self, pipeline, fake_solana, swap_instruction):
        fake_solana.send_raw_transaction.side_effect = RpcError("Transaction failed: MissingRequiredSignature")

        with patch("vaultswap.submission.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            outcome = await pipeline.submit([swap_instruction])

        assert outcome.state == SubmissionState.FAILED
        assert outcome.attempts == 1
        assert outcome.error.code == ErrorCode.SIGNER_MISMATCH
        mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_landed_with_error(self, pipeline, fake_solana, swap_instruction):
        fake_solana.confirm_transaction = AsyncMock(return_value=TxStatus(
            slot=5, err="InstructionError(2, Custom(6006))", confirmation_status="confirmed"))

        outcome = await pipeline.submit([swap_instruction])

        assert outcome.state == SubmissionState.FAILED
        assert outcome.signature is not None
        assert outcome.error.code == ErrorCode.SLIPPAGE_EXCEEDED
        assert fake_solana.send_raw_transaction.await_count == 1


class TestRetry:

    @pytest.mark.asyncio
    async def test_transient_then_success(self, pipeline, fake_solana, swap_instruction):
        calls = flaky_send(fake_solana, failures=1)

        with patch("vaultswap.submission.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            outcome = await pipeline.submit([swap_instruction])

        assert outcome.state == SubmissionState.CONFIRMED
        assert outcome.attempts == 2
        assert outcome.error is None
        assert len(calls) == 2
        assert mock_sleep.await_args_list == [call(0.2)]
        # Each attempt re-simulates and signs against a fresh blockhash
        assert fake_solana.simulate_transaction.await_count == 2
        assert fake_solana.get_latest_blockhash.await_count == 2

    @pytest.mark.asyncio
    async def test_retry_cap(self, pipeline, fake_solana, swap_instruction):
        calls = flaky_send(fake_solana, failures=10)

        with patch("vaultswap.submission.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            outcome = await pipeline.submit([swap_instruction])

        assert outcome.state == SubmissionState.FAILED
        assert outcome.attempts == 3
        assert len(calls) == 3
        assert outcome.error.transient_reason == TransientReason.NODE_BEHIND
        assert mock_sleep.await_args_list == [call(0.2), call(0.4)]

    @pytest.mark.asyncio
    async def test_timeout_with_valid_blockhash_is_unknown(self, pipeline, fake_solana, swap_instruction):
        fake_solana.confirm_transaction = AsyncMock(return_value=None)
        fake_solana.is_blockhash_valid = AsyncMock(return_value=True)

        outcome = await pipeline.submit([swap_instruction])

        assert outcome.state == SubmissionState.UNKNOWN
        assert outcome.signature is not None
        assert fake_solana.send_raw_transaction.await_count == 1

    @pytest.mark.asyncio
    async def test_timeout_with_expired_blockhash_rebuilds(self, pipeline, fake_solana, swap_instruction):
        fake_solana.confirm_transaction = AsyncMock(
            side_effect=[None, TxStatus(slot=7, err=None, confirmation_status="confirmed")])
        fake_solana.is_blockhash_valid = AsyncMock(return_value=False)

        with patch("vaultswap.submission.asyncio.sleep", new_callable=AsyncMock):
            outcome = await pipeline.submit([swap_instruction])

        assert outcome.state == SubmissionState.CONFIRMED
        assert outcome.attempts == 2
        first, second = (VersionedTransaction.from_bytes(raw) for raw in fake_solana.sent)
        assert first.message.recent_blockhash != second.message.recent_blockhash
        assert outcome.signature == str(second.signatures[0])

    @pytest.mark.asyncio
    async def test_confirmation_rpc_outage_is_unknown(self, pipeline, fake_solana, swap_instruction):
        fake_solana.confirm_transaction = AsyncMock(
            side_effect=RpcError("429 Too Many Requests", reason=TransientReason.RATE_LIMITED))

        with patch("vaultswap.submission.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            outcome = await pipeline.submit([swap_instruction])

        assert outcome.state == SubmissionState.UNKNOWN
        assert fake_solana.send_raw_transaction.await_count == 1
        mock_sleep.assert_not_awaited()

    def test_backoff_doubles(self, pipeline):
        assert [pipeline.backoff_delay(n) for n in (2, 3, 4)] == [0.2, 0.4, 0.8]


def unacknowledged_send(fake_solana, times=1):
    """The node takes the first `times` sends but the reply times out."""
    real_send = fake_solana._send
    calls = []

    def _send(raw):
        calls.append(raw)
        real_send(raw)
        if len(calls) <= times:
            raise RpcError("RPC unreachable: ReadTimeout: timed out", reason=TransientReason.NODE_BEHIND)
        return VersionedTransaction.from_bytes(raw).signatures[0]

    fake_solana.send_raw_transaction.side_effect = _send
    return calls


class TestUnacknowledgedSend:

    @pytest.mark.asyncio
    async def test_landed_despite_timeout_is_not_resent(self, pipeline, fake_solana, swap_instruction):
        calls = unacknowledged_send(fake_solana)

        with patch("vaultswap.submission.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            outcome = await pipeline.submit([swap_instruction])

        assert outcome.state == SubmissionState.CONFIRMED
        assert outcome.attempts == 1
        assert len(calls) == 1
        signature = VersionedTransaction.from_bytes(calls[0]).signatures[0]
        assert outcome.signature == str(signature)
        assert fake_solana.confirm_transaction.call_args[0][0] == signature
        mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unseen_with_valid_blockhash_is_unknown(self, pipeline, fake_solana, swap_instruction):
        calls = unacknowledged_send(fake_solana)
        fake_solana.confirm_transaction = AsyncMock(return_value=None)
        fake_solana.is_blockhash_valid = AsyncMock(return_value=True)

        with patch("vaultswap.submission.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            outcome = await pipeline.submit([swap_instruction])

        assert outcome.state == SubmissionState.UNKNOWN
        assert len(calls) == 1
        assert outcome.signature is not None
        fake_solana.get_signature_status.assert_awaited_once()
        mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unseen_with_expired_blockhash_rebuilds(self, pipeline, fake_solana, swap_instruction):
        calls = unacknowledged_send(fake_solana)
        fake_solana.confirm_transaction = AsyncMock(
            side_effect=[None, TxStatus(slot=8, err=None, confirmation_status="confirmed")])
        fake_solana.is_blockhash_valid = AsyncMock(return_value=False)

        with patch("vaultswap.submission.asyncio.sleep", new_callable=AsyncMock):
            outcome = await pipeline.submit([swap_instruction])

        assert outcome.state == SubmissionState.CONFIRMED
        assert outcome.attempts == 2
        assert len(calls) == 2
        first, second = (VersionedTransaction.from_bytes(raw) for raw in calls)
        assert first.message.recent_blockhash != second.message.recent_blockhash
        assert outcome.signature == str(second.signatures[0])
