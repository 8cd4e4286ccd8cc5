"""
Swap orchestration: one pass from a caller request to a confirmed swap.

Fee Calculator -> Route Client -> Instruction Rewriter -> Account Resolver
(provisioning) -> CPI Assembler -> Submission Pipeline -> Valuation Reconciler.

Any stage failure aborts the pass with the SwapError that stage raised;
nothing is sent unless simulation succeeded.
"""
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set, Tuple

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from .accounts import AccountResolver
from .assembler import build_execute_swap_instruction, route_compute_unit_limit
from .config import EngineConfig
from .errors import ErrorCode, ErrorKind, RpcError, Stage, SwapError
from .fees import FeeSplit, compute_platform_fee
from .jupiter_client import JupiterClient, JupiterQuote, JupiterSwapResponse, RouteConstraints
from .reconciler import ValuationOutcome, ValuationReconciler
from .rewriter import InstructionRewriter, LookupTableCache, RewrittenRoute
from .solana_client import SolanaClient
from .state import StrategyLedger, Vault, fetch_global_policy, fetch_strategy_ledger, fetch_vault
from .submission import SubmissionPipeline, SubmissionState
from .utils import SOL_MINT, USDC_MINT, format_amount, get_terminal_colors, short_address, ui_to_raw

logger = logging.getLogger(__name__)
colors = get_terminal_colors()

DIRECTIONS: Dict[str, Tuple[str, str]] = {
    "SOL_TO_USDC": (SOL_MINT, USDC_MINT),
    "USDC_TO_SOL": (USDC_MINT, SOL_MINT),
}

CPI_AUTHORITY_MODEL = "vault program signs for the strategy ledger PDA; backend key only pays fees"


def _invalid(message: str) -> SwapError:
    return SwapError(Stage.VALIDATE, ErrorKind.STRUCTURAL, ErrorCode.INVALID_ARGUMENT, message)


def _pubkey(value: str, name: str) -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except ValueError as e:
        raise _invalid(f"{name} is not a valid address: {value!r}") from e


@dataclass
class SwapRequest:
    """Caller input for one swap."""
    owner: Optional[str] = None
    strategy_id: Optional[str] = None
    ledger: Optional[str] = None
    direction: Optional[str] = None
    input_asset: Optional[str] = None
    output_asset: Optional[str] = None
    amount: Optional[int] = None
    ui_amount: Optional[float] = None
    slippage_bps: Optional[int] = None
    dry_run: bool = False

    def asset_pair(self) -> Tuple[Pubkey, Pubkey]:
        if self.direction:
            key = self.direction.upper()
            if key not in DIRECTIONS:
                raise _invalid(f"Unknown direction {self.direction!r}, expected one of {sorted(DIRECTIONS)}")
            input_mint, output_mint = DIRECTIONS[key]
        elif self.input_asset and self.output_asset:
            input_mint, output_mint = self.input_asset, self.output_asset
        else:
            raise _invalid("Either direction or input_asset/output_asset is required")
        return _pubkey(input_mint, "input_asset"), _pubkey(output_mint, "output_asset")

    def raw_amount(self, input_mint: Pubkey) -> int:
        if self.amount is not None:
            if isinstance(self.amount, bool) or not isinstance(self.amount, int) or self.amount <= 0:
                raise _invalid(f"amount must be a positive integer in raw units, got {self.amount!r}")
            return self.amount
        if self.ui_amount is None:
            raise _invalid("amount or ui_amount is required")
        try:
            raw = ui_to_raw(self.ui_amount, str(input_mint))
        except ValueError as e:
            raise _invalid(str(e)) from e
        if raw <= 0:
            raise _invalid(f"ui_amount {self.ui_amount} is below one raw unit")
        return raw


@dataclass(frozen=True)
class SwapIntent:
    """Everything one attempt is built from. Never persisted; retries build a new one."""
    input_asset: Pubkey
    output_asset: Pubkey
    amount_in: int
    fee_bps: int
    min_amount_out: int
    route_instruction: RewrittenRoute


@dataclass
class SwapResult:
    status: str
    signature: Optional[str]
    computed_fee: Dict[str, int]
    swap_summary: Dict[str, Any]
    balances_before: Dict[str, int]
    balances_after: Optional[Dict[str, int]]
    valuation: Optional[Dict[str, Any]]
    non_custodial_attestation: Dict[str, Any]
    duration_ms: int
    attempts: int = 0
    warnings: list = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "signature": self.signature,
            "computed_fee": self.computed_fee,
            "swap_summary": self.swap_summary,
            "balances_before": self.balances_before,
            "balances_after": self.balances_after,
            "valuation": self.valuation,
            "non_custodial_attestation": self.non_custodial_attestation,
            "duration_ms": self.duration_ms,
            "attempts": self.attempts,
            "warnings": self.warnings,
        }


class LedgerGuard:
    """
    In-process advisory lock: one pass per strategy ledger at a time.

    The vault program serializes writes to the ledger on-chain; this only
    stops a second pass from wasting an aggregator call and a fee.
    """

    def __init__(self):
        self._in_flight: Set[str] = set()

    def is_busy(self, ledger: Pubkey) -> bool:
        return str(ledger) in self._in_flight

    @asynccontextmanager
    async def hold(self, ledger: Pubkey):
        key = str(ledger)
        if self.is_busy(ledger):
            raise SwapError(Stage.VALIDATE, ErrorKind.ECONOMIC, ErrorCode.LEDGER_BUSY,
                            f"Another swap is already in progress for ledger {key}")
        self._in_flight.add(key)
        try:
            yield
        finally:
            self._in_flight.discard(key)


@dataclass
class PassContext:
    """Per-pass on-chain state, read fresh for every request."""
    ledger: StrategyLedger
    vault: Vault
    platform_fee_bps: int
    admin: Pubkey
    global_policy: Pubkey


class SwapOrchestrator:
    """Runs execute-swap passes."""

    def __init__(
        self,
        config: EngineConfig,
        solana: SolanaClient,
        jupiter: JupiterClient,
        backend: Keypair,
        resolver: Optional[AccountResolver] = None,
        rewriter: Optional[InstructionRewriter] = None,
        pipeline: Optional[SubmissionPipeline] = None,
        reconciler: Optional[ValuationReconciler] = None,
    ):
        self.config = config
        self.solana = solana
        self.jupiter = jupiter
        self.backend = backend
        self.program_id = Pubkey.from_string(config.vault_program_id)
        self.aggregator_program_id = Pubkey.from_string(config.aggregator_program_id)
        self.resolver = resolver or AccountResolver(
            self.program_id, solana=solana, payer=backend,
            confirm_timeout_seconds=config.confirm_timeout_seconds,
        )
        self.rewriter = rewriter or InstructionRewriter(solana, self.aggregator_program_id)
        self.pipeline = pipeline or SubmissionPipeline(
            solana,
            backend,
            max_attempts=config.max_send_attempts,
            backoff_base_seconds=config.send_backoff_base_seconds,
            confirm_commitment=config.confirm_commitment,
            confirm_timeout_seconds=config.confirm_timeout_seconds,
            compute_unit_limit=config.compute_unit_limit,
            compute_unit_price_microlamports=config.compute_unit_price_microlamports,
            program_id=self.program_id,
            aggregator_program_id=self.aggregator_program_id,
        )
        self.reconciler = reconciler or ValuationReconciler(solana)
        self.guard = LedgerGuard()

    def ledger_address(self, request: SwapRequest) -> Pubkey:
        if request.ledger:
            return _pubkey(request.ledger, "ledger")
        if request.owner and request.strategy_id:
            return self.resolver.strategy_ledger(_pubkey(request.owner, "owner"),
                                                 _pubkey(request.strategy_id, "strategy_id"))
        raise _invalid("Either ledger or owner + strategy_id is required")

    async def execute_swap(self, request: SwapRequest) -> SwapResult:
        """
        Execute one swap for a strategy ledger.

        Returns:
            SwapResult (status confirmed, unknown or simulated for dry runs)

        Raises:
            SwapError: From whichever stage failed
        """
        started = time.monotonic()
        input_mint, output_mint = request.asset_pair()
        if input_mint == output_mint:
            raise SwapError(Stage.VALIDATE, ErrorKind.ECONOMIC, ErrorCode.INVALID_TOPOLOGY,
                            "Input and output assets are the same")
        ledger_address = self.ledger_address(request)

        async with self.guard.hold(ledger_address):
            return await self._run(request, ledger_address, input_mint, output_mint, started)

    async def _load_context(self, request: SwapRequest, ledger_address: Pubkey) -> PassContext:
        try:
            ledger = await fetch_strategy_ledger(self.solana, ledger_address)
            vault_address = self.resolver.vault(ledger.owner)
            vault = await fetch_vault(self.solana, vault_address)
            policy_address = self.resolver.global_policy()
            policy = await fetch_global_policy(self.solana, policy_address)
        except RpcError as e:
            raise e.to_swap_error(Stage.VALIDATE) from e

        if request.owner and str(ledger.owner) != request.owner:
            raise _invalid(f"Ledger {ledger_address} belongs to {ledger.owner}, not {request.owner}")
        if ledger.vault != vault.address:
            raise SwapError(Stage.VALIDATE, ErrorKind.STRUCTURAL, ErrorCode.ACCOUNT_ORDERING,
                            f"Ledger points at vault {ledger.vault}, derived vault is {vault.address}")
        return PassContext(ledger=ledger, vault=vault, platform_fee_bps=policy.platform_fee_bps,
                           admin=policy.admin, global_policy=policy_address)

    def _validate(self, ctx: PassContext, input_mint: Pubkey, output_mint: Pubkey) -> None:
        ledger, vault = ctx.ledger, ctx.vault
        if not ledger.is_initialized:
            raise SwapError(Stage.VALIDATE, ErrorKind.ECONOMIC, ErrorCode.LEDGER_NOT_INITIALIZED,
                            f"Ledger {ledger.address} is not initialized")
        if ledger.is_paused:
            raise SwapError(Stage.VALIDATE, ErrorKind.ECONOMIC, ErrorCode.LEDGER_PAUSED,
                            f"Ledger {ledger.address} is paused")
        if vault.is_paused:
            raise SwapError(Stage.VALIDATE, ErrorKind.ECONOMIC, ErrorCode.VAULT_PAUSED,
                            f"Vault {vault.address} is paused")
        if vault.backend_authority != self.backend.pubkey():
            logger.error(f"Backend key {self.backend.pubkey()} is not the vault authority {vault.backend_authority}")
            raise SwapError(Stage.VALIDATE, ErrorKind.STRUCTURAL, ErrorCode.SIGNER_MISMATCH,
                            f"Backend key is not the authority of vault {vault.address}")
        if vault.base_asset not in (input_mint, output_mint):
            raise SwapError(Stage.VALIDATE, ErrorKind.ECONOMIC, ErrorCode.INVALID_TOPOLOGY,
                            f"One side of the swap must be the base asset {vault.base_asset}")
        for mint in (input_mint, output_mint):
            if not vault.allows(mint):
                raise SwapError(Stage.VALIDATE, ErrorKind.ECONOMIC, ErrorCode.TOKEN_NOT_ALLOWED,
                                f"Asset {mint} is not in the vault's allowed set")

    async def _balances(self, accounts: Dict[str, Pubkey]) -> Dict[str, int]:
        balances = {}
        for mint, token_account in accounts.items():
            balances[mint] = await self.solana.get_token_balance(token_account)
        return balances

    async def _route(
        self,
        input_mint: Pubkey,
        output_mint: Pubkey,
        fee: FeeSplit,
        slippage_bps: int,
        ledger_address: Pubkey,
    ) -> Tuple[JupiterQuote, JupiterSwapResponse, RewrittenRoute]:
        """Quote + build + rewrite, refetching a fresh quote on transient failures."""
        constraints = RouteConstraints(
            only_direct_routes=self.config.only_direct_routes,
            dexes=list(self.config.route_dexes),
            max_price_impact_pct=self.config.max_price_impact_pct,
        )
        attempts = self.config.route_attempts
        for attempt in range(1, attempts + 1):
            try:
                quote = await self.jupiter.get_quote(
                    str(input_mint), str(output_mint), fee.net_amount, slippage_bps, constraints
                )
                swap = await self.jupiter.get_swap_transaction(quote, str(ledger_address))
                route = await self.rewriter.rewrite(
                    swap.swap_transaction, ledger_address, LookupTableCache(self.solana)
                )
                return quote, swap, route
            except SwapError as e:
                if not e.is_transient or attempt >= attempts:
                    raise
                logger.warning(f"Route attempt {attempt}/{attempts} failed transiently "
                               f"({e.transient_reason.value if e.transient_reason else e.code.value}), "
                               f"fetching a fresh quote")
        raise SwapError(Stage.ROUTE, ErrorKind.ECONOMIC, ErrorCode.NO_ROUTE, "No route attempts configured")

    async def _provision(self, owner: Pubkey, mint: Pubkey, dry_run: bool) -> None:
        if dry_run:
            try:
                exists = await self.solana.account_exists(self.resolver.token_account(owner, mint))
            except RpcError as e:
                raise e.to_swap_error(Stage.PROVISION) from e
            if not exists:
                logger.warning(f"Dry run: token account for {short_address(str(owner))}/{short_address(str(mint))} "
                               f"is missing and will not be created")
            return
        await self.resolver.ensure_token_account(owner, mint)

    async def _run(
        self,
        request: SwapRequest,
        ledger_address: Pubkey,
        input_mint: Pubkey,
        output_mint: Pubkey,
        started: float,
    ) -> SwapResult:
        logger.info(
            f"{colors['CYAN']}Swap pass{colors['RESET']} ledger={short_address(str(ledger_address))} "
            f"{short_address(str(input_mint))} -> {short_address(str(output_mint))}"
            f"{' (dry run)' if request.dry_run else ''}"
        )

        # Validate
        ctx = await self._load_context(request, ledger_address)
        self._validate(ctx, input_mint, output_mint)
        amount_in = request.raw_amount(input_mint)

        # Fee (rate from the freshly read policy only)
        fee = compute_platform_fee(amount_in, ctx.platform_fee_bps)
        logger.info(f"Platform fee: {colors['YELLOW']}{format_amount(fee.fee, str(input_mint))}{colors['RESET']} "
                    f"({fee.fee_bps} bps), net {format_amount(fee.net_amount, str(input_mint))}")

        input_account = self.resolver.token_account(ledger_address, input_mint)
        output_account = self.resolver.token_account(ledger_address, output_mint)
        fee_destination = self.resolver.fee_destination(ctx.admin, input_mint)

        try:
            balances_before = await self._balances({str(input_mint): input_account, str(output_mint): output_account})
        except RpcError as e:
            raise e.to_swap_error(Stage.VALIDATE) from e
        if balances_before[str(input_mint)] < amount_in:
            raise SwapError(
                Stage.VALIDATE, ErrorKind.BALANCE, ErrorCode.INSUFFICIENT_FUNDS,
                f"Ledger holds {balances_before[str(input_mint)]} of {input_mint}, swap needs {amount_in}",
            )

        # Route + rewrite
        slippage_bps = self.config.effective_slippage_bps(request.slippage_bps)
        quote, swap, route = await self._route(input_mint, output_mint, fee, slippage_bps, ledger_address)
        intent = SwapIntent(
            input_asset=input_mint,
            output_asset=output_mint,
            amount_in=amount_in,
            fee_bps=fee.fee_bps,
            min_amount_out=quote.min_amount_out,
            route_instruction=route,
        )

        # Provision output and fee accounts (separate transactions)
        await self._provision(ledger_address, output_mint, request.dry_run)
        await self._provision(ctx.admin, input_mint, request.dry_run)

        # Assemble + submit
        instruction = build_execute_swap_instruction(
            program_id=self.program_id,
            authority=self.backend.pubkey(),
            vault=ctx.vault.address,
            strategy_ledger=ledger_address,
            input_token_account=input_account,
            output_token_account=output_account,
            fee_destination=fee_destination,
            global_policy=ctx.global_policy,
            aggregator_program=self.aggregator_program_id,
            amount_in=intent.amount_in,
            min_amount_out=intent.min_amount_out,
            route=intent.route_instruction,
        )
        outcome = await self.pipeline.submit(
            [instruction], intent.route_instruction.lookup_tables, dry_run=request.dry_run,
            compute_unit_limit=route_compute_unit_limit(swap.compute_unit_limit),
        )
        if outcome.state == SubmissionState.FAILED:
            raise outcome.error

        computed_fee = {"fee": fee.fee, "net_amount": fee.net_amount, "fee_bps": fee.fee_bps}
        swap_summary = {
            "ledger": str(ledger_address),
            "input_asset": str(input_mint),
            "output_asset": str(output_mint),
            "amount_in": intent.amount_in,
            "net_amount": fee.net_amount,
            "quoted_out": quote.out_amount,
            "min_amount_out": intent.min_amount_out,
            "slippage_bps": slippage_bps,
            "price_impact_pct": quote.price_impact_pct,
            "route_accounts": len(route.accounts),
        }
        attestation = {
            "backend_wallet": str(self.backend.pubkey()),
            "ledger_pda": str(ledger_address),
            "funds_owner": str(ledger_address),
            "backend_owns_tokens": False,
            "user_signed_swap": False,
            "cpi_authority_model": CPI_AUTHORITY_MODEL,
        }

        balances_after = None
        valuation: Optional[ValuationOutcome] = None
        warnings = []
        if outcome.state == SubmissionState.CONFIRMED:
            try:
                valuation = await self.reconciler.reconcile(ctx.ledger, ctx.vault.base_asset, output_mint,
                                                            output_account)
                balances_after = await self._balances({str(input_mint): input_account,
                                                       str(output_mint): output_account})
            except RpcError as e:
                error = e.to_swap_error(Stage.RECONCILE)
                logger.warning(f"Post-trade read failed: {error.message}")
                warnings.append(error.to_dict())
            except SwapError as e:
                logger.warning(f"Post-trade read failed: {e.message}")
                warnings.append(e.to_dict())
        elif outcome.state == SubmissionState.UNKNOWN:
            warnings.append({"stage": Stage.CONFIRM.value, "message": "confirmation timed out, outcome unknown"})

        if balances_after is not None:
            balances_after = dict(balances_after)
            for mint, before in balances_before.items():
                balances_after[f"{mint}_delta"] = balances_after[mint] - before

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Swap pass finished: {outcome.state.value} in {duration_ms} ms"
                    f"{' (' + outcome.signature + ')' if outcome.signature else ''}")

        return SwapResult(
            status=outcome.state.value,
            signature=outcome.signature,
            computed_fee=computed_fee,
            swap_summary=swap_summary,
            balances_before=balances_before,
            balances_after=balances_after,
            valuation=valuation.to_dict() if valuation else None,
            non_custodial_attestation=attestation,
            duration_ms=duration_ms,
            attempts=outcome.attempts,
            warnings=warnings,
        )
