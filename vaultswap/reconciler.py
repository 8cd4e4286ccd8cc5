"""
Valuation Reconciler: predicts how a swap affects the strategy ledger's
recorded value and checks the prediction against what the program committed.

The recorded value is denominated in the vault's base asset. A trade out of
the base asset leaves it untouched; a trade back into the base asset sets it
to the ledger's observed base balance (which may be zero).
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from solders.pubkey import Pubkey

from .errors import RpcError, Stage
from .state import StrategyLedger, fetch_strategy_ledger
from .utils import get_terminal_colors

logger = logging.getLogger(__name__)
colors = get_terminal_colors()


class ValuationBranch(str, Enum):
    UNCHANGED = "unchanged"
    RECONCILED = "reconciled"


@dataclass(frozen=True)
class ValuationOutcome:
    branch: ValuationBranch
    before: int
    after: int
    committed: Optional[int] = None

    @property
    def discrepancy(self) -> Optional[int]:
        if self.committed is None:
            return None
        return self.committed - self.after

    def to_dict(self) -> Dict[str, Any]:
        return {
            "branch": self.branch.value,
            "before": self.before,
            "predicted_after": self.after,
            "committed_after": self.committed,
            "discrepancy": self.discrepancy,
        }


def predict_recorded_value(
    ledger: StrategyLedger,
    base_asset: Pubkey,
    output_asset: Pubkey,
    observed_base_balance: int,
) -> ValuationOutcome:
    before = ledger.recorded_value
    if output_asset != base_asset:
        return ValuationOutcome(ValuationBranch.UNCHANGED, before, before)
    return ValuationOutcome(ValuationBranch.RECONCILED, before, observed_base_balance)


class ValuationReconciler:
    """Post-confirmation check of the ledger's committed value."""

    def __init__(self, solana):
        self.solana = solana

    async def reconcile(
        self,
        ledger_before: StrategyLedger,
        base_asset: Pubkey,
        output_asset: Pubkey,
        output_token_account: Pubkey,
    ) -> ValuationOutcome:
        """
        Re-read the ledger and output balance, predict, compare.

        The on-chain value is authoritative; a mismatch is only logged.

        Raises:
            SwapError: stage=reconcile when the post-trade state cannot be read
        """
        try:
            observed = await self.solana.get_token_balance(output_token_account)
            ledger_after = await fetch_strategy_ledger(self.solana, ledger_before.address)
        except RpcError as e:
            raise e.to_swap_error(Stage.RECONCILE) from e

        prediction = predict_recorded_value(ledger_before, base_asset, output_asset, observed)
        outcome = ValuationOutcome(prediction.branch, prediction.before, prediction.after,
                                   committed=ledger_after.recorded_value)

        if outcome.discrepancy:
            logger.warning(
                f"{colors['YELLOW']}Accounting discrepancy{colors['RESET']} on ledger {ledger_before.address}: "
                f"predicted {outcome.after}, committed {outcome.committed} "
                f"(branch {outcome.branch.value}, diff {outcome.discrepancy})"
            )
        else:
            logger.info(f"Valuation {outcome.branch.value}: {outcome.before} -> {outcome.committed}")
        return outcome
