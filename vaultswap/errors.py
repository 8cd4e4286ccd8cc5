"""
Error taxonomy for the swap pipeline.

Every failure is raised as a SwapError by the stage that detected it and
carries an explicit kind and code. Later stages propagate it untouched.
"""
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    ECONOMIC = "economic"      # Market moved or rules reject the trade; safe to retry later
    STRUCTURAL = "structural"  # Integrity fault; never retried
    BALANCE = "balance"        # Funds or accounts missing
    TRANSIENT = "transient"    # Infrastructure hiccup; bounded retry


class Stage(str, Enum):
    VALIDATE = "validate"
    FEE = "fee"
    ROUTE = "route"
    REWRITE = "rewrite"
    PROVISION = "provision"
    ASSEMBLE = "assemble"
    SIMULATE = "simulate"
    SIGN = "sign"
    SEND = "send"
    CONFIRM = "confirm"
    RECONCILE = "reconcile"


class ErrorCode(str, Enum):
    SLIPPAGE_EXCEEDED = "SLIPPAGE_EXCEEDED"
    NO_ROUTE = "NO_ROUTE"
    PRICE_IMPACT_TOO_HIGH = "PRICE_IMPACT_TOO_HIGH"
    LEDGER_BUSY = "LEDGER_BUSY"
    INVALID_TOPOLOGY = "INVALID_TOPOLOGY"
    TOKEN_NOT_ALLOWED = "TOKEN_NOT_ALLOWED"
    LEDGER_PAUSED = "LEDGER_PAUSED"
    VAULT_PAUSED = "VAULT_PAUSED"
    LEDGER_NOT_INITIALIZED = "LEDGER_NOT_INITIALIZED"
    SIGNER_MISMATCH = "SIGNER_MISMATCH"
    ACCOUNT_ORDERING = "ACCOUNT_ORDERING"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    AGGREGATOR_INSTRUCTION_MISSING = "AGGREGATOR_INSTRUCTION_MISSING"
    FEE_MISMATCH = "FEE_MISMATCH"
    INVALID_FEE_DESTINATION = "INVALID_FEE_DESTINATION"
    TRANSACTION_TOO_LARGE = "TRANSACTION_TOO_LARGE"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    MISSING_ACCOUNT = "MISSING_ACCOUNT"
    TRANSIENT = "TRANSIENT"
    PROGRAM_ERROR = "PROGRAM_ERROR"


class TransientReason(str, Enum):
    """The closed set of failures the send loop is allowed to retry."""
    BLOCKHASH_NOT_FOUND = "BLOCKHASH_NOT_FOUND"
    NODE_BEHIND = "NODE_BEHIND"
    CONFIRMATION_TIMEOUT = "CONFIRMATION_TIMEOUT"
    FEE_TOO_LOW = "FEE_TOO_LOW"
    RATE_LIMITED = "RATE_LIMITED"


class SwapError(Exception):
    """A typed pipeline failure."""

    def __init__(
        self,
        stage: Stage,
        kind: ErrorKind,
        code: ErrorCode,
        message: str,
        logs: Optional[Sequence[str]] = None,
        transient_reason: Optional[TransientReason] = None,
    ):
        super().__init__(message)
        self.stage = stage
        self.kind = kind
        self.code = code
        self.message = message
        self.logs: List[str] = list(logs or [])
        self.transient_reason = transient_reason

    @property
    def is_transient(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "stage": self.stage.value,
            "kind": self.kind.value,
            "code": self.code.value,
            "message": self.message,
            "logs": self.logs,
        }
        if self.transient_reason is not None:
            result["transient_reason"] = self.transient_reason.value
        return result

    def __repr__(self) -> str:
        return f"SwapError({self.stage.value}/{self.kind.value}/{self.code.value}: {self.message})"


def transient(stage: Stage, reason: TransientReason, message: str, logs: Optional[Sequence[str]] = None) -> SwapError:
    return SwapError(stage, ErrorKind.TRANSIENT, ErrorCode.TRANSIENT, message, logs=logs, transient_reason=reason)


class RpcError(Exception):
    """
    Failure of a ledger RPC call.

    `reason` is set when the failure belongs to the retryable set; `code` holds
    the JSON-RPC error code when the node returned one. `never_delivered` is
    True only when the request provably did not take effect (the node answered
    with an error, or the connection was never opened); a timed-out send may
    still have been accepted.
    """

    def __init__(self, message: str, reason: Optional[TransientReason] = None,
                 code: Optional[int] = None, logs: Optional[Sequence[str]] = None,
                 never_delivered: bool = False):
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.code = code
        self.logs: List[str] = list(logs or [])
        self.never_delivered = never_delivered

    def to_swap_error(self, stage: Stage) -> SwapError:
        if self.reason is not None:
            return transient(stage, self.reason, self.message, logs=self.logs)
        return classify_program_failure(stage, self.message, self.logs)


# Vault program error codes (Anchor custom errors start at 6000)
PROGRAM_ERROR_CODES: Dict[int, tuple] = {
    6000: (ErrorKind.STRUCTURAL, ErrorCode.SIGNER_MISMATCH),          # Unauthorized
    6001: (ErrorKind.ECONOMIC, ErrorCode.VAULT_PAUSED),               # Paused
    6002: (ErrorKind.ECONOMIC, ErrorCode.SLIPPAGE_EXCEEDED),          # InvalidSwapOutput
    6003: (ErrorKind.ECONOMIC, ErrorCode.TOKEN_NOT_ALLOWED),          # TokenNotAllowed
    6004: (ErrorKind.ECONOMIC, ErrorCode.INVALID_TOPOLOGY),           # InvalidSwapTopology
    6005: (ErrorKind.STRUCTURAL, ErrorCode.INVALID_FEE_DESTINATION),  # InvalidFeeDestination
    6006: (ErrorKind.ECONOMIC, ErrorCode.SLIPPAGE_EXCEEDED),          # SlippageExceeded
    6007: (ErrorKind.STRUCTURAL, ErrorCode.FEE_MISMATCH),             # FeeEvasion
    6008: (ErrorKind.STRUCTURAL, ErrorCode.MALFORMED_RESPONSE),       # InvalidInstructionData
    6009: (ErrorKind.ECONOMIC, ErrorCode.LEDGER_PAUSED),              # TraderNotPaused
    6010: (ErrorKind.ECONOMIC, ErrorCode.LEDGER_PAUSED),              # TraderPaused
    6011: (ErrorKind.ECONOMIC, ErrorCode.LEDGER_PAUSED),              # NotSettled
    6012: (ErrorKind.BALANCE, ErrorCode.INSUFFICIENT_FUNDS),          # InsufficientFunds
    6013: (ErrorKind.STRUCTURAL, ErrorCode.ACCOUNT_ORDERING),         # MintMismatch
    6014: (ErrorKind.STRUCTURAL, ErrorCode.PROGRAM_ERROR),            # LegacyTradingDisabled
    6015: (ErrorKind.BALANCE, ErrorCode.INSUFFICIENT_FUNDS),          # NonZeroBalance
    6016: (ErrorKind.STRUCTURAL, ErrorCode.ACCOUNT_ORDERING),         # InvalidTokenAccountOwner
    6017: (ErrorKind.ECONOMIC, ErrorCode.LEDGER_NOT_INITIALIZED),     # TraderNotInitialized
    6018: (ErrorKind.STRUCTURAL, ErrorCode.PROGRAM_ERROR),            # AlreadyInitialized
}

# Aggregator (Jupiter v6) codes that surface through the swap CPI
AGGREGATOR_ERROR_CODES: Dict[int, tuple] = {
    6001: (ErrorKind.ECONOMIC, ErrorCode.SLIPPAGE_EXCEEDED),          # SlippageToleranceExceeded
    6008: (ErrorKind.STRUCTURAL, ErrorCode.ACCOUNT_ORDERING),         # NotEnoughAccountKeys
    6017: (ErrorKind.ECONOMIC, ErrorCode.SLIPPAGE_EXCEEDED),          # ExactOutAmountNotMatched
}

_ERROR_NUMBER_RE = re.compile(r"Error Number: (\d+)")
_CUSTOM_HEX_RE = re.compile(r"custom program error: 0x([0-9a-fA-F]+)")
_CUSTOM_CODE_RE = re.compile(r"Custom\((\d+)\)")
_PROGRAM_FAILED_RE = re.compile(r"^Program (\w+) failed: ")

# Runtime (non-program) failures, matched on the error's debug text
_RUNTIME_FRAGMENTS = [
    ("PrivilegeEscalation", ErrorKind.STRUCTURAL, ErrorCode.SIGNER_MISMATCH),
    ("MissingRequiredSignature", ErrorKind.STRUCTURAL, ErrorCode.SIGNER_MISMATCH),
    ("InsufficientFundsForRent", ErrorKind.BALANCE, ErrorCode.INSUFFICIENT_FUNDS),
    ("InsufficientFundsForFee", ErrorKind.BALANCE, ErrorCode.INSUFFICIENT_FUNDS),
    ("InsufficientFunds", ErrorKind.BALANCE, ErrorCode.INSUFFICIENT_FUNDS),
    ("AccountNotFound", ErrorKind.BALANCE, ErrorCode.MISSING_ACCOUNT),
    ("InvalidAccountIndex", ErrorKind.STRUCTURAL, ErrorCode.ACCOUNT_ORDERING),
    ("AddressLookupTableNotFound", ErrorKind.STRUCTURAL, ErrorCode.ACCOUNT_ORDERING),
]

# Last resort: lowercase message fragments
_MESSAGE_FRAGMENTS = [
    ("slippage", ErrorKind.ECONOMIC, ErrorCode.SLIPPAGE_EXCEEDED),
    ("insufficient", ErrorKind.BALANCE, ErrorCode.INSUFFICIENT_FUNDS),
    ("not allowed", ErrorKind.ECONOMIC, ErrorCode.TOKEN_NOT_ALLOWED),
    ("unauthorized", ErrorKind.STRUCTURAL, ErrorCode.SIGNER_MISMATCH),
    ("fee", ErrorKind.STRUCTURAL, ErrorCode.FEE_MISMATCH),
]


def extract_program_error_code(err: Any, logs: Sequence[str] = ()) -> Optional[int]:
    """
    Pull a custom program error number out of a transaction error.

    Checks the structured InstructionErrorCustom first, then the Anchor
    "Error Number: N" log line, then the "custom program error: 0x.." line.
    """
    inner = getattr(err, "err", None)
    code = getattr(inner, "code", None)
    if isinstance(code, int):
        return code

    if err is not None:
        match = _CUSTOM_CODE_RE.search(str(err))
        if match:
            return int(match.group(1))

    for line in reversed(list(logs)):
        match = _ERROR_NUMBER_RE.search(line)
        if match:
            return int(match.group(1))
        match = _CUSTOM_HEX_RE.search(line)
        if match:
            return int(match.group(1), 16)
    return None


def failing_program(logs: Sequence[str]) -> Optional[str]:
    """
    Program that raised the error: the innermost "Program <id> failed" line.

    A failed CPI makes every caller up the stack log its own failed line
    after the callee's, so the first one in log order is the origin.
    """
    for line in logs:
        match = _PROGRAM_FAILED_RE.match(line)
        if match:
            return match.group(1)
    return None


def classify_program_failure(
    stage: Stage,
    err: Any,
    logs: Sequence[str] = (),
    program_id: Any = None,
    aggregator_program_id: Any = None,
) -> SwapError:
    """
    Map a simulation or on-chain failure into the taxonomy.

    Structured codes win; message-fragment matching is a best-effort fallback
    for errors that carry no code. Custom codes are read against the table of
    the program that failed; when the logs do not name it, the vault table
    applies.
    """
    logs = list(logs or [])
    code = extract_program_error_code(err, logs)
    origin = failing_program(logs)
    if code is not None:
        if origin is None or program_id is None or origin == str(program_id):
            table, owner = PROGRAM_ERROR_CODES, "Program"
        elif aggregator_program_id is not None and origin == str(aggregator_program_id):
            table, owner = AGGREGATOR_ERROR_CODES, "Aggregator"
        else:
            table, owner = {}, f"Program {origin}"
        if code in table:
            kind, error_code = table[code]
            return SwapError(stage, kind, error_code, f"{owner} error {code}: {err}", logs=logs)
        if owner != "Program":
            return SwapError(stage, ErrorKind.STRUCTURAL, ErrorCode.PROGRAM_ERROR,
                             f"{owner} error {code}: {err}", logs=logs)

    text = str(err) if err is not None else ""
    for fragment, kind, error_code in _RUNTIME_FRAGMENTS:
        if fragment in text:
            return SwapError(stage, kind, error_code, text, logs=logs)

    if "BlockhashNotFound" in text or "blockhash not found" in text.lower():
        return transient(stage, TransientReason.BLOCKHASH_NOT_FOUND, text, logs=logs)

    haystack = " ".join([text] + logs[-5:]).lower()
    for fragment, kind, error_code in _MESSAGE_FRAGMENTS:
        if fragment in haystack:
            logger.debug(f"Classified by message fragment '{fragment}': {text}")
            return SwapError(stage, kind, error_code, text, logs=logs)

    if code is not None:
        # Unmapped code and no failing program named in the logs
        return SwapError(stage, ErrorKind.STRUCTURAL, ErrorCode.PROGRAM_ERROR,
                         f"Program error {code}: {text}", logs=logs)

    return SwapError(stage, ErrorKind.STRUCTURAL, ErrorCode.PROGRAM_ERROR, text or "unknown failure", logs=logs)
