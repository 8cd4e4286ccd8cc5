"""
Jupiter API client for quotes and swap transactions.

Responses are untrusted: every field the pipeline relies on is checked here,
and failures leave this module as typed SwapErrors (stage=route).
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .errors import ErrorCode, ErrorKind, Stage, SwapError, TransientReason, transient
from .utils import short_address

logger = logging.getLogger(__name__)

NO_ROUTE_MARKERS = ("COULD_NOT_FIND_ANY_ROUTE", "NO_ROUTES_FOUND", "could not find any route", "no route")


class RateLimiter:
    """
    Token bucket rate limiter for Jupiter API requests.

    Ensures strict rate limiting: 1 request per second by default.
    """

    def __init__(self, requests_per_second: float = 1.0):
        """
        Initialize rate limiter.

        Args:
            requests_per_second: Maximum requests per second (0 disables limiting)
        """
        self.requests_per_second = requests_per_second
        self.min_interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self._last_request_time = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self):
        """Wait until a request can be made (respecting rate limit)."""
        async with self._lock:
            current_time = time.monotonic()
            time_since_last = current_time - self._last_request_time

            if time_since_last < self.min_interval:
                wait_time = self.min_interval - time_since_last
                await asyncio.sleep(wait_time)

            self._last_request_time = time.monotonic()


@dataclass
class RouteConstraints:
    """Restrictions passed to the quote endpoint."""
    only_direct_routes: bool = True
    dexes: List[str] = field(default_factory=lambda: ["Raydium"])
    max_price_impact_pct: Optional[float] = None


@dataclass
class JupiterQuote:
    """Quote response from Jupiter API (raw kept for the swap endpoint)."""
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    other_amount_threshold: Optional[int]
    price_impact_pct: float
    route_plan: List[Dict[str, Any]]
    raw: Dict[str, Any]
    context_slot: Optional[int] = None
    time_taken: Optional[float] = None

    @property
    def min_amount_out(self) -> int:
        """Slippage floor: otherAmountThreshold, falling back to outAmount."""
        return self.other_amount_threshold or self.out_amount


@dataclass
class JupiterSwapResponse:
    """Swap transaction response from Jupiter API."""
    swap_transaction: str
    last_valid_block_height: int
    address_lookup_tables: List[str] = field(default_factory=list)
    compute_unit_limit: Optional[int] = None


def _malformed(message: str) -> SwapError:
    logger.error(f"Malformed Jupiter response: {message}")
    return SwapError(Stage.ROUTE, ErrorKind.STRUCTURAL, ErrorCode.MALFORMED_RESPONSE, message)


def _require_int(data: Dict[str, Any], key: str) -> int:
    if key not in data:
        raise _malformed(f"missing field '{key}'")
    value = data[key]
    if isinstance(value, bool):
        raise _malformed(f"field '{key}' is not an integer amount: {value!r}")
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise _malformed(f"field '{key}' is not an integer amount: {value!r}")
    if isinstance(value, float) or (isinstance(value, str) and not value.strip().isdigit()):
        raise _malformed(f"field '{key}' is not an integer amount: {value!r}")
    return parsed


def parse_quote(data: Any, time_taken: Optional[float] = None) -> JupiterQuote:
    """
    Validate a quote payload.

    Raises:
        SwapError: Economic NO_ROUTE for an empty route plan, Structural
            MALFORMED_RESPONSE for anything missing or non-numeric
    """
    if not isinstance(data, dict):
        raise _malformed(f"quote is not an object: {type(data).__name__}")
    for key in ("inputMint", "outputMint"):
        if not isinstance(data.get(key), str) or not data.get(key):
            raise _malformed(f"missing field '{key}'")

    route_plan = data.get("routePlan")
    if route_plan is None:
        raise _malformed("missing field 'routePlan'")
    if not isinstance(route_plan, list):
        raise _malformed("field 'routePlan' is not a list")
    if not route_plan:
        raise SwapError(Stage.ROUTE, ErrorKind.ECONOMIC, ErrorCode.NO_ROUTE,
                        f"Empty route plan for {short_address(data['inputMint'])} -> {short_address(data['outputMint'])}")

    in_amount = _require_int(data, "inAmount")
    out_amount = _require_int(data, "outAmount")
    threshold = _require_int(data, "otherAmountThreshold") if data.get("otherAmountThreshold") not in (None, "") else None

    try:
        price_impact = float(data.get("priceImpactPct") or 0)
    except (TypeError, ValueError):
        raise _malformed(f"field 'priceImpactPct' is not numeric: {data.get('priceImpactPct')!r}")

    return JupiterQuote(
        input_mint=data["inputMint"],
        output_mint=data["outputMint"],
        in_amount=in_amount,
        out_amount=out_amount,
        other_amount_threshold=threshold,
        price_impact_pct=price_impact,
        route_plan=route_plan,
        raw=data,
        context_slot=data.get("contextSlot"),
        time_taken=time_taken,
    )


def parse_swap_response(data: Any) -> JupiterSwapResponse:
    if not isinstance(data, dict):
        raise _malformed(f"swap response is not an object: {type(data).__name__}")
    swap_transaction = data.get("swapTransaction")
    if not isinstance(swap_transaction, str) or not swap_transaction:
        raise _malformed("missing field 'swapTransaction'")
    last_valid = _require_int(data, "lastValidBlockHeight")
    tables = data.get("addressLookupTableAddresses") or []
    if not isinstance(tables, list) or not all(isinstance(t, str) for t in tables):
        raise _malformed("field 'addressLookupTableAddresses' is not a list of addresses")
    cu_limit = data.get("computeUnitLimit")
    return JupiterSwapResponse(
        swap_transaction=swap_transaction,
        last_valid_block_height=last_valid,
        address_lookup_tables=list(tables),
        compute_unit_limit=int(cu_limit) if isinstance(cu_limit, int) else None,
    )


class JupiterClient:
    """Client for the Jupiter Swap API."""

    DEFAULT_API_URL = "https://api.jup.ag"

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        requests_per_second: float = 1.0,
        max_retries_on_429: int = 3,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize Jupiter API client.

        Args:
            api_url: API base URL (default: https://api.jup.ag)
            api_key: Jupiter API key, sent in the x-api-key header
            timeout: Request timeout in seconds
            requests_per_second: Rate limit for Jupiter API requests (default: 1.0 req/sec)
            max_retries_on_429: Maximum retries on 429 rate limit error (default: 3)
            backoff_base_seconds: Base backoff time for 429 retries (default: 1.0)
            backoff_max_seconds: Maximum backoff time for 429 retries (default: 30.0)
            http_client: Preconfigured httpx client (tests inject a MockTransport here)
        """
        base = (api_url or self.DEFAULT_API_URL).rstrip('/')
        # Accept legacy base URLs that end in a version segment
        for suffix in ('/v6', '/v1'):
            if base.endswith(suffix):
                base = base[:-len(suffix)]
        self.api_url = base
        self.api_key = api_key
        self.timeout = timeout

        self.rate_limiter = RateLimiter(requests_per_second=requests_per_second)
        self.max_retries_on_429 = max_retries_on_429
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds

        headers = {}
        if api_key:
            # Jupiter API expects API key in x-api-key header, not Authorization
            headers["x-api-key"] = api_key

        self.client = http_client or httpx.AsyncClient(timeout=timeout, headers=headers)

    def _retry_wait(self, response: httpx.Response, attempt: int) -> float:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass
        return min(self.backoff_base_seconds * (2 ** attempt), self.backoff_max_seconds)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        """
        Perform one API call with 429 backoff.

        Returns:
            Decoded JSON body

        Raises:
            SwapError: Typed by HTTP status / transport failure
        """
        url = f"{self.api_url}{path}"

        for attempt in range(self.max_retries_on_429 + 1):
            await self.rate_limiter.acquire()
            try:
                response = await self.client.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                raise transient(Stage.ROUTE, TransientReason.NODE_BEHIND, f"Jupiter timeout: {e}") from e
            except httpx.TransportError as e:
                raise transient(Stage.ROUTE, TransientReason.NODE_BEHIND, f"Jupiter unreachable: {e}") from e

            status = response.status_code
            if status == 429:
                if attempt < self.max_retries_on_429:
                    wait_time = self._retry_wait(response, attempt)
                    logger.warning(
                        f"Rate limit exceeded (429) for {path}, "
                        f"retrying in {wait_time:.1f}s (attempt {attempt + 1}/{self.max_retries_on_429})"
                    )
                    await asyncio.sleep(wait_time)
                    continue
                logger.error(f"Rate limit exceeded (429) for {path} after {self.max_retries_on_429} retries")
                raise transient(Stage.ROUTE, TransientReason.RATE_LIMITED, f"Jupiter rate limit on {path}")

            if status >= 500:
                raise transient(Stage.ROUTE, TransientReason.NODE_BEHIND,
                                f"Jupiter {path} failed: {status} - {response.text[:200]}")

            body_text = response.text
            if status == 404 or (status >= 400 and any(m.lower() in body_text.lower() for m in NO_ROUTE_MARKERS)):
                logger.debug(f"Route not found for {path} ({status})")
                raise SwapError(Stage.ROUTE, ErrorKind.ECONOMIC, ErrorCode.NO_ROUTE,
                                f"No route available: {body_text[:200]}")

            if status >= 400:
                logger.error(f"Jupiter {path} rejected request: {status} - {body_text[:200]}")
                raise SwapError(Stage.ROUTE, ErrorKind.STRUCTURAL, ErrorCode.INVALID_ARGUMENT,
                                f"Jupiter {path} rejected request: {status} - {body_text[:200]}")

            try:
                return response.json()
            except ValueError as e:
                raise _malformed(f"{path} returned non-JSON body") from e

        # Loop always returns or raises; kept for type checkers
        raise transient(Stage.ROUTE, TransientReason.RATE_LIMITED, f"Jupiter rate limit on {path}")

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        constraints: Optional[RouteConstraints] = None,
    ) -> JupiterQuote:
        """
        Get a quote for swapping tokens.

        Args:
            input_mint: Input token mint address
            output_mint: Output token mint address
            amount: Amount in smallest unit, already net of platform fee
            slippage_bps: Slippage in basis points (1 bps = 0.01%)
            constraints: Route restrictions (direct-only, allowed DEXes, impact cap)

        Returns:
            Validated JupiterQuote

        Raises:
            SwapError: NO_ROUTE, PRICE_IMPACT_TOO_HIGH, MALFORMED_RESPONSE or transient
        """
        constraints = constraints or RouteConstraints()
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": slippage_bps,
            "onlyDirectRoutes": str(constraints.only_direct_routes).lower(),
        }
        if constraints.dexes:
            params["dexes"] = ",".join(constraints.dexes)

        start_time = time.time()
        data = await self._request("GET", "/swap/v1/quote", params=params)
        quote = parse_quote(data, time_taken=time.time() - start_time)

        if quote.input_mint != input_mint or quote.output_mint != output_mint:
            raise _malformed(
                f"quote is for {quote.input_mint} -> {quote.output_mint}, requested {input_mint} -> {output_mint}"
            )
        if quote.in_amount != amount:
            raise _malformed(f"quote inAmount {quote.in_amount} differs from requested {amount}")

        if constraints.max_price_impact_pct is not None and quote.price_impact_pct > constraints.max_price_impact_pct:
            raise SwapError(
                Stage.ROUTE, ErrorKind.ECONOMIC, ErrorCode.PRICE_IMPACT_TOO_HIGH,
                f"Price impact {quote.price_impact_pct:.4f}% exceeds limit {constraints.max_price_impact_pct}%",
            )

        logger.debug(f"Quote: {short_address(input_mint)} -> {short_address(output_mint)} "
                     f"in={quote.in_amount} out={quote.out_amount} min_out={quote.min_amount_out} "
                     f"impact={quote.price_impact_pct:.4f}%")
        return quote

    async def get_swap_transaction(
        self,
        quote: JupiterQuote,
        user_public_key: str,
        wrap_unwrap_sol: bool = False,
        dynamic_compute_unit_limit: bool = True,
    ) -> JupiterSwapResponse:
        """
        Get swap transaction from Jupiter API.

        Args:
            quote: Quote from get_quote (its raw body is passed back unmodified)
            user_public_key: Account the route is built for (the strategy ledger PDA)
            wrap_unwrap_sol: Auto wrap/unwrap SOL (off: the ledger holds wrapped SOL)
            dynamic_compute_unit_limit: Use dynamic compute unit limit

        Returns:
            JupiterSwapResponse
        """
        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": wrap_unwrap_sol,
            "dynamicComputeUnitLimit": dynamic_compute_unit_limit,
        }
        data = await self._request("POST", "/swap/v1/swap", json=payload)
        swap_response = parse_swap_response(data)
        logger.debug(f"Swap transaction built: {len(swap_response.swap_transaction)} chars, "
                     f"last_valid_block_height: {swap_response.last_valid_block_height}")
        return swap_response

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()
