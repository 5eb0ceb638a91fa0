"""Swap quotes and transaction payloads from the Jupiter aggregator.

:class:`QuoteClient` performs exactly one request per call. Retry policy is
left to the caller so that a stale quote is never silently reused.
"""

import base64
import binascii
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple

import aiohttp
from solders.pubkey import Pubkey

from . import config
from .api import api_request, check_status
from .errors import (
    InputValidationError,
    InvalidResponse,
    NoRoute,
    QuoteExpired,
    SwapBotError,
)

NO_ROUTE_CODES = {
    "COULD_NOT_FIND_ANY_ROUTE",
    "NO_ROUTES_FOUND",
    "TOKEN_NOT_TRADABLE",
    "ROUTE_PLAN_DOES_NOT_CONSUME_ALL_THE_AMOUNT",
    "CIRCULAR_ARBITRAGE_IS_DISABLED",
}


def validate_mint(value: str) -> str:
    """Return ``value`` if it is a valid base58 public key."""
    value = value.strip()
    try:
        Pubkey.from_string(value)
    except ValueError as exc:
        raise InputValidationError(f"Invalid token address: {value}") from exc
    return value


def validate_slippage(slippage_bps: int) -> int:
    if (
        isinstance(slippage_bps, bool)
        or not isinstance(slippage_bps, int)
        or not config.MIN_SLIPPAGE_BPS <= slippage_bps <= config.MAX_SLIPPAGE_BPS
    ):
        raise InputValidationError(
            f"Slippage must be between {config.MIN_SLIPPAGE_BPS}-"
            f"{config.MAX_SLIPPAGE_BPS} bps (0.01% - 50%)"
        )
    return slippage_bps


def validate_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InputValidationError("Amount must be greater than zero")
    return amount


def to_smallest_unit(value: str, decimals: int) -> int:
    """Convert a human amount like ``"0.1"`` to integer base units."""
    try:
        amount = Decimal(value)
    except InvalidOperation as exc:
        raise InputValidationError(f"Invalid amount: {value}") from exc
    if not amount.is_finite() or amount <= 0:
        raise InputValidationError("Amount must be greater than zero")
    units = int(amount.scaleb(decimals))
    if units <= 0:
        raise InputValidationError("Amount is smaller than the token's precision")
    return units


@dataclass(frozen=True)
class Quote:
    """A priced route; immutable and valid until ``expires_at``."""

    input_asset: str
    output_asset: str
    input_amount: int
    estimated_output_amount: int
    minimum_output_amount: int
    price_impact: float
    slippage_bps: int
    route: Tuple[str, ...]
    fetched_at: float
    expires_at: float
    raw: Dict[str, Any] = field(repr=False, compare=False)

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at


@dataclass(frozen=True)
class SwapTransaction:
    """Unsigned transaction bytes returned for a quote."""

    raw: bytes = field(repr=False)
    last_valid_block_height: Optional[int] = None
    priority_fee_lamports: Optional[int] = None


def _error_text(data: Any) -> Tuple[str, str]:
    if isinstance(data, dict):
        message = data.get("error") or data.get("message") or ""
        return str(data.get("errorCode") or ""), str(message)
    return "", ""


def parse_quote(data: Any, slippage_bps: int, ttl: float) -> Quote:
    """Build a :class:`Quote` from an aggregator quote payload."""
    if not isinstance(data, dict):
        raise InvalidResponse("Quote response is not an object")
    try:
        in_amount = int(data["inAmount"])
        out_amount = int(data["outAmount"])
        threshold = int(data.get("otherAmountThreshold", out_amount))
        impact = float(data.get("priceImpactPct") or 0)
        plan = data["routePlan"]
        route = tuple(
            str(step.get("swapInfo", {}).get("label") or "?") for step in plan
        )
        input_mint = str(data["inputMint"])
        output_mint = str(data["outputMint"])
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise InvalidResponse("Quote response is missing fields") from exc
    if not route:
        raise NoRoute()
    now = time.time()
    return Quote(
        input_asset=input_mint,
        output_asset=output_mint,
        input_amount=in_amount,
        estimated_output_amount=out_amount,
        minimum_output_amount=threshold,
        price_impact=impact,
        slippage_bps=slippage_bps,
        route=route,
        fetched_at=now,
        expires_at=now + ttl,
        raw=data,
    )


class QuoteClient:
    """Quote and swap-transaction requests against the aggregator."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        ttl: Optional[float] = None,
    ) -> None:
        self.base_url = (base_url or config.JUPITER_API_URL).rstrip("/")
        self.session = session
        self.ttl = config.QUOTE_TTL if ttl is None else ttl

    async def get_quote(
        self,
        input_asset: str,
        output_asset: str,
        amount: int,
        slippage_bps: int,
        *,
        user: Optional[int] = None,
    ) -> Quote:
        """Return a quote for swapping ``amount`` base units.

        Raises :class:`InputValidationError` before any request is made when
        the arguments are out of range.
        """
        validate_amount(amount)
        validate_slippage(slippage_bps)
        input_asset = validate_mint(input_asset)
        output_asset = validate_mint(output_asset)
        if input_asset == output_asset:
            raise InputValidationError("Input and output tokens must differ")

        status, data = await api_request(
            "GET",
            f"{self.base_url}/quote",
            session=self.session,
            params={
                "inputMint": input_asset,
                "outputMint": output_asset,
                "amount": str(amount),
                "slippageBps": str(slippage_bps),
            },
            user=user,
        )
        check_status(status, "aggregator")
        code, message = _error_text(data)
        if status != 200 or message:
            raise self._rejection(code, message, status)
        quote = parse_quote(data, slippage_bps, self.ttl)
        config.logger.info(
            "quote user=%s %s -> %s in=%s out=%s impact=%s route=%s",
            user,
            input_asset,
            output_asset,
            quote.input_amount,
            quote.estimated_output_amount,
            quote.price_impact,
            "/".join(quote.route),
        )
        return quote

    @staticmethod
    def _rejection(code: str, message: str, status: int) -> SwapBotError:
        if code in NO_ROUTE_CODES or "route" in message.lower():
            return NoRoute(message or None)
        if message:
            return InvalidResponse(f"Aggregator rejected the request: {message}")
        return InvalidResponse(f"Aggregator returned HTTP {status}")

    async def build_swap_transaction(
        self,
        quote: Quote,
        user_public_key: str,
        priority_fee_lamports: int,
        *,
        user: Optional[int] = None,
    ) -> SwapTransaction:
        """Request the unsigned transaction for ``quote``.

        Any rejection of the quote itself is reported as
        :class:`QuoteExpired`; the caller must fetch a new quote.
        """
        status, data = await api_request(
            "POST",
            f"{self.base_url}/swap",
            session=self.session,
            json={
                "quoteResponse": quote.raw,
                "userPublicKey": user_public_key,
                "wrapAndUnwrapSol": True,
                "dynamicComputeUnitLimit": True,
                "prioritizationFeeLamports": priority_fee_lamports,
            },
            user=user,
        )
        check_status(status, "aggregator")
        _, message = _error_text(data)
        if status != 200 or message:
            raise QuoteExpired(
                f"Aggregator rejected the quote: {message}" if message else None
            )
        if not isinstance(data, dict) or not data.get("swapTransaction"):
            raise InvalidResponse("Swap response has no transaction")
        try:
            raw = base64.b64decode(data["swapTransaction"], validate=True)
        except (binascii.Error, TypeError, ValueError) as exc:
            raise InvalidResponse("Swap transaction is not valid base64") from exc
        try:
            height = int(data.get("lastValidBlockHeight") or 0) or None
            fee = data.get("prioritizationFeeLamports")
            fee = int(fee) if fee is not None else None
        except (TypeError, ValueError) as exc:
            raise InvalidResponse("Swap response has malformed fields") from exc
        return SwapTransaction(
            raw=raw, last_valid_block_height=height, priority_fee_lamports=fee
        )
