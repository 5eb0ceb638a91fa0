import base64
import json

import pytest
from aresponses import Response, ResponsesMockServer

import solpulsebot.config as config
from solpulsebot.errors import (
    InputValidationError,
    InvalidResponse,
    NoRoute,
    QuoteExpired,
    UpstreamUnavailable,
)
from solpulsebot.quotes import QuoteClient, parse_quote, to_smallest_unit

HOST = "quote-api.jup.ag"

QUOTE = {
    "inputMint": config.WSOL_MINT,
    "outputMint": config.USDC_MINT,
    "inAmount": "100000000",
    "outAmount": "15000000",
    "otherAmountThreshold": "14850000",
    "swapMode": "ExactIn",
    "slippageBps": 100,
    "priceImpactPct": "0.0012",
    "routePlan": [
        {"swapInfo": {"label": "Orca", "ammKey": "x"}, "percent": 100},
        {"swapInfo": {"label": "Raydium", "ammKey": "y"}, "percent": 100},
    ],
}


def json_response(payload, status=200):
    return Response(
        text=json.dumps(payload),
        status=status,
        headers={"Content-Type": "application/json"},
    )


class ExplodingSession:
    """Fails the test if any request is attempted."""

    def request(self, *args, **kwargs):
        raise AssertionError("network call made")


@pytest.mark.asyncio
async def test_get_quote_parses_payload():
    async with ResponsesMockServer() as ars:
        ars.add(HOST, "/v6/quote", "GET", json_response(QUOTE))
        client = QuoteClient(ttl=30)
        quote = await client.get_quote(
            config.WSOL_MINT, config.USDC_MINT, 100_000_000, 100
        )
    assert quote.input_asset == config.WSOL_MINT
    assert quote.output_asset == config.USDC_MINT
    assert quote.input_amount == 100_000_000
    assert quote.estimated_output_amount == 15_000_000
    assert quote.minimum_output_amount == 14_850_000
    assert quote.price_impact == pytest.approx(0.0012)
    assert quote.route == ("Orca", "Raydium")
    assert quote.expires_at - quote.fetched_at == pytest.approx(30)
    assert not quote.is_expired()
    assert quote.is_expired(quote.expires_at)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "amount,slippage",
    [(0, 100), (100, 0), (-5, 100), (100, 5001), (100, True)],
)
async def test_invalid_arguments_fail_before_network(amount, slippage):
    client = QuoteClient(session=ExplodingSession())
    with pytest.raises(InputValidationError):
        await client.get_quote(config.WSOL_MINT, config.USDC_MINT, amount, slippage)


@pytest.mark.asyncio
async def test_invalid_mint_and_same_pair_rejected():
    client = QuoteClient(session=ExplodingSession())
    with pytest.raises(InputValidationError):
        await client.get_quote(config.WSOL_MINT, "not-a-mint", 100, 100)
    with pytest.raises(InputValidationError):
        await client.get_quote(config.WSOL_MINT, config.WSOL_MINT, 100, 100)


@pytest.mark.asyncio
async def test_no_route():
    payload = {
        "error": "Could not find any route",
        "errorCode": "COULD_NOT_FIND_ANY_ROUTE",
    }
    async with ResponsesMockServer() as ars:
        ars.add(HOST, "/v6/quote", "GET", json_response(payload, status=400))
        with pytest.raises(NoRoute):
            await QuoteClient().get_quote(
                config.WSOL_MINT, config.USDC_MINT, 1_000, 100
            )


@pytest.mark.asyncio
async def test_empty_route_plan_is_no_route():
    async with ResponsesMockServer() as ars:
        ars.add(HOST, "/v6/quote", "GET", json_response({**QUOTE, "routePlan": []}))
        with pytest.raises(NoRoute):
            await QuoteClient().get_quote(
                config.WSOL_MINT, config.USDC_MINT, 1_000, 100
            )


@pytest.mark.asyncio
async def test_server_error_is_upstream_unavailable():
    async with ResponsesMockServer() as ars:
        ars.add(HOST, "/v6/quote", "GET", Response(text="oops", status=502))
        with pytest.raises(UpstreamUnavailable) as info:
            await QuoteClient().get_quote(
                config.WSOL_MINT, config.USDC_MINT, 1_000, 100
            )
    assert info.value.ambiguous


@pytest.mark.asyncio
async def test_malformed_payload():
    async with ResponsesMockServer() as ars:
        ars.add(HOST, "/v6/quote", "GET", json_response({"inAmount": "1"}))
        with pytest.raises(InvalidResponse):
            await QuoteClient().get_quote(
                config.WSOL_MINT, config.USDC_MINT, 1_000, 100
            )


@pytest.mark.asyncio
async def test_build_swap_transaction():
    quote = parse_quote(QUOTE, 100, 30)
    seen = {}

    async def handler(request):
        seen.update(await request.json())
        return json_response(
            {
                "swapTransaction": base64.b64encode(b"unsigned").decode(),
                "lastValidBlockHeight": 2500,
                "prioritizationFeeLamports": 10000,
            }
        )

    async with ResponsesMockServer() as ars:
        ars.add(HOST, "/v6/swap", "POST", handler)
        swap_tx = await QuoteClient().build_swap_transaction(quote, "Owner1", 10000)
    assert swap_tx.raw == b"unsigned"
    assert swap_tx.last_valid_block_height == 2500
    assert swap_tx.priority_fee_lamports == 10000
    assert seen["quoteResponse"] == QUOTE
    assert seen["userPublicKey"] == "Owner1"
    assert seen["prioritizationFeeLamports"] == 10000


@pytest.mark.asyncio
async def test_build_swap_rejection_is_quote_expired():
    quote = parse_quote(QUOTE, 100, 30)
    async with ResponsesMockServer() as ars:
        ars.add(
            HOST,
            "/v6/swap",
            "POST",
            json_response({"error": "Quote is stale"}, status=400),
        )
        with pytest.raises(QuoteExpired):
            await QuoteClient().build_swap_transaction(quote, "Owner1", 0)


@pytest.mark.asyncio
async def test_build_swap_without_transaction():
    quote = parse_quote(QUOTE, 100, 30)
    async with ResponsesMockServer() as ars:
        ars.add(HOST, "/v6/swap", "POST", json_response({"foo": "bar"}))
        with pytest.raises(InvalidResponse):
            await QuoteClient().build_swap_transaction(quote, "Owner1", 0)


def test_to_smallest_unit():
    assert to_smallest_unit("0.1", 9) == 100_000_000
    assert to_smallest_unit("1.5", 6) == 1_500_000
    with pytest.raises(InputValidationError):
        to_smallest_unit("0", 9)
    with pytest.raises(InputValidationError):
        to_smallest_unit("lots", 9)
    with pytest.raises(InputValidationError):
        to_smallest_unit("0.0000001", 6)
