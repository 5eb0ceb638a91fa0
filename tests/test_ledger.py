import base64
import json

import pytest
from aresponses import Response, ResponsesMockServer

import solpulsebot.config as config
from solpulsebot.errors import InvalidResponse, UpstreamUnavailable
from solpulsebot.ledger import LedgerClient, RpcError

HOST = "api.mainnet-beta.solana.com"
OWNER = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


def rpc_result(result):
    return Response(
        text=json.dumps({"jsonrpc": "2.0", "id": 1, "result": result}),
        status=200,
        headers={"Content-Type": "application/json"},
    )


def rpc_error(code, message):
    return Response(
        text=json.dumps(
            {"jsonrpc": "2.0", "id": 1, "error": {"code": code, "message": message}}
        ),
        status=200,
        headers={"Content-Type": "application/json"},
    )


@pytest.mark.asyncio
async def test_get_balance():
    async with ResponsesMockServer() as ars:
        ars.add(HOST, "/", "POST", rpc_result({"context": {"slot": 1}, "value": 5000}))
        assert await LedgerClient().get_balance(OWNER) == 5000


@pytest.mark.asyncio
async def test_get_token_accounts_by_owner():
    account = {
        "pubkey": "acc",
        "account": {
            "data": {
                "parsed": {
                    "info": {
                        "mint": config.USDC_MINT,
                        "owner": OWNER,
                        "tokenAmount": {
                            "amount": "2500000",
                            "decimals": 6,
                            "uiAmount": 2.5,
                        },
                    }
                }
            }
        },
    }
    seen = {}

    async def handler(request):
        seen.update(await request.json())
        return rpc_result({"context": {"slot": 1}, "value": [account]})

    async with ResponsesMockServer() as ars:
        ars.add(HOST, "/", "POST", handler)
        balances = await LedgerClient().get_token_accounts_by_owner(
            OWNER, config.USDC_MINT
        )
    assert seen["method"] == "getTokenAccountsByOwner"
    assert seen["params"][1] == {"mint": config.USDC_MINT}
    assert len(balances) == 1
    assert balances[0].amount == 2_500_000
    assert balances[0].decimals == 6
    assert balances[0].ui_amount == pytest.approx(2.5)


@pytest.mark.asyncio
async def test_send_raw_transaction_encodes_base64():
    seen = {}

    async def handler(request):
        seen.update(await request.json())
        return rpc_result("5sig")

    async with ResponsesMockServer() as ars:
        ars.add(HOST, "/", "POST", handler)
        signature = await LedgerClient().send_raw_transaction(
            b"signed-bytes", skip_preflight=True, max_retries=0
        )
    assert signature == "5sig"
    encoded, options = seen["params"]
    assert base64.b64decode(encoded) == b"signed-bytes"
    assert options["skipPreflight"] is True
    assert options["maxRetries"] == 0
    assert options["encoding"] == "base64"


@pytest.mark.asyncio
async def test_signature_status_unknown():
    async with ResponsesMockServer() as ars:
        ars.add(
            HOST, "/", "POST", rpc_result({"context": {"slot": 1}, "value": [None]})
        )
        assert await LedgerClient().get_signature_status("sig") is None


@pytest.mark.asyncio
async def test_signature_status_confirmed_and_failed():
    ok = {
        "slot": 10,
        "confirmations": 3,
        "err": None,
        "confirmationStatus": "confirmed",
    }
    failed = {**ok, "err": {"InstructionError": [2, {"Custom": 6001}]}}
    async with ResponsesMockServer() as ars:
        ars.add(HOST, "/", "POST", rpc_result({"context": {"slot": 1}, "value": [ok]}))
        ars.add(
            HOST, "/", "POST", rpc_result({"context": {"slot": 1}, "value": [failed]})
        )
        client = LedgerClient()
        status = await client.get_signature_status("sig")
        assert status.confirmed and not status.failed
        status = await client.get_signature_status("sig")
        assert status.failed


@pytest.mark.asyncio
async def test_processed_status_is_not_confirmed():
    entry = {
        "slot": 10,
        "confirmations": 0,
        "err": None,
        "confirmationStatus": "processed",
    }
    async with ResponsesMockServer() as ars:
        ars.add(
            HOST, "/", "POST", rpc_result({"context": {"slot": 1}, "value": [entry]})
        )
        status = await LedgerClient().get_signature_status("sig")
    assert not status.confirmed
    assert not status.failed


@pytest.mark.asyncio
async def test_block_height_and_latest_blockhash():
    async with ResponsesMockServer() as ars:
        ars.add(HOST, "/", "POST", rpc_result(1234))
        ars.add(
            HOST,
            "/",
            "POST",
            rpc_result(
                {
                    "context": {"slot": 1},
                    "value": {"blockhash": "abc", "lastValidBlockHeight": 1384},
                }
            ),
        )
        client = LedgerClient()
        assert await client.get_block_height() == 1234
        blockhash = await client.get_latest_blockhash()
    assert blockhash.blockhash == "abc"
    assert blockhash.last_valid_block_height == 1384


@pytest.mark.asyncio
async def test_transient_rpc_error_is_upstream_unavailable():
    async with ResponsesMockServer() as ars:
        ars.add(HOST, "/", "POST", rpc_error(-32005, "Node is behind"))
        with pytest.raises(UpstreamUnavailable):
            await LedgerClient().get_block_height()


@pytest.mark.asyncio
async def test_permanent_rpc_error():
    async with ResponsesMockServer() as ars:
        ars.add(
            HOST,
            "/",
            "POST",
            rpc_error(-32002, "Transaction simulation failed"),
        )
        with pytest.raises(RpcError) as info:
            await LedgerClient().send_raw_transaction(b"tx")
    assert info.value.code == -32002


@pytest.mark.asyncio
async def test_rate_limited_rpc():
    async with ResponsesMockServer() as ars:
        ars.add(HOST, "/", "POST", Response(text="slow down", status=429))
        with pytest.raises(UpstreamUnavailable) as info:
            await LedgerClient().get_balance(OWNER)
    assert not info.value.ambiguous


@pytest.mark.asyncio
async def test_missing_result():
    async with ResponsesMockServer() as ars:
        ars.add(
            HOST,
            "/",
            "POST",
            Response(
                text=json.dumps({"jsonrpc": "2.0", "id": 1}),
                status=200,
                headers={"Content-Type": "application/json"},
            ),
        )
        with pytest.raises(InvalidResponse):
            await LedgerClient().get_block_height()
