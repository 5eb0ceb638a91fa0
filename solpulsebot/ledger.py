"""Minimal Solana JSON-RPC client built on :func:`solpulsebot.api.api_request`."""

import base64
from dataclasses import dataclass
from typing import Any, List, Optional

import aiohttp

from . import config
from .api import api_request, check_status
from .errors import InvalidResponse, SwapBotError, UpstreamUnavailable

# Node health and slot availability errors; the same request may succeed later.
TRANSIENT_RPC_CODES = {-32004, -32005, -32007, -32014, -32016}


class RpcError(SwapBotError):
    """The node refused a request for a reason retrying will not fix."""

    default_message = "RPC request refused"

    def __init__(self, code: Optional[int], message: str) -> None:
        super().__init__(f"{message} (code {code})" if code is not None else message)
        self.code = code


@dataclass(frozen=True)
class SignatureStatus:
    slot: int
    confirmations: Optional[int]
    err: Any
    confirmation_status: Optional[str]

    @property
    def failed(self) -> bool:
        return self.err is not None

    @property
    def confirmed(self) -> bool:
        if self.confirmation_status in ("confirmed", "finalized"):
            return True
        # a null confirmation count means the block is rooted
        return self.confirmation_status is None and self.confirmations is None


@dataclass(frozen=True)
class Blockhash:
    blockhash: str
    last_valid_block_height: int


@dataclass(frozen=True)
class TokenBalance:
    mint: str
    amount: int
    decimals: int

    @property
    def ui_amount(self) -> float:
        return self.amount / 10**self.decimals


class LedgerClient:
    """Read and submit calls against a Solana RPC node."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        commitment: str = "confirmed",
    ) -> None:
        self.rpc_url = rpc_url or config.SOLANA_RPC_URL
        self.session = session
        self.commitment = commitment

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        status, data = await api_request(
            "POST",
            self.rpc_url,
            session=self.session,
            json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params},
        )
        check_status(status, f"RPC {method}")
        if status != 200 or not isinstance(data, dict):
            raise InvalidResponse(f"RPC {method} returned HTTP {status}")
        error = data.get("error")
        if error is not None:
            code = error.get("code") if isinstance(error, dict) else None
            if isinstance(error, dict):
                message = str(error.get("message", error))
            else:
                message = str(error)
            if code in TRANSIENT_RPC_CODES:
                raise UpstreamUnavailable(f"RPC {method}: {message}")
            raise RpcError(code, message)
        if "result" not in data:
            raise InvalidResponse(f"RPC {method} response has no result")
        return data["result"]

    @staticmethod
    def _value(result: Any, method: str) -> Any:
        if not isinstance(result, dict) or "value" not in result:
            raise InvalidResponse(f"RPC {method} response has no value")
        return result["value"]

    async def get_balance(self, address: str) -> int:
        """Return the SOL balance of ``address`` in lamports."""
        result = await self._rpc(
            "getBalance", [address, {"commitment": self.commitment}]
        )
        value = self._value(result, "getBalance")
        if not isinstance(value, int):
            raise InvalidResponse("getBalance value is not an integer")
        return value

    async def get_token_accounts_by_owner(
        self, owner: str, mint: Optional[str] = None
    ) -> List[TokenBalance]:
        """Return SPL token balances held by ``owner``, optionally for one mint."""
        if mint:
            filter_option = {"mint": mint}
        else:
            filter_option = {"programId": config.TOKEN_PROGRAM_ID}
        result = await self._rpc(
            "getTokenAccountsByOwner",
            [
                owner,
                filter_option,
                {"encoding": "jsonParsed", "commitment": self.commitment},
            ],
        )
        balances: List[TokenBalance] = []
        accounts = self._value(result, "getTokenAccountsByOwner")
        if not isinstance(accounts, list):
            raise InvalidResponse("getTokenAccountsByOwner value is not a list")
        for item in accounts:
            try:
                info = item["account"]["data"]["parsed"]["info"]
                amount = info["tokenAmount"]
                balances.append(
                    TokenBalance(
                        mint=info["mint"],
                        amount=int(amount["amount"]),
                        decimals=int(amount["decimals"]),
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise InvalidResponse("Token account payload is malformed") from exc
        return balances

    async def send_raw_transaction(
        self,
        raw: bytes,
        *,
        skip_preflight: bool = True,
        max_retries: Optional[int] = None,
    ) -> str:
        """Submit a signed transaction and return its signature."""
        options: dict = {
            "encoding": "base64",
            "skipPreflight": skip_preflight,
            "preflightCommitment": self.commitment,
        }
        if max_retries is not None:
            options["maxRetries"] = max_retries
        result = await self._rpc(
            "sendTransaction", [base64.b64encode(raw).decode("ascii"), options]
        )
        if not isinstance(result, str) or not result:
            raise InvalidResponse("sendTransaction returned no signature")
        return result

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        """Return the status of ``signature``, ``None`` if the node has not seen it."""
        result = await self._rpc("getSignatureStatuses", [[signature]])
        value = self._value(result, "getSignatureStatuses")
        if not value or value[0] is None:
            return None
        entry = value[0]
        try:
            return SignatureStatus(
                slot=int(entry["slot"]),
                confirmations=entry.get("confirmations"),
                err=entry.get("err"),
                confirmation_status=entry.get("confirmationStatus"),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise InvalidResponse("Signature status payload is malformed") from exc

    async def get_block_height(self) -> int:
        result = await self._rpc("getBlockHeight", [{"commitment": self.commitment}])
        if not isinstance(result, int):
            raise InvalidResponse("getBlockHeight result is not an integer")
        return result

    async def get_latest_blockhash(self) -> Blockhash:
        result = await self._rpc(
            "getLatestBlockhash", [{"commitment": self.commitment}]
        )
        value = self._value(result, "getLatestBlockhash")
        try:
            return Blockhash(
                blockhash=str(value["blockhash"]),
                last_valid_block_height=int(value["lastValidBlockHeight"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidResponse("getLatestBlockhash payload is malformed") from exc
