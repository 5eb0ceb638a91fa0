"""Turn a quote into a signed, submitted and confirmed swap transaction.

Each call to :meth:`SwapExecutor.execute` walks one :class:`SwapAttempt`
through ``QUOTED -> BUILT -> SIGNED -> SUBMITTED`` and ends in one of
``CONFIRMED``, ``REJECTED``, ``TIMED_OUT`` or ``FAILED``. The outcome is
returned as a :class:`SwapResult`; errors never escape ``execute``.

A ``TIMED_OUT`` outcome is indeterminate: the transaction may still have
landed, so callers must not treat it as a failure.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

from solders.transaction import VersionedTransaction

from . import config
from .custody import Signer
from .errors import (
    ConfirmationTimeout,
    InvalidResponse,
    QuoteExpired,
    SwapBotError,
    TransactionRejected,
    UpstreamUnavailable,
)
from .ledger import RpcError
from .quotes import Quote, SwapTransaction


class SwapState(str, Enum):
    QUOTED = "quoted"
    BUILT = "built"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class SwapStep(str, Enum):
    BUILD = "build"
    SIGN = "sign"
    SUBMIT = "submit"
    CONFIRM = "confirm"


class SwapOutcome(str, Enum):
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


TRANSITIONS = {
    SwapState.QUOTED: {SwapState.BUILT, SwapState.FAILED},
    SwapState.BUILT: {SwapState.SIGNED, SwapState.FAILED},
    SwapState.SIGNED: {SwapState.SUBMITTED, SwapState.REJECTED, SwapState.FAILED},
    SwapState.SUBMITTED: {
        SwapState.CONFIRMED,
        SwapState.REJECTED,
        SwapState.TIMED_OUT,
    },
}

OUTCOMES = {
    SwapState.CONFIRMED: SwapOutcome.CONFIRMED,
    SwapState.REJECTED: SwapOutcome.REJECTED,
    SwapState.TIMED_OUT: SwapOutcome.TIMED_OUT,
    SwapState.FAILED: SwapOutcome.FAILED,
}


class SwapAttempt:
    """State of a single execution of one quote."""

    def __init__(self, quote: Quote) -> None:
        self.quote = quote
        self.state = SwapState.QUOTED
        self.history: List[SwapState] = [SwapState.QUOTED]
        self.signature: Optional[str] = None
        self.last_valid_block_height: Optional[int] = None

    @property
    def finished(self) -> bool:
        return self.state in OUTCOMES

    def advance(self, state: SwapState) -> None:
        if state not in TRANSITIONS.get(self.state, ()):
            raise RuntimeError(
                f"illegal swap transition {self.state.value} -> {state.value}"
            )
        self.state = state
        self.history.append(state)
        config.logger.info(
            "swap %s -> %s sig=%s", self.history[-2].value, state.value, self.signature
        )


@dataclass(frozen=True)
class SwapResult:
    outcome: SwapOutcome
    step: SwapStep
    signature: Optional[str] = None
    error: Optional[SwapBotError] = None
    states: Tuple[SwapState, ...] = ()

    @property
    def ok(self) -> bool:
        return self.outcome is SwapOutcome.CONFIRMED

    @property
    def indeterminate(self) -> bool:
        """True when funds may have moved without a confirmation."""
        return self.outcome is SwapOutcome.TIMED_OUT

    @property
    def explorer_url(self) -> Optional[str]:
        if not self.signature:
            return None
        return config.EXPLORER_TX_URL.format(signature=self.signature)


def sign_transaction(signer: Signer, raw: bytes) -> VersionedTransaction:
    """Sign the aggregator payload locally with ``signer``.

    The signer must be the fee payer of the transaction.
    """
    try:
        unsigned = VersionedTransaction.from_bytes(raw)
    except Exception as exc:
        raise InvalidResponse("Aggregator returned an undecodable transaction") from exc
    keypair = signer.keypair()
    message = unsigned.message
    keys = message.account_keys
    if not keys or keys[0] != keypair.pubkey():
        raise InvalidResponse("Transaction fee payer is not the active wallet")
    try:
        return VersionedTransaction(message, [keypair])
    except Exception as exc:
        raise InvalidResponse(
            "Transaction requires signers other than the wallet"
        ) from exc


class SwapExecutor:
    """Build, sign, submit and confirm swaps.

    ``quotes`` must provide ``build_swap_transaction`` and ``ledger`` the
    :class:`~solpulsebot.ledger.LedgerClient` methods used below, which keeps
    the retry and timeout policy testable without a network.
    """

    def __init__(
        self,
        quotes,
        ledger,
        *,
        submit_retries: Optional[int] = None,
        poll_interval: Optional[float] = None,
        max_poll_errors: Optional[int] = None,
        retry_backoff: float = 0.5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._quotes = quotes
        self._ledger = ledger
        self.submit_retries = submit_retries or config.SUBMIT_RETRIES
        self.poll_interval = (
            config.CONFIRM_POLL_INTERVAL if poll_interval is None else poll_interval
        )
        self.max_poll_errors = max_poll_errors or config.MAX_POLL_ERRORS
        self.retry_backoff = retry_backoff
        self._clock = clock

    async def execute(
        self,
        signer: Signer,
        quote: Quote,
        priority_fee: int,
        *,
        user: Optional[int] = None,
    ) -> SwapResult:
        """Execute ``quote`` for ``signer`` and classify the outcome."""
        attempt = SwapAttempt(quote)
        if quote.is_expired(self._clock()):
            return self._finish(
                attempt, SwapState.FAILED, SwapStep.BUILD, QuoteExpired()
            )
        try:
            swap_tx = await self._quotes.build_swap_transaction(
                quote, signer.public_address, priority_fee, user=user
            )
        except SwapBotError as exc:
            return self._finish(attempt, SwapState.FAILED, SwapStep.BUILD, exc)
        attempt.advance(SwapState.BUILT)

        try:
            signed = sign_transaction(signer, swap_tx.raw)
        except SwapBotError as exc:
            return self._finish(attempt, SwapState.FAILED, SwapStep.SIGN, exc)
        attempt.signature = str(signed.signatures[0])
        attempt.advance(SwapState.SIGNED)

        # once submission starts the attempt runs to a terminal state even if
        # the calling task is cancelled
        return await asyncio.shield(self._submit_and_confirm(attempt, signed, swap_tx))

    async def _submit_and_confirm(
        self,
        attempt: SwapAttempt,
        signed: VersionedTransaction,
        swap_tx: SwapTransaction,
    ) -> SwapResult:
        ceiling = swap_tx.last_valid_block_height
        if ceiling is None:
            try:
                blockhash = await self._ledger.get_latest_blockhash()
            except SwapBotError as exc:
                return self._finish(attempt, SwapState.FAILED, SwapStep.SUBMIT, exc)
            ceiling = blockhash.last_valid_block_height
        attempt.last_valid_block_height = ceiling

        raw = bytes(signed)
        ambiguous = False
        last_error: Optional[SwapBotError] = None
        for number in range(1, self.submit_retries + 1):
            try:
                await self._ledger.send_raw_transaction(
                    raw, skip_preflight=True, max_retries=0
                )
                break
            except RpcError as exc:
                return self._finish(
                    attempt,
                    SwapState.REJECTED,
                    SwapStep.SUBMIT,
                    TransactionRejected(f"Node refused the transaction: {exc}"),
                )
            except (UpstreamUnavailable, InvalidResponse) as exc:
                last_error = exc
                ambiguous = ambiguous or getattr(exc, "ambiguous", True)
                config.logger.warning(
                    "submit attempt %s/%s failed sig=%s: %s",
                    number,
                    self.submit_retries,
                    attempt.signature,
                    exc,
                )
                if number < self.submit_retries:
                    await asyncio.sleep(self.retry_backoff * number)
        else:
            if not ambiguous:
                return self._finish(
                    attempt, SwapState.FAILED, SwapStep.SUBMIT, last_error
                )
            config.logger.warning(
                "submission outcome unknown sig=%s, watching the ledger",
                attempt.signature,
            )
        attempt.advance(SwapState.SUBMITTED)
        return await self._confirm(attempt, ceiling)

    async def _confirm(self, attempt: SwapAttempt, ceiling: int) -> SwapResult:
        signature = attempt.signature
        errors = 0
        while True:
            try:
                status = await self._ledger.get_signature_status(signature)
                if status is not None and status.failed:
                    return self._rejected(attempt, status.err)
                if status is not None and status.confirmed:
                    return self._finish(attempt, SwapState.CONFIRMED, SwapStep.CONFIRM)
                height = await self._ledger.get_block_height()
                errors = 0
            except SwapBotError as exc:
                errors += 1
                config.logger.warning(
                    "confirmation poll %s failed sig=%s: %s", errors, signature, exc
                )
                if errors >= self.max_poll_errors:
                    return self._finish(
                        attempt,
                        SwapState.TIMED_OUT,
                        SwapStep.CONFIRM,
                        ConfirmationTimeout(
                            "Lost contact with the ledger while confirming. "
                            "Funds may have moved; check the explorer before retrying."
                        ),
                    )
                await asyncio.sleep(self.poll_interval)
                continue

            if height > ceiling:
                # the transaction may have landed between the two calls
                try:
                    status = await self._ledger.get_signature_status(signature)
                except SwapBotError:
                    status = None
                if status is not None and status.failed:
                    return self._rejected(attempt, status.err)
                if status is not None and status.confirmed:
                    return self._finish(attempt, SwapState.CONFIRMED, SwapStep.CONFIRM)
                return self._finish(
                    attempt,
                    SwapState.TIMED_OUT,
                    SwapStep.CONFIRM,
                    ConfirmationTimeout(),
                )
            await asyncio.sleep(self.poll_interval)

    def _rejected(self, attempt: SwapAttempt, err) -> SwapResult:
        return self._finish(
            attempt,
            SwapState.REJECTED,
            SwapStep.CONFIRM,
            TransactionRejected(f"Transaction failed on-chain: {err}"),
        )

    def _finish(
        self,
        attempt: SwapAttempt,
        state: SwapState,
        step: SwapStep,
        error: Optional[SwapBotError] = None,
    ) -> SwapResult:
        attempt.advance(state)
        if error is None:
            config.logger.info("swap confirmed sig=%s", attempt.signature)
        else:
            config.logger.warning(
                "swap %s at %s sig=%s: %s",
                state.value,
                step.value,
                attempt.signature,
                error,
            )
        return SwapResult(
            outcome=OUTCOMES[state],
            step=step,
            signature=attempt.signature,
            error=error,
            states=tuple(attempt.history),
        )
