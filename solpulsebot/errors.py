"""Exception types shared by the trading components."""

from typing import Optional


class SwapBotError(Exception):
    """Base class for errors that are reported back to the user."""

    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def user_message(self) -> str:
        return str(self)


class InputValidationError(SwapBotError):
    """Bad amount, address or format; raised before any network call."""

    default_message = "Invalid input"


class UpstreamUnavailable(SwapBotError):
    """A network or HTTP failure talking to a remote service.

    ``ambiguous`` is set when the request may have reached the remote side
    before the failure was observed (read timeouts, 5xx responses).
    """

    default_message = "Upstream service unavailable"

    def __init__(self, message: Optional[str] = None, *, ambiguous: bool = False):
        super().__init__(message)
        self.ambiguous = ambiguous


class InvalidResponse(SwapBotError):
    default_message = "Malformed response from upstream service"


class NoRoute(SwapBotError):
    default_message = "No route found for this pair"


class QuoteExpired(SwapBotError):
    default_message = "Quote expired, request a new one"


class TransactionRejected(SwapBotError):
    default_message = "Transaction rejected"


class ConfirmationTimeout(SwapBotError):
    default_message = (
        "Transaction was not confirmed before its blockhash expired. "
        "Funds may have moved; check the explorer before retrying."
    )


class InvalidKeyFormat(SwapBotError):
    default_message = "Invalid private key"


class InvalidMnemonic(SwapBotError):
    default_message = "Invalid recovery phrase"


class InvalidPassphrase(SwapBotError):
    default_message = "Wrong passphrase or corrupted wallet record"
