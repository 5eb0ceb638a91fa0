"""Configuration and helper utilities for SolPulseTradeBot.

This module loads environment variables, configures logging and exposes
constants used across the bot.
"""

import logging
import os
import re
from decimal import Decimal, InvalidOperation
from logging.handlers import WatchedFileHandler

from dotenv import load_dotenv

load_dotenv()


def parse_duration(value: str) -> int:
    """Return seconds for a duration string like '15m' or '1h'."""
    if value.isdigit():
        return int(value)
    match = re.fullmatch(r"(\d+)([dhms])", value.lower())
    if not match:
        raise ValueError("invalid interval format")
    num, unit = match.groups()
    factor = {"d": 86400, "h": 3600, "m": 60, "s": 1}[unit]
    return int(num) * factor


def format_interval(seconds: int) -> str:
    """Return a short string representation for a duration in seconds."""
    if seconds % 86400 == 0:
        return f"{seconds // 86400}d"
    if seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    if seconds % 60 == 0:
        return f"{seconds // 60}m"
    return f"{seconds}s"


def format_price(value: float) -> str:
    """Format ``value`` as a price string."""
    # limit precision to avoid floating point artifacts like
    # ``0.00013000000000000002``
    try:
        d = Decimal(value).quantize(Decimal("1e-8"))
    except InvalidOperation:
        # infinite, or too many digits for eight decimal places
        return f"{value:.8g}"
    text = format(d.normalize(), "f")
    if "." in text:
        frac = text.split(".")[1]
        if len(frac) == 1:
            text += "0"
    return text


def short_address(address: str) -> str:
    """Return ``address`` shortened to its first and last four characters."""
    if len(address) <= 12:
        return address
    return f"{address[:4]}...{address[-4:]}"


BOT_NAME = "SolPulseTradeBot"
DB_FILE = os.getenv("DB_PATH", "wallets.db")

SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL") or "https://api.mainnet-beta.solana.com"
JUPITER_API_URL = os.getenv("JUPITER_API_URL") or "https://quote-api.jup.ag/v6"
JUPITER_PRICE_URL = os.getenv("JUPITER_PRICE_URL") or "https://price.jup.ag/v6/price"
JUPITER_TOKEN_URL = os.getenv("JUPITER_TOKEN_URL") or "https://tokens.jup.ag/token"
EXPLORER_TX_URL = "https://solscan.io/tx/{signature}"

DEFAULT_SLIPPAGE_BPS = int(os.getenv("SLIPPAGE_BPS", "100"))
DEFAULT_PRIORITY_FEE = int(os.getenv("PRIORITY_FEE", "10000"))
MIN_SLIPPAGE_BPS = 1
MAX_SLIPPAGE_BPS = 5000
MAX_PRIORITY_FEE = 10_000_000
MAX_TARGET_PRICE = 1_000_000_000
PORTFOLIO_LIMIT = 10

ALERT_CHECK_INTERVAL = parse_duration(os.getenv("ALERT_INTERVAL", "30s"))
QUOTE_TTL = parse_duration(os.getenv("QUOTE_TTL", "30s"))
SUBMIT_RETRIES = int(os.getenv("SUBMIT_RETRIES", "3"))
CONFIRM_POLL_INTERVAL = parse_duration(os.getenv("CONFIRM_POLL_INTERVAL", "2s"))
MAX_POLL_ERRORS = int(os.getenv("MAX_POLL_ERRORS", "10"))
HTTP_TIMEOUT = parse_duration(os.getenv("HTTP_TIMEOUT", "15s"))
KDF_ITERATIONS = int(os.getenv("KDF_ITERATIONS", "390000"))

WSOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
LAMPORTS_PER_SOL = 1_000_000_000
SOL_DECIMALS = 9
DERIVATION_PATH = "m/44'/501'/0'/0'"

LOG_FILE = os.getenv("LOG_FILE")
_handlers = [logging.StreamHandler()]
if LOG_FILE:
    _handlers.append(WatchedFileHandler(LOG_FILE))

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    handlers=_handlers,
    force=True,
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("apscheduler").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)
