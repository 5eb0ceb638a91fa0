"""Telegram command and text handlers used by the bot."""

import asyncio
import functools
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional

import aiohttp
from telegram import Bot, Update
from telegram.error import TelegramError
from telegram.ext import ContextTypes

from . import config, custody, db, vault
from .api import PriceOracle, TokenDirectory
from .errors import InputValidationError, SwapBotError
from .executor import SwapExecutor, SwapOutcome, SwapResult
from .ledger import LedgerClient
from .monitor import AlertMonitor, Notify
from .quotes import (
    Quote,
    QuoteClient,
    to_smallest_unit,
    validate_mint,
    validate_slippage,
)
from .session import (
    SECRET_MODES,
    AlertDirection,
    InputMode,
    PendingTrade,
    SessionStore,
    TradeDirection,
)

UP_ARROW = "\U0001f53a"
DOWN_ARROW = "\U0001f53b"
ROCKET = "\U0001f680"
BELL_EMOJI = "\U0001f514"
WALLET_EMOJI = "\U0001f45b"
KEY_EMOJI = "\U0001f511"
LIST_EMOJI = "\U0001f4cb"
HELP_EMOJI = "\u2753"
WELCOME_EMOJI = "\U0001f44b"
INFO_EMOJI = "\u2139\ufe0f"
SUCCESS_EMOJI = "\u2705"
ERROR_EMOJI = "\u26a0\ufe0f"
SETTINGS_EMOJI = "\u2699\ufe0f"
HOURGLASS_EMOJI = "\u23f3"
DEFAULT_ALERT_EMOJI = BELL_EMOJI

user_messages: Dict[int, Deque[float]] = defaultdict(deque)
global_messages: Deque[float] = deque()

# Commands organized by category for help output
COMMAND_CATEGORIES: dict[str, list[tuple[str, str]]] = {
    "Start": [
        ("start", "Show welcome message"),
    ],
    "Wallet": [
        ("create", "Create a new wallet"),
        ("import", "Import a private key"),
        ("recover", "Restore from a recovery phrase"),
        ("wallet", "Show the active wallet"),
        ("balance", "SOL and token balances"),
        ("portfolio", "Holdings valued in USD"),
        ("save", "Encrypt and store the wallet"),
        ("unlock", "Load the stored wallet"),
        ("forget", "Delete the stored wallet"),
        ("disconnect", "Disconnect the active wallet"),
    ],
    "Trading": [
        ("buy", "Buy a token with SOL"),
        ("sell", "Sell a token for SOL"),
        ("confirm", "Execute the pending trade"),
        ("cancel", "Cancel pending trade or input"),
        ("price", "Token price"),
    ],
    "Alerts": [
        ("alert", "Create a price alert"),
        ("alerts", "List your alerts"),
        ("removealert", "Remove an alert"),
    ],
    "Bot Settings": [
        ("settings", "Show your settings"),
        ("slippage", "Set slippage in bps"),
        ("fee", "Set priority fee in lamports"),
    ],
    "General": [
        ("help", "Show help"),
    ],
}

# Flattened list for bot registration
COMMANDS: list[tuple[str, str]] = [
    cmd for cmds in COMMAND_CATEGORIES.values() for cmd in cmds
]

NO_WALLET = (
    f"{ERROR_EMOJI} No wallet connected. Use /create, /import, /recover or /unlock"
)


@dataclass
class BotServices:
    """Stores and clients shared by every handler."""

    store: SessionStore
    quotes: QuoteClient
    ledger: LedgerClient
    executor: SwapExecutor
    oracle: PriceOracle
    tokens: TokenDirectory
    http: Optional[aiohttp.ClientSession] = None
    monitor: Optional[AlertMonitor] = None

    async def close(self) -> None:
        if self.monitor is not None:
            self.monitor.stop()
        self.store.close()
        if self.http is not None and not self.http.closed:
            await self.http.close()


def build_services(http: Optional[aiohttp.ClientSession] = None) -> BotServices:
    """Create the default stores and clients around one HTTP session."""
    quotes = QuoteClient(session=http)
    ledger = LedgerClient(session=http)
    return BotServices(
        store=SessionStore(),
        quotes=quotes,
        ledger=ledger,
        executor=SwapExecutor(quotes, ledger),
        oracle=PriceOracle(session=http),
        tokens=TokenDirectory(session=http),
        http=http,
    )


def services(context: ContextTypes.DEFAULT_TYPE) -> BotServices:
    return context.bot_data["services"]


async def send_rate_limited(
    bot: Bot,
    chat_id: int,
    text: str,
    emoji: str = DEFAULT_ALERT_EMOJI,
) -> None:
    """Send a message while enforcing per-user and global rate limits."""
    now = time.time()
    user_q = user_messages[chat_id]
    while user_q and now - user_q[0] > 60:
        user_q.popleft()
    while global_messages and now - global_messages[0] > 1:
        global_messages.popleft()
    if len(user_q) >= 20:
        wait = max(0, 60 - (now - user_q[0]))
        await asyncio.sleep(wait)
    if len(global_messages) >= 30:
        wait = max(0, 1 - (now - global_messages[0]))
        await asyncio.sleep(wait)
    await bot.send_message(chat_id=chat_id, text=f"{emoji} {text}")
    user_q.append(time.time())
    global_messages.append(time.time())


def alert_notifier(bot: Bot) -> Notify:
    """Return the callback the alert monitor uses to deliver messages."""

    async def notify(chat_id: int, text: str) -> None:
        await send_rate_limited(bot, chat_id, text, emoji=BELL_EMOJI)

    return notify


def command(func):
    """Wrap a command handler so it supersedes any pending text input."""

    @functools.wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        store = services(context).store
        user_id = update.effective_user.id
        async with store.locked(user_id, update.effective_chat.id) as session:
            if session.cancel_input():
                config.logger.info(
                    "user=%s input superseded by %s", user_id, func.__name__
                )
        await func(update, context)

    return wrapper


def describe_quote(
    quote: Quote, direction: TradeDirection, input_label: str, output_label: str
) -> str:
    arrow = UP_ARROW if direction is TradeDirection.BUY else DOWN_ARROW
    return (
        f"{arrow} {direction.value.capitalize()} quote\n"
        f"In: {quote.input_amount} of {input_label}\n"
        f"Out (est.): {quote.estimated_output_amount} of {output_label}\n"
        f"Minimum out: {quote.minimum_output_amount}\n"
        f"Price impact: {quote.price_impact * 100:.2f}%\n"
        f"Slippage: {quote.slippage_bps / 100:.2f}%\n"
        f"Route: {' > '.join(quote.route)}"
    )


def describe_result(result: SwapResult) -> str:
    """Return the reply for ``result``, naming the step that failed."""
    link = f"\n{result.explorer_url}" if result.explorer_url else ""
    if result.outcome is SwapOutcome.CONFIRMED:
        return f"{SUCCESS_EMOJI} Swap confirmed{link}"
    reason = result.error.user_message if result.error else "unknown error"
    if result.outcome is SwapOutcome.TIMED_OUT:
        return (
            f"{HOURGLASS_EMOJI} Swap not confirmed at the {result.step.value} step: "
            f"{reason}{link}"
        )
    if result.outcome is SwapOutcome.REJECTED:
        return (
            f"{ERROR_EMOJI} Swap rejected at the {result.step.value} step: "
            f"{reason}{link}"
        )
    return f"{ERROR_EMOJI} Swap failed at the {result.step.value} step: {reason}{link}"


@command
async def start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Send a welcome message."""
    await update.message.reply_text(
        f"{WELCOME_EMOJI} Welcome to {config.BOT_NAME}! Use /create or /import "
        "to connect a wallet, then /buy, /sell or /alert. Send /help for all "
        "commands."
    )


@command
async def help_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Display available commands and usage information."""
    lines: list[str] = []
    for category, commands in COMMAND_CATEGORIES.items():
        for name, desc in commands:
            lines.append(f"/{name} - {desc}")
    lines.append("Amounts are in SOL for /buy and in tokens for /sell")
    await update.message.reply_text(f"{HELP_EMOJI} Commands\n" + "\n".join(lines))


@command
async def create_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Generate a mnemonic-backed wallet and make it active."""
    signer = custody.generate()
    store = services(context).store
    async with store.locked(update.effective_user.id) as session:
        session.connect(signer)
    config.logger.info(
        "user=%s created wallet %s", update.effective_user.id, signer.public_address
    )
    await update.message.reply_text(
        f"{WALLET_EMOJI} New wallet created\n"
        f"Address: {signer.public_address}\n\n"
        f"{KEY_EMOJI} Recovery phrase (write it down, it is not shown again):\n"
        f"{signer.recovery_phrase}\n\n"
        "Use /save to keep an encrypted copy."
    )


@command
async def import_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Ask for a private key in the next message."""
    store = services(context).store
    async with store.locked(update.effective_user.id) as session:
        session.begin_input(InputMode.AWAITING_SECRET_KEY)
    await update.message.reply_text(
        f"{KEY_EMOJI} Send your private key (base58 or JSON byte array). "
        "The message will be deleted."
    )


@command
async def recover_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Ask for a recovery phrase in the next message."""
    store = services(context).store
    async with store.locked(update.effective_user.id) as session:
        session.begin_input(InputMode.AWAITING_PHRASE)
    await update.message.reply_text(
        f"{KEY_EMOJI} Send your 12 or 24 word recovery phrase. "
        "The message will be deleted."
    )


@command
async def wallet_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Show the active wallet address."""
    store = services(context).store
    async with store.locked(update.effective_user.id) as session:
        signer = session.signer
    if signer is None:
        await update.message.reply_text(NO_WALLET)
        return
    await update.message.reply_text(
        f"{WALLET_EMOJI} Active wallet\n{signer.public_address}"
    )


@command
async def disconnect_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Wipe the active signer from memory."""
    store = services(context).store
    async with store.locked(update.effective_user.id) as session:
        had_wallet = session.disconnect()
    if not had_wallet:
        await update.message.reply_text(NO_WALLET)
        return
    config.logger.info("user=%s disconnected wallet", update.effective_user.id)
    await update.message.reply_text(f"{SUCCESS_EMOJI} Wallet disconnected")


@command
async def save_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Ask for a passphrase to encrypt the active wallet with."""
    store = services(context).store
    async with store.locked(update.effective_user.id) as session:
        if session.signer is None:
            ready = False
        else:
            session.begin_input(InputMode.AWAITING_SAVE_PASSPHRASE)
            ready = True
    if not ready:
        await update.message.reply_text(NO_WALLET)
        return
    await update.message.reply_text(
        f"{KEY_EMOJI} Send a passphrase of at least "
        f"{vault.MIN_PASSPHRASE_LENGTH} characters. The message will be deleted."
    )


@command
async def unlock_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Ask for the passphrase of the stored wallet."""
    record = await db.load_wallet(update.effective_user.id)
    if record is None:
        await update.message.reply_text(f"{ERROR_EMOJI} No stored wallet. Use /save")
        return
    store = services(context).store
    async with store.locked(update.effective_user.id) as session:
        session.begin_input(InputMode.AWAITING_UNLOCK_PASSPHRASE)
    await update.message.reply_text(
        f"{KEY_EMOJI} Send the passphrase for "
        f"{config.short_address(record.public_address)}. The message will be deleted."
    )


@command
async def forget_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Delete the stored encrypted wallet."""
    user_id = update.effective_user.id
    if await db.load_wallet(user_id) is None:
        await update.message.reply_text(f"{ERROR_EMOJI} No stored wallet")
        return
    await db.delete_wallet(user_id)
    await update.message.reply_text(f"{SUCCESS_EMOJI} Stored wallet deleted")


@command
async def balance_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Show SOL and non-zero token balances of the active wallet."""
    svc = services(context)
    async with svc.store.locked(update.effective_user.id) as session:
        signer = session.signer
    if signer is None:
        await update.message.reply_text(NO_WALLET)
        return
    address = signer.public_address
    try:
        lamports, tokens = await asyncio.gather(
            svc.ledger.get_balance(address),
            svc.ledger.get_token_accounts_by_owner(address),
        )
    except SwapBotError as exc:
        await update.message.reply_text(
            f"{ERROR_EMOJI} Balance lookup failed: {exc.user_message}"
        )
        return
    held = [t for t in tokens if t.amount]
    labels = await asyncio.gather(
        *(svc.tokens.label(t.mint, user=update.effective_user.id) for t in held)
    )
    lines = [
        f"{WALLET_EMOJI} {config.short_address(address)}",
        f"SOL: {lamports / config.LAMPORTS_PER_SOL:.4f}",
    ]
    for token, label in zip(held, labels):
        lines.append(f"{label}: {token.ui_amount:,.6g}")
    await update.message.reply_text("\n".join(lines))


def _usd(amount: float, price: Optional[float]) -> str:
    if price is None:
        return "N/A"
    return f"${amount * price:,.2f}"


@command
async def portfolio_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Show SOL and the largest token holdings valued in USD."""
    svc = services(context)
    user_id = update.effective_user.id
    async with svc.store.locked(user_id) as session:
        signer = session.signer
    if signer is None:
        await update.message.reply_text(NO_WALLET)
        return
    address = signer.public_address
    await update.message.reply_text(f"{HOURGLASS_EMOJI} Fetching portfolio...")
    try:
        lamports, tokens = await asyncio.gather(
            svc.ledger.get_balance(address),
            svc.ledger.get_token_accounts_by_owner(address),
        )
    except SwapBotError as exc:
        await update.message.reply_text(
            f"{ERROR_EMOJI} Portfolio lookup failed: {exc.user_message}"
        )
        return
    held = sorted((t for t in tokens if t.amount), key=lambda t: -t.ui_amount)
    held = held[: config.PORTFOLIO_LIMIT]
    try:
        prices = await svc.oracle.get_prices(
            [config.WSOL_MINT] + [t.mint for t in held], user=user_id
        )
    except SwapBotError as exc:
        config.logger.warning("portfolio prices unavailable user=%s: %s", user_id, exc)
        prices = {}
    labels = await asyncio.gather(
        *(svc.tokens.label(t.mint, user=user_id) for t in held)
    )

    sol = lamports / config.LAMPORTS_PER_SOL
    sol_price = prices.get(config.WSOL_MINT)
    total = sol * sol_price if sol_price is not None else 0.0
    lines = [
        f"{LIST_EMOJI} Portfolio {config.short_address(address)}",
        f"SOL: {sol:.4f} ({_usd(sol, sol_price)})",
    ]
    if not held:
        lines.append("No token holdings")
    for token, label in zip(held, labels):
        price = prices.get(token.mint)
        if price is not None:
            total += token.ui_amount * price
        value = _usd(token.ui_amount, price)
        lines.append(f"{label}: {token.ui_amount:,.6g} ({value})")
    lines.append(f"Total: ${total:,.2f}")
    await update.message.reply_text("\n".join(lines))


async def _reply_price(update: Update, svc: BotServices, text: str) -> None:
    mint = validate_mint(text)
    user_id = update.effective_user.id
    price = await svc.oracle.get_price(mint, user=user_id)
    short = config.short_address(mint)
    if price is None:
        await update.message.reply_text(f"{ERROR_EMOJI} No price available for {short}")
        return
    try:
        info = await svc.tokens.get_token(mint, user=user_id)
    except SwapBotError as exc:
        config.logger.warning("token lookup failed for %s: %s", mint, exc)
        info = None
    name = f"{info.name} ({info.label}) " if info is not None else ""
    await update.message.reply_text(
        f"{INFO_EMOJI} {name}{short}: ${config.format_price(price)}"
    )


@command
async def price_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Show the USD price of a token, or ask for one."""
    svc = services(context)
    if not context.args:
        async with svc.store.locked(update.effective_user.id) as session:
            session.begin_input(InputMode.AWAITING_PRICE_CHECK)
        await update.message.reply_text(f"{INFO_EMOJI} Send a token address")
        return
    try:
        await _reply_price(update, svc, context.args[0])
    except SwapBotError as exc:
        await update.message.reply_text(f"{ERROR_EMOJI} {exc.user_message}")


async def _quote_trade(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    direction: TradeDirection,
) -> None:
    svc = services(context)
    user_id = update.effective_user.id
    async with svc.store.locked(user_id) as session:
        signer = session.signer
        slippage = session.settings.slippage_bps
        request = session.begin_trade_request()
    if signer is None:
        await update.message.reply_text(NO_WALLET)
        return
    try:
        mint = validate_mint(context.args[0])
        if direction is TradeDirection.BUY:
            amount = to_smallest_unit(context.args[1], config.SOL_DECIMALS)
            pair = (config.WSOL_MINT, mint)
        else:
            amount = await _sell_amount(
                svc, signer.public_address, mint, context.args[1]
            )
            pair = (mint, config.WSOL_MINT)
        quote = await svc.quotes.get_quote(*pair, amount, slippage, user=user_id)
    except SwapBotError as exc:
        await update.message.reply_text(
            f"{ERROR_EMOJI} Quote failed: {exc.user_message}"
        )
        return
    trade = PendingTrade(user_id=user_id, quote=quote, direction=direction, asset=mint)
    async with svc.store.locked(user_id) as session:
        stale = session.trade_request != request
        if not stale:
            replaced = session.set_pending_trade(trade)
    if stale:
        config.logger.info("user=%s quote request %s superseded", user_id, request)
        await update.message.reply_text(
            f"{INFO_EMOJI} Quote discarded, a newer request replaced it"
        )
        return
    input_label, output_label = await asyncio.gather(
        svc.tokens.label(quote.input_asset, user=user_id),
        svc.tokens.label(quote.output_asset, user=user_id),
    )
    note = "\nThe previous pending trade was replaced." if replaced else ""
    await update.message.reply_text(
        f"{describe_quote(quote, direction, input_label, output_label)}\n\n"
        f"Send /confirm within {config.format_interval(int(config.QUOTE_TTL))} "
        f"or /cancel.{note}"
    )


async def _sell_amount(svc: BotServices, owner: str, mint: str, value: str) -> int:
    holdings = await svc.ledger.get_token_accounts_by_owner(owner, mint)
    held = sum(h.amount for h in holdings)
    if not holdings or held <= 0:
        raise InputValidationError(
            f"You hold no {config.short_address(mint)} in this wallet"
        )
    if value.lower() == "all":
        return held
    amount = to_smallest_unit(value, holdings[0].decimals)
    if amount > held:
        raise InputValidationError("Amount exceeds your token balance")
    return amount


@command
async def buy_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Quote buying a token with SOL and keep it as the pending trade."""
    if not context.args or len(context.args) != 2:
        await update.message.reply_text(f"{ERROR_EMOJI} Usage: /buy <mint> <sol>")
        return
    await _quote_trade(update, context, TradeDirection.BUY)


@command
async def sell_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Quote selling a token for SOL and keep it as the pending trade."""
    if not context.args or len(context.args) != 2:
        await update.message.reply_text(
            f"{ERROR_EMOJI} Usage: /sell <mint> <amount|all>"
        )
        return
    await _quote_trade(update, context, TradeDirection.SELL)


@command
async def confirm_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Execute the pending trade."""
    svc = services(context)
    user_id = update.effective_user.id
    async with svc.store.locked(user_id) as session:
        signer = session.signer
        if signer is None:
            trade = None
        else:
            trade = session.take_pending_trade()
        fee = session.settings.priority_fee_lamports
    if signer is None:
        await update.message.reply_text(NO_WALLET)
        return
    if trade is None:
        await update.message.reply_text(
            f"{ERROR_EMOJI} No pending trade. Use /buy or /sell first"
        )
        return
    await update.message.reply_text(f"{ROCKET} Submitting {trade.direction.value}...")
    result = await svc.executor.execute(signer, trade.quote, fee, user=user_id)
    config.logger.info(
        "user=%s %s %s outcome=%s step=%s sig=%s",
        user_id,
        trade.direction.value,
        trade.asset,
        result.outcome.value,
        result.step.value,
        result.signature,
    )
    await update.message.reply_text(describe_result(result))


async def cancel_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Clear the pending trade and any awaited input."""
    store = services(context).store
    async with store.locked(update.effective_user.id, update.effective_chat.id) as s:
        had_input = s.cancel_input()
        had_trade = s.take_pending_trade() is not None
        s.drop_trade_requests()
    if not had_input and not had_trade:
        await update.message.reply_text(f"{INFO_EMOJI} Nothing to cancel")
        return
    await update.message.reply_text(f"{SUCCESS_EMOJI} Cancelled")


async def _create_alert(
    update: Update,
    svc: BotServices,
    mint: str,
    target_text: str,
    direction_text: Optional[str] = None,
) -> None:
    user_id = update.effective_user.id
    mint = validate_mint(mint)
    try:
        target = float(target_text)
    except ValueError:
        raise InputValidationError("Target price must be a number") from None
    if direction_text is None:
        current = await svc.oracle.get_price(mint, user=user_id)
        if current is None:
            raise InputValidationError(
                "No current price, specify the direction: above or below"
            )
        direction = AlertDirection.ABOVE if target > current else AlertDirection.BELOW
    else:
        try:
            direction = AlertDirection(direction_text.lower())
        except ValueError:
            raise InputValidationError("Direction must be above or below") from None
    async with svc.store.locked(user_id) as session:
        alert = svc.store.add_alert(session, mint, target, direction)
    arrow = UP_ARROW if direction is AlertDirection.ABOVE else DOWN_ARROW
    label = await svc.tokens.label(mint, user=user_id)
    await update.message.reply_text(
        f"{BELL_EMOJI} Alert #{alert.id} created\n"
        f"{label} {arrow} {direction.value} "
        f"${config.format_price(target)}"
    )


@command
async def alert_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Create a price alert or ask for its target in the next message."""
    svc = services(context)
    args = context.args or []
    if not args or len(args) > 3:
        await update.message.reply_text(
            f"{ERROR_EMOJI} Usage: /alert <mint> [price] [above|below]"
        )
        return
    try:
        if len(args) == 1:
            mint = validate_mint(args[0])
            async with svc.store.locked(update.effective_user.id) as session:
                session.begin_input(InputMode.AWAITING_ALERT_TARGET, asset=mint)
            await update.message.reply_text(
                f"{BELL_EMOJI} Send the target price, optionally followed by "
                "above or below"
            )
            return
        await _create_alert(update, svc, *args)
    except SwapBotError as exc:
        await update.message.reply_text(f"{ERROR_EMOJI} {exc.user_message}")


@command
async def alerts_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """List the user's live alerts."""
    svc = services(context)
    user_id = update.effective_user.id
    async with svc.store.locked(user_id) as session:
        alerts = svc.store.alerts_for(session)
    if not alerts:
        await update.message.reply_text(f"{INFO_EMOJI} No active alerts")
        return
    labels = await asyncio.gather(
        *(svc.tokens.label(alert.asset, user=user_id) for alert in alerts)
    )
    lines = [f"{LIST_EMOJI} Your alerts"]
    for alert, label in zip(alerts, labels):
        arrow = UP_ARROW if alert.direction is AlertDirection.ABOVE else DOWN_ARROW
        lines.append(
            f"#{alert.id} {label} {arrow} "
            f"{alert.direction.value} ${config.format_price(alert.target_price)}"
        )
    lines.append("Use /removealert <id> to remove an alert")
    await update.message.reply_text("\n".join(lines))


@command
async def removealert_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Remove one of the user's alerts by id."""
    if not context.args:
        await update.message.reply_text(f"{ERROR_EMOJI} Usage: /removealert <id>")
        return
    try:
        alert_id = int(context.args[0].lstrip("#"))
    except ValueError:
        await update.message.reply_text(f"{ERROR_EMOJI} Alert id must be a number")
        return
    store = services(context).store
    async with store.locked(update.effective_user.id) as session:
        removed = store.remove_alert(session, alert_id)
    if not removed:
        await update.message.reply_text(f"{ERROR_EMOJI} Alert #{alert_id} not found")
        return
    await update.message.reply_text(f"{SUCCESS_EMOJI} Alert #{alert_id} removed")


@command
async def settings_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Show the user's trading settings."""
    store = services(context).store
    async with store.locked(update.effective_user.id) as session:
        settings = session.settings
        slippage, fee = settings.slippage_bps, settings.priority_fee_lamports
    await update.message.reply_text(
        f"{SETTINGS_EMOJI} Settings\n"
        f"Slippage: {slippage} bps ({slippage / 100:.2f}%)\n"
        f"Priority fee: {fee} lamports\n"
        "Change with /slippage <bps> or /fee <lamports>"
    )


@command
async def slippage_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Set the slippage tolerance in basis points."""
    if not context.args:
        await update.message.reply_text(f"{ERROR_EMOJI} Usage: /slippage <bps>")
        return
    try:
        bps = validate_slippage(int(context.args[0]))
    except ValueError:
        await update.message.reply_text(f"{ERROR_EMOJI} Slippage must be a number")
        return
    except SwapBotError as exc:
        await update.message.reply_text(f"{ERROR_EMOJI} {exc.user_message}")
        return
    store = services(context).store
    async with store.locked(update.effective_user.id) as session:
        session.settings.slippage_bps = bps
    await update.message.reply_text(
        f"{SUCCESS_EMOJI} Slippage set to {bps} bps ({bps / 100:.2f}%)"
    )


@command
async def fee_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Set the priority fee in lamports."""
    if not context.args:
        await update.message.reply_text(f"{ERROR_EMOJI} Usage: /fee <lamports>")
        return
    try:
        fee = int(context.args[0])
    except ValueError:
        await update.message.reply_text(f"{ERROR_EMOJI} Fee must be a whole number")
        return
    if not 0 <= fee <= config.MAX_PRIORITY_FEE:
        await update.message.reply_text(
            f"{ERROR_EMOJI} Fee must be between 0 and {config.MAX_PRIORITY_FEE}"
        )
        return
    store = services(context).store
    async with store.locked(update.effective_user.id) as session:
        session.settings.priority_fee_lamports = fee
    await update.message.reply_text(f"{SUCCESS_EMOJI} Priority fee set to {fee}")


async def _delete_secret_message(update: Update) -> None:
    try:
        await update.message.delete()
    except TelegramError as exc:
        config.logger.warning(
            "could not delete secret message user=%s: %s",
            update.effective_user.id,
            exc,
        )


async def _connect(update: Update, svc: BotServices, signer: custody.Signer) -> None:
    async with svc.store.locked(update.effective_user.id) as session:
        session.connect(signer)
    config.logger.info(
        "user=%s connected wallet %s", update.effective_user.id, signer.public_address
    )
    await update.message.reply_text(
        f"{SUCCESS_EMOJI} Wallet connected\n{signer.public_address}"
    )


async def _input_phrase(update, svc, text, ctx) -> None:
    await _connect(update, svc, custody.import_from_phrase(text))


async def _input_secret_key(update, svc, text, ctx) -> None:
    await _connect(update, svc, custody.import_from_secret(text))


async def _input_alert_target(update, svc, text, ctx) -> None:
    parts = text.split()
    if not parts or len(parts) > 2:
        raise InputValidationError(
            "Send a price, optionally followed by above or below"
        )
    await _create_alert(update, svc, ctx["asset"], *parts)


async def _input_price_check(update, svc, text, ctx) -> None:
    await _reply_price(update, svc, text)


async def _input_save_passphrase(update, svc, text, ctx) -> None:
    user_id = update.effective_user.id
    async with svc.store.locked(user_id) as session:
        signer = session.signer
    if signer is None:
        await update.message.reply_text(NO_WALLET)
        return
    record = await asyncio.to_thread(vault.seal, signer, text)
    await db.save_wallet(user_id, record)
    await update.message.reply_text(
        f"{SUCCESS_EMOJI} Wallet {config.short_address(record.public_address)} "
        "saved. Use /unlock after a restart."
    )


async def _input_unlock_passphrase(update, svc, text, ctx) -> None:
    record = await db.load_wallet(update.effective_user.id)
    if record is None:
        await update.message.reply_text(f"{ERROR_EMOJI} No stored wallet")
        return
    signer = await asyncio.to_thread(vault.unseal, record, text)
    await _connect(update, svc, signer)


INPUT_HANDLERS = {
    InputMode.AWAITING_PHRASE: _input_phrase,
    InputMode.AWAITING_SECRET_KEY: _input_secret_key,
    InputMode.AWAITING_ALERT_TARGET: _input_alert_target,
    InputMode.AWAITING_PRICE_CHECK: _input_price_check,
    InputMode.AWAITING_SAVE_PASSPHRASE: _input_save_passphrase,
    InputMode.AWAITING_UNLOCK_PASSPHRASE: _input_unlock_passphrase,
}


async def text_input(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Consume a plain text message according to the user's input mode."""
    if not update.message or not update.message.text:
        return
    svc = services(context)
    user_id = update.effective_user.id
    async with svc.store.locked(user_id, update.effective_chat.id) as session:
        mode, ctx = session.consume_input()
    if mode is InputMode.IDLE:
        await update.message.reply_text(f"{HELP_EMOJI} Send /help to see commands")
        return
    text = update.message.text.strip()
    try:
        await INPUT_HANDLERS[mode](update, svc, text, ctx)
    except SwapBotError as exc:
        config.logger.info("user=%s %s input rejected: %s", user_id, mode.value, exc)
        await update.message.reply_text(f"{ERROR_EMOJI} {exc.user_message}")
    finally:
        if mode in SECRET_MODES:
            await _delete_secret_message(update)
