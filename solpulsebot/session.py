"""Per-user conversational state, pending trades and price alerts.

A :class:`SessionStore` is created once at startup and handed to the
handlers and the alert monitor. Every mutation of a user's session happens
while holding that user's lock, obtained through :meth:`SessionStore.locked`.
"""

import asyncio
import itertools
import math
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from . import config
from .custody import Signer
from .errors import InputValidationError
from .quotes import Quote


class InputMode(str, Enum):
    """What the next plain text message from a user is interpreted as."""

    IDLE = "idle"
    AWAITING_PHRASE = "awaiting_phrase"
    AWAITING_SECRET_KEY = "awaiting_secret_key"
    AWAITING_ALERT_TARGET = "awaiting_alert_target"
    AWAITING_PRICE_CHECK = "awaiting_price_check"
    AWAITING_SAVE_PASSPHRASE = "awaiting_save_passphrase"
    AWAITING_UNLOCK_PASSPHRASE = "awaiting_unlock_passphrase"


# modes whose input is secret material; the message carrying it is deleted
SECRET_MODES = {
    InputMode.AWAITING_PHRASE,
    InputMode.AWAITING_SECRET_KEY,
    InputMode.AWAITING_SAVE_PASSPHRASE,
    InputMode.AWAITING_UNLOCK_PASSPHRASE,
}


class TradeDirection(str, Enum):
    BUY = "buy"
    SELL = "sell"


class AlertDirection(str, Enum):
    ABOVE = "above"
    BELOW = "below"

    def crossed(self, price: float, target: float) -> bool:
        if self is AlertDirection.ABOVE:
            return price >= target
        return price <= target


@dataclass
class Settings:
    slippage_bps: int = config.DEFAULT_SLIPPAGE_BPS
    priority_fee_lamports: int = config.DEFAULT_PRIORITY_FEE


@dataclass(frozen=True)
class PendingTrade:
    user_id: int
    quote: Quote
    direction: TradeDirection
    asset: str


@dataclass
class Alert:
    id: int
    user_id: int
    asset: str
    target_price: float
    direction: AlertDirection
    triggered: bool = False
    created_at: float = field(default_factory=time.time)


@dataclass
class Session:
    """Mutable state of one user; guarded by the user's lock in the store."""

    user_id: int
    chat_id: int
    signer: Optional[Signer] = None
    input_mode: InputMode = InputMode.IDLE
    input_context: Dict[str, Any] = field(default_factory=dict)
    pending_trade: Optional[PendingTrade] = None
    trade_request: int = 0
    alert_ids: Set[int] = field(default_factory=set)
    settings: Settings = field(default_factory=Settings)

    def begin_input(self, mode: InputMode, **context: Any) -> None:
        if mode is InputMode.IDLE:
            raise ValueError("use cancel_input to return to idle")
        self.input_mode = mode
        self.input_context = dict(context)
        config.logger.info("user=%s awaiting %s", self.user_id, mode.value)

    def consume_input(self):
        """Return ``(mode, context)`` and reset to idle.

        The mode is cleared whatever the caller then does with the text, so a
        failed parse never leaves the user stuck in the same mode.
        """
        mode, context = self.input_mode, self.input_context
        self.input_mode = InputMode.IDLE
        self.input_context = {}
        return mode, context

    def cancel_input(self) -> bool:
        """Return to idle; ``True`` if a mode was active."""
        active = self.input_mode is not InputMode.IDLE
        self.consume_input()
        return active

    def begin_trade_request(self) -> int:
        """Number a new quote request; older requests still in flight go stale."""
        self.trade_request += 1
        return self.trade_request

    def drop_trade_requests(self) -> None:
        self.trade_request += 1

    def set_pending_trade(self, trade: PendingTrade) -> Optional[PendingTrade]:
        """Store ``trade``, returning the trade it replaced if any."""
        previous = self.pending_trade
        self.pending_trade = trade
        return previous

    def take_pending_trade(self) -> Optional[PendingTrade]:
        trade = self.pending_trade
        self.pending_trade = None
        return trade

    def connect(self, signer: Signer) -> None:
        if self.signer is not None and self.signer is not signer:
            self.signer.wipe()
        self.signer = signer
        self.pending_trade = None
        self.drop_trade_requests()

    def disconnect(self) -> bool:
        """Wipe and drop the active signer; ``True`` if there was one."""
        if self.signer is None:
            return False
        self.signer.wipe()
        self.signer = None
        self.pending_trade = None
        self.drop_trade_requests()
        return True


class SessionStore:
    """Owns every :class:`Session` and :class:`Alert` of the process."""

    def __init__(self) -> None:
        self._sessions: Dict[int, Session] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._alerts: Dict[int, Alert] = {}
        self._alert_ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, user_id: int, chat_id: Optional[int] = None) -> Session:
        """Return the session of ``user_id``, creating it on first use."""
        session = self._sessions.get(user_id)
        if session is None:
            session = Session(
                user_id=user_id, chat_id=user_id if chat_id is None else chat_id
            )
            self._sessions[user_id] = session
            config.logger.info("session created user=%s", user_id)
        elif chat_id is not None:
            session.chat_id = chat_id
        return session

    def lock_for(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def locked(
        self, user_id: int, chat_id: Optional[int] = None
    ) -> AsyncIterator[Session]:
        """Hold the user's lock and yield their session."""
        async with self.lock_for(user_id):
            yield self.get(user_id, chat_id)

    def add_alert(
        self,
        session: Session,
        asset: str,
        target_price: float,
        direction: AlertDirection,
    ) -> Alert:
        """Create an alert owned by ``session``. Call with the user's lock held."""
        if not math.isfinite(target_price) or target_price <= 0:
            raise InputValidationError("Target price must be greater than zero")
        if target_price > config.MAX_TARGET_PRICE:
            raise InputValidationError(
                f"Target price must be at most {config.MAX_TARGET_PRICE:,}"
            )
        alert = Alert(
            id=next(self._alert_ids),
            user_id=session.user_id,
            asset=asset,
            target_price=float(target_price),
            direction=direction,
        )
        self._alerts[alert.id] = alert
        session.alert_ids.add(alert.id)
        config.logger.info(
            "alert %s added user=%s asset=%s %s %s",
            alert.id,
            session.user_id,
            asset,
            direction.value,
            target_price,
        )
        return alert

    def remove_alert(self, session: Session, alert_id: int) -> bool:
        """Remove one of the session's alerts. Call with the user's lock held."""
        if alert_id not in session.alert_ids:
            return False
        session.alert_ids.discard(alert_id)
        self._alerts.pop(alert_id, None)
        return True

    def alert(self, alert_id: int) -> Optional[Alert]:
        return self._alerts.get(alert_id)

    def alerts_for(self, session: Session) -> List[Alert]:
        alerts = [self._alerts[i] for i in session.alert_ids if i in self._alerts]
        return sorted(alerts, key=lambda a: a.id)

    def live_alerts(self) -> List[Alert]:
        """Snapshot of every alert that has not fired yet."""
        return [a for a in list(self._alerts.values()) if not a.triggered]

    def close(self) -> None:
        """Wipe every signer; the store is unusable for trading afterwards."""
        for session in self._sessions.values():
            session.disconnect()
        config.logger.info("session store closed (%s sessions)", len(self._sessions))
