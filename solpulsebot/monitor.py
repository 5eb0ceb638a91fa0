"""Background price-alert evaluation."""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from . import config
from .api import PriceOracle, TokenDirectory, chunks
from .errors import SwapBotError
from .session import Alert, AlertDirection, SessionStore

Notify = Callable[[int, str], Awaitable[None]]


def format_alert_message(
    alert: Alert, price: float, label: Optional[str] = None
) -> str:
    """Return the notification text for a triggered ``alert``."""
    label = label or config.short_address(alert.asset)
    verb = "rose above" if alert.direction is AlertDirection.ABOVE else "fell below"
    return (
        f"Alert #{alert.id}: {label} "
        f"{verb} ${config.format_price(alert.target_price)} "
        f"(now ${config.format_price(price)})"
    )


class AlertMonitor:
    """Evaluate live alerts on a fixed interval and fire each one once.

    Parameters
    ----------
    store:
        Session store owning the alerts.
    oracle:
        Price source with ``get_prices`` and ``batch_size``.
    notify:
        Coroutine called with ``(chat_id, text)`` for every triggered alert.
    interval:
        Seconds between ticks.
    scheduler:
        Scheduler to register the job with. One is created if omitted, and
        only a scheduler created here is shut down by :meth:`stop`.
    tokens:
        Token directory used to name assets in notifications.
    """

    job_id = "alert-monitor"

    def __init__(
        self,
        store: SessionStore,
        oracle: PriceOracle,
        notify: Notify,
        interval: Optional[int] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        tokens: Optional[TokenDirectory] = None,
    ) -> None:
        self.store = store
        self.oracle = oracle
        self.notify = notify
        self.interval = interval or config.ALERT_CHECK_INTERVAL
        self.tokens = tokens
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or AsyncIOScheduler()
        self._tick_lock = asyncio.Lock()
        self.running = False

    def start(self) -> None:
        if self.running:
            return
        self.scheduler.add_job(
            self.tick,
            "interval",
            seconds=self.interval,
            id=self.job_id,
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        self.running = True
        config.logger.info(
            "alert monitor started, interval %s", config.format_interval(self.interval)
        )

    def stop(self) -> None:
        if not self.running:
            return
        self.scheduler.remove_job(self.job_id)
        if self._owns_scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.running = False
        config.logger.info("alert monitor stopped")

    async def tick(self) -> int:
        """Run one evaluation pass and return the number of alerts fired."""
        if self._tick_lock.locked():
            config.logger.warning("alert tick skipped, previous tick still running")
            return 0
        async with self._tick_lock:
            by_asset: Dict[str, List[Alert]] = {}
            for alert in self.store.live_alerts():
                by_asset.setdefault(alert.asset, []).append(alert)
            if not by_asset:
                return 0

            crossed: List[tuple] = []
            for group in chunks(list(by_asset), self.oracle.batch_size):
                try:
                    prices = await self.oracle.get_prices(group)
                except SwapBotError as exc:
                    config.logger.warning(
                        "price fetch failed for %s assets, retrying next tick: %s",
                        len(group),
                        exc,
                    )
                    continue
                except Exception:
                    config.logger.exception(
                        "price fetch crashed for %s assets, retrying next tick",
                        len(group),
                    )
                    continue
                for asset in group:
                    price = prices.get(asset)
                    if price is None:
                        config.logger.debug("no price for %s this tick", asset)
                        continue
                    for alert in by_asset[asset]:
                        if alert.direction.crossed(price, alert.target_price):
                            crossed.append((alert, price))

            results = await asyncio.gather(
                *(self._trigger(alert, price) for alert, price in crossed)
            )
            return sum(results)

    async def _trigger(self, alert: Alert, price: float) -> bool:
        label = None
        if self.tokens is not None:
            label = await self.tokens.label(alert.asset)
        async with self.store.locked(alert.user_id) as session:
            # removed by the user or fired since the snapshot was taken
            current = self.store.alert(alert.id)
            if current is None or current.triggered:
                return False
            current.triggered = True
            try:
                text = format_alert_message(current, price, label)
                await self.notify(session.chat_id, text)
                config.logger.info(
                    "alert %s fired user=%s price=%s", alert.id, alert.user_id, price
                )
            except Exception:
                config.logger.exception(
                    "failed to deliver alert %s to user=%s", alert.id, alert.user_id
                )
            finally:
                self.store.remove_alert(session, alert.id)
            return True
