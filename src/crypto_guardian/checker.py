from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Protocol

from .config import Settings
from .errors import MarketDataUnavailable, StoreUnavailable
from .evaluator import should_trigger
from .market_data import CoinGeckoClient
from .notifier import Notifier, build_notifier
from .store import AlertStore
from .types import AlertNotification, PendingAlert, TickResult

logger = logging.getLogger(__name__)


class PendingAlertSource(Protocol):
    async def list_pending_alerts_with_owner(self) -> list[PendingAlert]: ...

    async def mark_triggered(self, alert_id: int, when: datetime | None = None) -> bool: ...


class PriceSource(Protocol):
    async def fetch_prices(self, coin_ids: Iterable[str], currency: str = "usd") -> dict[str, Decimal]: ...


@dataclass
class Metrics:
    ticks_run: int = 0
    ticks_failed: int = 0
    ticks_skipped: int = 0
    alerts_checked: int = 0
    alerts_triggered: int = 0
    persist_failed: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertChecker:
    """Periodic pass over pending price alerts.

    A pass loads every untriggered alert, fetches prices for their distinct
    coins in one call, and for each alert that fires persists the trigger
    before attempting the notification. The store write is what makes an
    alert "done"; a lost notification is not retried.
    """

    def __init__(
        self,
        store: PendingAlertSource,
        market_data: PriceSource,
        notifier: Notifier,
        currency: str = "usd",
        interval_seconds: float = 300.0,
        tick_timeout_seconds: float | None = None,
        health_log_interval_seconds: float = 600.0,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.market_data = market_data
        self.notifier = notifier
        self.currency = currency
        self.interval_seconds = interval_seconds
        self.tick_timeout_seconds = tick_timeout_seconds or interval_seconds
        self.health_log_interval_seconds = health_log_interval_seconds
        self.metrics = Metrics()
        self._now = now
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> AlertChecker:
        store = AlertStore.from_url(settings.database_url)
        market_data = CoinGeckoClient(
            api_base=settings.coingecko_api_base,
            api_key=settings.coingecko_api_key,
            timeout=settings.market_request_timeout_seconds,
            cache_ttl_seconds=settings.market_cache_ttl_seconds,
            max_attempts=settings.market_retry_attempts,
            base_delay=settings.market_retry_base_delay_seconds,
        )
        return cls(
            store=store,
            market_data=market_data,
            notifier=build_notifier(settings),
            currency=settings.vs_currency,
            interval_seconds=settings.check_interval_seconds,
            tick_timeout_seconds=settings.tick_timeout_seconds,
            health_log_interval_seconds=settings.health_log_interval_seconds,
        )

    async def run(self) -> None:
        health_task = asyncio.create_task(self._health_loop())
        loop = asyncio.get_running_loop()
        try:
            next_run = loop.time()
            while True:
                await self.tick()
                next_run += self.interval_seconds
                now = loop.time()
                if now > next_run:
                    missed = int((now - next_run) // self.interval_seconds) + 1
                    self.metrics.ticks_skipped += missed
                    logger.warning(
                        "Alert check overran its %.0fs period; dropping %d tick(s)",
                        self.interval_seconds,
                        missed,
                    )
                    next_run += missed * self.interval_seconds
                await asyncio.sleep(next_run - now)
        finally:
            health_task.cancel()
            await asyncio.gather(health_task, return_exceptions=True)
            await self.close()

    async def close(self) -> None:
        for resource in (self.market_data, self.notifier, self.store):
            close = getattr(resource, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception:
                logger.exception("Failed to close %s", type(resource).__name__)

    async def tick(self) -> TickResult | None:
        """Run one pass and swallow its failure; the next tick retries."""
        try:
            result = await asyncio.wait_for(self.run_once(), timeout=self.tick_timeout_seconds)
        except asyncio.TimeoutError:
            self.metrics.ticks_failed += 1
            logger.error("Alert check exceeded %.0fs and was cancelled", self.tick_timeout_seconds)
            return None
        except (MarketDataUnavailable, StoreUnavailable) as exc:
            self.metrics.ticks_failed += 1
            logger.error("Alert check aborted: %s", exc)
            return None
        except Exception:
            self.metrics.ticks_failed += 1
            logger.exception("Alert check failed")
            return None

        if result is not None:
            self.metrics.ticks_run += 1
        return result

    async def run_once(self) -> TickResult | None:
        """Run one pass unless another is in progress.

        Returns None when skipped. Failures loading alerts or fetching prices
        propagate; failures scoped to one alert do not.
        """
        if self._lock.locked():
            self.metrics.ticks_skipped += 1
            logger.warning("Previous alert check still running; skipping this tick")
            return None

        async with self._lock:
            return await self._check_alerts()

    async def _check_alerts(self) -> TickResult:
        result = TickResult()
        logger.info("Checking price alerts...")

        alerts = await self.store.list_pending_alerts_with_owner()
        result.pending = len(alerts)
        if not alerts:
            logger.info("No pending alerts")
            return result

        coin_ids = {_coin_key(alert.coin_id) for alert in alerts}
        result.coins = len(coin_ids)
        prices = await self.market_data.fetch_prices(coin_ids, self.currency)

        for alert in alerts:
            self.metrics.alerts_checked += 1
            try:
                await self._process_alert(alert, prices, result)
            except Exception:
                logger.exception("Unexpected failure while processing alert %s", alert.id)

        logger.info(
            "Alert check done pending=%d coins=%d triggered=%d notified=%d no_price=%d "
            "persist_failed=%d notify_failed=%d",
            result.pending,
            result.coins,
            result.triggered,
            result.notified,
            result.skipped_no_price,
            result.persist_failed,
            result.notify_failed,
        )
        return result

    async def _process_alert(self, alert: PendingAlert, prices: dict[str, Decimal], result: TickResult) -> None:
        current_price = prices.get(_coin_key(alert.coin_id))
        if current_price is None:
            result.skipped_no_price += 1
            logger.debug("No %s price for %s; leaving alert %s pending", self.currency, alert.coin_id, alert.id)
            return

        if not should_trigger(alert.direction, alert.target_price, current_price):
            return

        triggered_at = self._now()
        try:
            transitioned = await self.store.mark_triggered(alert.id, triggered_at)
        except Exception:
            result.persist_failed += 1
            self.metrics.persist_failed += 1
            logger.exception("Could not persist trigger for alert %s; it stays pending", alert.id)
            return

        if not transitioned:
            logger.info("Alert %s was already triggered elsewhere; not notifying", alert.id)
            return

        result.triggered += 1
        self.metrics.alerts_triggered += 1
        logger.info(
            "Alert triggered for %s (user %s): current %s crossed %s %s",
            alert.coin_id,
            alert.user_id,
            current_price,
            getattr(alert.direction, "value", alert.direction),
            alert.target_price,
        )

        notification = AlertNotification(
            alert_id=alert.id,
            contact=alert.owner,
            coin_id=alert.coin_id,
            direction=alert.direction,
            target_price=alert.target_price,
            current_price=current_price,
            triggered_at=triggered_at,
        )
        try:
            await self.notifier.notify(notification)
        except Exception:
            result.notify_failed += 1
            self.metrics.notifications_failed += 1
            logger.exception("Failed to notify %s for alert %s", alert.owner.email, alert.id)
            return

        result.notified += 1
        self.metrics.notifications_sent += 1

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_log_interval_seconds)
            logger.info(
                (
                    "health ticks_run=%d ticks_failed=%d ticks_skipped=%d alerts_checked=%d "
                    "alerts_triggered=%d persist_failed=%d notifications_sent=%d notifications_failed=%d"
                ),
                self.metrics.ticks_run,
                self.metrics.ticks_failed,
                self.metrics.ticks_skipped,
                self.metrics.alerts_checked,
                self.metrics.alerts_triggered,
                self.metrics.persist_failed,
                self.metrics.notifications_sent,
                self.metrics.notifications_failed,
            )


def _coin_key(coin_id: str) -> str:
    return coin_id.strip().lower()
