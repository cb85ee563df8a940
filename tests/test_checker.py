import asyncio
from datetime import datetime, timezone
from decimal import Decimal

from crypto_guardian.checker import AlertChecker
from crypto_guardian.errors import MarketDataUnavailable, NotificationFailure, StoreUnavailable
from crypto_guardian.store import AlertStore
from crypto_guardian.types import AlertDirection, AlertNotification, OwnerContact, PendingAlert

NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)
OWNER = OwnerContact(email="owner@example.com", username="owner")


def _alert(alert_id: int, coin_id: str, target: str, direction: AlertDirection) -> PendingAlert:
    return PendingAlert(
        id=alert_id,
        user_id=1,
        coin_id=coin_id,
        target_price=Decimal(target),
        direction=direction,
        owner=OWNER,
    )


class DummyStore:
    def __init__(self, alerts: list[PendingAlert], fail_mark: set[int] | None = None) -> None:
        self.alerts = {a.id: a for a in alerts}
        self.triggered: dict[int, datetime] = {}
        self.fail_mark = fail_mark or set()
        self.fail_list = False
        self.closed = 0

    async def list_pending_alerts_with_owner(self) -> list[PendingAlert]:
        if self.fail_list:
            raise StoreUnavailable("db down")
        return [a for a in self.alerts.values() if a.id not in self.triggered]

    async def mark_triggered(self, alert_id: int, when: datetime | None = None) -> bool:
        if alert_id in self.fail_mark:
            raise StoreUnavailable("write failed")
        if alert_id in self.triggered:
            return False
        self.triggered[alert_id] = when
        return True

    async def close(self) -> None:
        self.closed += 1


class DummyMarketData:
    def __init__(self, prices: dict[str, Decimal]) -> None:
        self.prices = prices
        self.calls: list[set[str]] = []
        self.error: Exception | None = None
        self.delay = 0.0
        self.closed = 0

    async def fetch_prices(self, coin_ids, currency: str = "usd") -> dict[str, Decimal]:
        self.calls.append(set(coin_ids))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return {c: p for c, p in self.prices.items() if c in coin_ids}

    async def close(self) -> None:
        self.closed += 1


class DummyNotifier:
    def __init__(self, fail_for: set[int] | None = None) -> None:
        self.sent: list[AlertNotification] = []
        self.fail_for = fail_for or set()
        self.closed = 0

    async def notify(self, notification: AlertNotification) -> None:
        if notification.alert_id in self.fail_for:
            raise NotificationFailure("smtp down")
        self.sent.append(notification)

    async def close(self) -> None:
        self.closed += 1


def _checker(store, market, notifier) -> AlertChecker:
    return AlertChecker(store, market, notifier, now=lambda: NOW)


def test_above_alert_fires_and_notifies_once() -> None:
    store = DummyStore([_alert(1, "bitcoin", "50000", AlertDirection.ABOVE)])
    market = DummyMarketData({"bitcoin": Decimal("50000.01")})
    notifier = DummyNotifier()
    checker = _checker(store, market, notifier)

    result = asyncio.run(checker.run_once())

    assert result.triggered == 1
    assert store.triggered == {1: NOW}
    assert len(notifier.sent) == 1
    sent = notifier.sent[0]
    assert sent.current_price == Decimal("50000.01")
    assert sent.target_price == Decimal("50000")
    assert sent.direction is AlertDirection.ABOVE
    assert sent.contact == OWNER

    asyncio.run(checker.run_once())
    assert len(notifier.sent) == 1


def test_price_below_target_leaves_above_alert_pending() -> None:
    store = DummyStore([_alert(1, "bitcoin", "50000", AlertDirection.ABOVE)])
    notifier = DummyNotifier()
    checker = _checker(store, DummyMarketData({"bitcoin": Decimal("49999.99")}), notifier)

    result = asyncio.run(checker.run_once())

    assert result.triggered == 0
    assert store.triggered == {}
    assert notifier.sent == []


def test_no_pending_alerts_means_no_market_call() -> None:
    market = DummyMarketData({})
    checker = _checker(DummyStore([]), market, DummyNotifier())

    result = asyncio.run(checker.run_once())

    assert result.pending == 0
    assert market.calls == []


def test_prices_are_fetched_once_per_pass() -> None:
    alerts = [
        _alert(1, "bitcoin", "10", AlertDirection.ABOVE),
        _alert(2, "ethereum", "10", AlertDirection.BELOW),
        _alert(3, "bitcoin", "20", AlertDirection.BELOW),
        _alert(4, "ethereum", "99", AlertDirection.ABOVE),
        _alert(5, "bitcoin", "1", AlertDirection.BELOW),
    ]
    market = DummyMarketData({"bitcoin": Decimal("15"), "ethereum": Decimal("5")})
    notifier = DummyNotifier()
    checker = _checker(DummyStore(alerts), market, notifier)

    result = asyncio.run(checker.run_once())

    assert market.calls == [{"bitcoin", "ethereum"}]
    assert result.coins == 2
    assert [n.alert_id for n in notifier.sent] == [1, 2, 3]


def test_missing_price_skips_only_that_alert() -> None:
    store = DummyStore(
        [
            _alert(1, "doesnotexist", "1", AlertDirection.ABOVE),
            _alert(2, "bitcoin", "1", AlertDirection.ABOVE),
        ]
    )
    notifier = DummyNotifier()
    checker = _checker(store, DummyMarketData({"bitcoin": Decimal("2")}), notifier)

    result = asyncio.run(checker.run_once())

    assert result.skipped_no_price == 1
    assert list(store.triggered) == [2]
    assert [n.alert_id for n in notifier.sent] == [2]


def test_notifier_failure_keeps_alert_triggered() -> None:
    store = DummyStore(
        [
            _alert(1, "bitcoin", "1", AlertDirection.ABOVE),
            _alert(2, "bitcoin", "1", AlertDirection.ABOVE),
        ]
    )
    notifier = DummyNotifier(fail_for={1})
    market = DummyMarketData({"bitcoin": Decimal("2")})
    checker = _checker(store, market, notifier)

    result = asyncio.run(checker.run_once())

    assert result.notify_failed == 1
    assert result.notified == 1
    assert set(store.triggered) == {1, 2}
    assert checker.metrics.notifications_failed == 1

    second = asyncio.run(checker.run_once())
    assert second.pending == 0
    assert len(market.calls) == 1


def test_persist_failure_skips_notification_and_continues() -> None:
    store = DummyStore(
        [
            _alert(1, "bitcoin", "1", AlertDirection.ABOVE),
            _alert(2, "bitcoin", "1", AlertDirection.ABOVE),
        ],
        fail_mark={1},
    )
    notifier = DummyNotifier()
    checker = _checker(store, DummyMarketData({"bitcoin": Decimal("2")}), notifier)

    result = asyncio.run(checker.run_once())

    assert result.persist_failed == 1
    assert list(store.triggered) == [2]
    assert [n.alert_id for n in notifier.sent] == [2]


def test_already_triggered_elsewhere_is_not_notified() -> None:
    store = DummyStore([_alert(1, "bitcoin", "1", AlertDirection.ABOVE)])
    store.triggered[1] = NOW
    store.list_pending_alerts_with_owner = _always([store.alerts[1]])
    notifier = DummyNotifier()
    checker = _checker(store, DummyMarketData({"bitcoin": Decimal("2")}), notifier)

    result = asyncio.run(checker.run_once())

    assert result.triggered == 0
    assert notifier.sent == []


def _always(alerts):
    async def list_pending() -> list[PendingAlert]:
        return list(alerts)

    return list_pending


def test_tick_swallows_market_outage() -> None:
    market = DummyMarketData({})
    market.error = MarketDataUnavailable("rate limited", status_code=429, retryable=True)
    store = DummyStore([_alert(1, "bitcoin", "1", AlertDirection.ABOVE)])
    checker = _checker(store, market, DummyNotifier())

    assert asyncio.run(checker.tick()) is None
    assert checker.metrics.ticks_failed == 1
    assert store.triggered == {}


def test_tick_swallows_store_outage() -> None:
    store = DummyStore([])
    store.fail_list = True
    market = DummyMarketData({})
    checker = _checker(store, market, DummyNotifier())

    assert asyncio.run(checker.tick()) is None
    assert checker.metrics.ticks_failed == 1
    assert market.calls == []


def test_overlapping_pass_is_skipped() -> None:
    store = DummyStore([_alert(1, "bitcoin", "1", AlertDirection.ABOVE)])
    market = DummyMarketData({"bitcoin": Decimal("2")})
    market.delay = 0.05
    notifier = DummyNotifier()
    checker = _checker(store, market, notifier)

    async def scenario() -> list:
        first = asyncio.create_task(checker.run_once())
        await asyncio.sleep(0)
        second = await checker.run_once()
        return [await first, second]

    first, second = asyncio.run(scenario())

    assert first.triggered == 1
    assert second is None
    assert checker.metrics.ticks_skipped == 1
    assert len(market.calls) == 1
    assert len(notifier.sent) == 1


def test_tick_timeout_is_reported() -> None:
    store = DummyStore([_alert(1, "bitcoin", "1", AlertDirection.ABOVE)])
    market = DummyMarketData({"bitcoin": Decimal("2")})
    market.delay = 1.0
    checker = AlertChecker(store, market, DummyNotifier(), tick_timeout_seconds=0.01)

    assert asyncio.run(checker.tick()) is None
    assert checker.metrics.ticks_failed == 1
    assert not checker._lock.locked()


def test_run_drops_overlapping_ticks_and_closes_collaborators() -> None:
    store = DummyStore([_alert(1, "bitcoin", "100", AlertDirection.ABOVE)])
    market = DummyMarketData({"bitcoin": Decimal("1")})
    market.delay = 0.15
    notifier = DummyNotifier()
    checker = AlertChecker(store, market, notifier, interval_seconds=0.1, tick_timeout_seconds=5.0)

    async def scenario() -> None:
        task = asyncio.create_task(checker.run())
        await asyncio.sleep(0.7)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    asyncio.run(scenario())

    assert checker.metrics.ticks_run >= 2
    assert checker.metrics.ticks_skipped >= 1
    assert checker.metrics.ticks_failed == 0
    # One fetch per started tick; the last may have been cancelled mid-flight.
    assert checker.metrics.ticks_run <= len(market.calls) <= checker.metrics.ticks_run + 1
    assert store.closed == 1
    assert market.closed == 1
    assert notifier.closed == 1


def test_end_to_end_with_sqlite_store(database_url: str) -> None:
    notifier = DummyNotifier(fail_for={1})
    market = DummyMarketData({"bitcoin": Decimal("50000.01"), "ethereum": Decimal("2000")})

    async def scenario() -> None:
        store = AlertStore.from_url(database_url)
        await store.create_schema()
        user_id = await store.create_user("owner", "owner@example.com")
        a = await store.create_alert(user_id, "bitcoin", Decimal("50000"), "above")
        b = await store.create_alert(user_id, "ethereum", Decimal("1500"), "below")
        c = await store.create_alert(user_id, "doesnotexist", Decimal("1"), "above")
        checker = _checker(store, market, notifier)
        try:
            result = await checker.run_once()
            assert result.triggered == 1
            assert result.skipped_no_price == 1

            pending = await store.list_pending_alerts_with_owner()
            assert [p.id for p in pending] == [b.id, c.id]
            fired = await store.get_alert(a.id)
            assert fired.triggered is True
            assert fired.triggered_at is not None

            await checker.run_once()
            assert len(market.calls) == 2
            assert market.calls[1] == {"ethereum", "doesnotexist"}
        finally:
            await store.close()

    asyncio.run(scenario())
    assert notifier.sent == []
