from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .errors import StoreUnavailable
from .evaluator import parse_direction
from .models import Alert, Base, User
from .types import AlertDirection, OwnerContact, PendingAlert

logger = logging.getLogger(__name__)


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    kwargs: dict = {"echo": echo, "future": True}
    if not database_url.startswith("sqlite"):
        kwargs.update(pool_pre_ping=True, pool_recycle=1800)
    return create_async_engine(database_url, **kwargs)


class AlertStore:
    """Persistence for alerts, shared by the checker and the web handlers.

    Every mutation is a single statement scoped to one alert (or one user's
    alerts), so concurrent readers never need a lock held across a pass.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> AlertStore:
        return cls(create_engine(database_url, echo=echo))

    async def close(self) -> None:
        await self.engine.dispose()

    async def create_schema(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Could not create schema: {exc}") from exc

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as session:
                yield session
        except SQLAlchemyError as exc:
            raise StoreUnavailable(str(exc)) from exc

    async def list_pending_alerts_with_owner(self) -> list[PendingAlert]:
        stmt = (
            select(Alert, User.email, User.username)
            .join(User, User.id == Alert.user_id)
            .where(Alert.triggered.is_(False))
            .order_by(Alert.id)
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).all()

        return [
            PendingAlert(
                id=alert.id,
                user_id=alert.user_id,
                coin_id=alert.coin_id,
                target_price=Decimal(alert.target_price),
                direction=parse_direction(alert.direction) or alert.direction,
                owner=OwnerContact(email=email, username=username),
            )
            for alert, email, username in rows
        ]

    async def mark_triggered(self, alert_id: int, when: datetime | None = None) -> bool:
        """Flip one alert to triggered.

        Returns True only for the call that made the transition; later calls
        match no row and leave ``triggered_at`` as first stamped.
        """
        stamp = when or datetime.now(timezone.utc)
        stmt = (
            update(Alert)
            .where(Alert.id == alert_id, Alert.triggered.is_(False))
            .values(triggered=True, triggered_at=stamp)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def mark_triggered_for_user(self, alert_id: int, user_id: int, when: datetime | None = None) -> bool:
        """Manual trigger by the alert's owner; same single-stamp rule as the checker."""
        stamp = when or datetime.now(timezone.utc)
        stmt = (
            update(Alert)
            .where(Alert.id == alert_id, Alert.user_id == user_id, Alert.triggered.is_(False))
            .values(triggered=True, triggered_at=stamp)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def create_user(self, username: str, email: str) -> int:
        async with self._session() as session:
            user = User(username=username, email=email)
            session.add(user)
            await session.commit()
            return user.id

    async def create_alert(
        self,
        user_id: int,
        coin_id: str,
        target_price: Decimal,
        direction: AlertDirection | str,
    ) -> Alert:
        parsed = parse_direction(direction)
        if parsed is None:
            raise ValueError(f"direction must be 'above' or 'below', got {direction!r}")
        price = _positive_price(target_price)
        slug = coin_id.strip().lower()
        if not slug:
            raise ValueError("coin_id is required")

        async with self._session() as session:
            alert = Alert(
                user_id=user_id,
                coin_id=slug,
                target_price=price,
                direction=parsed.value,
                triggered=False,
            )
            session.add(alert)
            await session.commit()
            await session.refresh(alert)
            return alert

    async def get_alert(self, alert_id: int) -> Alert | None:
        async with self._session() as session:
            return await session.get(Alert, alert_id)

    async def list_alerts(self, user_id: int, triggered: bool = False) -> list[Alert]:
        stmt = select(Alert).where(Alert.user_id == user_id, Alert.triggered.is_(triggered))
        if triggered:
            stmt = stmt.order_by(Alert.triggered_at.desc())
        else:
            stmt = stmt.order_by(Alert.created_at.desc(), Alert.id.desc())
        async with self._session() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def update_target_price(self, alert_id: int, user_id: int, price: Decimal) -> bool:
        value = _positive_price(price)
        stmt = (
            update(Alert)
            .where(Alert.id == alert_id, Alert.user_id == user_id)
            .values(target_price=value)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def delete_alert(self, alert_id: int, user_id: int) -> bool:
        stmt = (
            delete(Alert)
            .where(Alert.id == alert_id, Alert.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def clear_triggered(self, user_id: int) -> int:
        stmt = (
            delete(Alert)
            .where(Alert.user_id == user_id, Alert.triggered.is_(True))
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        logger.info("Cleared %d triggered alerts for user %s", result.rowcount, user_id)
        return result.rowcount


def _positive_price(value: Decimal | str | int | float) -> Decimal:
    try:
        price = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"target_price is not a number: {value!r}") from exc
    if not price.is_finite() or price <= 0:
        raise ValueError("target_price must be a positive finite number")
    return price
