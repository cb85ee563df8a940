from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal


class AlertDirection(str, enum.Enum):
    ABOVE = "above"
    BELOW = "below"


@dataclass(frozen=True)
class OwnerContact:
    email: str
    username: str | None = None


@dataclass(frozen=True)
class PendingAlert:
    id: int
    user_id: int
    coin_id: str
    target_price: Decimal
    direction: AlertDirection
    owner: OwnerContact


@dataclass(frozen=True)
class AlertNotification:
    alert_id: int
    contact: OwnerContact
    coin_id: str
    direction: AlertDirection
    target_price: Decimal
    current_price: Decimal
    triggered_at: datetime


@dataclass
class TickResult:
    pending: int = 0
    coins: int = 0
    skipped_no_price: int = 0
    triggered: int = 0
    persist_failed: int = 0
    notified: int = 0
    notify_failed: int = 0
