from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from html import escape

from .types import AlertDirection, AlertNotification


def direction_to_text(direction: AlertDirection | str) -> str:
    value = direction.value if isinstance(direction, AlertDirection) else str(direction or "").lower()
    if value == "above":
        return "rose above"
    if value == "below":
        return "fell below"
    return "crossed"


def format_usd(value: Decimal) -> str:
    if value >= 1 or value == 0:
        return f"${value:,.2f}"
    # Sub-dollar coins need more than cents to be readable.
    return f"${value:,.8f}".rstrip("0").rstrip(".")


def coin_label(coin_id: str) -> str:
    return " ".join(part.capitalize() for part in coin_id.replace("_", "-").split("-") if part)


def time_iso(when: datetime) -> str:
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def format_alert_subject(n: AlertNotification) -> str:
    return f"Price alert: {coin_label(n.coin_id)} {direction_to_text(n.direction)} {format_usd(n.target_price)}"


def format_alert_text(n: AlertNotification) -> str:
    greeting = f"Hi {n.contact.username}," if n.contact.username else "Hi,"
    return (
        f"{greeting}\n\n"
        f"{coin_label(n.coin_id)} {direction_to_text(n.direction)} your target of "
        f"{format_usd(n.target_price)}.\n"
        f"Current price: {format_usd(n.current_price)}\n"
        f"Triggered at: {time_iso(n.triggered_at)}\n\n"
        "This alert is now marked as triggered and will not fire again.\n"
        "- Crypto Guardian"
    )


def format_alert_html(n: AlertNotification) -> str:
    name = escape(n.contact.username or "")
    greeting = f"Hi {name}," if name else "Hi,"
    return (
        f"<p>{greeting}</p>"
        f"<p><b>{escape(coin_label(n.coin_id))}</b> {escape(direction_to_text(n.direction))} "
        f"your target of <b>{escape(format_usd(n.target_price))}</b>.</p>"
        "<ul>"
        f"<li>Current price: {escape(format_usd(n.current_price))}</li>"
        f"<li>Triggered at: {escape(time_iso(n.triggered_at))}</li>"
        "</ul>"
        "<p>This alert is now marked as triggered and will not fire again.</p>"
    )


def format_alert_chat_message(n: AlertNotification) -> str:
    owner = escape(n.contact.username or n.contact.email)
    return (
        "🚨 <b>Price Alert Triggered</b>\n\n"
        f"🪙 <b>Coin:</b> {escape(coin_label(n.coin_id))}\n"
        f"📈 <b>Condition:</b> {escape(direction_to_text(n.direction))} {escape(format_usd(n.target_price))}\n"
        f"💵 <b>Price:</b> {escape(format_usd(n.current_price))}\n"
        f"👤 <b>Owner:</b> {owner}\n"
        f"🕒 <b>Time:</b> {escape(time_iso(n.triggered_at))}"
    )
