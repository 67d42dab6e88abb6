"""Outbound notifications (restock and auto-cart messages)."""

from typing import Any, Protocol

from .observability import get_logger

logger = get_logger("notifier")

RESTOCK = "restock"
AUTO_CART = "auto_cart"


class Notifier(Protocol):
    """Delivers a notification payload: {"user": {...}, "items": [{"name", "variant"}]}.

    Implementations may raise on delivery failure; callers log and move on.
    """

    def notify(self, kind: str, payload: dict[str, Any]) -> None: ...


class LogNotifier:
    """Default notifier: writes each notification to the log instead of sending it."""

    def notify(self, kind: str, payload: dict[str, Any]) -> None:
        user = payload.get("user", {})
        logger.info(
            "notification",
            kind=kind,
            user_id=user.get("id"),
            email=user.get("email"),
            items=[item.get("name") for item in payload.get("items", [])],
            failed=len(payload.get("failed", [])),
        )
