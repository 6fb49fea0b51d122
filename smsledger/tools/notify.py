"""Category-ask notifications and handling of the user's category pick."""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

import httpx

from smsledger.errors import LedgerApiError

logger = logging.getLogger(__name__)

# Notification action id → ledger category
CATEGORY_ACTIONS = {
    "CAT_FOOD": "Food",
    "CAT_TRAVEL": "Travel",
    "CAT_SHOPPING": "Shopping",
    "CAT_BILLS": "Bills",
    "CAT_ENTERTAINMENT": "Entertainment",
    "CAT_HEALTH": "Health",
    "CAT_OTHER": "Other",
}
DEFAULT_ACTION = "DEFAULT"  # body tap
LEGACY_ACTIONS = {"SATISFACTION_YES", "SATISFACTION_NO", "SATISFACTION_MAYBE"}
CATEGORY_NOTIFICATION_ID = "CATEGORY_ASK_CATEGORY"


def format_category_notification(name: str, amount: Decimal) -> dict:
    """Title/body for the "pick a category" prompt."""
    emoji = "\U0001f4b8" if amount > 2000 else "✨"  # money with wings / sparkles
    return {
        "title": f"{emoji} New Transaction Detected",
        "body": f"₹{amount:,.2f} spent at {name}\nTap to categorize this payment.",
    }


class Notifier(ABC):
    """Output port: ask the user to confirm a low-confidence category."""

    @abstractmethod
    async def request_category(self, transaction_id: str, name: str, amount: Decimal) -> None:
        """Fire-and-forget. Implementations must not raise."""
        ...


class LogNotifier(Notifier):
    """Used when no push relay is configured."""

    async def request_category(self, transaction_id: str, name: str, amount: Decimal) -> None:
        content = format_category_notification(name, amount)
        logger.info("Category prompt for %s: %s", transaction_id, content["body"].replace("\n", " "))


class WebhookNotifier(Notifier):
    """POSTs the notification to a push relay that renders it on the device."""

    def __init__(self, url: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self._transport = transport

    async def request_category(self, transaction_id: str, name: str, amount: Decimal) -> None:
        content = format_category_notification(name, amount)
        payload = {
            **content,
            "category_identifier": CATEGORY_NOTIFICATION_ID,
            "actions": list(CATEGORY_ACTIONS),
            "data": {
                "transactionId": transaction_id,
                "merchantName": name,
                "amount": float(amount),
                "type": "category_ask",
            },
        }
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=10.0) as client:
                resp = await client.post(self.url, json=payload)
            if resp.status_code >= 400:
                logger.error("Notification relay failed: %s %s", resp.status_code, resp.text[:200])
        except httpx.HTTPError as e:
            logger.warning("Notification relay unreachable: %s", e)


async def handle_category_action(action_id: str, transaction_id: str, token_provider, ledger) -> dict:
    """Apply a category picked from the notification, or tell the app to open.

    Returns {"type": "OPEN_APP" | "CATEGORY_SET" | "IGNORED", "transactionId": ...}.
    """
    if not transaction_id:
        return {"type": "IGNORED", "transactionId": ""}

    if not action_id or action_id == DEFAULT_ACTION:
        return {"type": "OPEN_APP", "transactionId": transaction_id}

    category = CATEGORY_ACTIONS.get(action_id)
    if not category:
        if action_id not in LEGACY_ACTIONS:
            logger.warning("Unknown notification action %s", action_id)
        return {"type": "IGNORED", "transactionId": transaction_id}

    token = await token_provider.get_token()
    if not token:
        logger.warning("Token missing during notification action for %s", transaction_id)
        return {"type": "OPEN_APP", "transactionId": transaction_id}

    try:
        await ledger.update_transaction(token, transaction_id, {"category": category})
    except LedgerApiError as e:
        logger.error("Failed to update category from notification: %s", e)
        return {"type": "OPEN_APP", "transactionId": transaction_id}

    logger.info("Category set via notification: %s for txn %s", category, transaction_id)
    return {"type": "CATEGORY_SET", "transactionId": transaction_id, "category": category}
