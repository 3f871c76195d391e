"""
TikTok Events API notifier.

Reports placed orders to the marketing pixel from the server side. Delivery is
best effort: one attempt per order, bounded by a timeout, and nothing that
goes wrong here reaches the customer or undoes the order.
"""

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from secrets import token_hex
from typing import Optional

import requests

from errors import NotifierError
from settings import NotifierConfig

logger = logging.getLogger(__name__)

ORDER_PLACED_EVENT = "CompletePayment"


def hash_identifier(value: str, phone: bool = False) -> str:
    value = value.strip().lower()
    if phone:
        value = value.replace(" ", "").replace("-", "")
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def generate_event_id() -> str:
    return f"{int(time.time() * 1000)}-{token_hex(6)}"


@dataclass
class OrderEvent:
    order_id: str
    value: int
    quantity: int
    mobile: str
    event_id: str
    page_url: Optional[str] = None
    referrer: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None


def run_in_background(task):
    thread = threading.Thread(target=task, name="event-notifier", daemon=True)
    thread.start()
    return thread


class EventNotifier:
    def __init__(self, config: Optional[NotifierConfig] = None, http=None, dispatcher=None):
        self.config = config or NotifierConfig()
        self.http = http or requests.Session()
        self.dispatcher = dispatcher or run_in_background

    def build_payload(self, event: OrderEvent, event_name: str = ORDER_PLACED_EVENT):
        return {
            "data": [
                {
                    "pixel_code": self.config.pixel_code,
                    "event": event_name,
                    "event_id": event.event_id,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "context": {
                        "user": {
                            "phone_number": hash_identifier(event.mobile, phone=True),
                            "ip": event.ip,
                            "user_agent": event.user_agent,
                        },
                        "page": {"url": event.page_url, "referrer": event.referrer},
                        "ad": {"callback": event.event_id},
                    },
                    "properties": {
                        "order_id": event.order_id,
                        "value": event.value,
                        "quantity": event.quantity,
                        "currency": self.config.currency,
                        "content_type": "product",
                        "content_name": self.config.content_name,
                    },
                }
            ]
        }

    def _post(self, payload):
        try:
            response = self.http.post(
                self.config.endpoint,
                json=payload,
                headers={"Access-Token": self.config.access_token},
                timeout=self.config.timeout,
            )
            response.raise_for_status()
            result = response.json()
        except requests.RequestException as exc:
            raise NotifierError(f"request failed: {exc}") from exc
        except ValueError as exc:
            raise NotifierError("response was not JSON") from exc
        if not isinstance(result, dict):
            raise NotifierError("response was not a JSON object")
        if result.get("code") != 0:
            raise NotifierError(f"API error {result.get('code')}: {result.get('message')}")

    def send(self, event: OrderEvent, event_name: str = ORDER_PLACED_EVENT) -> bool:
        if not self.config.enabled:
            logger.warning("TikTok Events API: missing pixel id or access token, %s not sent", event_name)
            return False
        try:
            self._post(self.build_payload(event, event_name))
        except NotifierError as exc:
            logger.error("TikTok Events API: %s for order %s not sent: %s", event_name, event.order_id, exc)
            return False
        logger.info("TikTok Events API: %s sent for order %s", event_name, event.order_id)
        return True

    def notify_order_placed(self, event: OrderEvent):
        """Fire ``send`` without waiting for it. Never raises."""
        try:
            self.dispatcher(lambda: self.send(event))
        except Exception:
            logger.exception("Could not dispatch order event for %s", event.order_id)
