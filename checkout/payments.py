import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from .errors import PaymentGatewayFailure
from .models import Order, PaymentSession
from .settings import (
    MIDTRANS_SERVER_KEY,
    MIDTRANS_SNAP_URL,
    PAYMENT_CHANNELS,
    PAYMENT_EXPIRY_DURATION,
    PAYMENT_EXPIRY_UNIT,
    PAYMENT_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)


class PaymentSessionGateway:
    """
    Opens a hosted payment session (Midtrans Snap) for a committed order.

    The order code is the gateway's transaction id, so retrying for the same
    order must go through this gateway with the same `Order`.
    """

    def __init__(
        self,
        snap_url: str = MIDTRANS_SNAP_URL,
        server_key: str = MIDTRANS_SERVER_KEY,
        channels: Optional[list[str]] = None,
        expiry_unit: str = PAYMENT_EXPIRY_UNIT,
        expiry_duration: int = PAYMENT_EXPIRY_DURATION,
        timeout: float = PAYMENT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.snap_url = snap_url
        self.server_key = server_key
        self.channels = list(PAYMENT_CHANNELS if channels is None else channels)
        self.expiry_unit = expiry_unit
        self.expiry_duration = expiry_duration
        self.timeout = timeout
        self.transport = transport

    def build_payload(self, order: Order, now: Optional[datetime] = None) -> dict:
        now = now or datetime.now(timezone.utc)
        return {
            "transaction_details": {
                "order_id": order.code,
                "gross_amount": order.grand_total,
            },
            "customer_details": {
                "first_name": order.customer_first_name,
                "last_name": order.customer_last_name,
                "email": order.customer_email,
                "phone": order.customer_phone,
            },
            "expiry": {
                "start_time": now.strftime("%Y-%m-%d %H:%M:%S %z"),
                "unit": self.expiry_unit,
                "duration": self.expiry_duration,
            },
            "enable_payments": self.channels,
        }

    async def open(self, order: Order) -> PaymentSession:
        payload = self.build_payload(order)
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                r = await client.post(
                    self.snap_url,
                    json=payload,
                    auth=(self.server_key, ""),
                    headers={"Accept": "application/json"},
                    timeout=self.timeout,
                )
                r.raise_for_status()
                body = r.json()
            return PaymentSession(token=body["token"], redirect_url=body["redirect_url"])
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.error("payment session for order %s failed: %r", order.code, e)
            raise PaymentGatewayFailure(order.code) from e
