import logging
import os
from typing import Dict, NamedTuple, Optional

import requests

from .helpers import serialize_document

logger = logging.getLogger(__name__)


class PaymentResult(NamedTuple):
    success: bool
    reference: Optional[str] = None


class FakePaymentProcessor:
    """Approves (or declines) every order without talking to anyone."""

    def __init__(self, approve: bool = True):
        self.approve = approve
        self.processed = []

    def process(self, order: Dict) -> PaymentResult:
        self.processed.append(order.get("_id"))
        if not self.approve:
            return PaymentResult(False)
        return PaymentResult(True, "PAY-" + os.urandom(4).hex().upper())


class HttpPaymentProcessor:
    """Charges orders through a JSON payment gateway.

    The gateway receives the order amount and reference and answers with
    ``{"success": bool, "reference": str}``.
    """

    def __init__(self, url: str, api_key: str = "", timeout: float = 30.0):
        if not url:
            raise ValueError("Payment gateway configuration is incomplete.")
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    def process(self, order: Dict) -> PaymentResult:
        payload = {
            "order_id": str(order.get("_id")),
            "amount": order.get("payable_amount"),
            "currency": order.get("currency"),
            "description": f"Order {order.get('_id')}",
            "items": serialize_document({"items": order.get("items", [])})["items"],
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        response = requests.post(
            self.url, json=payload, headers=headers, timeout=self.timeout
        )
        if not response.ok:
            logger.error(
                "Payment gateway rejected order %s: %s %s",
                payload["order_id"],
                response.status_code,
                response.text[:200],
            )
            return PaymentResult(False)

        try:
            data = response.json()
        except ValueError:
            logger.error("Payment gateway sent a non-JSON body for order %s", payload["order_id"])
            return PaymentResult(False)

        reference = data.get("reference") or data.get("id")
        return PaymentResult(bool(data.get("success")), str(reference) if reference else None)


def build_payment_processor(config: Dict):
    provider = config.get("PAYMENT_PROVIDER", "fake")
    if provider == "http":
        return HttpPaymentProcessor(
            config.get("PAYMENT_GATEWAY_URL", ""),
            config.get("PAYMENT_GATEWAY_API_KEY", ""),
            timeout=config.get("PAYMENT_TIMEOUT_SECONDS", 30.0),
        )
    if provider == "fake":
        return FakePaymentProcessor()
    raise ValueError(f"Unknown payment provider: {provider}")
