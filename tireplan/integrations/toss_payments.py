from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

# Returned when an orderId was already paid; replaying a charge is not a decline.
ALREADY_PROCESSED = "ALREADY_PROCESSED_PAYMENT"


@dataclass(frozen=True)
class ChargeResult:
    ok: bool
    reason: Optional[str] = None
    http_status: Optional[int] = None
    payment_key: Optional[str] = None

    @classmethod
    def success(cls, payment_key: Optional[str] = None, http_status: int = 200) -> "ChargeResult":
        return cls(ok=True, http_status=http_status, payment_key=payment_key)

    @classmethod
    def failed(cls, reason: str, http_status: Optional[int] = None) -> "ChargeResult":
        return cls(ok=False, reason=reason, http_status=http_status)


class TossPaymentsClient:
    """Toss Payments billing-key charge client.

    ``charge`` never raises: declines, non-2xx answers, timeouts and transport
    errors all come back as a failed ChargeResult.
    """

    BASE_URL = "https://api.tosspayments.com/v1"

    def __init__(
        self,
        secret_key: str,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not secret_key:
            logger.warning("TOSS_PAYMENTS_SECRET_KEY is not configured; charges will be declined by the gateway")
        auth = base64.b64encode(f"{secret_key}:".encode("utf-8")).decode("ascii")
        self.client = httpx.AsyncClient(
            base_url=base_url or self.BASE_URL,
            headers={"Authorization": f"Basic {auth}", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def charge(self, customer_key: str, amount: int, order_id: str, description: str) -> ChargeResult:
        payload = {
            "amount": amount,
            "orderId": order_id,
            "orderName": description,
        }
        try:
            response = await self.client.post(f"/billing/authorizations/{customer_key}/payments", json=payload)
        except httpx.TimeoutException:
            logger.warning("Toss Payments timed out for order %s", order_id)
            return ChargeResult.failed("Payment gateway timed out")
        except httpx.HTTPError as exc:
            logger.warning("Toss Payments transport error for order %s: %s", order_id, exc)
            return ChargeResult.failed(f"Payment gateway unreachable: {exc}")
        except Exception as exc:
            logger.exception("Unexpected Toss Payments client error for order %s", order_id)
            return ChargeResult.failed(f"Payment gateway error: {exc}")

        body = self._json(response)
        if response.status_code == 200:
            return ChargeResult.success(payment_key=body.get("paymentKey"), http_status=200)

        code = body.get("code")
        if code == ALREADY_PROCESSED:
            logger.info("Order %s was already processed by Toss Payments", order_id)
            return ChargeResult.success(http_status=response.status_code)

        message = body.get("message") or f"HTTP {response.status_code}"
        logger.warning("Toss Payments declined order %s: %s %s", order_id, code, message)
        return ChargeResult.failed(message, http_status=response.status_code)

    async def aclose(self) -> None:
        await self.client.aclose()

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
