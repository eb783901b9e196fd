"""Minimal PayPal Orders v2 client (create + capture)."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from storefront.config import Config
from storefront.errors import RemoteProviderError

CAPTURE_COMPLETED = "COMPLETED"


@dataclass(frozen=True)
class PayPalCapture:
    order_id: str
    status: Optional[str]
    capture_id: Optional[str]
    payer_email: Optional[str]

    @property
    def completed(self) -> bool:
        return self.status == CAPTURE_COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "captureId": self.capture_id,
            "status": self.status or CAPTURE_COMPLETED,
            "payerEmail": self.payer_email,
        }

    @classmethod
    def from_response(cls, order_id: str, body: Dict[str, Any]) -> "PayPalCapture":
        """Prefer the capture-level status over the order-level one."""
        units = body.get("purchase_units") or [{}]
        captures = ((units[0] or {}).get("payments") or {}).get("captures") or [{}]
        capture = captures[0] or {}
        return cls(
            order_id=order_id,
            status=capture.get("status") or body.get("status"),
            capture_id=capture.get("id"),
            payer_email=(body.get("payer") or {}).get("email_address"),
        )


class PayPalClient:
    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        currency: Optional[str] = None,
        timeout: Optional[float] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.client_id = client_id if client_id is not None else Config.PAYPAL_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else Config.PAYPAL_CLIENT_SECRET
        self.api_base = (api_base or Config.PAYPAL_API_BASE).rstrip("/")
        self.currency = currency or Config.CURRENCY
        self.timeout = timeout or Config.HTTP_TIMEOUT_SECONDS
        self.http = http or requests.Session()
        self.logger = logging.getLogger(__name__)

    def get_access_token(self) -> str:
        if not self.client_id or not self.client_secret:
            raise RemoteProviderError("paypal", "Missing PayPal configuration.")
        body = self._request(
            "post",
            "/v1/oauth2/token",
            "token",
            auth=(self.client_id, self.client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            data={"grant_type": "client_credentials"},
        )
        token = body.get("access_token")
        if not token:
            raise RemoteProviderError("paypal", "PayPal token missing access_token.")
        return token

    def create_order(self, amount: str, invoice_number: str) -> Dict[str, Any]:
        """Create a CAPTURE-intent order for exactly ``amount`` (a 0.00 string)."""
        token = self.get_access_token()
        return self._request(
            "post",
            "/v2/checkout/orders",
            "create order",
            headers={"Authorization": f"Bearer {token}"},
            json={
                "intent": "CAPTURE",
                "purchase_units": [{
                    "amount": {"currency_code": self.currency, "value": amount},
                    "invoice_id": invoice_number,
                }],
            },
        )

    def capture_order(self, order_id: str) -> PayPalCapture:
        token = self.get_access_token()
        body = self._request(
            "post",
            f"/v2/checkout/orders/{order_id}/capture",
            "capture",
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
        )
        return PayPalCapture.from_response(order_id, body)

    def _request(self, method: str, path: str, action: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.api_base}{path}"
        try:
            response = self.http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            self.logger.error("PayPal %s request failed: %s", action, exc)
            raise RemoteProviderError("paypal", f"PayPal {action} request failed.", detail=str(exc)) from exc

        if not response.ok:
            self.logger.error(
                "PayPal %s error: %s",
                action,
                response.status_code,
                extra={"body": response.text[:500]},
            )
            raise RemoteProviderError(
                "paypal",
                f"PayPal {action} error: {response.status_code}",
                status=response.status_code,
                detail=response.text,
            )
        return response.json()
