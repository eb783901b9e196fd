"""NETS QR sandbox gateway: QR request and transaction status query."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from storefront.config import Config
from storefront.errors import RemoteProviderError

NETS_SUCCESS_CODE = "00"
TXN_STATUS_SUCCESS = 1
TXN_STATUS_FAILED = 2


@dataclass(frozen=True)
class NetsStatus:
    response_code: Optional[str]
    txn_status: Optional[int]
    raw: Dict[str, Any]

    @property
    def succeeded(self) -> bool:
        return self.response_code == NETS_SUCCESS_CODE and self.txn_status == TXN_STATUS_SUCCESS

    def failed_after_timeout(self, timeout_flag: int) -> bool:
        return bool(timeout_flag) and (
            self.response_code != NETS_SUCCESS_CODE or self.txn_status == TXN_STATUS_FAILED
        )

    @classmethod
    def from_response(cls, body: Dict[str, Any]) -> "NetsStatus":
        data = ((body.get("result") or {}).get("data")) or {}
        txn_status = data.get("txn_status")
        try:
            txn_status = int(txn_status) if txn_status is not None else None
        except (TypeError, ValueError):
            txn_status = None
        code = data.get("response_code")
        return cls(response_code=str(code) if code is not None else None, txn_status=txn_status, raw=body)


class NetsQrClient:
    def __init__(
        self,
        api_base: Optional[str] = None,
        api_key: Optional[str] = None,
        project_id: Optional[str] = None,
        timeout: Optional[float] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.api_base = (api_base or Config.NETS_API_BASE).rstrip("/")
        self.api_key = api_key if api_key is not None else Config.NETS_API_KEY
        self.project_id = project_id if project_id is not None else Config.NETS_PROJECT_ID
        self.timeout = timeout or Config.HTTP_TIMEOUT_SECONDS
        self.http = http or requests.Session()
        self.logger = logging.getLogger(__name__)

    def request_qr_code(self, amount: str, invoice_number: str) -> Dict[str, Any]:
        """
        Ask the gateway for a QR code. Returns the ``result.data`` block, which
        carries ``qr_code`` and ``txn_retrieval_ref`` on success.
        """
        body = self._post(
            "/request",
            "QR request",
            {
                "txn_id": invoice_number,
                "amt_in_dollars": amount,
                "notify_mobile": 0,
            },
        )
        data = ((body.get("result") or {}).get("data")) or {}
        if data.get("response_code") != NETS_SUCCESS_CODE or not data.get("qr_code"):
            raise RemoteProviderError(
                "nets",
                "Unable to generate a NETS QR code. Please try again.",
                detail=str(data.get("network_status") or data.get("response_code")),
            )
        return data

    def query_transaction_status(self, retrieval_ref: str, timeout_flag: int = 0) -> NetsStatus:
        body = self._post(
            "/query",
            "status query",
            {"txn_retrieval_ref": retrieval_ref, "frontend_timeout_status": timeout_flag},
        )
        return NetsStatus.from_response(body)

    def _post(self, path: str, action: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.http.post(
                f"{self.api_base}{path}",
                json=payload,
                headers={
                    "api-key": self.api_key,
                    "project-id": self.project_id,
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            self.logger.error("NETS %s failed: %s", action, exc)
            status = getattr(getattr(exc, "response", None), "status_code", None)
            raise RemoteProviderError("nets", f"NETS {action} failed.", status=status, detail=str(exc)) from exc
        return response.json()
