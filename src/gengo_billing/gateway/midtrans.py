"""
Midtrans Snap adapter.

Only the parts billing needs: create a Snap transaction, query a
transaction's status, and verify webhook signatures. When no server key is
configured the mock client stands in so checkout flows work locally.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from ..config import Settings
from ..errors import GatewayUnavailableError
from ..models.payment import GatewayNotification, SnapTransaction, SnapTransactionRequest


logger = logging.getLogger(__name__)

SNAP_URL_SANDBOX = "https://app.sandbox.midtrans.com/snap/v1/transactions"
SNAP_URL_PRODUCTION = "https://app.midtrans.com/snap/v1/transactions"
API_URL_SANDBOX = "https://api.sandbox.midtrans.com/v2"
API_URL_PRODUCTION = "https://api.midtrans.com/v2"

MOCK_SERVER_KEY = "mock-server-key"


def compute_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    payload = f"{order_id}{status_code}{gross_amount}{server_key}".encode("utf-8")
    return hashlib.sha512(payload).hexdigest()


def signature_matches(notification: GatewayNotification, server_key: str) -> bool:
    expected = compute_signature(
        notification.order_id,
        notification.status_code,
        notification.gross_amount,
        server_key,
    )
    return hmac.compare_digest(expected.encode("utf-8"), (notification.signature_key or "").encode("utf-8"))


class PaymentGateway(Protocol):
    is_mock: bool

    async def create_transaction(self, request: SnapTransactionRequest) -> SnapTransaction:
        ...

    async def get_transaction_status(self, order_id: str) -> Dict[str, Any]:
        ...

    def verify_signature(self, notification: GatewayNotification) -> bool:
        ...


class MidtransClient:
    is_mock = False

    def __init__(
        self,
        server_key: str,
        is_production: bool = False,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._server_key = server_key
        self._snap_url = SNAP_URL_PRODUCTION if is_production else SNAP_URL_SANDBOX
        self._api_url = API_URL_PRODUCTION if is_production else API_URL_SANDBOX
        self._timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        token = base64.b64encode(f"{self._server_key}:".encode("utf-8")).decode("ascii")
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Basic {token}",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def create_transaction(self, request: SnapTransactionRequest) -> SnapTransaction:
        try:
            async with self._client() as client:
                response = await client.post(self._snap_url, json=request.to_payload(), headers=self._headers())
        except httpx.HTTPError as exc:
            logger.warning("Midtrans unreachable for order %s: %s", request.order_id, exc)
            raise GatewayUnavailableError(f"payment gateway unreachable: {exc}", request.order_id) from exc

        if response.status_code >= 400:
            messages = self._error_messages(response)
            logger.warning(
                "Midtrans rejected order %s (%s): %s", request.order_id, response.status_code, messages
            )
            raise GatewayUnavailableError(
                f"payment gateway error {response.status_code}: {messages}",
                request.order_id,
                retryable=response.status_code >= 500,
            )

        data = response.json()
        return SnapTransaction(token=data["token"], redirect_url=data["redirect_url"])

    async def get_transaction_status(self, order_id: str) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.get(f"{self._api_url}/{order_id}/status", headers=self._headers())
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise GatewayUnavailableError(f"status lookup failed: {exc}", order_id) from exc
        return response.json()

    def verify_signature(self, notification: GatewayNotification) -> bool:
        return signature_matches(notification, self._server_key)

    @staticmethod
    def _error_messages(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text
        messages = body.get("error_messages") if isinstance(body, dict) else None
        return "; ".join(messages) if messages else str(body)


class MockMidtransClient:
    """Gateway stand-in for development: no network, deterministic tokens."""

    is_mock = True

    def __init__(self, app_url: str = "http://localhost:3000", server_key: str = MOCK_SERVER_KEY) -> None:
        self._app_url = app_url.rstrip("/")
        self._server_key = server_key
        self.requests: list[SnapTransactionRequest] = []

    async def create_transaction(self, request: SnapTransactionRequest) -> SnapTransaction:
        self.requests.append(request)
        return SnapTransaction(
            token=f"mock-{request.order_id}",
            redirect_url=f"{self._app_url}/payment/mock?order_id={request.order_id}",
        )

    async def get_transaction_status(self, order_id: str) -> Dict[str, Any]:
        return {"order_id": order_id, "transaction_status": "pending", "status_code": "201"}

    def verify_signature(self, notification: GatewayNotification) -> bool:
        return signature_matches(notification, self._server_key)

    def sign(self, order_id: str, status_code: str, gross_amount: str) -> str:
        return compute_signature(order_id, status_code, gross_amount, self._server_key)


def create_gateway(settings: Settings) -> PaymentGateway:
    if settings.midtrans_mock_mode:
        logger.info("Midtrans server key not configured; using mock gateway")
        return MockMidtransClient(app_url=settings.APP_URL)
    return MidtransClient(
        server_key=settings.midtrans_server_key or "",
        is_production=settings.MIDTRANS_IS_PRODUCTION,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
    )
