import hashlib
import hmac
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

import httpx

from aurelia.common.circuit_breaker import CircuitBreaker
from aurelia.common.custom_exceptions import (
    ConfigurationError,
    GatewayAuthError,
    GatewayError,
    GatewayNotFoundError,
    GatewayRateLimitedError,
    GatewayRequestError,
    GatewayUnavailableError,
)
from aurelia.common.retries import retry_with_circuit
from aurelia.common.utils import amount_to_paise
from aurelia.payments.constants import logger

TRANSIENT_EXCEPTIONS = (
    httpx.ConnectError,
    httpx.TimeoutException,
    httpx.RemoteProtocolError,
    httpx.NetworkError,
)


class PaymentGatewayAdapter(Protocol):
    """What the reconciliation engine needs from a payment provider."""

    async def create_remote_order(self, order_id: int, amount: Decimal, currency: str = "INR", *,
                                  receipt: Optional[str] = None, notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]: ...

    async def fetch_remote_order(self, remote_order_id: str) -> Dict[str, Any]: ...

    async def fetch_payments(self, remote_order_id: str) -> List[Dict[str, Any]]: ...

    async def fetch_payment(self, remote_payment_id: str) -> Dict[str, Any]: ...

    def verify_signature(self, remote_order_id: str, remote_payment_id: str, signature: str) -> bool: ...

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool: ...

    async def refund(self, remote_payment_id: str, amount: Optional[Decimal] = None, *,
                     notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]: ...


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _error_from_response(resp: httpx.Response) -> GatewayError:
    status_code = resp.status_code
    try:
        body = resp.json()
        description = (body.get("error") or {}).get("description") or resp.text
    except ValueError:
        description = resp.text
    message = f"razorpay responded {status_code}: {description}"

    if status_code in (401, 403):
        return GatewayAuthError(message, gateway_status=status_code)
    if status_code == 404:
        return GatewayNotFoundError(message, gateway_status=status_code)
    if status_code == 429:
        return GatewayRateLimitedError(message, gateway_status=status_code)
    if status_code >= 500:
        return GatewayUnavailableError(message, gateway_status=status_code)
    return GatewayRequestError(message, gateway_status=status_code)


class RazorpayGateway:
    """Razorpay REST client. Network failures and error statuses surface as typed GatewayErrors."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        *,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        circuit: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not key_id or not key_secret or not webhook_secret:
            raise ConfigurationError("Razorpay key id, key secret and webhook secret are required")
        self._key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._circuit = circuit or CircuitBreaker(name="razorpay")
        self._transport = transport

    @classmethod
    def from_settings(cls, settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> "RazorpayGateway":
        missing = [
            name for name in ("RZPAY_KEY", "RZPAY_SECRET", "RAZORPAY_WEBHOOK_SECRET")
            if not getattr(settings, name, None)
        ]
        if missing:
            raise ConfigurationError(
                f"Payment gateway is not configured: missing {', '.join(missing)}",
                details={"missing": missing},
            )
        return cls(
            settings.RZPAY_KEY,
            settings.RZPAY_SECRET,
            settings.RAZORPAY_WEBHOOK_SECRET,
            base_url=settings.RZPAY_GATEWAY_URL,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            max_attempts=settings.GATEWAY_MAX_ATTEMPTS,
            backoff_base=settings.GATEWAY_BACKOFF_BASE,
            circuit=CircuitBreaker(
                name="razorpay",
                failure_threshold=settings.GATEWAY_FAILURE_THRESHOLD,
                recovery_timeout=settings.GATEWAY_RECOVERY_TIMEOUT,
            ),
            transport=transport,
        )

    @retry_with_circuit()
    async def _request(self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None,
                       params: Optional[Dict[str, Any]] = None,
                       idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                auth=(self._key_id, self._key_secret),
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                resp = await client.request(method, path, json=json, params=params, headers=headers)
        except TRANSIENT_EXCEPTIONS as exc:
            raise GatewayUnavailableError(f"razorpay {method} {path} failed: {exc.__class__.__name__}") from exc

        if resp.is_success:
            return resp.json()

        err = _error_from_response(resp)
        logger.warning(
            "razorpay.request.failed",
            extra={"method": method, "path": path, "gateway_status": resp.status_code, "error_code": err.code},
        )
        raise err

    async def create_remote_order(self, order_id: int, amount: Decimal, currency: str = "INR", *,
                                  receipt: Optional[str] = None, notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        body = {
            "amount": amount_to_paise(amount),
            "currency": currency,
            "receipt": receipt or f"order_{order_id}",
            "notes": {"order_id": str(order_id), **(notes or {})},
        }
        return await self._request("POST", "/orders", json=body, idempotency_key=f"order_{order_id}")

    async def fetch_remote_order(self, remote_order_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/orders/{remote_order_id}")

    async def fetch_payments(self, remote_order_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/orders/{remote_order_id}/payments")
        return list(data.get("items") or [])

    async def fetch_payment(self, remote_payment_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/payments/{remote_payment_id}")

    async def refund(self, remote_payment_id: str, amount: Optional[Decimal] = None, *,
                     notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"notes": notes or {}}
        if amount is not None:
            body["amount"] = amount_to_paise(amount)
        return await self._request("POST", f"/payments/{remote_payment_id}/refund", json=body)

    def verify_signature(self, remote_order_id: str, remote_payment_id: str, signature: str) -> bool:
        if not signature:
            return False
        expected = hmac_sha256_hex(self._key_secret, f"{remote_order_id}|{remote_payment_id}".encode())
        return hmac.compare_digest(expected, signature)

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        if not signature:
            return False
        expected = hmac_sha256_hex(self._webhook_secret, raw_body)
        return hmac.compare_digest(expected, signature)
