"""
PhonePe payment integration.

Outbound, ``initiate_payment`` signs a pay-page request and stores the merchant
transaction id on the order. Inbound, ``process_callback`` verifies the
gateway's notification and moves the order's payment status exactly once:
callbacks can arrive more than once and out of order, so the transition is a
single conditional update that only succeeds while the order is unpaid and
still carries the same transaction id. Only the caller whose update succeeded
clears the cart.
"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Optional

import httpx

import carts
from config import Settings
from database import Store
from errors import Conflict, Internal, InvalidInput, InvalidState, NotFound, UpstreamFailure
from schemas import SETTLED_PAYMENT_STATUSES, PaymentInitiateRequest

logger = logging.getLogger(__name__)

PAY_PATH = "/pg/v1/pay"
MAX_AMOUNT = 1_000_000
CALLBACK_STATUSES = {
    "PAYMENT_SUCCESS": "paid",
    "PAYMENT_PENDING": "pending",
}


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def request_checksum(payload: str, path: str, salt_key: str, salt_index: str) -> str:
    return f"{_sha256(payload + path + salt_key)}###{salt_index}"


def callback_checksum(payload: str, salt_key: str, salt_index: str) -> str:
    return f"{_sha256(payload + salt_key)}###{salt_index}"


def checksums_match(received: str, expected: str) -> bool:
    return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))


def new_transaction_id(order_id: str) -> str:
    return f"TXN_{order_id}_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


def order_id_from_transaction(transaction_id: str) -> str:
    parts = transaction_id.split("_")
    if len(parts) < 2 or not parts[1]:
        raise InvalidInput("Invalid transaction ID format")
    return parts[1]


def _require_credentials(settings: Settings, *, merchant: bool) -> None:
    missing = not settings.phonepe_salt_key or not settings.phonepe_salt_index
    if merchant and not settings.phonepe_merchant_id:
        missing = True
    if missing:
        raise Internal("PhonePe credentials not configured")


class PhonePeClient:
    """Thin async client for the PhonePe pay API."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "PhonePeClient":
        return cls(settings.gateway_url, timeout=settings.phonepe_timeout)

    async def pay(self, payload: str, checksum: str) -> dict:
        headers = {"X-VERIFY": checksum, "accept": "application/json"}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(PAY_PATH, json={"request": payload}, headers=headers)
        except httpx.TimeoutException as exc:
            logger.error("PhonePe request timed out after %ss", self.timeout)
            raise UpstreamFailure("Payment gateway timed out, please retry") from exc
        except httpx.TransportError as exc:
            logger.error("PhonePe request failed: %s", exc)
            raise UpstreamFailure("Payment gateway unreachable, please retry") from exc

        if response.status_code >= 500:
            logger.error("PhonePe returned HTTP %s", response.status_code)
            raise UpstreamFailure("Payment gateway unavailable, please retry")
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamFailure("Invalid response from payment gateway", retryable=False) from exc


async def initiate_payment(
    store: Store,
    settings: Settings,
    gateway: PhonePeClient,
    user_id: str,
    request: PaymentInitiateRequest,
) -> dict:
    _require_credentials(settings, merchant=True)
    if request.amount <= 0 or request.amount > MAX_AMOUNT:
        raise InvalidInput("Invalid amount")

    order = await store.find_order(request.order_id, user_id=user_id)
    if order is None:
        raise NotFound("Order", request.order_id)
    if abs(order["total"] - request.amount) > 0.01:
        raise InvalidInput("Amount mismatch")
    if order["status"] == "cancelled":
        raise InvalidState("Cannot pay for a cancelled order")
    if order.get("payment_status") in SETTLED_PAYMENT_STATUSES:
        raise InvalidState("Order is already paid")

    order_id = order["id"]
    transaction_id = new_transaction_id(order_id)
    payload = {
        "merchantId": settings.phonepe_merchant_id,
        "merchantTransactionId": transaction_id,
        "merchantUserId": user_id,
        "amount": int(round(request.amount * 100)),
        "redirectUrl": f"{settings.frontend_url}/payment/success?orderId={order_id}&txnId={transaction_id}",
        "redirectMode": "REDIRECT",
        "callbackUrl": f"{settings.frontend_url}/api/payment/phonepe/callback",
        "mobileNumber": request.customer_phone,
        "paymentInstrument": {"type": "PAY_PAGE"},
    }
    encoded = base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")
    checksum = request_checksum(encoded, PAY_PATH, settings.phonepe_salt_key, settings.phonepe_salt_index)

    result = await gateway.pay(encoded, checksum)
    if not result.get("success"):
        logger.error("PhonePe rejected payment for order %s: %s", order_id, result.get("message"))
        raise UpstreamFailure(result.get("message") or "Payment initiation failed", retryable=False)
    try:
        redirect_url = result["data"]["instrumentResponse"]["redirectInfo"]["url"]
    except (KeyError, TypeError) as exc:
        raise UpstreamFailure("Invalid response from payment gateway", retryable=False) from exc

    updated = await store.update_order(
        order_id,
        {
            "merchant_transaction_id": transaction_id,
            "payment_status": "initiated",
            "updated_at": datetime.now(timezone.utc),
        },
        payment_status_not_in=SETTLED_PAYMENT_STATUSES,
    )
    if updated is None:
        raise InvalidState("Order is already paid")
    logger.info("Payment initiated for order %s, TxnID: %s", order_id, transaction_id)
    return {"success": True, "redirect_url": redirect_url, "merchant_transaction_id": transaction_id}


def _decode_envelope(encoded: str) -> dict:
    try:
        envelope = json.loads(base64.b64decode(encoded, validate=True).decode("utf-8"))
    except (binascii.Error, ValueError) as exc:
        logger.warning("Rejected payment callback: payload is not base64 JSON")
        raise InvalidInput("Invalid response format") from exc
    if not isinstance(envelope, dict):
        logger.warning("Rejected payment callback: payload is not a JSON object")
        raise InvalidInput("Invalid response format")
    return envelope


def _already_processed(order: dict) -> dict:
    logger.info("Payment already processed for order: %s", order["id"])
    return {
        "success": True,
        "order_id": order["id"],
        "status": order["payment_status"],
        "message": "Already processed",
    }


async def process_callback(
    store: Store,
    settings: Settings,
    encoded: Optional[str],
    received_checksum: Optional[str],
) -> dict:
    _require_credentials(settings, merchant=False)
    if not encoded:
        raise InvalidInput("Missing response data")
    envelope = _decode_envelope(encoded)

    if not received_checksum:
        logger.warning("Rejected payment callback: missing checksum")
        raise InvalidInput("Missing checksum")
    expected = callback_checksum(encoded, settings.phonepe_salt_key, settings.phonepe_salt_index)
    if not checksums_match(received_checksum, expected):
        logger.error("Payment callback checksum verification failed")
        raise InvalidInput("Invalid checksum - potential tampering detected")

    data = envelope.get("data")
    if not isinstance(data, dict):
        data = {}
    transaction_id = data.get("merchantTransactionId")
    if not transaction_id or not isinstance(transaction_id, str):
        raise InvalidInput("Missing transaction ID")
    order_id = order_id_from_transaction(transaction_id)

    order = await store.find_order(order_id)
    if order is None:
        logger.warning("Payment callback for unknown order %s", order_id)
        raise NotFound("Order", order_id)
    if order.get("merchant_transaction_id") != transaction_id:
        logger.error("Transaction ID mismatch for order %s", order_id)
        raise Conflict("Transaction ID mismatch")
    if order.get("payment_status") in SETTLED_PAYMENT_STATUSES:
        return _already_processed(order)

    status = CALLBACK_STATUSES.get(envelope.get("code"), "failed")
    gateway_transaction_id = data.get("transactionId")
    now = datetime.now(timezone.utc)
    changes = {
        "payment_status": status,
        "gateway_transaction_id": gateway_transaction_id or transaction_id,
        "updated_at": now,
    }
    if status == "paid":
        changes["paid_at"] = now
        if order["status"] == "cancelled":
            changes["refund_status"] = "requested"

    updated = await store.update_order(
        order["id"],
        changes,
        payment_status_not_in=SETTLED_PAYMENT_STATUSES,
        merchant_transaction_id=transaction_id,
    )
    if updated is None:
        current = await store.find_order(order["id"])
        if current is not None and current.get("payment_status") in SETTLED_PAYMENT_STATUSES:
            return _already_processed(current)
        logger.error("Transaction ID mismatch for order %s", order_id)
        raise Conflict("Transaction ID mismatch")

    if status == "paid":
        await carts.clear_cart(store, updated["user_id"])
        if updated.get("refund_status") == "requested":
            logger.info("Refund requested for order %s (paid after cancellation)", updated["order_number"])
    logger.info(
        "Payment callback processed - Order: %s, Status: %s, TxnID: %s",
        order_id, status, gateway_transaction_id,
    )
    return {"success": True, "order_id": updated["id"], "status": status}
