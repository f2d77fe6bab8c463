"""
Paystack gateway client.
Amounts on the wire are integer minor units (cents for KES); the domain stores major units.
"""
import hmac
import hashlib
import secrets
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from core.config import (
    logger,
    PAYSTACK_API_BASE,
    PAYSTACK_SECRET_KEY,
    PAYSTACK_PUBLIC_KEY,
    PAYSTACK_CURRENCY,
    PAYSTACK_TIMEOUT_SEC,
)

if not PAYSTACK_SECRET_KEY:
    logger.warning("[paystack] PAYSTACK_SECRET_KEY is not set. Paystack payments will not work.")
if not PAYSTACK_PUBLIC_KEY:
    logger.warning("[paystack] PAYSTACK_PUBLIC_KEY is not set. Paystack payments will not work.")


class PaystackError(Exception):
    """Gateway unreachable, misconfigured, or rejected the request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class InitializedTransaction:
    authorization_url: str
    access_code: str
    reference: str


@dataclass
class VerifiedTransaction:
    status: str  # "success" | "failed" | "pending" | other gateway states
    amount: int  # minor units
    currency: str
    reference: str
    paid_at: Optional[str] = None
    gateway_response: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def to_minor_units(amount) -> int:
    """Major-unit amount (Decimal/float/str) to integer minor units, half-up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> float:
    return int(amount or 0) / 100


def generate_reference() -> str:
    return f"txn_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _headers() -> dict:
    return {
        "Authorization": f"Bearer {PAYSTACK_SECRET_KEY}",
        "Content-Type": "application/json",
        "Accept": "application/json",
        "User-Agent": "PaydeskBackend/1.0",
    }


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=PAYSTACK_API_BASE, timeout=PAYSTACK_TIMEOUT_SEC)


def _require_secret() -> None:
    if not PAYSTACK_SECRET_KEY:
        raise PaystackError("PAYSTACK_SECRET_KEY is not configured")


def _parse_body(resp: httpx.Response, action: str) -> dict:
    try:
        data = resp.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    if resp.status_code >= 400 or not data.get("status"):
        message = str(data.get("message") or f"Failed to {action} transaction")
        logger.warning(f"[paystack] {action} failed: status={resp.status_code} message={message}")
        raise PaystackError(message, status_code=resp.status_code)
    inner = data.get("data")
    return inner if isinstance(inner, dict) else {}


async def initialize_transaction(
    email: str,
    amount: int,
    reference: Optional[str] = None,
    callback_url: Optional[str] = None,
    metadata: Optional[dict] = None,
    currency: Optional[str] = None,
) -> InitializedTransaction:
    """Start a hosted checkout. `amount` is in minor units."""
    _require_secret()
    payload = {
        "email": email,
        "amount": str(int(amount)),  # Paystack expects the amount as a string
        "reference": reference or generate_reference(),
        "currency": (currency or PAYSTACK_CURRENCY).upper(),
        "callback_url": callback_url,
        "metadata": metadata or {},
    }
    try:
        async with _client() as client:
            logger.info(f"[paystack] initializing transaction reference={payload['reference']} amount={payload['amount']}")
            resp = await client.post("/transaction/initialize", headers=_headers(), json=payload)
    except httpx.HTTPError as ex:
        logger.error(f"[paystack] initialize request error: {ex}")
        raise PaystackError(f"Failed to reach Paystack: {ex}") from ex

    data = _parse_body(resp, "initialize")
    authorization_url = str(data.get("authorization_url") or "")
    if not authorization_url:
        raise PaystackError("Paystack response missing authorization_url", status_code=resp.status_code)
    return InitializedTransaction(
        authorization_url=authorization_url,
        access_code=str(data.get("access_code") or ""),
        reference=str(data.get("reference") or payload["reference"]),
    )


async def verify_transaction(reference: str) -> VerifiedTransaction:
    """Fetch the gateway's view of a transaction. Transport errors raise, they are never a 'failed' status."""
    _require_secret()
    try:
        async with _client() as client:
            # Encoded as a single path segment so the reference cannot address another endpoint
            resp = await client.get(f"/transaction/verify/{quote(reference, safe='')}", headers=_headers())
    except httpx.HTTPError as ex:
        logger.error(f"[paystack] verify request error for {reference}: {ex}")
        raise PaystackError(f"Failed to reach Paystack: {ex}") from ex

    data = _parse_body(resp, "verify")
    try:
        amount = int(data.get("amount") or 0)
    except (TypeError, ValueError):
        raise PaystackError(f"Paystack returned a non-integer amount: {data.get('amount')!r}")
    meta = data.get("metadata")
    return VerifiedTransaction(
        status=str(data.get("status") or "").strip().lower(),
        amount=amount,
        currency=str(data.get("currency") or ""),
        reference=str(data.get("reference") or reference),
        paid_at=data.get("paid_at") or data.get("paidAt"),
        gateway_response=data.get("gateway_response"),
        metadata=meta if isinstance(meta, dict) else {},
    )


def verify_webhook_signature(raw_body: bytes, signature: Optional[str]) -> bool:
    """HMAC-SHA512 over the exact raw request bytes, hex encoded."""
    if not PAYSTACK_SECRET_KEY or not signature:
        return False
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    digest = hmac.new(PAYSTACK_SECRET_KEY.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    try:
        received = signature.strip().lower().encode("ascii")
    except UnicodeEncodeError:
        # Headers arrive latin-1 decoded; a hex digest is pure ASCII
        return False
    return hmac.compare_digest(digest.encode("ascii"), received)
