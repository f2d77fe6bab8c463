"""
Payments Router
Paystack checkout for shop orders and bookings, plus the two reconciliation
triggers: the user-facing verify redirect and the server-to-server webhook.
"""
import json
import secrets
import time
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Request, Query, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import logger, SITE_URL, SHIPPING_FEE, PAYSTACK_CURRENCY, PAYSTACK_SECRET_KEY, PAYSTACK_PUBLIC_KEY, PAYSTACK_API_BASE
from core.database import get_db
from models.shop import Product, Order, OrderItem, OrderStatus, PaymentStatus
from models.booking import Booking
from models.payment_event import PaymentEvent
from utils import paystack
from utils.paystack import PaystackError, to_minor_units, from_minor_units
from utils.payments import reconcile, ReconcileOutcome, PAYABLE_KINDS, ORDER, BOOKING
from utils.rate_limit import check_checkout_rate_limit

router = APIRouter(prefix="/api/payments", tags=["payments"])


# ============ Pydantic Models ============

class CheckoutRequest(BaseModel):
    productId: Optional[str] = None
    quantity: Optional[int] = 1
    customerEmail: Optional[str] = None
    customerName: Optional[str] = None
    shippingAddress: Optional[str] = None


class InitializeRequest(BaseModel):
    productId: Optional[str] = None
    quantity: Optional[int] = 1
    customerEmail: Optional[str] = None
    customerName: Optional[str] = None
    callbackUrl: Optional[str] = None


class BookingCheckoutRequest(BaseModel):
    bookingId: Optional[str] = None
    customerEmail: Optional[str] = None
    customerName: Optional[str] = None


# ============ Helper Functions ============

def generate_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


def _client_ip(request: Request) -> str:
    fwd = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if fwd:
        return fwd
    return request.client.host if request.client else "unknown"


def _rate_limited(request: Request) -> Optional[JSONResponse]:
    allowed, message = check_checkout_rate_limit(_client_ip(request))
    if not allowed:
        return JSONResponse({"error": message}, status_code=429)
    return None


def _transaction_summary(tx: paystack.VerifiedTransaction) -> dict:
    return {
        "reference": tx.reference,
        "amount": from_minor_units(tx.amount),
        "currency": tx.currency,
        "paidAt": tx.paid_at,
    }


async def _create_order_checkout(
    db: Session,
    product_id: Optional[str],
    quantity: Optional[int],
    customer_email: Optional[str],
    customer_name: Optional[str],
    shipping_address: Optional[str],
    callback_url: str,
    log_tag: str,
):
    """Create a PENDING order for one product and start its gateway transaction.
    Returns (order, transaction) or a JSONResponse describing the failure.
    """
    customer_email = (customer_email or "").strip()
    customer_name = (customer_name or "").strip()
    if not product_id or not customer_email or not customer_name:
        return JSONResponse(
            {"error": "Product ID, customer email, and customer name are required"},
            status_code=400,
        )
    qty = 1 if quantity is None else int(quantity)
    if qty < 1:
        return JSONResponse({"error": "Quantity must be at least 1"}, status_code=400)

    product = db.query(Product).filter(Product.id == product_id).first()
    if not product:
        return JSONResponse({"error": "Product not found"}, status_code=404)

    if not product.is_digital and (product.stock or 0) < qty:
        return JSONResponse({"error": "Insufficient stock available"}, status_code=400)

    unit_price = Decimal(str(product.price or 0))
    subtotal = unit_price * qty
    tax = Decimal("0")
    shipping = Decimal("0") if product.is_digital else Decimal(str(SHIPPING_FEE))
    total = subtotal + tax + shipping

    order = Order(
        order_number=generate_order_number(),
        customer_email=customer_email,
        customer_name=customer_name,
        shipping_address=shipping_address or None,
        subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        total=total,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        items=[OrderItem(product_id=product.id, quantity=qty, price=unit_price)],
    )
    db.add(order)
    db.commit()
    db.refresh(order)

    try:
        tx = await paystack.initialize_transaction(
            email=customer_email,
            amount=to_minor_units(total),
            reference=order.order_number,
            callback_url=callback_url,
            metadata={
                "orderId": order.id,
                "orderNumber": order.order_number,
                "customerName": customer_name,
                "productId": product.id,
                "productName": product.name,
                "quantity": qty,
            },
            currency=PAYSTACK_CURRENCY,
        )
    except PaystackError as ex:
        # Order stays PENDING without a reference; nothing looks paid
        logger.error(f"[payments.{log_tag}] gateway initialize failed for order {order.order_number}: {ex}")
        return JSONResponse({"error": str(ex) or "Failed to create checkout"}, status_code=502)

    order.payment_intent = tx.reference
    db.commit()
    logger.info(f"[payments.{log_tag}] order {order.order_number} checkout started (reference={tx.reference})")
    return order, tx


async def _verify(db: Session, reference: Optional[str], kinds, source: str):
    ref = (reference or "").strip()
    if not ref:
        return JSONResponse({"error": "Transaction reference is required"}, status_code=400)

    try:
        tx = await paystack.verify_transaction(ref)
    except PaystackError as ex:
        logger.error(f"[payments.{source}] gateway verify failed for {ref}: {ex}")
        return JSONResponse({"error": "Failed to verify payment", "detail": str(ex)}, status_code=502)

    try:
        result = reconcile(db, ref, tx.status, tx.amount, source=source, kinds=kinds)
    except SQLAlchemyError as ex:
        db.rollback()
        logger.error(f"[payments.{source}] reconciliation failed for {ref}: {ex}")
        return JSONResponse({"error": "Failed to verify payment"}, status_code=500)

    entity_name = "Booking" if kinds == (BOOKING,) else "Order"
    if result.outcome == ReconcileOutcome.NOT_FOUND:
        return JSONResponse({"error": f"{entity_name} not found for this transaction"}, status_code=404)
    if result.outcome == ReconcileOutcome.AMOUNT_MISMATCH:
        return JSONResponse(
            {
                "error": "Transaction amount mismatch",
                "expected": from_minor_units(result.expected_amount),
                "received": from_minor_units(result.received_amount),
            },
            status_code=400,
        )

    payable = result.payable
    return {
        "success": tx.status == "success",
        "status": tx.status,
        "outcome": result.outcome.value,
        ("order" if payable.kind == ORDER else "booking"): payable.summary(),
        "transaction": _transaction_summary(tx),
    }


# ============ Checkout ============

@router.get("/health")
async def payments_health():
    """Config health check for the Paystack integration."""
    missing: list[str] = []
    if not PAYSTACK_SECRET_KEY:
        missing.append("PAYSTACK_SECRET_KEY")
    if not PAYSTACK_PUBLIC_KEY:
        missing.append("PAYSTACK_PUBLIC_KEY")
    details = {
        "api_base": PAYSTACK_API_BASE,
        "currency": PAYSTACK_CURRENCY,
        "secret_key_set": bool(PAYSTACK_SECRET_KEY),
        "site_url": SITE_URL,
    }
    ok = len(missing) == 0
    if not ok:
        logger.warning(f"[payments.health] Missing config: {missing}")
    return {"ok": ok, "missing": missing, "details": details}


@router.post("/checkout")
async def create_checkout(request: Request, data: CheckoutRequest, db: Session = Depends(get_db)):
    """Create a pending order and return the Paystack authorization URL"""
    limited = _rate_limited(request)
    if limited:
        return limited

    result = await _create_order_checkout(
        db,
        product_id=data.productId,
        quantity=data.quantity,
        customer_email=data.customerEmail,
        customer_name=data.customerName,
        shipping_address=data.shippingAddress,
        callback_url=f"{SITE_URL}/payment/callback",
        log_tag="checkout",
    )
    if isinstance(result, JSONResponse):
        return result
    order, tx = result
    return {
        "success": True,
        "authorizationUrl": tx.authorization_url,
        "reference": tx.reference,
        "orderId": order.id,
        "orderNumber": order.order_number,
    }


@router.post("/initialize")
async def initialize_payment(request: Request, data: InitializeRequest, db: Session = Depends(get_db)):
    """Same as checkout, with a caller-supplied callback and the inline-popup access code"""
    limited = _rate_limited(request)
    if limited:
        return limited

    result = await _create_order_checkout(
        db,
        product_id=data.productId,
        quantity=data.quantity,
        customer_email=data.customerEmail,
        customer_name=data.customerName,
        shipping_address=None,
        callback_url=(data.callbackUrl or "").strip() or f"{SITE_URL}/payment/callback",
        log_tag="initialize",
    )
    if isinstance(result, JSONResponse):
        return result
    order, tx = result
    return {
        "success": True,
        "accessCode": tx.access_code,
        "authorizationUrl": tx.authorization_url,
        "reference": tx.reference,
        "orderId": order.id,
        "orderNumber": order.order_number,
    }


@router.post("/checkout-booking")
async def create_booking_checkout(request: Request, data: BookingCheckoutRequest, db: Session = Depends(get_db)):
    """Start a Paystack transaction for an existing unpaid booking"""
    limited = _rate_limited(request)
    if limited:
        return limited

    customer_email = (data.customerEmail or "").strip()
    customer_name = (data.customerName or "").strip()
    if not data.bookingId or not customer_email or not customer_name:
        return JSONResponse(
            {"error": "Booking ID, customer email, and customer name are required"},
            status_code=400,
        )

    booking = db.query(Booking).filter(Booking.id == data.bookingId).first()
    if not booking:
        return JSONResponse({"error": "Booking not found"}, status_code=404)
    if booking.paid:
        return JSONResponse({"error": "Booking is already paid"}, status_code=400)

    price = Decimal(str(booking.price or 0))
    if price <= 0:
        return JSONResponse({"error": "Booking price must be greater than zero"}, status_code=400)

    # The gateway rejects a reused reference, so retries get a fresh one
    if booking.payment_reference:
        reference = f"{booking.booking_number}-R{secrets.token_hex(3).upper()}"
    else:
        reference = booking.booking_number

    try:
        tx = await paystack.initialize_transaction(
            email=customer_email,
            amount=to_minor_units(price),
            reference=reference,
            callback_url=f"{SITE_URL}/payment/booking-callback",
            metadata={
                "bookingId": booking.id,
                "bookingNumber": booking.booking_number,
                "customerName": customer_name,
                "serviceId": booking.service_id,
                "serviceName": booking.service.name if booking.service else None,
                "price": float(price),
            },
            currency=PAYSTACK_CURRENCY,
        )
    except PaystackError as ex:
        logger.error(f"[payments.checkout-booking] gateway initialize failed for booking {booking.booking_number}: {ex}")
        return JSONResponse({"error": str(ex) or "Failed to create booking checkout"}, status_code=502)

    booking.payment_reference = tx.reference
    db.commit()
    logger.info(f"[payments.checkout-booking] booking {booking.booking_number} checkout started (reference={tx.reference})")

    return {
        "success": True,
        "authorizationUrl": tx.authorization_url,
        "reference": tx.reference,
        "bookingId": booking.id,
        "bookingNumber": booking.booking_number,
    }


# ============ Verification ============

@router.get("/verify")
async def verify_payment(reference: Optional[str] = Query(None), db: Session = Depends(get_db)):
    """Verify a transaction after the gateway redirects the customer back"""
    return await _verify(db, reference, PAYABLE_KINDS, "verify")


@router.get("/verify-booking")
async def verify_booking_payment(reference: Optional[str] = Query(None), db: Session = Depends(get_db)):
    """Verify a booking transaction; only bookings are considered"""
    return await _verify(db, reference, (BOOKING,), "verify-booking")


@router.post("/webhook")
async def paystack_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Paystack webhook.
    Security: x-paystack-signature must be the HMAC-SHA512 of the raw body.
    Everything past the signature check is acknowledged with 200 so the
    gateway does not retry failures a retry cannot fix.
    """
    raw_body = await request.body()
    signature = request.headers.get("x-paystack-signature")
    if not signature:
        logger.error("[payments.webhook] missing Paystack signature")
        return JSONResponse({"error": "Missing signature"}, status_code=400)
    if not paystack.verify_webhook_signature(raw_body, signature):
        logger.error("[payments.webhook] invalid Paystack signature")
        return JSONResponse({"error": "Invalid signature"}, status_code=401)

    try:
        event = json.loads(raw_body)
        if not isinstance(event, dict):
            logger.warning("[payments.webhook] payload is not a JSON object; ignoring")
            return {"received": True}

        event_type = str(event.get("event") or "").strip()
        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        reference = str(data.get("reference") or "").strip()

        db.add(PaymentEvent(provider="paystack", event_type=event_type or "unknown", reference=reference or None, payload=event))
        db.commit()

        if event_type != "charge.success":
            logger.info(f"[payments.webhook] ignoring event '{event_type}'")
            return {"received": True}

        if not reference:
            logger.error("[payments.webhook] charge.success without a reference")
            return {"received": True}

        status = str(data.get("status") or "success")
        result = reconcile(db, reference, status, data.get("amount"), source="webhook")
        logger.info(f"[payments.webhook] {reference}: {result.outcome.value}")
    except Exception as ex:
        db.rollback()
        logger.exception(f"[payments.webhook] processing failed: {ex}")
        return {"received": True, "error": "Processing failed"}

    return {"received": True}
