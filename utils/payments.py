"""
Payment reconciliation.

Resolves a gateway reference to the order or booking it pays for, checks the
reported amount against what the entity expects, and applies the outcome
exactly once. The verify endpoints and the webhook both go through
`reconcile()`, so whichever arrives second finds the row already PAID and
becomes a no-op.
"""
import re
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence, Union

from sqlalchemy import or_
from sqlalchemy.orm import Session

from core.config import logger
from models.shop import Order, Product, OrderStatus, PaymentStatus
from models.booking import Booking, BookingStatus
from utils.paystack import to_minor_units

ORDER = "order"
BOOKING = "booking"
PAYABLE_KINDS = (ORDER, BOOKING)

MARKER_PREFIX = "[Payment Reference: "


class ReconcileOutcome(str, enum.Enum):
    APPLIED = "applied"              # PENDING/FAILED -> PAID on this call
    ALREADY_PAID = "already_paid"    # replay, nothing written
    MARKED_FAILED = "marked_failed"  # unpaid entity recorded as FAILED
    IGNORED = "ignored"              # pending status, or stale failure on a paid entity
    NOT_FOUND = "not_found"
    AMOUNT_MISMATCH = "amount_mismatch"


@dataclass
class Payable:
    kind: str
    entity: Union[Order, Booking]

    @property
    def expected_amount(self):
        if self.kind == ORDER:
            return self.entity.total
        return self.entity.price

    @property
    def label(self) -> str:
        if self.kind == ORDER:
            return self.entity.order_number
        return self.entity.booking_number

    @property
    def is_paid(self) -> bool:
        if self.kind == ORDER:
            return self.entity.payment_status == PaymentStatus.PAID
        return bool(self.entity.paid)

    def summary(self) -> dict:
        e = self.entity
        if self.kind == ORDER:
            return {
                "id": e.id,
                "orderNumber": e.order_number,
                "reference": e.payment_intent,
                "paymentStatus": e.payment_status.value if e.payment_status else None,
                "status": e.status.value if e.status else None,
            }
        return {
            "id": e.id,
            "bookingNumber": e.booking_number,
            "reference": e.payment_reference,
            "paid": bool(e.paid),
            "paymentStatus": e.payment_status.value if e.payment_status else None,
            "status": e.status.value if e.status else None,
        }


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    payable: Optional[Payable] = None
    expected_amount: Optional[int] = None
    received_amount: Optional[int] = None


# ---- Legacy notes markers ----

def _marker_pattern(reference: str) -> "re.Pattern[str]":
    return re.compile(re.escape(MARKER_PREFIX + reference) + r"(?: - (?:PAID|FAILED))?\]")


def reference_marker(reference: str, suffix: Optional[str] = None) -> str:
    if suffix:
        return f"{MARKER_PREFIX}{reference} - {suffix}]"
    return f"{MARKER_PREFIX}{reference}]"


def has_reference_marker(notes: Optional[str], reference: str) -> bool:
    """Exact match on the reference: `txn_1` never matches a `txn_12` marker."""
    if not notes or not reference:
        return False
    return bool(_marker_pattern(reference).search(notes))


def rewrite_reference_marker(notes: Optional[str], reference: str, suffix: str) -> Optional[str]:
    """Replace (never append) every marker for `reference` with its suffixed form."""
    if not notes:
        return notes
    return _marker_pattern(reference).sub(lambda _m: reference_marker(reference, suffix), notes)


# ---- Resolver ----

def resolve_payable(db: Session, reference: str, kinds: Sequence[str] = PAYABLE_KINDS) -> Optional[Payable]:
    ref = (reference or "").strip()
    if not ref:
        return None

    if ORDER in kinds:
        # Gateway may echo either the stored reference or our order number
        order = (
            db.query(Order)
            .filter(or_(Order.payment_intent == ref, Order.order_number == ref))
            .first()
        )
        if order:
            return Payable(ORDER, order)

    if BOOKING in kinds:
        booking = db.query(Booking).filter(Booking.booking_number == ref).first()
        if booking:
            return Payable(BOOKING, booking)

        booking = db.query(Booking).filter(Booking.payment_reference == ref).first()
        if booking:
            return Payable(BOOKING, booking)

        # Legacy bookings only carry the reference inside their notes
        candidates = (
            db.query(Booking)
            .filter(Booking.notes.contains(MARKER_PREFIX + ref, autoescape=True))
            .all()
        )
        for b in candidates:
            if has_reference_marker(b.notes, ref):
                logger.info(f"[payments.resolve] booking {b.booking_number} matched by notes marker for {ref}")
                return Payable(BOOKING, b)

    return None


# ---- Amount integrity ----

def expected_minor_units(payable: Payable) -> int:
    return to_minor_units(payable.expected_amount or 0)


def check_amount(payable: Payable, received: int, reference: str) -> bool:
    expected = expected_minor_units(payable)
    try:
        received_int = int(received)
    except (TypeError, ValueError):
        received_int = None
    if received_int != expected:
        logger.error(
            f"[payments.amount] mismatch for {payable.kind} {payable.label}: "
            f"expected={expected} received={received} reference={reference}"
        )
        return False
    return True


# ---- State machine ----

def _apply_order_paid(db: Session, order: Order, reference: str, source: str) -> ReconcileOutcome:
    physical_items = [
        (item.product_id, item.quantity)
        for item in order.items
        if item.product is not None and not item.product.is_digital
    ]
    updated = (
        db.query(Order)
        .filter(
            Order.id == order.id,
            Order.payment_status.in_([PaymentStatus.PENDING, PaymentStatus.FAILED]),
        )
        .update(
            {
                Order.payment_status: PaymentStatus.PAID,
                Order.status: OrderStatus.PROCESSING,
                Order.paid_at: datetime.utcnow(),
                Order.updated_at: datetime.utcnow(),
            },
            synchronize_session=False,
        )
    )
    if not updated:
        db.rollback()
        db.refresh(order)
        if order.payment_status == PaymentStatus.PAID:
            logger.info(f"[payments.{source}] order {order.order_number} already paid, skipping update")
            return ReconcileOutcome.ALREADY_PAID
        logger.info(f"[payments.{source}] order {order.order_number} is {order.payment_status.value}, not applying success")
        return ReconcileOutcome.IGNORED

    # Stock moves only with the row that actually flipped to PAID
    for product_id, quantity in physical_items:
        db.query(Product).filter(Product.id == product_id).update(
            {Product.stock: Product.stock - quantity},
            synchronize_session=False,
        )
    db.commit()
    db.refresh(order)
    logger.info(
        f"[payments.{source}] order payment confirmed: id={order.id} "
        f"order_number={order.order_number} reference={reference}"
    )
    return ReconcileOutcome.APPLIED


def _apply_order_failed(db: Session, order: Order, reference: str, source: str) -> ReconcileOutcome:
    updated = (
        db.query(Order)
        .filter(Order.id == order.id, Order.payment_status == PaymentStatus.PENDING)
        .update(
            {Order.payment_status: PaymentStatus.FAILED, Order.updated_at: datetime.utcnow()},
            synchronize_session=False,
        )
    )
    db.commit()
    db.refresh(order)
    if not updated:
        logger.info(f"[payments.{source}] ignoring failure for order {order.order_number} ({order.payment_status.value})")
        return ReconcileOutcome.IGNORED
    logger.info(f"[payments.{source}] order {order.order_number} payment failed (reference={reference})")
    return ReconcileOutcome.MARKED_FAILED


def _apply_booking_paid(db: Session, booking: Booking, reference: str, source: str) -> ReconcileOutcome:
    updated = (
        db.query(Booking)
        .filter(Booking.id == booking.id, Booking.paid == False)  # noqa: E712
        .update(
            {
                Booking.paid: True,
                Booking.status: BookingStatus.CONFIRMED,
                Booking.payment_status: PaymentStatus.PAID,
                Booking.paid_at: datetime.utcnow(),
                Booking.notes: rewrite_reference_marker(booking.notes, reference, "PAID"),
                Booking.updated_at: datetime.utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    db.refresh(booking)
    if not updated:
        logger.info(f"[payments.{source}] booking {booking.booking_number} already paid, skipping update")
        return ReconcileOutcome.ALREADY_PAID
    logger.info(
        f"[payments.{source}] booking payment confirmed: id={booking.id} "
        f"booking_number={booking.booking_number} reference={reference}"
    )
    return ReconcileOutcome.APPLIED


def _apply_booking_failed(db: Session, booking: Booking, reference: str, source: str) -> ReconcileOutcome:
    updated = (
        db.query(Booking)
        .filter(Booking.id == booking.id, Booking.paid == False)  # noqa: E712
        .update(
            {
                Booking.payment_status: PaymentStatus.FAILED,
                Booking.notes: rewrite_reference_marker(booking.notes, reference, "FAILED"),
                Booking.updated_at: datetime.utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    db.refresh(booking)
    if not updated:
        logger.info(f"[payments.{source}] ignoring failure for paid booking {booking.booking_number}")
        return ReconcileOutcome.IGNORED
    logger.info(f"[payments.{source}] booking {booking.booking_number} payment failed (reference={reference})")
    return ReconcileOutcome.MARKED_FAILED


def apply_outcome(db: Session, payable: Payable, status: str, reference: str, source: str) -> ReconcileOutcome:
    """Apply a gateway-reported status. Writes are conditional on the persisted state."""
    status = (status or "").strip().lower()
    if status == "success":
        if payable.kind == ORDER:
            return _apply_order_paid(db, payable.entity, reference, source)
        return _apply_booking_paid(db, payable.entity, reference, source)
    if status == "failed":
        if payable.kind == ORDER:
            return _apply_order_failed(db, payable.entity, reference, source)
        return _apply_booking_failed(db, payable.entity, reference, source)
    logger.info(f"[payments.{source}] {payable.kind} {payable.label} transaction status '{status}', nothing to apply")
    return ReconcileOutcome.IGNORED


def reconcile(
    db: Session,
    reference: str,
    status: str,
    amount: int,
    source: str,
    kinds: Sequence[str] = PAYABLE_KINDS,
) -> ReconcileResult:
    """Resolver -> amount check -> state machine, shared by verify and webhook."""
    payable = resolve_payable(db, reference, kinds)
    if payable is None:
        logger.error(f"[payments.{source}] no {'/'.join(kinds)} found for reference {reference}")
        return ReconcileResult(ReconcileOutcome.NOT_FOUND)

    expected = expected_minor_units(payable)
    if not check_amount(payable, amount, reference):
        return ReconcileResult(ReconcileOutcome.AMOUNT_MISMATCH, payable, expected, amount)

    outcome = apply_outcome(db, payable, status, reference, source)
    return ReconcileResult(outcome, payable, expected, amount)
