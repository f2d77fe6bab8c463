"""
Bookings Router
Public booking requests for services; paid bookings go on to /api/payments/checkout-booking
"""
import secrets
import time
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.config import logger
from core.database import get_db
from models.booking import Booking, BookingStatus, Service
from models.shop import PaymentStatus

router = APIRouter(prefix="/api/bookings", tags=["bookings"])

GENERAL_CONSULTATION = "General Consultation"


class BookingCreate(BaseModel):
    clientName: Optional[str] = None
    clientEmail: Optional[str] = None
    clientPhone: Optional[str] = None
    serviceId: Optional[str] = None
    price: Optional[float] = None
    preferredDate: Optional[str] = None
    preferredTime: Optional[str] = None
    startTime: Optional[str] = None
    endTime: Optional[str] = None
    duration: Optional[int] = None  # minutes
    additionalNotes: Optional[str] = None


def generate_booking_number() -> str:
    return f"BKG-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


def _parse_datetime(value: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None


def _general_consultation(db: Session) -> Service:
    service = db.query(Service).filter(Service.name == GENERAL_CONSULTATION).first()
    if not service:
        service = Service(
            name=GENERAL_CONSULTATION,
            description="General consultation and advisory services",
            duration=60,
            price=Decimal("0"),
            active=True,
        )
        db.add(service)
        db.flush()
    return service


@router.post("")
async def create_booking(data: BookingCreate, db: Session = Depends(get_db)):
    """Create a PENDING, unpaid booking"""
    if not data.clientName or not data.clientEmail or not data.clientPhone:
        return JSONResponse(
            {"error": "Missing required fields: clientName, clientEmail, and clientPhone are required"},
            status_code=400,
        )

    if data.serviceId:
        service = db.query(Service).filter(Service.id == data.serviceId).first()
        if not service:
            return JSONResponse({"error": "Service not found"}, status_code=404)
    else:
        service = _general_consultation(db)

    if data.startTime and data.endTime:
        start = _parse_datetime(data.startTime)
        end = _parse_datetime(data.endTime)
    elif data.preferredDate and data.preferredTime:
        start = _parse_datetime(f"{data.preferredDate}T{data.preferredTime}")
        end = start + timedelta(minutes=data.duration or service.duration or 60) if start else None
    else:
        db.rollback()
        return JSONResponse(
            {"error": "Either startTime/endTime or preferredDate/preferredTime must be provided"},
            status_code=400,
        )
    if start is None or end is None or end <= start:
        db.rollback()
        return JSONResponse({"error": "Invalid booking time window"}, status_code=400)

    try:
        price = Decimal(str(data.price)) if data.price is not None else Decimal(str(service.price or 0))
    except InvalidOperation:
        db.rollback()
        return JSONResponse({"error": "Invalid price"}, status_code=400)
    if price < 0:
        db.rollback()
        return JSONResponse({"error": "Invalid price"}, status_code=400)

    booking = Booking(
        booking_number=generate_booking_number(),
        client_name=data.clientName.strip(),
        client_email=data.clientEmail.strip(),
        client_phone=data.clientPhone.strip(),
        service_id=service.id,
        start_time=start,
        end_time=end,
        status=BookingStatus.PENDING,
        price=price,
        paid=False,
        payment_status=PaymentStatus.PENDING,
        notes=data.additionalNotes or None,
    )
    db.add(booking)
    db.commit()
    db.refresh(booking)

    requires_payment = price > 0
    logger.info(f"[bookings] created {booking.booking_number} for service '{service.name}' (requires_payment={requires_payment})")
    return {
        "success": True,
        "bookingId": booking.id,
        "bookingNumber": booking.booking_number,
        "requiresPayment": requires_payment,
        "message": "Booking created successfully. Please proceed to payment."
        if requires_payment
        else "Booking created successfully",
    }
