"""
Booking models
Services (consultations, course sessions) and client bookings against them
"""
from datetime import datetime
import uuid
import enum

from sqlalchemy import Column, String, Text, DateTime, Boolean, Integer, Numeric, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship

from core.database import Base
from models.shop import PaymentStatus


def _uuid() -> str:
    return str(uuid.uuid4())


class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class Service(Base):
    """Bookable service with a list price"""
    __tablename__ = "services"

    id = Column(String(64), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text, nullable=True)
    duration = Column(Integer, nullable=False, default=60)  # minutes
    price = Column(Numeric(10, 2), nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    bookings = relationship("Booking", back_populates="service")


class Booking(Base):
    """Client booking; `paid` flips false->true once via reconciliation"""
    __tablename__ = "bookings"

    id = Column(String(64), primary_key=True, default=_uuid)
    booking_number = Column(String(64), unique=True, index=True, nullable=False)

    # Client contact
    client_name = Column(String(255), nullable=False)
    client_email = Column(String(255), nullable=False, index=True)
    client_phone = Column(String(50), nullable=True)

    service_id = Column(String(64), ForeignKey("services.id"), nullable=False)
    service = relationship("Service", back_populates="bookings")

    # Scheduling
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False)

    status = Column(SQLEnum(BookingStatus), nullable=False, default=BookingStatus.PENDING, index=True)

    # Pricing / payment
    price = Column(Numeric(10, 2), nullable=False, default=0)
    paid = Column(Boolean, nullable=False, default=False)
    payment_status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    payment_reference = Column(String(255), nullable=True, index=True)  # Gateway transaction reference
    paid_at = Column(DateTime, nullable=True)

    # Free text; legacy bookings carry "[Payment Reference: <ref>]" markers here
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "bookingNumber": self.booking_number,
            "clientName": self.client_name,
            "clientEmail": self.client_email,
            "clientPhone": self.client_phone,
            "serviceId": self.service_id,
            "startTime": self.start_time.isoformat() if self.start_time else None,
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "status": self.status.value if self.status else None,
            "price": float(self.price or 0),
            "paid": bool(self.paid),
            "paymentStatus": self.payment_status.value if self.payment_status else None,
            "paymentReference": self.payment_reference,
            "paidAt": self.paid_at.isoformat() if self.paid_at else None,
            "notes": self.notes,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
