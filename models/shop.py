"""
Shop models: products, orders and order line items
"""
from datetime import datetime
import uuid
import enum

from sqlalchemy import Column, String, Text, DateTime, Boolean, Integer, Numeric, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship

from core.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class Product(Base):
    __tablename__ = "products"

    id = Column(String(64), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    stock = Column(Integer, nullable=False, default=0)
    is_digital = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Order(Base):
    """Commerce purchase; payment fields are owned by reconciliation"""
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True, default=_uuid)
    order_number = Column(String(64), unique=True, index=True, nullable=False)

    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=False, index=True)
    shipping_address = Column(Text, nullable=True)

    subtotal = Column(Numeric(10, 2), nullable=False, default=0)
    tax = Column(Numeric(10, 2), nullable=False, default=0)
    shipping = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False, default=0)

    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    payment_status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    payment_intent = Column(String(255), nullable=True, index=True)  # Gateway transaction reference
    paid_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "orderNumber": self.order_number,
            "customerName": self.customer_name,
            "customerEmail": self.customer_email,
            "shippingAddress": self.shipping_address,
            "subtotal": float(self.subtotal or 0),
            "tax": float(self.tax or 0),
            "shipping": float(self.shipping or 0),
            "total": float(self.total or 0),
            "status": self.status.value if self.status else None,
            "paymentStatus": self.payment_status.value if self.payment_status else None,
            "paymentIntent": self.payment_intent,
            "paidAt": self.paid_at.isoformat() if self.paid_at else None,
            "items": [i.to_dict() for i in self.items],
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String(64), primary_key=True, default=_uuid)
    order_id = Column(String(64), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(64), ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(10, 2), nullable=False, default=0)  # Unit price at checkout time

    order = relationship("Order", back_populates="items")
    product = relationship("Product")

    def to_dict(self):
        return {
            "id": self.id,
            "productId": self.product_id,
            "quantity": self.quantity,
            "price": float(self.price or 0),
        }
