from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

MENU_CATEGORIES = ("appetizer", "main-course", "dessert", "beverage", "sides")
ROLES = ("customer", "kitchen", "admin")

ORDER_STATUSES = ("pending", "received", "preparing", "ready", "completed", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")
PAYMENT_METHODS = ("card", "upi", "netbanking", "wallet", "cash")


def utcnow():
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(16), nullable=False, default="customer")
    phone = Column(String(32))
    created_at = Column(DateTime(timezone=True), default=utcnow)


class AuthToken(Base):
    __tablename__ = "auth_tokens"
    token = Column(String(64), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    user = relationship("User")


class MenuItem(Base):
    __tablename__ = "menu_items"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=False, default="")
    price = Column(Numeric(10, 2), nullable=False)
    category = Column(String(32), nullable=False)
    image_url = Column(String(500))
    is_available = Column(Boolean, nullable=False, default=True)
    preparation_time = Column(Integer, nullable=False, default=15)  # minutes
    # [{"name": "Size", "required": false, "choices": [{"label": "Large", "price": "2.00"}]}]
    customization_options = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(32), unique=True, nullable=False)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    subtotal = Column(Numeric(10, 2), nullable=False)
    tax = Column(Numeric(10, 2), nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(16), nullable=False, default="pending", index=True)
    payment_status = Column(String(16), nullable=False, default="pending")
    payment_method = Column(String(16), nullable=False, default="card")
    payment_provider = Column(String(16), nullable=False)
    provider_order_id = Column(String(255))
    # at most one order per captured payment
    provider_payment_id = Column(String(255), unique=True, nullable=False)
    delivery_address = Column(JSON)
    # catalog discrepancies found while materialising after payment
    fulfillment_flags = Column(JSON, nullable=False, default=list)
    estimated_pickup_time = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    items = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan",
        order_by="OrderItem.position", lazy="selectin",
    )
    customer = relationship("User", lazy="joined")


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    # snapshot, not a live join: history survives catalog edits
    menu_item_id = Column(Integer, nullable=False)
    name = Column(String(100), nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    customizations = Column(JSON, nullable=False, default=dict)
    special_instructions = Column(String(500), nullable=False, default="")
    subtotal = Column(Numeric(10, 2), nullable=False)
    order = relationship("Order", back_populates="items")
