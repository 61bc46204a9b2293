# models.py
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

import config
from database import Base


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Role:
    OWNER = "owner"
    MANAGER = "manager"
    KITCHEN = "kitchen"
    WAITER = "waiter"
    CUSTOMER = "customer"

    ALL = (OWNER, MANAGER, KITCHEN, WAITER, CUSTOMER)
    STAFF = (MANAGER, KITCHEN, WAITER)


class OrderStatus:
    PLACED = "PLACED"
    PREPARING = "PREPARING"
    READY = "READY"
    SERVED = "SERVED"
    PAID = "PAID"
    COMPLETED = "COMPLETED"

    SEQUENCE = (PLACED, PREPARING, READY, SERVED, PAID, COMPLETED)
    UNSERVED = (PLACED, PREPARING, READY)
    SETTLED = (PAID, COMPLETED)


class PaymentStatus:
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class BookingStatus:
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password = Column(String(255), nullable=False)
    roles = Column(JSON, nullable=False, default=lambda: [Role.CUSTOMER])
    # plain column: restaurants.owner_id already references users
    working_at_id = Column(Integer, nullable=True, index=True)

    def has_role(self, *roles):
        return any(role in (self.roles or []) for role in roles)


class Restaurant(Base):
    __tablename__ = "restaurants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), nullable=False)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    is_open = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    allow_table_booking = Column(Boolean, nullable=False, default=True)
    booking_slot_minutes = Column(Integer, nullable=False, default=lambda: config.DEFAULT_BOOKING_SLOT_MINUTES)
    rating_average = Column(Numeric(3, 2), nullable=False, default=0)
    rating_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)

    tables = relationship("Table", back_populates="restaurant", cascade="all, delete-orphan",
                          order_by="Table.number")
    menu_items = relationship("MenuItem", back_populates="restaurant", cascade="all, delete-orphan")
    staff = relationship("StaffMember", back_populates="restaurant", cascade="all, delete-orphan")


class Table(Base):
    __tablename__ = "restaurant_tables"
    __table_args__ = (UniqueConstraint("restaurant_id", "number", name="uq_table_number"),)

    id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    number = Column(Integer, nullable=False)
    capacity = Column(Integer, nullable=False, default=4)
    is_occupied = Column(Boolean, nullable=False, default=False)
    # points at the order that opened the session; no FK to avoid a cycle with orders.table_id
    current_order_id = Column(Integer, nullable=True)
    assigned_waiter_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    request_service = Column(Boolean, nullable=False, default=False)
    request_bill = Column(Boolean, nullable=False, default=False)

    restaurant = relationship("Restaurant", back_populates="tables")


class MenuItem(Base):
    __tablename__ = "menu_items"

    id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    category = Column(String(50))
    price = Column(Numeric(10, 2), nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)
    stock = Column(Integer, nullable=True)

    restaurant = relationship("Restaurant", back_populates="menu_items")


class StaffMember(Base):
    __tablename__ = "staff_members"
    __table_args__ = (UniqueConstraint("restaurant_id", "user_id", name="uq_staff_member"),)

    id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(String(20), nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    joined_at = Column(DateTime, default=utcnow)

    restaurant = relationship("Restaurant", back_populates="staff")
    user = relationship("User")


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_restaurant_status", "restaurant_id", "status"),
        Index("ix_orders_table_session", "table_id", "is_session_closed"),
    )

    id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    table_id = Column(Integer, ForeignKey("restaurant_tables.id"), nullable=False, index=True)
    table_no = Column(Integer, nullable=False)
    waiter_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    customer_name = Column(String(100), nullable=False)
    customer_phone = Column(String(30), nullable=False)
    customer_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    total_amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default=OrderStatus.PLACED)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING)
    payment_method = Column(String(20), nullable=False, default="CASH")
    is_session_closed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan",
                         order_by="OrderItem.id")
    waiter = relationship("User", foreign_keys=[waiter_id])


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=False)
    name = Column(String(100), nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)

    order = relationship("Order", back_populates="items")

    @property
    def subtotal(self):
        return self.unit_price * self.quantity


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (Index("ix_bookings_slot", "restaurant_id", "table_id", "date"),)

    id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    table_id = Column(Integer, ForeignKey("restaurant_tables.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    guest_count = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=BookingStatus.CONFIRMED)
    notes = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Review(Base):
    __tablename__ = "reviews"

    id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    rating = Column(Integer, nullable=False)
    comment = Column(Text)
    created_at = Column(DateTime, default=utcnow)
