from datetime import date, datetime, time
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, validator

from models import OrderStatus, PaymentStatus, Role


# ========== Users ==========

class UserCreate(BaseModel):
    name: str
    email: str
    password: str
    role: str = Role.CUSTOMER

    @validator("name")
    def validate_name(cls, v: str) -> str:
        if not v or len(v.strip()) == 0:
            raise ValueError("Name is required")
        if len(v) > 100:
            raise ValueError("Name cannot exceed 100 characters")
        return v.strip()

    @validator("email")
    def validate_email(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("Invalid email address")
        return v

    @validator("password")
    def validate_password(cls, v: str) -> str:
        if not v or len(v) < 6:
            raise ValueError("Password must be at least 6 characters long")
        return v

    @validator("role")
    def validate_role(cls, v: str) -> str:
        if v not in (Role.CUSTOMER, Role.OWNER):
            raise ValueError("Role must be either 'customer' or 'owner'")
        return v


class UserLogin(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    name: str
    email: str
    roles: List[str]
    working_at_id: Optional[int] = None


# ========== Restaurants ==========

class TableCreate(BaseModel):
    number: int
    capacity: int = 4

    @validator("number", "capacity")
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Must be a positive integer")
        return v


class MenuItemCreate(BaseModel):
    name: str
    price: Decimal
    description: Optional[str] = None
    category: Optional[str] = None
    is_available: bool = True
    stock: Optional[int] = None

    @validator("name")
    def validate_name(cls, v: str) -> str:
        if not v or len(v.strip()) == 0:
            raise ValueError("Menu item name cannot be empty")
        return v.strip()

    @validator("price")
    def validate_price(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("Price must be non-negative")
        return round(v, 2)

    @validator("stock")
    def validate_stock(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("Stock cannot be negative")
        return v


class MenuItemUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[Decimal] = None
    description: Optional[str] = None
    category: Optional[str] = None
    is_available: Optional[bool] = None
    stock: Optional[int] = None
    # stock is nullable, so "unlimited" needs its own switch
    unlimited_stock: bool = False

    @validator("name")
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v.strip()) == 0:
            raise ValueError("Menu item name cannot be empty")
        return v.strip() if v is not None else v

    @validator("price")
    def validate_price(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is not None and v < 0:
            raise ValueError("Price must be non-negative")
        return round(v, 2) if v is not None else v

    @validator("stock")
    def validate_stock(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("Stock cannot be negative")
        return v


class RestaurantCreate(BaseModel):
    name: str
    booking_slot_minutes: Optional[int] = None
    allow_table_booking: bool = True
    tables: List[TableCreate] = []
    menu: List[MenuItemCreate] = []

    @validator("booking_slot_minutes")
    def validate_slot(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not 15 <= v <= 24 * 60:
            raise ValueError("Booking slot must be between 15 minutes and 24 hours")
        return v


class RestaurantUpdate(BaseModel):
    name: Optional[str] = None
    allow_table_booking: Optional[bool] = None
    booking_slot_minutes: Optional[int] = None

    @validator("name")
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v.strip()) == 0:
            raise ValueError("Restaurant name cannot be empty")
        return v.strip() if v is not None else v

    @validator("booking_slot_minutes")
    def validate_slot(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not 15 <= v <= 24 * 60:
            raise ValueError("Booking slot must be between 15 minutes and 24 hours")
        return v


class RestaurantStatusUpdate(BaseModel):
    is_open: Optional[bool] = None
    is_active: Optional[bool] = None


class StaffCreate(BaseModel):
    user_id: int
    role: str

    @validator("role")
    def validate_role(cls, v: str) -> str:
        if v not in Role.STAFF:
            raise ValueError(f"Role must be one of {', '.join(Role.STAFF)}")
        return v


class ReviewCreate(BaseModel):
    rating: int
    comment: Optional[str] = None

    @validator("rating")
    def validate_rating(cls, v: int) -> int:
        if not 1 <= v <= 5:
            raise ValueError("Rating must be between 1 and 5")
        return v


# Money is Decimal in the database and in arithmetic; responses carry it as a
# JSON number whatever the pydantic version.

class MenuItemResponse(BaseModel):
    id: int
    restaurant_id: int
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    price: float
    is_available: bool
    stock: Optional[int] = None


class TableResponse(BaseModel):
    id: int
    restaurant_id: int
    number: int
    capacity: int
    is_occupied: bool
    current_order_id: Optional[int] = None
    assigned_waiter_id: Optional[int] = None
    request_service: bool
    request_bill: bool


class RestaurantResponse(BaseModel):
    id: int
    name: str
    owner_id: int
    is_open: bool
    is_active: bool
    allow_table_booking: bool
    booking_slot_minutes: int
    rating_average: float
    rating_count: int
    tables: List[TableResponse] = []
    menu: List[MenuItemResponse] = []


class TableFlagUpdate(BaseModel):
    active: bool = True


class WaiterAssignment(BaseModel):
    waiter_id: Optional[int] = None


# ========== Orders ==========

class OrderItemCreate(BaseModel):
    menu_item_id: int
    quantity: int

    @validator("quantity")
    def validate_quantity(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be at least 1")
        if v > 100:
            raise ValueError("Quantity cannot exceed 100")
        return v


class CustomerDetails(BaseModel):
    name: str
    phone: str

    @validator("name", "phone")
    def validate_not_blank(cls, v: str) -> str:
        if not v or len(v.strip()) == 0:
            raise ValueError("Customer name and phone are required")
        return v.strip()


class OrderCreate(BaseModel):
    restaurant_id: int
    table_id: int
    items: List[OrderItemCreate]
    customer_details: CustomerDetails
    payment_method: str = "CASH"
    # accepted for compatibility with older clients, never trusted
    total_amount: Optional[Decimal] = None

    @validator("payment_method")
    def validate_payment_method(cls, v: str) -> str:
        v = v.upper()
        if v not in ("CASH", "ONLINE"):
            raise ValueError("Payment method must be CASH or ONLINE")
        return v


class OrderStatusUpdate(BaseModel):
    status: str

    @validator("status")
    def validate_status(cls, v: str) -> str:
        v = v.upper()
        if v not in OrderStatus.SEQUENCE:
            raise ValueError("Invalid status")
        return v


class TablePayment(BaseModel):
    restaurant_id: int


class FreeTableRequest(BaseModel):
    restaurant_id: int
    table_id: int


class OrderItemResponse(BaseModel):
    id: int
    menu_item_id: int
    name: str
    unit_price: float
    quantity: int
    subtotal: float


class OrderResponse(BaseModel):
    id: int
    restaurant_id: int
    table_id: int
    table_no: int
    waiter_id: Optional[int] = None
    waiter_name: Optional[str] = None
    customer_name: str
    customer_phone: str
    items: List[OrderItemResponse]
    total_amount: float
    status: str
    payment_status: str = PaymentStatus.PENDING
    payment_method: str
    is_session_closed: bool
    created_at: datetime
    updated_at: Optional[datetime] = None


# ========== Bookings ==========

class BookingCreate(BaseModel):
    restaurant_id: int
    table_id: int
    date: str
    start_time: str
    guest_count: int
    notes: Optional[str] = None

    @validator("guest_count")
    def validate_guest_count(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Guest count must be at least 1")
        return v


class BookingResponse(BaseModel):
    id: int
    restaurant_id: int
    table_id: int
    user_id: int
    date: date
    start_time: time
    end_time: time
    guest_count: int
    status: str
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class Pagination(BaseModel):
    page: int
    limit: int
    pages: int
    total: int


class BookingPage(BaseModel):
    success: bool = True
    bookings: List[BookingResponse]
    pagination: Pagination
