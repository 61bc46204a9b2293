"""
Order lifecycle: PLACED -> PREPARING -> READY -> SERVED -> PAID -> COMPLETED.

Every step is mandatory and moves forward by exactly one state. Orders of a
table share one dining session, opened by the first order on a free table
and closed by ``free_table``. All mutations of a session run under the
table's lock (see ``table_store.table_session``).
"""
import logging
import math
from collections import OrderedDict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy import or_
from sqlalchemy.orm import Session

import config
import models
from errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionError,
    RestaurantClosedError,
    UnavailableError,
    ValidationError,
)
from models import OrderStatus, PaymentStatus, Role
from realtime import Outbox, public_room, staff_room, table_room
from restaurants import get_restaurant, staff_role
from schemas import OrderItemResponse, OrderResponse
from table_store import apply_free, apply_occupy, table_session

logger = logging.getLogger(__name__)


def order_response(order: models.Order) -> OrderResponse:
    return OrderResponse(
        id=order.id,
        restaurant_id=order.restaurant_id,
        table_id=order.table_id,
        table_no=order.table_no,
        waiter_id=order.waiter_id,
        waiter_name=order.waiter.name if order.waiter else None,
        customer_name=order.customer_name,
        customer_phone=order.customer_phone,
        items=[
            OrderItemResponse(
                id=item.id,
                menu_item_id=item.menu_item_id,
                name=item.name,
                unit_price=item.unit_price,
                quantity=item.quantity,
                subtotal=item.subtotal,
            )
            for item in order.items
        ],
        total_amount=order.total_amount,
        status=order.status,
        payment_status=order.payment_status,
        payment_method=order.payment_method,
        is_session_closed=order.is_session_closed,
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


def order_snapshot(order: models.Order) -> dict:
    return jsonable_encoder(order_response(order))


def _emit_order(outbox: Outbox, event: str, order: models.Order) -> None:
    snapshot = order_snapshot(order)
    if event == "new_order":
        outbox.emit("new_order", snapshot, staff_room(order.restaurant_id))
        outbox.emit("order_update", snapshot, table_room(order.restaurant_id, order.table_id))
    else:
        outbox.emit("order_update", snapshot,
                    table_room(order.restaurant_id, order.table_id), staff_room(order.restaurant_id))


def _session_orders(db: Session, restaurant_id: int, table_id: int):
    return db.query(models.Order).filter(
        models.Order.restaurant_id == restaurant_id,
        models.Order.table_id == table_id,
        models.Order.is_session_closed.is_(False),
    )


def _normalize_items(items: Iterable) -> "OrderedDict[int, int]":
    """Collapses the requested lines to ``{menu_item_id: quantity}``."""
    if not items:
        raise ValidationError("Order must contain at least one item")

    quantities = OrderedDict()
    for item in items:
        if isinstance(item, dict):
            menu_item_id, quantity = item.get("menu_item_id"), item.get("quantity")
        else:
            menu_item_id, quantity = getattr(item, "menu_item_id", None), getattr(item, "quantity", None)
        if not isinstance(menu_item_id, int) or isinstance(menu_item_id, bool):
            raise ValidationError("Invalid menu item reference", menu_item_id=menu_item_id)
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError("Quantity must be at least 1", menu_item_id=menu_item_id)
        quantities[menu_item_id] = quantities.get(menu_item_id, 0) + quantity
    return quantities


def _blocking_booking(db: Session, restaurant_id: int, table_id: int, now: datetime) -> Optional[models.Booking]:
    """A confirmed booking starting soon, or one whose guests may still be arriving."""
    window_start = now - timedelta(minutes=config.BOOKING_GRACE_MINUTES)
    window_end = now + timedelta(minutes=config.BOOKING_PROTECTION_MINUTES)
    candidates = db.query(models.Booking).filter(
        models.Booking.restaurant_id == restaurant_id,
        models.Booking.table_id == table_id,
        models.Booking.status == models.BookingStatus.CONFIRMED,
        models.Booking.date.in_(sorted({window_start.date(), window_end.date()})),
    ).all()
    for booking in candidates:
        start = datetime.combine(booking.date, booking.start_time)
        if window_start < start <= window_end:
            return booking
    return None


def _pick_waiter(db: Session, restaurant: models.Restaurant, table: models.Table,
                 placed_by: Optional[models.User]) -> Optional[int]:
    role = staff_role(db, restaurant, placed_by)
    if role in (Role.OWNER, Role.MANAGER, Role.WAITER):
        return placed_by.id
    if table.assigned_waiter_id:
        return table.assigned_waiter_id

    waiters = db.query(models.StaffMember).filter(
        models.StaffMember.restaurant_id == restaurant.id,
        models.StaffMember.role == Role.WAITER,
        models.StaffMember.is_active.is_(True),
    ).all()
    if not waiters:
        logger.warning(f"No active waiters at restaurant {restaurant.id}; order left unassigned")
        return None

    def load(member):
        return db.query(models.Table).filter(
            models.Table.restaurant_id == restaurant.id,
            models.Table.assigned_waiter_id == member.user_id,
        ).count()

    chosen = min(waiters, key=lambda m: (load(m), m.user_id))
    return chosen.user_id


def place_order(db: Session, restaurant_id: int, table_id: int, items, customer_details,
                placed_by: Optional[models.User] = None, payment_method: str = "CASH",
                now: Optional[datetime] = None, publisher=None) -> dict:
    """
    Creates an order on a table, opening the dining session when the table
    is free and joining it otherwise. The total is always computed here from
    the menu prices at commit time.
    """
    quantities = _normalize_items(items)
    if isinstance(customer_details, dict):
        customer_name, customer_phone = customer_details.get("name"), customer_details.get("phone")
    else:
        customer_name, customer_phone = customer_details.name, customer_details.phone
    if not customer_name or not customer_phone:
        raise ValidationError("Customer name and phone are required")

    restaurant = get_restaurant(db, restaurant_id)
    if not restaurant.is_open or not restaurant.is_active:
        raise RestaurantClosedError()
    now = now or datetime.now()

    with table_session(db, restaurant_id, table_id, publisher) as (table, outbox):
        menu = {
            m.id: m
            for m in db.query(models.MenuItem).filter(
                models.MenuItem.restaurant_id == restaurant_id,
                models.MenuItem.id.in_(list(quantities)),
            )
        }
        missing = [item_id for item_id in quantities if item_id not in menu]
        if missing:
            raise ValidationError("Order references unknown menu items", invalid_items=missing)

        unavailable = [menu[i].name for i in quantities if not menu[i].is_available]
        if unavailable:
            raise UnavailableError(
                f"Item is currently unavailable: {', '.join(unavailable)}",
                unavailable_items=unavailable,
            )

        if not table.is_occupied:
            booking = _blocking_booking(db, restaurant_id, table_id, now)
            if booking:
                raise ConflictError(
                    f"Table is reserved for {booking.start_time.strftime('%H:%M')}. Please select another table.",
                    booking_id=booking.id,
                )

        stock_updates = []
        for item_id, quantity in quantities.items():
            if menu[item_id].stock is None:
                continue
            updated = db.query(models.MenuItem).filter(
                models.MenuItem.id == item_id,
                models.MenuItem.stock >= quantity,
            ).update({models.MenuItem.stock: models.MenuItem.stock - quantity}, synchronize_session=False)
            if not updated:
                db.expire(menu[item_id])
                raise UnavailableError(
                    f"Insufficient stock for {menu[item_id].name}. Only {menu[item_id].stock} left.",
                    menu_item_id=item_id,
                )
            db.expire(menu[item_id])
            stock_updates.append({
                "id": item_id,
                "stock": menu[item_id].stock,
                "is_available": menu[item_id].is_available,
            })

        total = Decimal("0")
        order = models.Order(
            restaurant_id=restaurant_id,
            table_id=table.id,
            table_no=table.number,
            customer_name=customer_name,
            customer_phone=customer_phone,
            customer_user_id=placed_by.id if placed_by else None,
            payment_method=payment_method,
            status=OrderStatus.PLACED,
            payment_status=PaymentStatus.PENDING,
            total_amount=0,
        )
        for item_id, quantity in quantities.items():
            unit_price = Decimal(menu[item_id].price)
            order.items.append(models.OrderItem(
                menu_item_id=item_id,
                name=menu[item_id].name,
                unit_price=unit_price,
                quantity=quantity,
            ))
            total += unit_price * quantity
        order.total_amount = total
        order.waiter_id = _pick_waiter(db, restaurant, table, placed_by)

        db.add(order)
        db.flush()

        if order.waiter_id and not table.assigned_waiter_id:
            table.assigned_waiter_id = order.waiter_id
        if not table.is_occupied:
            apply_occupy(table, order.id, outbox)

        _emit_order(outbox, "new_order", order)
        if stock_updates:
            outbox.emit("menu_stock_update", stock_updates, public_room(restaurant_id))

    logger.info(f"Order {order.id} placed on table {table_id} of restaurant {restaurant_id}, total {total}")
    return order_snapshot(order)


def _check_transition(current: str, requested: str) -> None:
    if requested not in OrderStatus.SEQUENCE:
        raise ValidationError("Invalid status", status=requested)
    position = OrderStatus.SEQUENCE.index(current)
    if OrderStatus.SEQUENCE.index(requested) != position + 1:
        allowed = OrderStatus.SEQUENCE[position + 1:position + 2]
        raise InvalidTransitionError(
            f"Cannot move order from {current} to {requested}",
            current_status=current,
            requested_status=requested,
            allowed=list(allowed),
        )


def get_order(db: Session, order_id: int) -> models.Order:
    order = db.query(models.Order).filter(models.Order.id == order_id).first()
    if not order:
        raise NotFoundError("Order not found", order_id=order_id)
    return order


def advance_status(db: Session, order_id: int, new_status: str, publisher=None) -> dict:
    order = get_order(db, order_id)
    new_status = (new_status or "").upper()

    with table_session(db, order.restaurant_id, order.table_id, publisher) as (table, outbox):
        db.refresh(order)
        _check_transition(order.status, new_status)
        order.status = new_status
        if new_status == OrderStatus.PAID:
            order.payment_status = PaymentStatus.PAID
        order.updated_at = models.utcnow()
        _emit_order(outbox, "order_update", order)

    logger.info(f"Order {order_id} moved to {new_status}")
    return order_snapshot(order)


def mark_table_paid(db: Session, restaurant_id: int, table_id: int, publisher=None) -> list:
    """Settles the whole session at once; every active order must be served first."""
    with table_session(db, restaurant_id, table_id, publisher) as (table, outbox):
        orders = (
            _session_orders(db, restaurant_id, table_id)
            .filter(models.Order.status.notin_(OrderStatus.SETTLED))
            .order_by(models.Order.id)
            .all()
        )
        unserved = [o for o in orders if o.status in OrderStatus.UNSERVED]
        if unserved:
            raise PreconditionError(
                f"Cannot mark table as paid. {len(unserved)} orders are not yet SERVED. Please serve them first.",
                unserved_count=len(unserved),
                unserved_orders=[{"id": o.id, "status": o.status} for o in unserved],
            )

        for order in orders:
            order.status = OrderStatus.PAID
            order.payment_status = PaymentStatus.PAID
            order.updated_at = models.utcnow()
            _emit_order(outbox, "order_update", order)

    logger.info(f"Table {table_id} of restaurant {restaurant_id} paid ({len(orders)} orders)")
    return [order_snapshot(o) for o in orders]


def free_table(db: Session, restaurant_id: int, table_id: int,
               requested_by: Optional[models.User] = None, publisher=None) -> dict:
    """Closes the dining session: completes its orders and frees the table."""
    restaurant = get_restaurant(db, restaurant_id)
    role = staff_role(db, restaurant, requested_by) if requested_by is not None else None
    if requested_by is not None and role not in (Role.OWNER, Role.MANAGER, Role.WAITER):
        raise AuthorizationError("Only restaurant staff can close table sessions")

    with table_session(db, restaurant_id, table_id, publisher) as (table, outbox):
        if role == Role.WAITER and table.assigned_waiter_id not in (None, requested_by.id):
            raise AuthorizationError("You can only close sessions for tables assigned to you.")

        orders = _session_orders(db, restaurant_id, table_id).order_by(models.Order.id).all()
        unresolved = next((o for o in orders if o.status not in OrderStatus.SETTLED), None)
        if unresolved:
            raise PreconditionError(
                "Cannot close session. There are unpaid or active orders. Please settle them first.",
                active_order_id=unresolved.id,
                order_status=unresolved.status,
            )

        for order in orders:
            order.status = OrderStatus.COMPLETED
            order.is_session_closed = True
            order.updated_at = models.utcnow()
            _emit_order(outbox, "order_update", order)
        apply_free(table, outbox)

    logger.info(f"Table {table_id} of restaurant {restaurant_id} freed, {len(orders)} orders closed")
    return {"table_id": table_id, "closed_orders": [o.id for o in orders]}


# ========== Read side ==========

def active_orders(db: Session, restaurant_id: int, user: Optional[models.User] = None,
                  now: Optional[datetime] = None) -> list:
    """Open sessions plus sessions closed during the last 24 hours."""
    since = (now or models.utcnow()) - timedelta(days=1)
    query = db.query(models.Order).filter(
        models.Order.restaurant_id == restaurant_id,
        or_(
            models.Order.is_session_closed.is_(False),
            models.Order.updated_at >= since,
        ),
    )
    if user is not None:
        restaurant = get_restaurant(db, restaurant_id)
        if staff_role(db, restaurant, user) == Role.WAITER:
            query = query.filter(models.Order.waiter_id == user.id)
    return [order_snapshot(o) for o in query.order_by(models.Order.created_at, models.Order.id).all()]


def table_orders(db: Session, restaurant_id: int, table_id: int) -> list:
    orders = (
        _session_orders(db, restaurant_id, table_id)
        .order_by(models.Order.created_at.desc(), models.Order.id.desc())
        .all()
    )
    return [order_snapshot(o) for o in orders]


def order_history(db: Session, restaurant_id: int, page: int = 1, limit: int = 20,
                  status: Optional[str] = None) -> dict:
    if page < 1 or limit < 1:
        raise ValidationError("Page and limit must be positive")
    limit = min(limit, config.MAX_PAGE_SIZE)

    query = db.query(models.Order).filter(models.Order.restaurant_id == restaurant_id)
    if status:
        query = query.filter(models.Order.status == status.upper())
    total = query.count()
    orders = (
        query.order_by(models.Order.created_at.desc(), models.Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "success": True,
        "orders": [order_snapshot(o) for o in orders],
        "pagination": {"page": page, "limit": limit, "pages": math.ceil(total / limit), "total": total},
    }
