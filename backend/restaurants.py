"""
Restaurant setup and the staff/authorization helpers shared by the order
and booking modules.
"""
import logging
from decimal import Decimal
from typing import Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import config
import models
from database import SessionLocal
from errors import AuthorizationError, NotFoundError, PreconditionError, ValidationError
from realtime import Outbox, owner_room, public_room, staff_room
from redis_client import redis_client
from schemas import (
    MenuItemCreate,
    MenuItemResponse,
    MenuItemUpdate,
    RestaurantCreate,
    RestaurantResponse,
    RestaurantUpdate,
)
from table_store import table_response

logger = logging.getLogger(__name__)


def get_restaurant(db: Session, restaurant_id: int) -> models.Restaurant:
    restaurant = db.query(models.Restaurant).filter(models.Restaurant.id == restaurant_id).first()
    if not restaurant:
        raise NotFoundError("Restaurant not found", restaurant_id=restaurant_id)
    return restaurant


def staff_role(db: Session, restaurant: models.Restaurant, user: Optional[models.User]) -> Optional[str]:
    """The role ``user`` holds at ``restaurant``: owner, a staff role, or None."""
    if user is None:
        return None
    if restaurant.owner_id == user.id:
        return models.Role.OWNER
    member = db.query(models.StaffMember).filter(
        models.StaffMember.restaurant_id == restaurant.id,
        models.StaffMember.user_id == user.id,
    ).first()
    return member.role if member else None


def require_staff(db: Session, restaurant_id: int, user: Optional[models.User], *roles: str) -> str:
    restaurant = get_restaurant(db, restaurant_id)
    role = staff_role(db, restaurant, user)
    if role is None or (roles and role not in roles):
        raise AuthorizationError("Not authorized for this restaurant")
    return role


def menu_item_response(item: models.MenuItem) -> MenuItemResponse:
    return MenuItemResponse(
        id=item.id,
        restaurant_id=item.restaurant_id,
        name=item.name,
        description=item.description,
        category=item.category,
        price=item.price,
        is_available=item.is_available,
        stock=item.stock,
    )


def restaurant_response(restaurant: models.Restaurant) -> RestaurantResponse:
    return RestaurantResponse(
        id=restaurant.id,
        name=restaurant.name,
        owner_id=restaurant.owner_id,
        is_open=restaurant.is_open,
        is_active=restaurant.is_active,
        allow_table_booking=restaurant.allow_table_booking,
        booking_slot_minutes=restaurant.booking_slot_minutes,
        rating_average=restaurant.rating_average,
        rating_count=restaurant.rating_count,
        tables=[table_response(t) for t in restaurant.tables],
        menu=[menu_item_response(m) for m in restaurant.menu_items],
    )


def create_restaurant(db: Session, owner: models.User, data: RestaurantCreate) -> models.Restaurant:
    numbers = [t.number for t in data.tables]
    if len(numbers) != len(set(numbers)):
        raise ValidationError("Table numbers must be unique")

    restaurant = models.Restaurant(
        name=data.name,
        owner_id=owner.id,
        allow_table_booking=data.allow_table_booking,
        booking_slot_minutes=data.booking_slot_minutes or config.DEFAULT_BOOKING_SLOT_MINUTES,
    )
    for t in data.tables:
        restaurant.tables.append(models.Table(number=t.number, capacity=t.capacity))
    for m in data.menu:
        restaurant.menu_items.append(models.MenuItem(**m.dict()))

    if not owner.has_role(models.Role.OWNER):
        owner.roles = list(owner.roles or []) + [models.Role.OWNER]

    db.add(restaurant)
    db.commit()
    db.refresh(restaurant)
    logger.info(f"Restaurant {restaurant.id} created by user {owner.id} with {len(data.tables)} tables")
    return restaurant


def update_status(db: Session, restaurant_id: int, is_open=None, is_active=None, publisher=None) -> dict:
    restaurant = get_restaurant(db, restaurant_id)
    if is_open is not None:
        restaurant.is_open = is_open
    if is_active is not None:
        restaurant.is_active = is_active
    db.commit()

    status = {"restaurant_id": restaurant.id, "is_open": restaurant.is_open, "is_active": restaurant.is_active}
    outbox = Outbox(publisher)
    outbox.emit("restaurant_status_update", status, public_room(restaurant_id), staff_room(restaurant_id))
    outbox.flush()
    logger.info(f"Restaurant {restaurant_id} status: open={restaurant.is_open} active={restaurant.is_active}")
    return status


def update_restaurant(db: Session, restaurant_id: int, data: RestaurantUpdate) -> models.Restaurant:
    """Settings only. Existing bookings keep the end time they were created with."""
    restaurant = get_restaurant(db, restaurant_id)
    if data.name is not None:
        restaurant.name = data.name
    if data.allow_table_booking is not None:
        restaurant.allow_table_booking = data.allow_table_booking
    if data.booking_slot_minutes is not None:
        restaurant.booking_slot_minutes = data.booking_slot_minutes
    db.commit()
    db.refresh(restaurant)
    logger.info(f"Restaurant {restaurant_id} settings updated: booking={restaurant.allow_table_booking} "
                f"slot={restaurant.booking_slot_minutes}m")
    return restaurant


def staff_member_response(member: models.StaffMember) -> dict:
    return jsonable_encoder({
        "id": member.id,
        "user_id": member.user_id,
        "name": member.user.name if member.user else None,
        "email": member.user.email if member.user else None,
        "role": member.role,
        "is_active": member.is_active,
        "joined_at": member.joined_at,
    })


def list_staff(db: Session, restaurant_id: int) -> list:
    get_restaurant(db, restaurant_id)
    members = (
        db.query(models.StaffMember)
        .filter(models.StaffMember.restaurant_id == restaurant_id)
        .order_by(models.StaffMember.joined_at, models.StaffMember.id)
        .all()
    )
    return [staff_member_response(m) for m in members]


def add_staff(db: Session, restaurant_id: int, user_id: int, role: str) -> models.StaffMember:
    get_restaurant(db, restaurant_id)
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise NotFoundError("User not found", user_id=user_id)

    member = models.StaffMember(restaurant_id=restaurant_id, user_id=user_id, role=role)
    user.working_at_id = restaurant_id
    if not user.has_role(role):
        user.roles = list(user.roles or []) + [role]
    db.add(member)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationError("User is already a staff member of this restaurant")
    db.refresh(member)
    logger.info(f"User {user_id} joined restaurant {restaurant_id} as {role}")
    return member


def remove_staff(db: Session, restaurant_id: int, user_id: int, publisher=None) -> dict:
    """Ends a staff membership. The user account stays."""
    get_restaurant(db, restaurant_id)
    member = db.query(models.StaffMember).filter(
        models.StaffMember.restaurant_id == restaurant_id,
        models.StaffMember.user_id == user_id,
    ).first()
    if not member:
        raise NotFoundError("Staff member not found in this restaurant", user_id=user_id)

    user = member.user
    role = member.role
    db.delete(member)
    if user is not None:
        if user.working_at_id == restaurant_id:
            user.working_at_id = None
        still_holds_role = db.query(models.StaffMember).filter(
            models.StaffMember.user_id == user_id,
            models.StaffMember.restaurant_id != restaurant_id,
            models.StaffMember.role == role,
        ).count()
        if not still_holds_role:
            user.roles = [r for r in (user.roles or []) if r != role]
    db.commit()

    outbox = Outbox(publisher)
    outbox.emit("staff_update", {"staff_id": user_id, "is_active": False, "removed": True}, staff_room(restaurant_id))
    outbox.flush()
    logger.info(f"User {user_id} removed from restaurant {restaurant_id} staff")
    return {"user_id": user_id, "role": role}


def set_staff_presence(restaurant_id: int, user_id: int, online: bool, publisher=None) -> bool:
    """Driven by staff-room connections; opens its own session."""
    db = SessionLocal()
    try:
        member = db.query(models.StaffMember).filter(
            models.StaffMember.restaurant_id == restaurant_id,
            models.StaffMember.user_id == user_id,
        ).first()
        if not member:
            return False
        member.is_active = online
        db.commit()
    finally:
        db.close()

    outbox = Outbox(publisher)
    outbox.emit("staff_update", {"staff_id": user_id, "is_active": online}, staff_room(restaurant_id))
    outbox.flush()
    logger.info(f"Staff {user_id} at restaurant {restaurant_id} is {'online' if online else 'offline'}")
    return True


def list_menu(db: Session, restaurant_id: int) -> list:
    cached = redis_client.get_cached_menu(restaurant_id)
    if cached is not None:
        return cached
    get_restaurant(db, restaurant_id)
    items = (
        db.query(models.MenuItem)
        .filter(models.MenuItem.restaurant_id == restaurant_id)
        .order_by(models.MenuItem.id)
        .all()
    )
    menu = [jsonable_encoder(menu_item_response(i)) for i in items]
    redis_client.cache_menu(restaurant_id, menu)
    return menu


def get_menu_item(db: Session, restaurant_id: int, item_id: int, for_update: bool = False) -> models.MenuItem:
    query = db.query(models.MenuItem).filter(
        models.MenuItem.id == item_id,
        models.MenuItem.restaurant_id == restaurant_id,
    )
    if for_update:
        query = query.with_for_update()
    item = query.first()
    if not item:
        raise NotFoundError("Menu item not found", menu_item_id=item_id)
    return item


def _menu_changed(restaurant_id: int, item: models.MenuItem, publisher=None) -> dict:
    redis_client.invalidate_menu_cache(restaurant_id)
    update = [{"id": item.id, "stock": item.stock, "is_available": item.is_available}]
    outbox = Outbox(publisher)
    outbox.emit("menu_stock_update", update, public_room(restaurant_id), staff_room(restaurant_id))
    outbox.flush()
    return update[0]


def add_menu_item(db: Session, restaurant_id: int, data: MenuItemCreate, publisher=None) -> dict:
    get_restaurant(db, restaurant_id)
    item = models.MenuItem(restaurant_id=restaurant_id, **data.dict())
    db.add(item)
    db.commit()
    db.refresh(item)
    _menu_changed(restaurant_id, item, publisher)
    logger.info(f"Menu item {item.id} added to restaurant {restaurant_id}")
    return jsonable_encoder(menu_item_response(item))


def update_menu_item(db: Session, restaurant_id: int, item_id: int, data: MenuItemUpdate, publisher=None) -> dict:
    """Partial update; also the way to restock an item that ran out."""
    item = get_menu_item(db, restaurant_id, item_id, for_update=True)
    for field in ("name", "price", "description", "category", "is_available", "stock"):
        value = getattr(data, field)
        if value is not None:
            setattr(item, field, value)
    if data.unlimited_stock:
        item.stock = None
    db.commit()
    db.refresh(item)
    _menu_changed(restaurant_id, item, publisher)
    logger.info(f"Menu item {item_id} of restaurant {restaurant_id} updated, stock {item.stock}")
    return jsonable_encoder(menu_item_response(item))


def delete_menu_item(db: Session, restaurant_id: int, item_id: int) -> None:
    item = get_menu_item(db, restaurant_id, item_id)
    ordered = db.query(models.OrderItem).filter(models.OrderItem.menu_item_id == item_id).count()
    if ordered:
        raise PreconditionError(
            "Menu item appears on past orders and cannot be deleted. Mark it unavailable instead.",
            menu_item_id=item_id,
        )
    db.delete(item)
    db.commit()
    redis_client.invalidate_menu_cache(restaurant_id)
    logger.info(f"Menu item {item_id} deleted from restaurant {restaurant_id}")


def toggle_menu_item(db: Session, restaurant_id: int, item_id: int, publisher=None) -> dict:
    item = get_menu_item(db, restaurant_id, item_id)
    item.is_available = not item.is_available
    db.commit()
    return _menu_changed(restaurant_id, item, publisher)


def add_review(db: Session, restaurant_id: int, user: models.User, rating: int, comment=None, publisher=None) -> dict:
    restaurant = get_restaurant(db, restaurant_id)
    review = models.Review(restaurant_id=restaurant_id, user_id=user.id, rating=rating, comment=comment)
    db.add(review)

    total = Decimal(restaurant.rating_average or 0) * restaurant.rating_count + rating
    restaurant.rating_count += 1
    restaurant.rating_average = (total / restaurant.rating_count).quantize(Decimal("0.01"))
    db.commit()
    db.refresh(review)

    payload = jsonable_encoder({
        "id": review.id,
        "restaurant_id": restaurant_id,
        "user_id": user.id,
        "user_name": user.name,
        "rating": review.rating,
        "comment": review.comment,
        "created_at": review.created_at,
        "ratings": {"average": restaurant.rating_average, "total_reviews": restaurant.rating_count},
    })
    outbox = Outbox(publisher)
    outbox.emit("review_added", payload, owner_room(restaurant_id))
    outbox.flush()
    return payload
