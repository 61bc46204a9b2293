"""
Table reservations.

No two non-cancelled bookings of one table may overlap on the same day:
``[s1, e1)`` and ``[s2, e2)`` overlap iff ``s1 < e2 and s2 < e1``. The
overlap check and the insert run under the ``(restaurant, table, date)``
lock, so two concurrent requests for the same slot cannot both pass the
check. The insert also holds the table lock, the one an order opening a
session holds while it checks for upcoming bookings, so a booking cannot
slip in between that check and the occupy. Locks are always taken table
first, then booking.

Bookings are never deleted; cancelling flips the status.
"""
import logging
import math
from datetime import date as date_type
from datetime import datetime, time, timedelta
from typing import Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

import config
import models
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from locks import booking_lock, table_lock
from models import BookingStatus, Role
from realtime import Outbox, public_room, staff_room
from restaurants import get_restaurant, staff_role
from schemas import BookingResponse
from table_store import get_table

logger = logging.getLogger(__name__)


def booking_response(booking: models.Booking) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        restaurant_id=booking.restaurant_id,
        table_id=booking.table_id,
        user_id=booking.user_id,
        date=booking.date,
        start_time=booking.start_time,
        end_time=booking.end_time,
        guest_count=booking.guest_count,
        status=booking.status,
        notes=booking.notes,
        created_at=booking.created_at,
    )


def booking_snapshot(booking: models.Booking) -> dict:
    return jsonable_encoder(booking_response(booking))


def parse_date(value) -> date_type:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date_type):
        return value
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError("Date must be in YYYY-MM-DD format", date=value)


def parse_time(value) -> time:
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    try:
        return datetime.strptime(str(value), "%H:%M").time()
    except ValueError:
        raise ValidationError("Start time must be in HH:MM format", start_time=value)


def slot_end(day: date_type, start: time, slot_minutes: int) -> time:
    end = datetime.combine(day, start) + timedelta(minutes=slot_minutes)
    if end.date() != day:
        raise ValidationError("Booking must end on the same day", start_time=start.strftime("%H:%M"))
    return end.time()


def find_overlap(db: Session, restaurant_id: int, table_id: int, day: date_type,
                 start: time, end: time) -> Optional[models.Booking]:
    return db.query(models.Booking).filter(
        models.Booking.restaurant_id == restaurant_id,
        models.Booking.table_id == table_id,
        models.Booking.date == day,
        models.Booking.status != BookingStatus.CANCELLED,
        models.Booking.start_time < end,
        models.Booking.end_time > start,
    ).order_by(models.Booking.start_time).first()


def create_booking(db: Session, restaurant_id: int, table_id: int, date, start_time, guest_count,
                   notes: Optional[str], user_id: int, now: Optional[datetime] = None,
                   publisher=None) -> dict:
    if not all([restaurant_id, table_id, date, start_time, guest_count, user_id]):
        raise ValidationError("Please provide all required fields")

    day = parse_date(date)
    start = parse_time(start_time)
    if datetime.combine(day, start) < (now or datetime.now()):
        raise ValidationError("Cannot book for past time")

    restaurant = get_restaurant(db, restaurant_id)
    if not restaurant.allow_table_booking:
        raise ValidationError("This restaurant does not accept table bookings")
    table = get_table(db, restaurant_id, table_id)

    if not isinstance(guest_count, int) or guest_count < 1:
        raise ValidationError("Guest count must be at least 1")
    if guest_count > table.capacity + config.BOOKING_MAX_EXTRA_GUESTS:
        raise ValidationError(
            f"Table capacity is {table.capacity}. Cannot fit {guest_count} guests.",
            capacity=table.capacity,
        )

    end = slot_end(day, start, restaurant.booking_slot_minutes)
    outbox = Outbox(publisher)

    with table_lock(restaurant_id, table_id), booking_lock(restaurant_id, table_id, day):
        try:
            existing = find_overlap(db, restaurant_id, table_id, day, start, end)
            if existing:
                logger.info(f"Booking conflict on table {table_id} {day} {start}-{end} with booking {existing.id}")
                raise ConflictError(
                    f"Table is already booked from {existing.start_time.strftime('%H:%M')} "
                    f"to {existing.end_time.strftime('%H:%M')}",
                    conflicting_booking_id=existing.id,
                )

            booking = models.Booking(
                restaurant_id=restaurant_id,
                table_id=table_id,
                user_id=user_id,
                date=day,
                start_time=start,
                end_time=end,
                guest_count=guest_count,
                status=BookingStatus.CONFIRMED,
                notes=notes,
            )
            db.add(booking)
            db.commit()
        except Exception:
            db.rollback()
            raise

        snapshot = booking_snapshot(booking)
        outbox.emit("booking:created", snapshot, staff_room(restaurant_id))
        outbox.emit("table:unavailable", {
            "table_id": table_id,
            "date": snapshot["date"],
            "start_time": snapshot["start_time"],
            "end_time": snapshot["end_time"],
        }, public_room(restaurant_id))
        outbox.flush()

    logger.info(f"Booking {booking.id} created for table {table_id} on {day} {start}-{end} by user {user_id}")
    return snapshot


def cancel_booking(db: Session, booking_id: int, requested_by: models.User, publisher=None) -> dict:
    booking = db.query(models.Booking).filter(models.Booking.id == booking_id).first()
    if not booking:
        raise NotFoundError("Booking not found", booking_id=booking_id)

    if requested_by is None:
        raise AuthorizationError("Unauthorized")
    if booking.user_id != requested_by.id:
        restaurant = get_restaurant(db, booking.restaurant_id)
        if staff_role(db, restaurant, requested_by) not in (Role.OWNER, Role.MANAGER, Role.WAITER):
            raise AuthorizationError("Unauthorized")

    outbox = Outbox(publisher)
    with booking_lock(booking.restaurant_id, booking.table_id, booking.date):
        db.refresh(booking)
        if booking.status == BookingStatus.CANCELLED:
            return booking_snapshot(booking)

        booking.status = BookingStatus.CANCELLED
        db.commit()

        snapshot = booking_snapshot(booking)
        outbox.emit("booking:cancelled", snapshot, staff_room(booking.restaurant_id))
        outbox.emit("table:available", {
            "table_id": booking.table_id,
            "date": snapshot["date"],
            "start_time": snapshot["start_time"],
            "end_time": snapshot["end_time"],
        }, public_room(booking.restaurant_id))
        outbox.flush()

    logger.info(f"Booking {booking_id} cancelled by user {requested_by.id}")
    return snapshot


def list_bookings(db: Session, restaurant_id: Optional[int] = None, date=None, page: int = 1,
                  limit: int = 20, user_id: Optional[int] = None) -> dict:
    """
    Bookings of a restaurant (staff view) or of one user, ordered by day and
    start time. A write landing between two page fetches may shift rows.
    """
    if page < 1 or limit < 1:
        raise ValidationError("Page and limit must be positive")
    limit = min(limit, config.MAX_PAGE_SIZE)

    query = db.query(models.Booking)
    if restaurant_id is not None:
        query = query.filter(models.Booking.restaurant_id == restaurant_id)
    if user_id is not None:
        query = query.filter(models.Booking.user_id == user_id)
    if date:
        query = query.filter(models.Booking.date == parse_date(date))

    total = query.count()
    bookings = (
        query.order_by(models.Booking.date, models.Booking.start_time, models.Booking.id)
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "success": True,
        "bookings": [booking_snapshot(b) for b in bookings],
        "pagination": {"page": page, "limit": limit, "pages": math.ceil(total / limit), "total": total},
    }
