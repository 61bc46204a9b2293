import threading
from datetime import datetime

import pytest

import bookings
from database import SessionLocal
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from locks import table_lock
from models import BookingStatus
from realtime import public_room, staff_room

NOW = datetime(2026, 1, 1, 12, 0)
DAY = "2026-01-10"


def book(db, seed, start, table=None, user=None, guests=2, publisher=None, **kwargs):
    return bookings.create_booking(
        db,
        restaurant_id=seed.restaurant.id,
        table_id=(table or seed.t1).id,
        date=kwargs.pop("date", DAY),
        start_time=start,
        guest_count=guests,
        notes=kwargs.pop("notes", None),
        user_id=(user or seed.customer).id,
        now=kwargs.pop("now", NOW),
        publisher=publisher,
    )


def test_overlapping_booking_is_rejected(db, seed):
    first = book(db, seed, "18:00")

    assert first["start_time"] == "18:00:00"
    assert first["end_time"] == "19:00:00"
    assert first["status"] == BookingStatus.CONFIRMED

    with pytest.raises(ConflictError) as exc:
        book(db, seed, "18:30", user=seed.other)
    assert exc.value.details["conflicting_booking_id"] == first["id"]
    assert exc.value.status_code == 409


def test_back_to_back_bookings_do_not_overlap(db, seed):
    book(db, seed, "18:00")
    book(db, seed, "19:00")
    book(db, seed, "17:00")

    page = bookings.list_bookings(db, restaurant_id=seed.restaurant.id)
    assert [b["start_time"] for b in page["bookings"]] == ["17:00:00", "18:00:00", "19:00:00"]


def test_same_slot_on_another_table_or_day_is_free(db, seed):
    book(db, seed, "18:00")

    book(db, seed, "18:00", table=seed.t2)
    book(db, seed, "18:00", date="2026-01-11")


def test_cancelled_booking_frees_the_slot(db, seed):
    first = book(db, seed, "18:00")
    bookings.cancel_booking(db, first["id"], seed.customer)

    second = book(db, seed, "18:30", user=seed.other)
    assert second["end_time"] == "19:30:00"


def test_booking_events(db, seed, publisher):
    booking = book(db, seed, "18:00", publisher=publisher)
    rid = seed.restaurant.id

    assert publisher.payloads("booking:created", staff_room(rid)) == [booking]
    assert publisher.payloads("table:unavailable", public_room(rid)) == [{
        "table_id": seed.t1.id, "date": DAY, "start_time": "18:00:00", "end_time": "19:00:00",
    }]

    publisher.clear()
    bookings.cancel_booking(db, booking["id"], seed.customer, publisher=publisher)
    assert publisher.names(staff_room(rid)) == ["booking:cancelled"]
    assert publisher.names(public_room(rid)) == ["table:available"]


def test_past_bookings_are_rejected(db, seed):
    with pytest.raises(ValidationError):
        book(db, seed, "11:00", date="2026-01-01")


@pytest.mark.parametrize("date, start", [("10-01-2026", "18:00"), (DAY, "6pm"), (DAY, "25:00")])
def test_malformed_date_or_time_is_rejected(db, seed, date, start):
    with pytest.raises(ValidationError):
        book(db, seed, start, date=date)


def test_slot_may_not_cross_midnight(db, seed):
    with pytest.raises(ValidationError):
        book(db, seed, "23:30")


def test_guest_count_allows_two_extra_seats(db, seed):
    book(db, seed, "12:00", guests=6)

    with pytest.raises(ValidationError) as exc:
        book(db, seed, "14:00", guests=7)
    assert exc.value.details["capacity"] == 4


def test_restaurant_without_table_booking(db, seed):
    seed.restaurant.allow_table_booking = False
    db.commit()

    with pytest.raises(ValidationError):
        book(db, seed, "18:00")


def test_unknown_table_is_not_found(db, seed):
    with pytest.raises(NotFoundError):
        bookings.create_booking(db, seed.restaurant.id, 9999, DAY, "18:00", 2, None,
                                user_id=seed.customer.id, now=NOW)


def test_cancel_is_limited_to_owner_and_staff(db, seed):
    booking = book(db, seed, "18:00")

    with pytest.raises(AuthorizationError):
        bookings.cancel_booking(db, booking["id"], seed.other)
    with pytest.raises(AuthorizationError):
        bookings.cancel_booking(db, booking["id"], seed.kitchen)

    cancelled = bookings.cancel_booking(db, booking["id"], seed.waiter)
    assert cancelled["status"] == BookingStatus.CANCELLED


def test_cancel_twice_is_a_no_op(db, seed, publisher):
    booking = book(db, seed, "18:00")
    bookings.cancel_booking(db, booking["id"], seed.owner, publisher=publisher)

    again = bookings.cancel_booking(db, booking["id"], seed.customer, publisher=publisher)

    assert again["status"] == BookingStatus.CANCELLED
    assert publisher.names() == ["booking:cancelled", "table:available"]


def test_cancel_unknown_booking(db, seed):
    with pytest.raises(NotFoundError):
        bookings.cancel_booking(db, 31337, seed.customer)


def test_list_bookings_pagination_and_filters(db, seed):
    book(db, seed, "12:00")
    book(db, seed, "14:00", user=seed.other)
    book(db, seed, "16:00", date="2026-01-11")

    page = bookings.list_bookings(db, restaurant_id=seed.restaurant.id, page=1, limit=2)
    assert page["success"] is True
    assert page["pagination"] == {"page": 1, "limit": 2, "pages": 2, "total": 3}
    assert [b["start_time"] for b in page["bookings"]] == ["12:00:00", "14:00:00"]

    last = bookings.list_bookings(db, restaurant_id=seed.restaurant.id, page=2, limit=2)
    assert [b["date"] for b in last["bookings"]] == ["2026-01-11"]

    assert bookings.list_bookings(db, restaurant_id=seed.restaurant.id, date=DAY)["pagination"]["total"] == 2
    assert bookings.list_bookings(db, user_id=seed.other.id)["pagination"]["total"] == 1

    with pytest.raises(ValidationError):
        bookings.list_bookings(db, restaurant_id=seed.restaurant.id, page=0)


def test_concurrent_requests_for_one_slot_book_it_once(db, seed):
    rid, tid, uid = seed.restaurant.id, seed.t1.id, seed.customer.id
    created, conflicts, errors = [], [], []

    def worker():
        session = SessionLocal()
        try:
            created.append(bookings.create_booking(session, rid, tid, DAY, "18:00", 2, None,
                                                   user_id=uid, now=NOW))
        except ConflictError as e:
            conflicts.append(e)
        except Exception as e:
            errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(created) == 1
    assert len(conflicts) == 4
    assert bookings.list_bookings(db, restaurant_id=rid)["pagination"]["total"] == 1


def test_booking_waits_while_an_order_holds_the_table(db, seed):
    rid, tid, uid = seed.restaurant.id, seed.t1.id, seed.customer.id
    held, release = threading.Event(), threading.Event()
    created = []

    def order_in_progress():
        with table_lock(rid, tid):
            held.set()
            release.wait(5)

    def booker():
        session = SessionLocal()
        try:
            created.append(bookings.create_booking(session, rid, tid, DAY, "18:00", 2, None,
                                                   user_id=uid, now=NOW))
        finally:
            session.close()

    holder = threading.Thread(target=order_in_progress)
    holder.start()
    assert held.wait(5)

    booking_thread = threading.Thread(target=booker)
    booking_thread.start()
    booking_thread.join(0.3)
    assert booking_thread.is_alive()
    assert created == []

    release.set()
    holder.join(5)
    booking_thread.join(5)
    assert [b["status"] for b in created] == [BookingStatus.CONFIRMED]
