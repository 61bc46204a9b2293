"""
Per-table occupancy and service flags.

Invariant kept by every function here: a table that is not occupied has no
current order and neither request flag set. A free table may carry an
assigned waiter (staff pre-assign sections); ``free`` clears it.

Each mutation runs under the ``(restaurant_id, table_id)`` lock, commits and
then emits the full table snapshot. Consumers replace their copy of the
table with the snapshot, they never merge.
"""
import logging
from contextlib import contextmanager

from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

import models
from errors import ConflictError, NotFoundError, PreconditionError
from locks import table_lock
from realtime import Outbox, staff_room, table_room
from redis_client import redis_client
from schemas import TableResponse

logger = logging.getLogger(__name__)


def get_table(db: Session, restaurant_id: int, table_id: int, for_update: bool = False) -> models.Table:
    query = db.query(models.Table).filter(
        models.Table.id == table_id,
        models.Table.restaurant_id == restaurant_id,
    )
    if for_update:
        query = query.with_for_update()
    table = query.first()
    if not table:
        raise NotFoundError("Table not found", table_id=table_id)
    return table


def table_response(table: models.Table) -> TableResponse:
    return TableResponse(
        id=table.id,
        restaurant_id=table.restaurant_id,
        number=table.number,
        capacity=table.capacity,
        is_occupied=table.is_occupied,
        current_order_id=table.current_order_id,
        assigned_waiter_id=table.assigned_waiter_id,
        request_service=table.request_service,
        request_bill=table.request_bill,
    )


def table_snapshot(table: models.Table) -> dict:
    return jsonable_encoder(table_response(table))


@contextmanager
def table_session(db: Session, restaurant_id: int, table_id: int, publisher=None):
    """
    Locks one table, yields ``(table, outbox)``, commits when the block
    finishes and then publishes whatever the block emitted. Cached tables,
    and the cached menu when the block changed stock, are dropped before
    anything is published.
    """
    with table_lock(restaurant_id, table_id):
        outbox = Outbox(publisher)
        try:
            table = get_table(db, restaurant_id, table_id, for_update=True)
            yield table, outbox
            db.commit()
        except Exception:
            db.rollback()
            raise
        redis_client.invalidate_tables_cache(restaurant_id)
        if any(event == "menu_stock_update" for _, event, _ in outbox.pending):
            redis_client.invalidate_menu_cache(restaurant_id)
        outbox.flush()


# ========== Primitives (caller holds the table session) ==========

def apply_occupy(table: models.Table, order_id: int, outbox: Outbox) -> None:
    if table.is_occupied and table.current_order_id not in (None, order_id):
        raise ConflictError(
            "Table is already occupied by another order",
            table_id=table.id,
            current_order_id=table.current_order_id,
        )
    table.is_occupied = True
    table.current_order_id = order_id
    outbox.emit("table_update", table_snapshot(table), staff_room(table.restaurant_id))


def apply_free(table: models.Table, outbox: Outbox) -> None:
    table.is_occupied = False
    table.current_order_id = None
    table.assigned_waiter_id = None
    table.request_service = False
    table.request_bill = False
    snapshot = table_snapshot(table)
    outbox.emit("table_freed", snapshot,
                staff_room(table.restaurant_id), table_room(table.restaurant_id, table.id))


def _apply_flag(table: models.Table, field: str, active: bool, event: str, outbox: Outbox) -> None:
    if active and not table.is_occupied:
        raise PreconditionError(
            "Table has no active session",
            table_id=table.id,
        )
    setattr(table, field, active)
    outbox.emit(event, table_snapshot(table),
                staff_room(table.restaurant_id), table_room(table.restaurant_id, table.id))


# ========== Operations ==========

def occupy(db: Session, restaurant_id: int, table_id: int, order_id: int, publisher=None) -> dict:
    with table_session(db, restaurant_id, table_id, publisher) as (table, outbox):
        apply_occupy(table, order_id, outbox)
    logger.info(f"Table {table_id} occupied by order {order_id}")
    return table_snapshot(table)


def free(db: Session, restaurant_id: int, table_id: int, publisher=None) -> dict:
    with table_session(db, restaurant_id, table_id, publisher) as (table, outbox):
        apply_free(table, outbox)
    logger.info(f"Table {table_id} freed")
    return table_snapshot(table)


def set_service_request(db: Session, restaurant_id: int, table_id: int, active: bool, publisher=None) -> dict:
    with table_session(db, restaurant_id, table_id, publisher) as (table, outbox):
        _apply_flag(table, "request_service", active, "table_service_update", outbox)
    logger.info(f"Table {table_id} service request {'raised' if active else 'cleared'}")
    return table_snapshot(table)


def set_bill_request(db: Session, restaurant_id: int, table_id: int, active: bool, publisher=None) -> dict:
    with table_session(db, restaurant_id, table_id, publisher) as (table, outbox):
        _apply_flag(table, "request_bill", active, "table_bill_update", outbox)
    logger.info(f"Table {table_id} bill request {'raised' if active else 'cleared'}")
    return table_snapshot(table)


def assign_waiter(db: Session, restaurant_id: int, table_id: int, waiter_id, publisher=None) -> dict:
    """Last writer wins: reassignment is an explicit staff action."""
    with table_session(db, restaurant_id, table_id, publisher) as (table, outbox):
        table.assigned_waiter_id = waiter_id
        outbox.emit("table_update", table_snapshot(table), staff_room(restaurant_id))
    logger.info(f"Table {table_id} assigned to waiter {waiter_id}")
    return table_snapshot(table)


def list_tables(db: Session, restaurant_id: int) -> list:
    cached = redis_client.get_cached_tables(restaurant_id)
    if cached is not None:
        return cached

    tables = (
        db.query(models.Table)
        .filter(models.Table.restaurant_id == restaurant_id)
        .order_by(models.Table.number)
        .all()
    )
    snapshots = [table_snapshot(t) for t in tables]
    redis_client.cache_tables(restaurant_id, snapshots)
    return snapshots
