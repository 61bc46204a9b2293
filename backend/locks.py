"""
Keyed locks serializing the check-then-act sequences of the service:

* ``table_lock(restaurant_id, table_id)`` wraps "check occupancy, create
  order, set occupancy" and every other mutation of a table session;
* ``booking_lock(restaurant_id, table_id, date)`` wraps "check overlap,
  insert booking".

The in-process lock is always taken. When Redis is reachable a distributed
lock with the same key is taken as well, so several workers behind one
database stay serialized.
"""
import logging
import threading
from contextlib import contextmanager

from errors import ConflictError
from redis_client import redis_client

logger = logging.getLogger(__name__)


class KeyedLocks:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def _checkout(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key):
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key):
        lock = self._checkout(key)
        try:
            with lock:
                yield
        finally:
            self._checkin(key)

    def __len__(self):
        with self._guard:
            return len(self._locks)


_local_locks = KeyedLocks()


@contextmanager
def _guarded(key, busy_message):
    name = ":".join(str(part) for part in key)
    with _local_locks.hold(key):
        remote = redis_client.acquire_lock(name)
        if remote is False:
            logger.info(f"Lock conflict on {name}")
            raise ConflictError(busy_message)
        try:
            yield
        finally:
            if remote:
                redis_client.release_lock(remote)


def table_lock(restaurant_id, table_id):
    return _guarded(
        ("table", restaurant_id, table_id),
        "This table is being updated by someone else right now. Please try again in a moment.",
    )


def booking_lock(restaurant_id, table_id, date):
    return _guarded(
        ("booking", restaurant_id, table_id, str(date)),
        "This table is being booked by another user right now. Please try again in a moment.",
    )
