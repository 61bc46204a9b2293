import fnmatch
import os
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest

# the engine and redis client are built at import time, configure them first
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

_DB_DIR = tempfile.mkdtemp(prefix="restaurant-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ["REDIS_ENABLED"] = "false"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["STAFF_OFFLINE_GRACE_SECONDS"] = "0"

import auth  # noqa: E402
import models  # noqa: E402
from database import Base, SessionLocal, engine  # noqa: E402
from models import Role  # noqa: E402
from redis_client import redis_client  # noqa: E402

PASSWORD = "secret123"
_password_hash = None


def password_hash():
    global _password_hash
    if _password_hash is None:
        _password_hash = auth.get_password_hash(PASSWORD)
    return _password_hash


class RecordingPublisher:
    """Stands in for the websocket hub and remembers what was published."""

    def __init__(self):
        self.events = []

    def publish(self, room, event, data):
        self.events.append((room, event, data))

    def names(self, room=None):
        return [event for r, event, _ in self.events if room is None or r == room]

    def payloads(self, event, room=None):
        return [data for r, e, data in self.events if e == event and (room is None or r == room)]

    def clear(self):
        self.events.clear()


class FakeLock:
    def __init__(self, name):
        self.name = name

    def acquire(self):
        return True

    def release(self):
        pass


class FakeRedis:
    """Dict-backed stand-in for the redis commands the cache layer sends."""

    def __init__(self):
        self.store = {}

    def ping(self):
        return True

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        return True

    def delete(self, *keys):
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    def keys(self, pattern="*"):
        return [key for key in self.store if fnmatch.fnmatch(key, pattern)]

    def incr(self, key):
        self.store[key] = int(self.store.get(key, 0)) + 1
        return self.store[key]

    def expire(self, key, seconds):
        return True

    def lock(self, name, timeout=None, blocking_timeout=None):
        return FakeLock(name)


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(redis_client, "client", fake)
    return fake


def make_user(db, name, email, roles):
    user = models.User(name=name, email=email, password=password_hash(), roles=list(roles))
    db.add(user)
    db.flush()
    return user


@pytest.fixture
def seed(db):
    owner = make_user(db, "Owner", "owner@example.com", [Role.OWNER])
    waiter = make_user(db, "Waiter", "waiter@example.com", [Role.WAITER])
    kitchen = make_user(db, "Cook", "cook@example.com", [Role.KITCHEN])
    customer = make_user(db, "Customer", "customer@example.com", [Role.CUSTOMER])
    other = make_user(db, "Other", "other@example.com", [Role.CUSTOMER])

    restaurant = models.Restaurant(name="Spice Route", owner_id=owner.id, booking_slot_minutes=60)
    t1 = models.Table(number=1, capacity=4)
    t2 = models.Table(number=2, capacity=2)
    restaurant.tables.extend([t1, t2])
    menu = {
        "paneer": models.MenuItem(name="Paneer Tikka", price=200, category="Starters"),
        "dal": models.MenuItem(name="Dal Makhani", price=150, category="Mains"),
        "naan": models.MenuItem(name="Butter Naan", price=40, category="Breads", stock=3),
        "kulfi": models.MenuItem(name="Kulfi", price=90, category="Desserts", is_available=False),
    }
    restaurant.menu_items.extend(menu.values())
    db.add(restaurant)
    db.flush()

    db.add(models.StaffMember(restaurant_id=restaurant.id, user_id=waiter.id, role=Role.WAITER, is_active=True))
    db.add(models.StaffMember(restaurant_id=restaurant.id, user_id=kitchen.id, role=Role.KITCHEN, is_active=True))
    waiter.working_at_id = restaurant.id
    kitchen.working_at_id = restaurant.id
    db.commit()

    return SimpleNamespace(
        owner=owner,
        waiter=waiter,
        kitchen=kitchen,
        customer=customer,
        other=other,
        restaurant=restaurant,
        t1=t1,
        t2=t2,
        menu=menu,
    )


def customer_details(name="Asha", phone="9999999999"):
    return {"name": name, "phone": phone}


def auth_header(user):
    token = auth.create_access_token({"sub": user.email})
    return {"Authorization": f"Bearer {token}"}
