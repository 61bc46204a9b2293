import logging
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, WebSocket, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

import auth
import bookings
import config
import models
import orders
import restaurants
import table_store
from database import get_db, init_db, wait_for_db
from errors import DomainError
from models import Role
from realtime import hub
from redis_client import redis_client
from schemas import (
    BookingCreate,
    BookingPage,
    FreeTableRequest,
    MenuItemCreate,
    MenuItemUpdate,
    OrderCreate,
    OrderStatusUpdate,
    RestaurantCreate,
    RestaurantResponse,
    RestaurantStatusUpdate,
    RestaurantUpdate,
    ReviewCreate,
    StaffCreate,
    TableFlagUpdate,
    TablePayment,
    UserCreate,
    UserLogin,
    UserResponse,
    WaiterAssignment,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("restaurant_api")

app = FastAPI(title="Restaurant Table Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DomainError)
async def domain_error_handler(request, exc: DomainError):
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder({"success": False, **exc.to_dict()}),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "message": "Validation Error", "errors": [e["msg"] for e in exc.errors()]},
    )


async def on_staff_presence(restaurant_id: int, user_id: int, online: bool):
    await run_in_threadpool(restaurants.set_staff_presence, restaurant_id, user_id, online)


hub.presence_listener = on_staff_presence


@app.on_event("startup")
def startup_event():
    if not wait_for_db():
        logger.error("Database is not reachable, starting without schema bootstrap")
        return
    init_db()
    logger.info("Database schema ready")

    if redis_client.is_available():
        logger.info("Redis available")
    else:
        logger.warning("Redis unavailable, caching and distributed locks disabled")


@app.on_event("shutdown")
async def shutdown_event():
    await hub.shutdown()


# ========== Auth ==========

def get_current_user(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)):
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")

    payload = auth.verify_token(authorization.replace("Bearer ", ""))
    if not payload or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")

    user = db.query(models.User).filter(models.User.email == payload["sub"]).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_optional_user(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)):
    if not authorization:
        return None
    return get_current_user(authorization, db)


def user_response(user: models.User) -> UserResponse:
    return UserResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        roles=list(user.roles or []),
        working_at_id=user.working_at_id,
    )


@app.get("/")
def read_root():
    return {"message": "Restaurant API is working!"}


@app.get("/health")
def health_check():
    return {"status": "ok", "message": "API is running"}


@app.get("/cache/info")
def get_cache_info():
    return redis_client.get_cache_info()


@app.post("/api/auth/register", response_model=UserResponse, status_code=201)
def register(user: UserCreate, db: Session = Depends(get_db)):
    if db.query(models.User).filter(models.User.email == user.email).first():
        raise HTTPException(status_code=400, detail="Email already registered")

    db_user = models.User(
        name=user.name,
        email=user.email,
        password=auth.get_password_hash(user.password),
        roles=[user.role],
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    logger.info(f"User {db_user.id} registered as {user.role}")
    return user_response(db_user)


@app.post("/api/auth/login")
def login(user: UserLogin, db: Session = Depends(get_db)):
    db_user = auth.authenticate_user(db, user.email, user.password)
    if not db_user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect email or password")

    access_token = auth.create_access_token(data={"sub": db_user.email, "roles": list(db_user.roles or [])})
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "user": user_response(db_user),
    }


@app.get("/api/auth/me", response_model=UserResponse)
def get_current_user_info(current_user: models.User = Depends(get_current_user)):
    return user_response(current_user)


# ========== Restaurants ==========

@app.post("/api/restaurants", response_model=RestaurantResponse, status_code=201)
def create_restaurant(data: RestaurantCreate, db: Session = Depends(get_db),
                      current_user: models.User = Depends(get_current_user)):
    restaurant = restaurants.create_restaurant(db, current_user, data)
    return restaurants.restaurant_response(restaurant)


@app.get("/api/restaurants/{restaurant_id}", response_model=RestaurantResponse)
def get_restaurant(restaurant_id: int, db: Session = Depends(get_db)):
    return restaurants.restaurant_response(restaurants.get_restaurant(db, restaurant_id))


@app.get("/api/restaurants/{restaurant_id}/tables")
def get_tables(restaurant_id: int, db: Session = Depends(get_db)):
    restaurants.get_restaurant(db, restaurant_id)
    return table_store.list_tables(db, restaurant_id)


@app.get("/api/restaurants/{restaurant_id}/menu")
def get_menu(restaurant_id: int, db: Session = Depends(get_db)):
    return restaurants.list_menu(db, restaurant_id)


@app.put("/api/restaurants/{restaurant_id}", response_model=RestaurantResponse)
def update_restaurant(restaurant_id: int, update: RestaurantUpdate, db: Session = Depends(get_db),
                      current_user: models.User = Depends(get_current_user)):
    restaurants.require_staff(db, restaurant_id, current_user, Role.OWNER, Role.MANAGER)
    return restaurants.restaurant_response(restaurants.update_restaurant(db, restaurant_id, update))


@app.put("/api/restaurants/{restaurant_id}/status")
def update_restaurant_status(restaurant_id: int, update: RestaurantStatusUpdate, db: Session = Depends(get_db),
                             current_user: models.User = Depends(get_current_user)):
    restaurants.require_staff(db, restaurant_id, current_user, Role.OWNER, Role.MANAGER)
    return restaurants.update_status(db, restaurant_id, is_open=update.is_open, is_active=update.is_active)


@app.post("/api/restaurants/{restaurant_id}/staff", status_code=201)
def add_staff(restaurant_id: int, staff: StaffCreate, db: Session = Depends(get_db),
              current_user: models.User = Depends(get_current_user)):
    restaurants.require_staff(db, restaurant_id, current_user, Role.OWNER)
    member = restaurants.add_staff(db, restaurant_id, staff.user_id, staff.role)
    return {"id": member.id, "user_id": member.user_id, "role": member.role, "is_active": member.is_active}


@app.get("/api/restaurants/{restaurant_id}/staff")
def get_staff(restaurant_id: int, db: Session = Depends(get_db),
              current_user: models.User = Depends(get_current_user)):
    restaurants.require_staff(db, restaurant_id, current_user, Role.OWNER, Role.MANAGER)
    return {"success": True, "staff": restaurants.list_staff(db, restaurant_id)}


@app.delete("/api/restaurants/{restaurant_id}/staff/{user_id}")
def remove_staff(restaurant_id: int, user_id: int, db: Session = Depends(get_db),
                 current_user: models.User = Depends(get_current_user)):
    restaurants.require_staff(db, restaurant_id, current_user, Role.OWNER)
    removed = restaurants.remove_staff(db, restaurant_id, user_id)
    return {"success": True, "message": "Staff member removed successfully", **removed}


@app.post("/api/restaurants/{restaurant_id}/menu", status_code=201)
def add_menu_item(restaurant_id: int, item: MenuItemCreate, db: Session = Depends(get_db),
                  current_user: models.User = Depends(get_current_user)):
    restaurants.require_staff(db, restaurant_id, current_user, Role.OWNER)
    return {"success": True, "menu_item": restaurants.add_menu_item(db, restaurant_id, item)}


@app.put("/api/restaurants/{restaurant_id}/menu/{item_id}")
def update_menu_item(restaurant_id: int, item_id: int, update: MenuItemUpdate, db: Session = Depends(get_db),
                     current_user: models.User = Depends(get_current_user)):
    restaurants.require_staff(db, restaurant_id, current_user, Role.OWNER)
    return {"success": True, "menu_item": restaurants.update_menu_item(db, restaurant_id, item_id, update)}


@app.delete("/api/restaurants/{restaurant_id}/menu/{item_id}")
def delete_menu_item(restaurant_id: int, item_id: int, db: Session = Depends(get_db),
                     current_user: models.User = Depends(get_current_user)):
    restaurants.require_staff(db, restaurant_id, current_user, Role.OWNER)
    restaurants.delete_menu_item(db, restaurant_id, item_id)
    return {"success": True, "message": "Menu item deleted successfully"}


@app.patch("/api/restaurants/{restaurant_id}/menu/{item_id}/toggle")
def toggle_menu_item(restaurant_id: int, item_id: int, db: Session = Depends(get_db),
                     current_user: models.User = Depends(get_current_user)):
    restaurants.require_staff(db, restaurant_id, current_user, Role.OWNER, Role.MANAGER)
    return restaurants.toggle_menu_item(db, restaurant_id, item_id)


@app.post("/api/restaurants/{restaurant_id}/reviews", status_code=201)
def add_review(restaurant_id: int, review: ReviewCreate, db: Session = Depends(get_db),
               current_user: models.User = Depends(get_current_user)):
    return restaurants.add_review(db, restaurant_id, current_user, review.rating, review.comment)


@app.post("/api/restaurants/{restaurant_id}/tables/{table_id}/service")
def request_service(restaurant_id: int, table_id: int, flag: TableFlagUpdate, db: Session = Depends(get_db)):
    return table_store.set_service_request(db, restaurant_id, table_id, flag.active)


@app.post("/api/restaurants/{restaurant_id}/tables/{table_id}/bill")
def request_bill(restaurant_id: int, table_id: int, flag: TableFlagUpdate, db: Session = Depends(get_db)):
    return table_store.set_bill_request(db, restaurant_id, table_id, flag.active)


@app.put("/api/restaurants/{restaurant_id}/tables/{table_id}/waiter")
def assign_waiter(restaurant_id: int, table_id: int, assignment: WaiterAssignment, db: Session = Depends(get_db),
                  current_user: models.User = Depends(get_current_user)):
    restaurants.require_staff(db, restaurant_id, current_user, Role.OWNER, Role.MANAGER)
    return table_store.assign_waiter(db, restaurant_id, table_id, assignment.waiter_id)


# ========== Bookings ==========

@app.post("/api/bookings", status_code=201)
def create_booking(booking: BookingCreate, db: Session = Depends(get_db),
                   current_user: models.User = Depends(get_current_user)):
    allowed, _ = redis_client.check_rate_limit(
        f"rate_limit:bookings:{current_user.id}", config.BOOKING_RATE_LIMIT, config.BOOKING_RATE_WINDOW
    )
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Rate limit exceeded. Try again in {config.BOOKING_RATE_WINDOW} seconds.",
        )

    created = bookings.create_booking(
        db,
        restaurant_id=booking.restaurant_id,
        table_id=booking.table_id,
        date=booking.date,
        start_time=booking.start_time,
        guest_count=booking.guest_count,
        notes=booking.notes,
        user_id=current_user.id,
    )
    return {"success": True, "message": "Table booked successfully", "booking": created}


@app.get("/api/bookings", response_model=BookingPage)
def list_bookings(restaurant_id: Optional[int] = Query(None, alias="restaurantId"), date: Optional[str] = None,
                  page: int = Query(1), limit: int = Query(20),
                  db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    if restaurant_id is not None:
        restaurants.require_staff(db, restaurant_id, current_user)
        return bookings.list_bookings(db, restaurant_id=restaurant_id, date=date, page=page, limit=limit)
    return bookings.list_bookings(db, user_id=current_user.id, date=date, page=page, limit=limit)


@app.delete("/api/bookings/{booking_id}")
def cancel_booking(booking_id: int, db: Session = Depends(get_db),
                   current_user: models.User = Depends(get_current_user)):
    cancelled = bookings.cancel_booking(db, booking_id, current_user)
    return {"success": True, "message": "Booking cancelled", "booking": cancelled}


# ========== Orders ==========

@app.post("/api/orders", status_code=201)
def place_order(order: OrderCreate, db: Session = Depends(get_db),
                current_user: Optional[models.User] = Depends(get_optional_user)):
    placed = orders.place_order(
        db,
        restaurant_id=order.restaurant_id,
        table_id=order.table_id,
        items=order.items,
        customer_details=order.customer_details,
        placed_by=current_user,
        payment_method=order.payment_method,
    )
    return {"message": "Order placed successfully", "order": placed}


@app.get("/api/orders/active/{restaurant_id}")
def get_active_orders(restaurant_id: int, db: Session = Depends(get_db),
                      current_user: models.User = Depends(get_current_user)):
    restaurants.require_staff(db, restaurant_id, current_user)
    return orders.active_orders(db, restaurant_id, user=current_user)


@app.get("/api/orders/history/{restaurant_id}")
def get_order_history(restaurant_id: int, page: int = Query(1), limit: int = Query(20),
                      order_status: Optional[str] = Query(None, alias="status"),
                      db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    restaurants.require_staff(db, restaurant_id, current_user, Role.OWNER, Role.MANAGER)
    return orders.order_history(db, restaurant_id, page=page, limit=limit, status=order_status)


@app.put("/api/orders/table/{table_id}/pay")
def mark_table_paid(table_id: int, payment: TablePayment, db: Session = Depends(get_db),
                    current_user: models.User = Depends(get_current_user)):
    restaurants.require_staff(db, payment.restaurant_id, current_user, Role.OWNER, Role.MANAGER, Role.WAITER)
    updated = orders.mark_table_paid(db, payment.restaurant_id, table_id)
    if not updated:
        return {"message": "No unpaid active orders found.", "updated_orders": []}
    return {"message": "Table marked as Paid", "updated_orders": updated}


@app.post("/api/orders/free-table")
def free_table(request: FreeTableRequest, db: Session = Depends(get_db),
               current_user: models.User = Depends(get_current_user)):
    result = orders.free_table(db, request.restaurant_id, request.table_id, requested_by=current_user)
    return {"message": "Table freed successfully", **result}


@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: int, update: OrderStatusUpdate, db: Session = Depends(get_db),
                        current_user: models.User = Depends(get_current_user)):
    order = orders.get_order(db, order_id)
    restaurants.require_staff(db, order.restaurant_id, current_user)
    updated = orders.advance_status(db, order_id, update.status)
    return {"message": "Order status updated", "order": updated}


@app.get("/api/orders/{restaurant_id}/{table_id}")
def get_table_orders(restaurant_id: int, table_id: int, db: Session = Depends(get_db)):
    table_store.get_table(db, restaurant_id, table_id)
    return orders.table_orders(db, restaurant_id, table_id)


# ========== Realtime ==========

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await hub.serve(websocket)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
