import os
import logging
from contextlib import asynccontextmanager
from typing import List, Optional
from fastapi import FastAPI, Depends, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

import database
from auth import (
    Session, SessionStore, end_session, get_current_session, get_password_hash,
    get_session_store, start_session, verify_password,
)
from errors import AuthenticationError, AuthorizationError, MarketplaceError, NotFoundError, ValidationError
from orders import can_view_order, create_order as place_order, list_orders_for, transition_status
from schemas import (
    User as UserSchema, Product as ProductSchema, Review as ReviewSchema,
    LoginRequest, LoginResponse, OrderCreate, ProductUpdate, ProfileUpdate, StatusUpdate, UserOut, UserType,
)
from storage import Storage, get_storage

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        Storage(database.db).ensure_indexes()
    yield


app = FastAPI(title="Farm Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error mapping
@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"message": "Validation error", "errors": jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Server error"})


def to_user_out(user: dict) -> UserOut:
    return UserOut(**user)


def require_farmer(session: Session, message: str) -> None:
    if session.user_type is not UserType.farmer:
        raise AuthorizationError(message)


def get_owned_product(storage: Storage, product_id: str, session: Session, action: str) -> dict:
    product = storage.get_product(product_id)
    if not product:
        raise NotFoundError("Product not found")
    if product["farmer_id"] != session.user_id:
        raise AuthorizationError(f"Not authorized to {action} this product")
    return product


def check_category(storage: Storage, category_id: Optional[str]) -> None:
    if category_id is not None and storage.get_category(category_id) is None:
        raise ValidationError("Unknown category")


@app.get("/")
def read_root():
    return {"message": "Farm marketplace backend is running"}


# Auth
@app.post("/api/auth/register", response_model=UserOut, status_code=201)
def register(user: UserSchema, storage: Storage = Depends(get_storage)):
    if storage.get_user_by_email(user.email):
        raise ValidationError("Email already registered")
    if storage.get_user_by_username(user.username):
        raise ValidationError("Username already taken")
    data = user.model_dump(mode="json", exclude={"password"})
    data["password_hash"] = get_password_hash(user.password)
    created = storage.create_user(data)
    logger.info("Registered %s %s", created["user_type"], created["id"])
    return to_user_out(created)


@app.post("/api/auth/login", response_model=LoginResponse)
def login(
    credentials: LoginRequest,
    response: Response,
    storage: Storage = Depends(get_storage),
    store: SessionStore = Depends(get_session_store),
):
    user = storage.get_user_by_username(credentials.username)
    if not user or not verify_password(credentials.password, user.get("password_hash", "")):
        logger.warning("Failed login for %s", credentials.username)
        raise AuthenticationError("Invalid credentials")
    start_session(response, store, user["id"], user["user_type"])
    logger.info("User %s logged in", user["id"])
    return LoginResponse(message="Login successful", user=to_user_out(user))


@app.post("/api/auth/logout")
def logout(request: Request, response: Response, store: SessionStore = Depends(get_session_store)):
    end_session(request, response, store)
    return {"message": "Logout successful"}


@app.get("/api/auth/me", response_model=UserOut)
def me(session: Session = Depends(get_current_session), storage: Storage = Depends(get_storage)):
    user = storage.get_user(session.user_id)
    if not user:
        raise NotFoundError("User not found")
    return to_user_out(user)


# Users
@app.patch("/api/users/profile", response_model=UserOut)
def update_profile(
    payload: ProfileUpdate,
    session: Session = Depends(get_current_session),
    storage: Storage = Depends(get_storage),
):
    # username, email, password and user_type are not part of ProfileUpdate
    changes = payload.model_dump(exclude_unset=True)
    user = storage.update_user(session.user_id, changes) if changes else storage.get_user(session.user_id)
    if not user:
        raise NotFoundError("User not found")
    return to_user_out(user)


@app.get("/api/users/{user_id}", response_model=UserOut)
def get_user(user_id: str, storage: Storage = Depends(get_storage)):
    user = storage.get_user(user_id)
    if not user:
        raise NotFoundError("User not found")
    return to_user_out(user)


# Catalog
@app.get("/api/categories")
def list_categories(storage: Storage = Depends(get_storage)):
    return storage.get_categories()


@app.get("/api/categories/{category_id}")
def get_category(category_id: str, storage: Storage = Depends(get_storage)):
    category = storage.get_category(category_id)
    if not category:
        raise NotFoundError("Category not found")
    return category


@app.get("/api/products")
def list_products(
    category_id: Optional[str] = None,
    farmer_id: Optional[str] = None,
    storage: Storage = Depends(get_storage),
):
    if category_id:
        return storage.get_products_by_category(category_id)
    if farmer_id:
        return storage.get_products_by_farmer(farmer_id)
    return storage.get_products()


@app.get("/api/products/{product_id}")
def get_product(product_id: str, storage: Storage = Depends(get_storage)):
    product = storage.get_product(product_id)
    if not product:
        raise NotFoundError("Product not found")
    return product


@app.post("/api/products", status_code=201)
def create_product(
    product: ProductSchema,
    session: Session = Depends(get_current_session),
    storage: Storage = Depends(get_storage),
):
    require_farmer(session, "Only farmers can create products")
    check_category(storage, product.category_id)
    created = storage.create_product({**product.model_dump(), "farmer_id": session.user_id})
    logger.info("Farmer %s listed product %s", session.user_id, created["id"])
    return created


@app.patch("/api/products/{product_id}")
def update_product(
    product_id: str,
    payload: ProductUpdate,
    session: Session = Depends(get_current_session),
    storage: Storage = Depends(get_storage),
):
    product = get_owned_product(storage, product_id, session, "update")
    # farmer_id is not part of ProductUpdate, so ownership cannot change here
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        return product
    check_category(storage, changes.get("category_id"))
    updated = storage.update_product(product["id"], changes)
    if not updated:
        raise NotFoundError("Product not found")
    return updated


@app.delete("/api/products/{product_id}")
def delete_product(
    product_id: str,
    session: Session = Depends(get_current_session),
    storage: Storage = Depends(get_storage),
):
    product = get_owned_product(storage, product_id, session, "delete")
    if not storage.delete_product(product["id"]):
        raise NotFoundError("Product not found")
    return {"message": "Product deleted successfully"}


# Reviews
@app.get("/api/products/{product_id}/reviews")
def get_reviews(product_id: str, storage: Storage = Depends(get_storage)):
    return storage.get_reviews(product_id)


@app.post("/api/products/{product_id}/reviews", status_code=201)
def add_review(
    product_id: str,
    review: ReviewSchema,
    session: Session = Depends(get_current_session),
    storage: Storage = Depends(get_storage),
):
    product = storage.get_product(product_id)
    if not product:
        raise NotFoundError("Product not found")
    user = storage.get_user(session.user_id)
    data = review.model_dump()
    data["product_id"] = product["id"]
    data["user_id"] = session.user_id
    data["user_name"] = user.get("name") if user else None
    created = storage.create_review(data)
    # update product rating
    revs = storage.get_reviews(product["id"])
    if revs:
        avg = sum([r.get("rating", 0) for r in revs]) / len(revs)
        storage.set_product_rating(product["id"], round(avg, 2), len(revs))
    return created


# Orders
@app.get("/api/orders")
def list_orders(session: Session = Depends(get_current_session), storage: Storage = Depends(get_storage)):
    return list_orders_for(storage, session)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, session: Session = Depends(get_current_session), storage: Storage = Depends(get_storage)):
    order = storage.get_order(order_id)
    if not order:
        raise NotFoundError("Order not found")
    if not can_view_order(storage, order, session):
        raise AuthorizationError("Not authorized to view this order")
    return {"order": order, "items": storage.get_order_items(order["id"])}


@app.post("/api/orders", status_code=201)
def create_order(
    payload: OrderCreate,
    session: Session = Depends(get_current_session),
    storage: Storage = Depends(get_storage),
):
    order, items = place_order(storage, session, payload.order, payload.items)
    return {"order": order, "items": items}


@app.patch("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: StatusUpdate,
    session: Session = Depends(get_current_session),
    storage: Storage = Depends(get_storage),
):
    return transition_status(storage, order_id, payload.status, session)


# Seed produce categories if missing
SEED_CATEGORIES: List[dict] = [
    {"name": "Vegetables", "description": "Fresh seasonal vegetables", "image_url": "/cat-vegetables.jpg"},
    {"name": "Fruits", "description": "Orchard and tropical fruits", "image_url": "/cat-fruits.jpg"},
    {"name": "Grains", "description": "Rice, wheat, millets and pulses", "image_url": "/cat-grains.jpg"},
    {"name": "Dairy", "description": "Milk, ghee and paneer", "image_url": "/cat-dairy.jpg"},
    {"name": "Spices", "description": "Whole and ground spices", "image_url": "/cat-spices.jpg"},
]


@app.post("/api/seed")
def seed(storage: Storage = Depends(get_storage)):
    created = 0
    for category in SEED_CATEGORIES:
        if storage.get_category_by_name(category["name"]) is not None:
            continue
        try:
            storage.create_category(dict(category))
        except ValidationError:
            # a concurrent seed got there first
            continue
        created += 1
    if created:
        logger.info("Seeded %d categories", created)
    return {"ok": True, "categories_created": created}


MARKETPLACE_COLLECTIONS = ["user", "category", "product", "order", "order_item", "review"]


@app.get("/test")
def test_database():
    """Diagnostics: database reachability and document counts for the marketplace collections."""
    if database.db is None:
        return {"backend": "running", "database": "not configured", "collections": {}}
    try:
        counts = {name: database.db[name].count_documents({}) for name in MARKETPLACE_COLLECTIONS}
    except PyMongoError as e:
        logger.warning("Database diagnostics failed: %s", e)
        return {"backend": "running", "database": f"error: {str(e)[:80]}", "collections": {}}
    return {"backend": "running", "database": "connected", "collections": counts}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
