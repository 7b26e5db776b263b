import csv
import logging
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from functools import lru_cache
from io import StringIO
from typing import List, Optional

from fastapi import BackgroundTasks, Body, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from starlette.concurrency import run_in_threadpool

from cart import CartMatcher, CartService
from catalog import CatalogService
from database import DocumentStore, db
from errors import ShopError, UserNotFound
from gateway import PaymentGateway, RazorpayGateway
from lifecycle import OrderLifecycle
from locks import KeyedLock
from notifications import ConsoleNotifier, Notifier, SmtpNotifier
from payments import CheckoutService, PaymentVerification
from schemas import (
    CheckoutRequest,
    Order,
    OrderStatus,
    ProductIn,
    Role,
    Selection,
    SizeStock,
    User,
)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

# Auth settings
SECRET_KEY = os.getenv("SECRET_KEY", "secret-key-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 12

# Payment settings
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")
CURRENCY = os.getenv("CURRENCY", "INR")

# Mail settings
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", 587))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
MAIL_FROM = os.getenv("MAIL_FROM")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

# One lock registry per process, shared by every request
cart_locks = KeyedLock()
order_locks = KeyedLock()

app = FastAPI(title="Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ShopError)
def shop_error_handler(request: Request, exc: ShopError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class TokenData(BaseModel):
    user_id: Optional[str] = None


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


class RegisterPayload(BaseModel):
    full_name: str
    email: EmailStr
    password: str = Field(..., min_length=6)


# Collaborators, overridden in tests

def get_store() -> DocumentStore:
    if db is None:
        raise HTTPException(500, "Database not available")
    return DocumentStore(db)


@lru_cache
def get_gateway() -> PaymentGateway:
    return RazorpayGateway(RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET)


def get_notifier(background_tasks: BackgroundTasks) -> Notifier:
    if SMTP_HOST:
        return SmtpNotifier(SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASSWORD, MAIL_FROM, tasks=background_tasks)
    return ConsoleNotifier()


def get_catalog(store: DocumentStore = Depends(get_store)) -> CatalogService:
    return CatalogService(store)


def get_cart(store: DocumentStore = Depends(get_store), catalog: CatalogService = Depends(get_catalog)) -> CartService:
    return CartService(store, catalog, cart_locks)


def get_checkout(
    store: DocumentStore = Depends(get_store),
    catalog: CatalogService = Depends(get_catalog),
    cart: CartService = Depends(get_cart),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> CheckoutService:
    return CheckoutService(store, catalog, cart, gateway, notifier, RAZORPAY_KEY_SECRET, CURRENCY)


def get_lifecycle(
    store: DocumentStore = Depends(get_store),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
) -> OrderLifecycle:
    return OrderLifecycle(store, gateway, notifier, order_locks, RAZORPAY_WEBHOOK_SECRET)


# Helper functions for auth

def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def get_current_user(token: str = Depends(oauth2_scheme), store: DocumentStore = Depends(get_store)) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
        token_data = TokenData(user_id=user_id)
    except JWTError:
        raise credentials_exception

    try:
        return store.find_by_id("user", token_data.user_id, User)
    except ShopError:
        raise credentials_exception


def get_current_admin(user: User = Depends(get_current_user)) -> User:
    if user.role not in (Role.admin, Role.superadmin):
        raise HTTPException(status_code=403, detail="Admin only")
    return user


def ensure_owner(order: Order, user: User):
    if order.user_id != user.id and user.role not in (Role.admin, Role.superadmin):
        raise HTTPException(status_code=403, detail="Not allowed")


def public(model: BaseModel) -> dict:
    return model.model_dump(mode="json")


@app.get("/")
def root():
    return {"message": "Storefront Backend Running"}


# Auth endpoints
@app.post("/auth/register", response_model=Token)
def register(payload: RegisterPayload, store: DocumentStore = Depends(get_store)):
    if store.find_one("user", {"email": payload.email}, User):
        raise HTTPException(400, "Email already registered")
    user = User(full_name=payload.full_name, email=payload.email, password_hash=get_password_hash(payload.password))
    user_id = store.insert("user", user)
    return {"access_token": create_access_token(data={"sub": user_id}), "token_type": "bearer"}


@app.post("/auth/login", response_model=Token)
def login(payload: LoginPayload, store: DocumentStore = Depends(get_store)):
    user = store.find_one("user", {"email": payload.email}, User)
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=400, detail="Incorrect email or password")

    access_token = create_access_token(data={"sub": user.id})
    return {"access_token": access_token, "token_type": "bearer"}


# Seed the first admin user; refused once any admin exists
@app.post("/auth/seed-admin")
def seed_admin(
    full_name: str = Body(...),
    email: EmailStr = Body(...),
    password: str = Body(...),
    store: DocumentStore = Depends(get_store),
):
    if store.find_one("user", {"role": {"$in": [Role.admin.value, Role.superadmin.value]}}, User):
        return {"status": "exists"}
    admin = User(full_name=full_name, email=email, password_hash=get_password_hash(password), role=Role.admin)
    store.insert("user", admin)
    return {"status": "created"}


class RoleChange(BaseModel):
    role: Role


@app.put("/admin/users/{user_id}/role")
def admin_set_role(user_id: str, payload: RoleChange, admin: User = Depends(get_current_admin),
                   store: DocumentStore = Depends(get_store)):
    if user_id == admin.id:
        raise HTTPException(400, "You cannot change your own role")
    if payload.role == Role.superadmin and admin.role != Role.superadmin:
        raise HTTPException(403, "Only a superadmin can grant superadmin")
    user = store.find_by_id("user", user_id, User, UserNotFound)
    user.role = payload.role
    store.save("user", user)
    logger.info("User %s role set to %s by %s", user_id, payload.role.value, admin.id)
    return {"message": f"User role updated to {payload.role.value}",
            "user": {"full_name": user.full_name, "email": user.email, "role": user.role.value}}


# Products public endpoints
@app.get("/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None,
                  catalog: CatalogService = Depends(get_catalog)):
    return [public(p) for p in catalog.list_products(q, category)]


@app.get("/products/{product_id}")
def get_product(product_id: str, catalog: CatalogService = Depends(get_catalog)):
    return public(catalog.get(product_id))


class RatingPayload(BaseModel):
    rating: int
    comment: Optional[str] = None


@app.post("/products/{product_id}/ratings")
def rate_product(product_id: str, payload: RatingPayload, user: User = Depends(get_current_user),
                 catalog: CatalogService = Depends(get_catalog)):
    product = catalog.add_rating(product_id, user, payload.rating, payload.comment)
    return {"average_rating": product.average_rating, "count": len(product.ratings)}


# Admin product management
@app.post("/admin/products", response_model=dict)
def admin_create_product(product: ProductIn, admin: User = Depends(get_current_admin),
                         catalog: CatalogService = Depends(get_catalog)):
    return public(catalog.create_product(product))


@app.put("/admin/products/{product_id}", response_model=dict)
def admin_update_product(product_id: str, product: ProductIn, admin: User = Depends(get_current_admin),
                         catalog: CatalogService = Depends(get_catalog)):
    return public(catalog.update_product(product_id, product))


@app.delete("/admin/products/{product_id}")
def admin_delete_product(product_id: str, admin: User = Depends(get_current_admin),
                         catalog: CatalogService = Depends(get_catalog)):
    catalog.delete_product(product_id)
    return {"status": "deleted"}


class StockUpdate(BaseModel):
    stock: Optional[int] = Field(default=None, ge=0)
    size_stock: Optional[List[SizeStock]] = None


@app.put("/admin/products/{product_id}/variants/{variant_id}/stock")
def admin_update_stock(product_id: str, variant_id: str, payload: StockUpdate,
                       admin: User = Depends(get_current_admin), catalog: CatalogService = Depends(get_catalog)):
    catalog.update_stock(product_id, variant_id, payload.stock, payload.size_stock)
    return {"status": "updated"}


# Cart
class CartAdd(BaseModel):
    product_id: str
    selection: Selection
    quantity: int = Field(1, ge=1)


class CartUpdate(BaseModel):
    product_id: str
    selection: Selection
    quantity: int = Field(..., ge=1)
    entry_id: Optional[str] = None


@app.get("/cart")
def get_cart_items(user: User = Depends(get_current_user), cart: CartService = Depends(get_cart)):
    return cart.get_cart(user.id)


@app.post("/cart")
def add_to_cart(payload: CartAdd, user: User = Depends(get_current_user), cart: CartService = Depends(get_cart)):
    entries = cart.add_to_cart(user.id, payload.product_id, payload.selection, payload.quantity)
    return {"message": "Added to cart", "cart": [public(e) for e in entries]}


@app.put("/cart")
def update_cart(payload: CartUpdate, user: User = Depends(get_current_user), cart: CartService = Depends(get_cart)):
    entries = cart.update_quantity(user.id, payload.product_id, payload.selection, payload.quantity, payload.entry_id)
    return {"cart": [public(e) for e in entries]}


@app.delete("/cart/{entry_id}")
def remove_cart_entry(entry_id: str, user: User = Depends(get_current_user), cart: CartService = Depends(get_cart)):
    return {"removed": cart.remove_from_cart(user.id, CartMatcher(entry_id=entry_id))}


@app.delete("/cart")
def remove_cart_product(product_id: str, color: Optional[str] = None, size: Optional[str] = None,
                        ram: Optional[str] = None, rom: Optional[str] = None,
                        user: User = Depends(get_current_user), cart: CartService = Depends(get_cart)):
    matcher = CartMatcher(product_id=product_id, color=color, size=size, ram=ram, rom=rom)
    return {"removed": cart.remove_from_cart(user.id, matcher)}


# Checkout and payments
@app.post("/orders", status_code=201)
def place_order(payload: CheckoutRequest, user: User = Depends(get_current_user),
                checkout: CheckoutService = Depends(get_checkout)):
    result = checkout.place_order(user.id, payload)
    return {**result, "order": public(result["order"])}


class GatewayOrderPayload(BaseModel):
    amount: Decimal = Field(..., gt=0)


@app.post("/payments/gateway-order")
def create_gateway_order(payload: GatewayOrderPayload, user: User = Depends(get_current_user),
                         checkout: CheckoutService = Depends(get_checkout)):
    return checkout.create_gateway_order(payload.amount)


class VerifyPaymentPayload(PaymentVerification):
    order_data: CheckoutRequest


@app.post("/payments/verify", status_code=201)
def verify_payment(payload: VerifyPaymentPayload, user: User = Depends(get_current_user),
                   checkout: CheckoutService = Depends(get_checkout)):
    payment = PaymentVerification(**payload.model_dump(include={"razorpay_order_id", "razorpay_payment_id", "razorpay_signature"}))
    order = checkout.verify_and_place_order(user.id, payment, payload.order_data)
    return {"success": True, "order": public(order)}


@app.post("/payments/webhook")
async def razorpay_webhook(request: Request, x_razorpay_signature: str = Header(""),
                           lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    # the signature covers the raw body, so it is read before any parsing
    body = await request.body()
    return await run_in_threadpool(lifecycle.handle_webhook, body, x_razorpay_signature)


# Orders
@app.get("/orders")
def my_orders(user: User = Depends(get_current_user), lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    return [public(o) for o in lifecycle.list_user_orders(user.id)]


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: User = Depends(get_current_user),
              lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    order = lifecycle.get_order(order_id)
    ensure_owner(order, user)
    return public(order)


def cancellation_response(result, message: str):
    return {
        "success": True,
        "message": message,
        "refund_amount": str(result.refund_amount),
        "refund": public(result.refund) if result.refund else None,
        "order": public(result.order),
    }


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user: User = Depends(get_current_user),
                 lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    ensure_owner(lifecycle.get_order(order_id), user)
    return cancellation_response(lifecycle.cancel_order(order_id), "Order cancelled successfully")


@app.post("/orders/{order_id}/items/{item_ref}/cancel")
def cancel_order_item(order_id: str, item_ref: str, user: User = Depends(get_current_user),
                      lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    ensure_owner(lifecycle.get_order(order_id), user)
    return cancellation_response(lifecycle.cancel_item(order_id, item_ref), "Item cancelled successfully")


@app.post("/orders/{order_id}/reorder")
def reorder(order_id: str, user: User = Depends(get_current_user),
            lifecycle: OrderLifecycle = Depends(get_lifecycle), cart: CartService = Depends(get_cart)):
    order = lifecycle.get_order(order_id)
    ensure_owner(order, user)
    result = cart.reorder(user.id, order)
    return {**result, "cart": [public(e) for e in result["cart"]]}


# Orders admin
@app.get("/admin/orders")
def admin_list_orders(status: Optional[OrderStatus] = None, admin: User = Depends(get_current_admin),
                      lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    return [public(o) for o in lifecycle.list_orders(status)]


class StatusChange(BaseModel):
    status: str


@app.put("/admin/orders/{order_id}/status")
def admin_change_status(order_id: str, payload: StatusChange, admin: User = Depends(get_current_admin),
                        lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    order = lifecycle.update_status(order_id, payload.status)
    return {"success": True, "message": "Order status updated successfully", "order": public(order)}


# Export CSV
@app.get("/admin/orders/export")
def admin_export_orders(admin: User = Depends(get_current_admin), lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    out = StringIO()
    writer = csv.writer(out)
    writer.writerow(["order_id", "status", "payment_method", "payment_status", "total", "email", "phone"])
    for o in lifecycle.list_orders():
        writer.writerow([
            o.id, o.status.value, o.payment_method.value, o.payment_status.value,
            str(o.summary.total_amount), o.user_email, o.shipping_address.phone,
        ])
    return {"csv": out.getvalue()}


# Simple health and db test
@app.get("/test")
def test_database():
    try:
        collections = db.list_collection_names()
        return {"backend": "ok", "db": "ok", "collections": collections}
    except Exception as e:
        return {"backend": "ok", "db": f"error: {str(e)}"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
