from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Header, Query, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import ACCESS_COOKIE, REFRESH_COOKIE, get_current_user, require_admin
from carts import CartService, WishlistService
from catalog import CategoryService, ProductService
from database import ensure_indexes, get_db, serialize
from errors import StoreError
from images import CloudinaryGateway, get_image_gateway, read_images
from log import get_logger
from orders import OrderService
from payments import PaymentService, StripeGateway, WebhookSignatureError, get_payment_gateway
from schemas import (
    AddCartItemBody,
    AdminUserUpdateBody,
    CreateOrderBody,
    LoginBody,
    OrderStatusBody,
    PaymentIntentBody,
    RefreshBody,
    RegisterBody,
    StockBody,
    UpdateCartItemBody,
    UpdateProfileBody,
)
from settings import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    COOKIE_SECURE,
    CORS_ORIGINS,
    MAX_PRODUCT_IMAGES,
    PORT,
    REFRESH_TOKEN_EXPIRE_DAYS,
)
from users import UserService

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = app.dependency_overrides.get(get_db, get_db)()
    try:
        ensure_indexes(db)
    except Exception as e:
        logger.warning(f"Could not ensure indexes: {e}")
    yield


app = FastAPI(title="GreenMart API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api = APIRouter(prefix="/api")

# ---------------------- Envelope & Errors ----------------------


def envelope(data: Any = None, message: Optional[str] = None, **extra) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    body.update(extra)
    if data is not None:
        body["data"] = serialize(data)
    return body


def page_envelope(result: Dict[str, Any]) -> Dict[str, Any]:
    return envelope(
        result["items"],
        count=len(result["items"]),
        total=result["total"],
        page=result["page"],
        pages=result["pages"],
    )


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return error_response(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if not errors:
        return error_response(400, "Invalid request")
    err = errors[0]
    field = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
    return error_response(400, f"{field}: {err.get('msg')}" if field else err.get("msg", "Invalid request"))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return error_response(500, str(exc) or "Internal server error")

# ---------------------- Service wiring ----------------------


def users_service(db: Database = Depends(get_db)) -> UserService:
    return UserService(db)


def products_service(db: Database = Depends(get_db),
                     images: CloudinaryGateway = Depends(get_image_gateway)) -> ProductService:
    return ProductService(db, images)


def categories_service(db: Database = Depends(get_db),
                       images: CloudinaryGateway = Depends(get_image_gateway)) -> CategoryService:
    return CategoryService(db, images)


def carts_service(db: Database = Depends(get_db)) -> CartService:
    return CartService(db)


def wishlists_service(db: Database = Depends(get_db)) -> WishlistService:
    return WishlistService(db)


def orders_service(db: Database = Depends(get_db),
                   payments: StripeGateway = Depends(get_payment_gateway)) -> OrderService:
    return OrderService(db, payments)


def payments_service(db: Database = Depends(get_db),
                     gateway: StripeGateway = Depends(get_payment_gateway)) -> PaymentService:
    return PaymentService(db, gateway)

# ---------------------- Root & Health ----------------------


@app.get("/")
def read_root():
    return {"message": "GreenMart API running"}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        response["database_name"] = db.name
        response["collections"] = db.list_collection_names()
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response

# ---------------------- Auth ----------------------


def set_auth_cookies(response: Response, access_token: str, refresh_token: Optional[str] = None):
    response.set_cookie(
        ACCESS_COOKIE, access_token, httponly=True, secure=COOKIE_SECURE, samesite="lax",
        max_age=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )
    if refresh_token:
        response.set_cookie(
            REFRESH_COOKIE, refresh_token, httponly=True, secure=COOKIE_SECURE, samesite="lax",
            max_age=REFRESH_TOKEN_EXPIRE_DAYS * 24 * 3600,
        )


@api.post("/auth/register", status_code=201)
def register(body: RegisterBody, response: Response, svc: UserService = Depends(users_service)):
    result = svc.register(body)
    set_auth_cookies(response, result["accessToken"], result["refreshToken"])
    return envelope(result, "User registered successfully")


@api.post("/auth/login")
def login(body: LoginBody, response: Response, svc: UserService = Depends(users_service)):
    result = svc.login(body.email, body.password)
    set_auth_cookies(response, result["accessToken"], result["refreshToken"])
    return envelope(result, "Login successful")


@api.post("/auth/refresh")
def refresh(request: Request, response: Response, body: Optional[RefreshBody] = None,
            svc: UserService = Depends(users_service)):
    token = request.cookies.get(REFRESH_COOKIE) or (body.refresh_token if body else None)
    result = svc.refresh(token)
    set_auth_cookies(response, result["accessToken"])
    return envelope(result, "Token refreshed")


@api.post("/auth/logout")
def logout(response: Response, user: dict = Depends(get_current_user)):
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE)
    return envelope(message="Logged out successfully")


@api.get("/auth/me")
def get_me(user: dict = Depends(get_current_user)):
    return envelope(user)


@api.put("/auth/me")
def update_me(body: UpdateProfileBody, user: dict = Depends(get_current_user),
              svc: UserService = Depends(users_service)):
    return envelope(svc.update_profile(user["_id"], body), "Profile updated successfully")

# ---------------------- Products ----------------------


def truthy(value) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


@api.get("/products")
def list_products(category: Optional[str] = None,
                  min_price: Optional[float] = Query(None, alias="minPrice"),
                  max_price: Optional[float] = Query(None, alias="maxPrice"),
                  search: Optional[str] = None, featured: Optional[str] = None, sort: Optional[str] = None,
                  page: Optional[int] = None, limit: Optional[int] = None,
                  svc: ProductService = Depends(products_service)):
    result = svc.list_products(
        category=category, min_price=min_price, max_price=max_price, search=search,
        featured=truthy(featured), sort=sort, page=page, limit=limit,
    )
    return page_envelope(result)


@api.get("/products/featured")
def featured_products(limit: Optional[int] = None, svc: ProductService = Depends(products_service)):
    products = svc.featured(limit)
    return envelope(products, count=len(products))


@api.get("/products/slug/{slug}")
def product_by_slug(slug: str, svc: ProductService = Depends(products_service)):
    return envelope(svc.get_by_slug(slug))


@api.get("/products/{product_id}")
def product_by_id(product_id: str, svc: ProductService = Depends(products_service)):
    return envelope(svc.get(product_id))


def product_form(
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    price: Optional[float] = Form(None),
    compare_at_price: Optional[float] = Form(None, alias="compareAtPrice"),
    sku: Optional[str] = Form(None),
    quantity: Optional[int] = Form(None),
    category: Optional[str] = Form(None),
    unit: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    status: Optional[str] = Form(None),
    featured: Optional[str] = Form(None),
) -> Dict[str, Any]:
    return {
        "name": name, "description": description, "price": price,
        "compare_at_price": compare_at_price, "sku": sku, "quantity": quantity,
        "category": category, "unit": unit, "tags": tags, "status": status,
        "featured": truthy(featured),
    }


@api.post("/products", status_code=201, dependencies=[Depends(require_admin)])
def create_product(fields: Dict[str, Any] = Depends(product_form),
                   images: Optional[List[UploadFile]] = File(None),
                   svc: ProductService = Depends(products_service)):
    product = svc.create(fields, read_images(images, MAX_PRODUCT_IMAGES))
    return envelope(product, "Product created successfully")


@api.put("/products/{product_id}", dependencies=[Depends(require_admin)])
def update_product(product_id: str, fields: Dict[str, Any] = Depends(product_form),
                   images: Optional[List[UploadFile]] = File(None),
                   svc: ProductService = Depends(products_service)):
    product = svc.update(product_id, fields, read_images(images, MAX_PRODUCT_IMAGES))
    return envelope(product, "Product updated successfully")


@api.delete("/products/{product_id}", dependencies=[Depends(require_admin)])
def delete_product(product_id: str, svc: ProductService = Depends(products_service)):
    svc.delete(product_id)
    return envelope(message="Product deleted successfully")


@api.patch("/products/{product_id}/stock", dependencies=[Depends(require_admin)])
def update_stock(product_id: str, body: StockBody, svc: ProductService = Depends(products_service)):
    return envelope(svc.update_stock(product_id, body.quantity), "Stock updated successfully")

# ---------------------- Categories ----------------------


@api.get("/categories")
def list_categories(svc: CategoryService = Depends(categories_service)):
    categories = svc.list_active()
    return envelope(categories, count=len(categories))


@api.get("/categories/{category_id}")
def get_category(category_id: str, svc: CategoryService = Depends(categories_service)):
    return envelope(svc.get(category_id))


@api.post("/categories", status_code=201, dependencies=[Depends(require_admin)])
def create_category(name: Optional[str] = Form(None), description: Optional[str] = Form(None),
                    image: Optional[UploadFile] = File(None),
                    svc: CategoryService = Depends(categories_service)):
    files = read_images([image] if image else [], 1)
    category = svc.create(name, description, files[0] if files else None)
    return envelope(category, "Category created successfully")


@api.put("/categories/{category_id}", dependencies=[Depends(require_admin)])
def update_category(category_id: str, name: Optional[str] = Form(None),
                    description: Optional[str] = Form(None),
                    is_active: Optional[str] = Form(None, alias="isActive"),
                    image: Optional[UploadFile] = File(None),
                    svc: CategoryService = Depends(categories_service)):
    files = read_images([image] if image else [], 1)
    category = svc.update(category_id, name, description, truthy(is_active), files[0] if files else None)
    return envelope(category, "Category updated successfully")


@api.delete("/categories/{category_id}", dependencies=[Depends(require_admin)])
def delete_category(category_id: str, svc: CategoryService = Depends(categories_service)):
    svc.delete(category_id)
    return envelope(message="Category deleted successfully")

# ---------------------- Cart & Wishlist ----------------------


@api.get("/cart")
def get_cart(user: dict = Depends(get_current_user), svc: CartService = Depends(carts_service)):
    return envelope(svc.summary(user["_id"]))


@api.post("/cart/items")
def add_to_cart(body: AddCartItemBody, user: dict = Depends(get_current_user),
                svc: CartService = Depends(carts_service)):
    return envelope(svc.add_item(user["_id"], body.product_id, body.quantity), "Item added to cart")


@api.put("/cart/items/{product_id}")
def update_cart_item(product_id: str, body: UpdateCartItemBody, user: dict = Depends(get_current_user),
                     svc: CartService = Depends(carts_service)):
    return envelope(svc.update_item(user["_id"], product_id, body.quantity), "Cart updated")


@api.delete("/cart/items/{product_id}")
def remove_from_cart(product_id: str, user: dict = Depends(get_current_user),
                     svc: CartService = Depends(carts_service)):
    return envelope(svc.remove_item(user["_id"], product_id), "Item removed from cart")


@api.delete("/cart")
def clear_cart(user: dict = Depends(get_current_user), svc: CartService = Depends(carts_service)):
    return envelope(svc.clear(user["_id"]), "Cart cleared")


@api.get("/wishlist")
def get_wishlist(user: dict = Depends(get_current_user), svc: WishlistService = Depends(wishlists_service)):
    return envelope(svc.get(user["_id"]))


@api.post("/wishlist/{product_id}")
def add_to_wishlist(product_id: str, user: dict = Depends(get_current_user),
                    svc: WishlistService = Depends(wishlists_service)):
    return envelope(svc.add(user["_id"], product_id), "Added to wishlist")


@api.delete("/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, user: dict = Depends(get_current_user),
                         svc: WishlistService = Depends(wishlists_service)):
    return envelope(svc.remove(user["_id"], product_id), "Removed from wishlist")

# ---------------------- Orders ----------------------


@api.get("/orders/all/list", dependencies=[Depends(require_admin)])
def list_all_orders(page: Optional[int] = None, limit: Optional[int] = None,
                    svc: OrderService = Depends(orders_service)):
    return page_envelope(svc.list_all(page, limit))


@api.patch("/orders/{order_id}/status", dependencies=[Depends(require_admin)])
def update_order_status(order_id: str, body: OrderStatusBody, svc: OrderService = Depends(orders_service)):
    return envelope(svc.update_status(order_id, body.status), "Order status updated")


@api.get("/orders")
def list_orders(user: dict = Depends(get_current_user), svc: OrderService = Depends(orders_service)):
    orders = svc.list_for_user(user["_id"])
    return envelope(orders, count=len(orders))


@api.post("/orders", status_code=201)
def create_order(body: CreateOrderBody, user: dict = Depends(get_current_user),
                 svc: OrderService = Depends(orders_service)):
    order, client_secret = svc.create_order(user, body.shipping_address, body.payment_method)
    return envelope({"order": order, "clientSecret": client_secret}, "Order created successfully")


@api.patch("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user: dict = Depends(get_current_user),
                 svc: OrderService = Depends(orders_service)):
    return envelope(svc.cancel(order_id, user), "Order cancelled successfully")


@api.get("/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user),
              svc: OrderService = Depends(orders_service)):
    return envelope(svc.get_for_user(order_id, user))

# ---------------------- Payments (Stripe) ----------------------


@api.post("/payments/create-intent")
def create_payment_intent(body: PaymentIntentBody, user: dict = Depends(get_current_user),
                          svc: PaymentService = Depends(payments_service)):
    intent = svc.create_intent(body.amount)
    return envelope({"clientSecret": intent.client_secret})


@api.post("/payments/webhook")
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None),
                         svc: PaymentService = Depends(payments_service)):
    payload = await request.body()
    try:
        event = svc.gateway.construct_event(payload, stripe_signature)
    except WebhookSignatureError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return PlainTextResponse(f"Webhook Error: {e}", status_code=400)
    logger.info(f"Webhook received: {event['type']}")

    try:
        await run_in_threadpool(svc.handle_event, event)
    except Exception as e:
        logger.error(f"Error handling webhook event: {e}")
        return JSONResponse(status_code=500, content={"error": "Webhook handler failed"})
    return {"received": True}

# ---------------------- Admin: Users ----------------------


@api.get("/users", dependencies=[Depends(require_admin)])
def list_users(page: Optional[int] = None, limit: Optional[int] = None, search: Optional[str] = None,
               svc: UserService = Depends(users_service)):
    return page_envelope(svc.list_users(page, limit, search))


@api.get("/users/{user_id}", dependencies=[Depends(require_admin)])
def get_user(user_id: str, svc: UserService = Depends(users_service)):
    return envelope(svc.get(user_id))


@api.put("/users/{user_id}", dependencies=[Depends(require_admin)])
def update_user(user_id: str, body: AdminUserUpdateBody, svc: UserService = Depends(users_service)):
    return envelope(svc.admin_update(user_id, body), "User updated successfully")


@api.delete("/users/{user_id}", dependencies=[Depends(require_admin)])
def delete_user(user_id: str, svc: UserService = Depends(users_service)):
    return envelope(svc.deactivate(user_id), "User deactivated successfully")


app.include_router(api)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
