"""
Database Schemas for GreenMart

Each Pydantic model represents a collection in MongoDB (User -> "users",
Product -> "products", ...). Field names are snake_case in Python and
camelCase in the stored documents and on the wire.
"""
from datetime import datetime
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

Role = Literal["customer", "admin"]
Unit = Literal["kg", "g", "liter", "ml", "piece", "dozen", "pack"]
ProductStatus = Literal["active", "inactive", "out_of_stock"]
PaymentMethod = Literal["stripe", "cash_on_delivery"]
PaymentStatus = Literal["pending", "completed", "failed"]
OrderStatus = Literal["pending", "confirmed", "processing", "delivered", "cancelled"]

PAYMENT_METHODS = ("stripe", "cash_on_delivery")
ORDER_STATUSES = ("pending", "confirmed", "processing", "delivered", "cancelled")
SHIPPING_FIELDS = ("firstName", "lastName", "phone", "street", "city", "zipCode", "country")


class Document(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )


# ---------------------- Users ----------------------

class Address(Document):
    type: Literal["home", "work", "other"] = "home"
    street: str
    city: str
    zip_code: str
    country: str = "Sri Lanka"
    is_default: bool = False


class User(Document):
    email: EmailStr
    password: str
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone: str
    role: Role = "customer"
    avatar: Optional[str] = None
    addresses: List[Address] = []
    is_active: bool = True


# ---------------------- Catalog ----------------------

class ProductImage(Document):
    url: str
    public_id: str
    is_primary: bool = False


class Product(Document):
    name: str
    slug: str
    description: str
    price: float = Field(..., ge=0)
    compare_at_price: Optional[float] = Field(None, ge=0)
    sku: str
    quantity: int = Field(0, ge=0)
    images: List[ProductImage] = Field(..., min_length=1)
    category: ObjectId
    unit: Unit
    tags: List[str] = []
    status: ProductStatus = "active"
    featured: bool = False


class CategoryImage(Document):
    url: str
    public_id: str


class Category(Document):
    name: str
    slug: str
    description: str
    image: CategoryImage
    is_active: bool = True


# ---------------------- Cart & Wishlist ----------------------

class CartItem(Document):
    product: ObjectId
    quantity: int = Field(1, ge=1)
    added_at: datetime


class Cart(Document):
    user: ObjectId
    items: List[CartItem] = []


class WishlistItem(Document):
    product: ObjectId
    added_at: datetime


class Wishlist(Document):
    user: ObjectId
    products: List[WishlistItem] = []


# ---------------------- Orders ----------------------

class OrderItem(Document):
    product: ObjectId
    name: str
    price: float
    quantity: int = Field(..., ge=1)
    image: str
    subtotal: float


class ShippingAddress(Document):
    first_name: str
    last_name: str
    phone: str
    street: str
    city: str
    zip_code: str
    country: str


class PaymentInfo(Document):
    method: PaymentMethod
    status: PaymentStatus = "pending"
    stripe_payment_intent_id: Optional[str] = None
    paid_at: Optional[datetime] = None


class Order(Document):
    order_number: str
    user: ObjectId
    items: List[OrderItem] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping_cost: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    shipping_address: ShippingAddress
    payment_info: PaymentInfo
    status: OrderStatus = "pending"


# ---------------------- Request bodies ----------------------

class RegisterBody(Document):
    email: EmailStr
    password: str = Field(..., min_length=6)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)


class LoginBody(Document):
    email: EmailStr
    password: str


class RefreshBody(Document):
    refresh_token: Optional[str] = None


class UpdateProfileBody(Document):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    addresses: Optional[List[Address]] = None
    password: Optional[str] = Field(None, min_length=6)


class AdminUserUpdateBody(Document):
    is_active: Optional[bool] = None
    role: Optional[Role] = None


class AddCartItemBody(Document):
    product_id: str
    quantity: int = 1


class UpdateCartItemBody(Document):
    quantity: int


class CreateOrderBody(Document):
    # left loose so the workflow can report exactly which fields are missing
    shipping_address: Optional[dict] = None
    payment_method: Optional[str] = None


class OrderStatusBody(Document):
    status: Optional[str] = None


class StockBody(Document):
    quantity: Optional[int] = None


class PaymentIntentBody(Document):
    amount: Optional[float] = None
