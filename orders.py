"""
Order workflow: checkout from the cart, cancellation, admin status changes.

Checkout reserves stock one line at a time with a conditional decrement
(``quantity -= n`` only where ``quantity >= n``). If anything fails after the
first reservation (a later line, the payment intent, the insert), every
reservation already taken is handed back, and a payment intent already
opened is cancelled, before the error propagates.
"""
import math
from typing import Any, Dict, List, Optional, Tuple

import pydantic
from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from catalog import release_stock, reserve_stock
from database import create_document, next_sequence, now_utc, oid, paginate
from errors import (
    BusinessRuleError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from log import get_logger
from payments import StripeGateway
from schemas import (
    ORDER_STATUSES,
    PAYMENT_METHODS,
    SHIPPING_FIELDS,
    Order,
    OrderItem,
    PaymentInfo,
    ShippingAddress,
)
from settings import STRICT_ORDER_TRANSITIONS

logger = get_logger(__name__)

TERMINAL_STATUSES = ("delivered", "cancelled")
ALLOWED_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"processing", "cancelled"},
    "processing": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}
ADMIN_LIST_MAX = 100


def order_number(db: Database) -> str:
    year = now_utc().year
    seq = next_sequence(db, f"orders-{year}")
    return f"ORD-{year}-{seq:06d}"


def primary_image(product: Dict[str, Any]) -> str:
    images = product.get("images") or []
    image = next((img for img in images if img.get("isPrimary")), images[0] if images else None)
    return image["url"] if image else ""


class OrderService:
    def __init__(self, db: Database, payments: StripeGateway, strict_transitions: Optional[bool] = None):
        self.db = db
        self.payments = payments
        self.strict_transitions = STRICT_ORDER_TRANSITIONS if strict_transitions is None else strict_transitions

    # ---------------------- Checkout ----------------------

    def _valid_cart_items(self, user_id: ObjectId) -> Tuple[List[Dict[str, Any]], Dict[Any, Dict[str, Any]]]:
        cart = self.db["carts"].find_one({"user": user_id})
        if not cart or not cart.get("items"):
            raise BusinessRuleError("Cart is empty")

        ids = [item["product"] for item in cart["items"]]
        products = {p["_id"]: p for p in self.db["products"].find({"_id": {"$in": ids}})}
        valid = [item for item in cart["items"] if item["product"] in products]
        if not valid:
            raise BusinessRuleError("No valid items in cart. Some products may have been removed.")

        if len(valid) != len(cart["items"]):
            self.db["carts"].update_one(
                {"_id": cart["_id"]},
                {"$set": {"items": valid, "updatedAt": now_utc()}},
            )
            logger.info(f"Dropped {len(cart['items']) - len(valid)} removed products from cart of user {user_id}")
        return valid, products

    def _release(self, reservations: List[Tuple[Any, int]]) -> None:
        for product_id, quantity in reversed(reservations):
            try:
                release_stock(self.db, product_id, quantity)
            except Exception as e:
                logger.error(f"Could not release {quantity} units of product {product_id}: {e}")

    def _cancel_intent(self, intent_id: str) -> None:
        try:
            self.payments.cancel_payment_intent(intent_id)
        except Exception as e:
            logger.error(f"Payment intent {intent_id} left open after failed checkout: {e}")
        else:
            logger.info(f"Payment intent {intent_id} cancelled after failed checkout")

    def create_order(self, user: Dict[str, Any], shipping_address: Optional[dict],
                     payment_method: Optional[str]) -> Tuple[Dict[str, Any], Optional[str]]:
        if not shipping_address:
            raise ValidationError("Please provide shipping address")
        missing = [field for field in SHIPPING_FIELDS if not shipping_address.get(field)]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError("Please provide a valid payment method")

        user_id = user["_id"]
        cart_items, products = self._valid_cart_items(user_id)

        reservations: List[Tuple[Any, int]] = []
        intent = None
        try:
            lines = []
            subtotal = 0.0
            for item in cart_items:
                product = products[item["product"]]
                if product.get("status") != "active":
                    raise BusinessRuleError(f"Product {product['name']} is not available")
                if reserve_stock(self.db, product["_id"], item["quantity"]) is None:
                    raise BusinessRuleError(f"Insufficient stock for {product['name']}")
                reservations.append((product["_id"], item["quantity"]))

                line_total = round(product["price"] * item["quantity"], 2)
                lines.append(OrderItem(
                    product=product["_id"],
                    name=product["name"],
                    price=product["price"],
                    quantity=item["quantity"],
                    image=primary_image(product),
                    subtotal=line_total,
                ))
                subtotal = round(subtotal + line_total, 2)

            tax = 0.0
            shipping_cost = 0.0
            total = subtotal + tax + shipping_cost

            payment_info = PaymentInfo(method=payment_method, status="pending")
            client_secret = None
            if payment_method == "stripe":
                intent = self.payments.create_payment_intent(total)
                payment_info.stripe_payment_intent_id = intent.id
                client_secret = intent.client_secret

            try:
                order = Order(
                    order_number=order_number(self.db),
                    user=user_id,
                    items=lines,
                    subtotal=subtotal,
                    tax=tax,
                    shipping_cost=shipping_cost,
                    total=total,
                    shipping_address=ShippingAddress(**{f: str(shipping_address[f]) for f in SHIPPING_FIELDS}),
                    payment_info=payment_info,
                    status="pending",
                )
            except pydantic.ValidationError as e:
                raise ValidationError(e.errors()[0].get("msg", "Invalid order"))
            created = create_document(self.db, "orders", order)
        except Exception:
            self._release(reservations)
            if intent is not None:
                self._cancel_intent(intent.id)
            raise

        self.db["carts"].update_one(
            {"user": user_id},
            {"$set": {"items": [], "updatedAt": now_utc()}},
        )
        logger.info(
            f"Order {created['orderNumber']} created for user {user_id}: "
            f"{len(lines)} items, total {total}, {payment_method}"
        )
        return created, client_secret

    # ---------------------- Queries ----------------------

    def list_for_user(self, user_id: ObjectId) -> List[Dict[str, Any]]:
        return list(self.db["orders"].find({"user": user_id}).sort("createdAt", DESCENDING))

    def get_for_user(self, order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        order = self.db["orders"].find_one({"_id": oid(order_id)})
        if not order:
            raise NotFoundError("Order not found")
        if order["user"] != user["_id"] and user.get("role") != "admin":
            raise PermissionDenied("Not authorized to view this order")
        return order

    def list_all(self, page: Optional[int], limit: Optional[int]) -> Dict[str, Any]:
        page, limit, skip = paginate(page, limit, default_limit=20, max_limit=ADMIN_LIST_MAX)
        orders = list(
            self.db["orders"].find().sort("createdAt", DESCENDING).skip(skip).limit(limit)
        )
        user_ids = list({o["user"] for o in orders})
        users = {
            u["_id"]: u
            for u in self.db["users"].find(
                {"_id": {"$in": user_ids}}, {"firstName": 1, "lastName": 1, "email": 1}
            )
        } if user_ids else {}
        for o in orders:
            o["user"] = users.get(o["user"], o["user"])

        total = self.db["orders"].count_documents({})
        return {"items": orders, "total": total, "page": page, "pages": math.ceil(total / limit)}

    # ---------------------- Changes ----------------------

    def cancel(self, order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        order = self.db["orders"].find_one({"_id": oid(order_id)})
        if not order:
            raise NotFoundError("Order not found")
        if order["user"] != user["_id"]:
            raise PermissionDenied("Not authorized to cancel this order")
        if order["status"] in TERMINAL_STATUSES:
            raise BusinessRuleError("Cannot cancel this order")

        cancelled = self.db["orders"].find_one_and_update(
            {"_id": order["_id"], "status": {"$nin": list(TERMINAL_STATUSES)}},
            {"$set": {"status": "cancelled", "updatedAt": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        if cancelled is None:
            raise BusinessRuleError("Cannot cancel this order")

        for item in cancelled["items"]:
            if release_stock(self.db, item["product"], item["quantity"]) is None:
                logger.info(f"Product {item['product']} no longer exists; stock not restored")
        logger.info(f"Order {cancelled['orderNumber']} cancelled by user {user['_id']}")
        return cancelled

    def update_status(self, order_id: str, status: Optional[str]) -> Dict[str, Any]:
        if not status:
            raise ValidationError("Please provide status")
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Invalid status. Allowed: {', '.join(ORDER_STATUSES)}")
        order = self.db["orders"].find_one({"_id": oid(order_id)})
        if not order:
            raise NotFoundError("Order not found")

        current = order["status"]
        if status != current and status not in ALLOWED_TRANSITIONS.get(current, set()):
            if self.strict_transitions:
                raise BusinessRuleError(f"Cannot change order status from {current} to {status}")
            logger.warning(f"Order {order['orderNumber']} moved outside the usual flow: {current} -> {status}")

        updated = self.db["orders"].find_one_and_update(
            {"_id": order["_id"]},
            {"$set": {"status": status, "updatedAt": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        logger.info(f"Order {order['orderNumber']} status {current} -> {status}")
        return updated
