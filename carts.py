from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import now_utc, oid
from errors import BusinessRuleError, ConflictError, NotFoundError, ValidationError
from log import get_logger
from schemas import Cart, CartItem, Document, Wishlist, WishlistItem

logger = get_logger(__name__)

CART_PRODUCT_FIELDS = {"name": 1, "price": 1, "images": 1, "quantity": 1, "status": 1, "slug": 1}
WISHLIST_PRODUCT_FIELDS = {**CART_PRODUCT_FIELDS, "compareAtPrice": 1}


def _populate(db: Database, entries: List[Dict[str, Any]], fields: Dict[str, int]) -> List[Dict[str, Any]]:
    """Replace each entry's product id with a product summary, or None if it is gone."""
    ids = [e["product"] for e in entries]
    found = {p["_id"]: p for p in db["products"].find({"_id": {"$in": ids}}, fields)} if ids else {}
    return [{**e, "product": found.get(e["product"])} for e in entries]


def _get_or_create(db: Database, collection: str, empty: Document) -> Dict[str, Any]:
    stamp = now_utc()
    doc = empty.model_dump(by_alias=True)
    return db[collection].find_one_and_update(
        {"user": doc["user"]},
        {"$setOnInsert": {**doc, "createdAt": stamp, "updatedAt": stamp}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


class CartService:
    """Per-user cart. Quantities are checked against live stock on every change."""

    def __init__(self, db: Database):
        self.db = db

    def _save(self, cart: Dict[str, Any]) -> None:
        self.db["carts"].update_one(
            {"_id": cart["_id"]},
            {"$set": {"items": cart["items"], "updatedAt": now_utc()}},
        )

    def view(self, cart: Dict[str, Any]) -> Dict[str, Any]:
        return {**cart, "items": _populate(self.db, cart.get("items", []), CART_PRODUCT_FIELDS)}

    def get_or_create(self, user_id) -> Dict[str, Any]:
        return _get_or_create(self.db, "carts", Cart(user=user_id))

    def summary(self, user_id) -> Dict[str, Any]:
        cart = self.view(self.get_or_create(user_id))
        subtotal = sum(
            item["product"]["price"] * item["quantity"]
            for item in cart["items"]
            if item["product"] and item["product"].get("status") == "active"
        )
        return {"cart": cart, "subtotal": subtotal, "itemCount": len(cart["items"])}

    def _available_product(self, product_id, quantity: int) -> Dict[str, Any]:
        product = self.db["products"].find_one({"_id": product_id})
        if not product:
            raise NotFoundError("Product not found")
        if product["quantity"] < quantity:
            raise BusinessRuleError(f"Only {product['quantity']} items available in stock")
        return product

    def add_item(self, user_id, product_id: Optional[str], quantity: Optional[int]) -> Dict[str, Any]:
        if not product_id or not quantity or quantity < 1:
            raise ValidationError("Please provide valid product and quantity")
        pid = oid(product_id)
        product = self.db["products"].find_one({"_id": pid})
        if not product:
            raise NotFoundError("Product not found")
        if product.get("status") != "active":
            raise BusinessRuleError("Product is not available")
        if product["quantity"] < quantity:
            raise BusinessRuleError(f"Only {product['quantity']} items available in stock")

        cart = self.get_or_create(user_id)
        for item in cart["items"]:
            if item["product"] == pid:
                new_quantity = item["quantity"] + quantity
                if new_quantity > product["quantity"]:
                    raise BusinessRuleError(f"Only {product['quantity']} items available in stock")
                item["quantity"] = new_quantity
                break
        else:
            entry = CartItem(product=pid, quantity=quantity, added_at=now_utc())
            cart["items"].append(entry.model_dump(by_alias=True))

        self._save(cart)
        return self.view(cart)

    def update_item(self, user_id, product_id: str, quantity: Optional[int]) -> Dict[str, Any]:
        if not quantity or quantity < 1:
            raise ValidationError("Please provide valid quantity")
        pid = oid(product_id)
        self._available_product(pid, quantity)

        cart = self.db["carts"].find_one({"user": user_id})
        if not cart:
            raise NotFoundError("Cart not found")
        item = next((i for i in cart["items"] if i["product"] == pid), None)
        if item is None:
            raise NotFoundError("Item not found in cart")
        item["quantity"] = quantity

        self._save(cart)
        return self.view(cart)

    def remove_item(self, user_id, product_id: str) -> Dict[str, Any]:
        pid = oid(product_id)
        cart = self.db["carts"].find_one({"user": user_id})
        if not cart:
            raise NotFoundError("Cart not found")
        cart["items"] = [i for i in cart["items"] if i["product"] != pid]
        self._save(cart)
        return self.view(cart)

    def clear(self, user_id) -> Dict[str, Any]:
        cart = self.db["carts"].find_one({"user": user_id})
        if not cart:
            raise NotFoundError("Cart not found")
        cart["items"] = []
        self._save(cart)
        return cart


class WishlistService:
    def __init__(self, db: Database):
        self.db = db

    def view(self, wishlist: Dict[str, Any]) -> Dict[str, Any]:
        return {**wishlist, "products": _populate(self.db, wishlist.get("products", []), WISHLIST_PRODUCT_FIELDS)}

    def get(self, user_id) -> Dict[str, Any]:
        return self.view(_get_or_create(self.db, "wishlists", Wishlist(user=user_id)))

    def add(self, user_id, product_id: str) -> Dict[str, Any]:
        pid = oid(product_id)
        if not self.db["products"].find_one({"_id": pid}, {"_id": 1}):
            raise NotFoundError("Product not found")

        wishlist = _get_or_create(self.db, "wishlists", Wishlist(user=user_id))
        if any(entry["product"] == pid for entry in wishlist["products"]):
            raise ConflictError("Product already in wishlist")

        wishlist = self.db["wishlists"].find_one_and_update(
            {"_id": wishlist["_id"], "products.product": {"$ne": pid}},
            {
                "$push": {"products": WishlistItem(product=pid, added_at=now_utc()).model_dump(by_alias=True)},
                "$set": {"updatedAt": now_utc()},
            },
            return_document=ReturnDocument.AFTER,
        )
        if wishlist is None:
            raise ConflictError("Product already in wishlist")
        return self.view(wishlist)

    def remove(self, user_id, product_id: str) -> Dict[str, Any]:
        pid = oid(product_id)
        wishlist = self.db["wishlists"].find_one_and_update(
            {"user": user_id},
            {"$pull": {"products": {"product": pid}}, "$set": {"updatedAt": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        if wishlist is None:
            raise NotFoundError("Wishlist not found")
        return self.view(wishlist)
