"""
Product and category store.

Slugs are derived from names on create and rename. A product's status follows
its stock: it becomes ``out_of_stock`` at zero and returns to ``active`` once
stock is positive again, while a manual ``inactive`` is left alone.
"""
import math
import re
import unicodedata
from typing import Any, Dict, List, Optional

import pydantic
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, now_utc, oid, paginate
from errors import ConflictError, GatewayError, NotFoundError, ValidationError
from images import CATEGORIES_FOLDER, PRODUCTS_FOLDER, CloudinaryGateway, ImageFile
from log import get_logger
from schemas import Category, CategoryImage, Product, ProductImage

logger = get_logger(__name__)

SORTS = {
    "price_asc": [("price", ASCENDING)],
    "price_desc": [("price", DESCENDING)],
    "name_asc": [("name", ASCENDING)],
    "name_desc": [("name", DESCENDING)],
}
NEWEST_FIRST = [("createdAt", DESCENDING)]


def slugify(value: Optional[str]) -> str:
    condensed = " ".join(str(value or "").split()).lower()
    ascii_name = unicodedata.normalize("NFKD", condensed).encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^a-z0-9]+", "-", ascii_name).strip("-")


def derive_status(quantity: int, status: str) -> str:
    if quantity == 0:
        return "out_of_stock"
    if status == "out_of_stock" and quantity > 0:
        return "active"
    return status


def parse_tags(tags) -> List[str]:
    if not tags:
        return []
    if isinstance(tags, str):
        return [t.strip() for t in tags.split(",") if t.strip()]
    return list(tags)


def _first_error(exc: pydantic.ValidationError) -> str:
    err = exc.errors()[0]
    field = ".".join(str(p) for p in err.get("loc", ()))
    return f"{field}: {err.get('msg')}" if field else err.get("msg", "Invalid data")


def _sync_status(db: Database, product: Dict[str, Any]) -> Dict[str, Any]:
    status = derive_status(product["quantity"], product.get("status", "active"))
    if status != product.get("status"):
        db["products"].update_one(
            {"_id": product["_id"], "quantity": product["quantity"]},
            {"$set": {"status": status, "updatedAt": now_utc()}},
        )
        product["status"] = status
    return product


def discard_images(gateway: CloudinaryGateway, images: List[Dict[str, Any]]) -> None:
    """Remove hosted images that no stored document points at any more."""
    for image in images:
        try:
            gateway.delete(image["publicId"])
        except GatewayError as e:
            logger.warning(f"Image {image['publicId']} left on the image host: {e}")


def reserve_stock(db: Database, product_id, quantity: int) -> Optional[Dict[str, Any]]:
    """Take ``quantity`` units only if that many are on hand. None when short."""
    product = db["products"].find_one_and_update(
        {"_id": product_id, "quantity": {"$gte": quantity}},
        {"$inc": {"quantity": -quantity}, "$set": {"updatedAt": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if product is None:
        return None
    return _sync_status(db, product)


def release_stock(db: Database, product_id, quantity: int) -> Optional[Dict[str, Any]]:
    product = db["products"].find_one_and_update(
        {"_id": product_id},
        {"$inc": {"quantity": quantity}, "$set": {"updatedAt": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if product is None:
        return None
    return _sync_status(db, product)


class ProductService:
    def __init__(self, db: Database, images: CloudinaryGateway):
        self.db = db
        self.images = images

    def _attach_categories(self, products: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ids = {p["category"] for p in products if p.get("category")}
        if not ids:
            return products
        cats = {
            c["_id"]: c
            for c in self.db["categories"].find({"_id": {"$in": list(ids)}}, {"name": 1, "slug": 1})
        }
        for p in products:
            cat = cats.get(p.get("category"))
            if cat:
                p["category"] = cat
        return products

    def list_products(self, category: Optional[str] = None, min_price: Optional[float] = None,
                      max_price: Optional[float] = None, search: Optional[str] = None,
                      featured: Optional[bool] = None, sort: Optional[str] = None,
                      page: Optional[int] = None, limit: Optional[int] = None):
        page, limit, skip = paginate(page, limit, default_limit=12)
        query: Dict[str, Any] = {"status": "active"}
        if category:
            query["category"] = oid(category)
        price = {}
        if min_price is not None:
            price["$gte"] = min_price
        if max_price is not None:
            price["$lte"] = max_price
        if price:
            query["price"] = price
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            query["$or"] = [{"name": pattern}, {"description": pattern}, {"tags": pattern}]
        if featured:
            query["featured"] = True

        cursor = (
            self.db["products"].find(query)
            .sort(SORTS.get(sort or "", NEWEST_FIRST))
            .skip(skip)
            .limit(limit)
        )
        products = self._attach_categories(list(cursor))
        total = self.db["products"].count_documents(query)
        return {
            "items": products,
            "total": total,
            "page": page,
            "pages": math.ceil(total / limit),
        }

    def featured(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        cursor = (
            self.db["products"].find({"featured": True, "status": "active"})
            .sort(NEWEST_FIRST)
            .limit(limit or 8)
        )
        return self._attach_categories(list(cursor))

    def get(self, product_id: str) -> Dict[str, Any]:
        product = self.db["products"].find_one({"_id": oid(product_id)})
        if not product:
            raise NotFoundError("Product not found")
        return self._attach_categories([product])[0]

    def get_by_slug(self, slug: str) -> Dict[str, Any]:
        product = self.db["products"].find_one({"slug": slug})
        if not product:
            raise NotFoundError("Product not found")
        return self._attach_categories([product])[0]

    def _check_category(self, category_id) -> Any:
        cid = oid(category_id)
        if not self.db["categories"].find_one({"_id": cid}, {"_id": 1}):
            raise NotFoundError("Category not found")
        return cid

    def _check_unique(self, slug: str, sku: str, exclude=None):
        others = {"_id": {"$ne": exclude}} if exclude else {}
        if self.db["products"].find_one({"slug": slug, **others}, {"_id": 1}):
            raise ConflictError("A product with this name already exists")
        if self.db["products"].find_one({"sku": sku, **others}, {"_id": 1}):
            raise ConflictError(f"SKU {sku} is already in use")

    def _upload_all(self, images: List[ImageFile]) -> List[Dict[str, Any]]:
        uploaded = []
        try:
            for index, image in enumerate(images):
                stored = self.images.upload(image, PRODUCTS_FOLDER)
                # first upload is the primary image
                uploaded.append({**stored, "isPrimary": index == 0})
        except GatewayError:
            discard_images(self.images, uploaded)
            raise
        return uploaded

    def create(self, fields: Dict[str, Any], images: List[ImageFile]) -> Dict[str, Any]:
        if not images:
            raise ValidationError("Please upload at least one product image")
        if not fields.get("name"):
            raise ValidationError("Please provide product name")
        if not fields.get("sku"):
            raise ValidationError("Please provide SKU")
        if not fields.get("category"):
            raise ValidationError("Please provide category")

        sku = fields["sku"].strip().upper()
        slug = slugify(fields["name"])
        category = self._check_category(fields.get("category"))
        self._check_unique(slug, sku)

        quantity = fields.get("quantity") or 0
        try:
            product = Product(
                name=fields["name"].strip(),
                slug=slug,
                description=fields.get("description") or "",
                price=fields.get("price"),
                compare_at_price=fields.get("compare_at_price"),
                sku=sku,
                quantity=quantity,
                images=[ProductImage(url="pending", public_id="pending")],
                category=category,
                unit=fields.get("unit"),
                tags=parse_tags(fields.get("tags")),
                status=derive_status(quantity, "active"),
                featured=bool(fields.get("featured")),
            )
        except pydantic.ValidationError as e:
            raise ValidationError(_first_error(e))
        if not product.description:
            raise ValidationError("Please provide product description")

        doc = product.model_dump(by_alias=True, exclude_none=True)
        doc["images"] = self._upload_all(images)
        try:
            created = create_document(self.db, "products", doc)
        except DuplicateKeyError:
            discard_images(self.images, doc["images"])
            raise ConflictError("A product with this name or SKU already exists")
        logger.info(f"Product {created['sku']} created ({created['slug']})")
        return created

    def update(self, product_id: str, fields: Dict[str, Any], images: List[ImageFile]) -> Dict[str, Any]:
        product = self.db["products"].find_one({"_id": oid(product_id)})
        if not product:
            raise NotFoundError("Product not found")

        changes: Dict[str, Any] = {}
        if fields.get("name"):
            changes["name"] = fields["name"].strip()
            changes["slug"] = slugify(changes["name"])
        if fields.get("description"):
            changes["description"] = fields["description"]
        for key, alias in (("price", "price"), ("compare_at_price", "compareAtPrice"), ("quantity", "quantity")):
            if fields.get(key) is not None:
                if fields[key] < 0:
                    raise ValidationError(f"{alias} cannot be negative")
                changes[alias] = fields[key]
        if fields.get("sku"):
            changes["sku"] = fields["sku"].strip().upper()
        if fields.get("category"):
            changes["category"] = self._check_category(fields["category"])
        if fields.get("unit"):
            changes["unit"] = fields["unit"]
        if fields.get("tags"):
            changes["tags"] = parse_tags(fields["tags"])
        if fields.get("status"):
            changes["status"] = fields["status"]
        if fields.get("featured") is not None:
            changes["featured"] = bool(fields["featured"])

        merged = {**product, **changes}
        try:
            Product.model_validate(merged)
        except pydantic.ValidationError as e:
            raise ValidationError(_first_error(e))
        self._check_unique(merged["slug"], merged["sku"], exclude=product["_id"])
        changes["status"] = derive_status(merged["quantity"], merged["status"])

        # old images are removed only once the new ones are stored
        replaced = product.get("images", []) if images else []
        if images:
            changes["images"] = self._upload_all(images)

        changes["updatedAt"] = now_utc()
        try:
            updated = self.db["products"].find_one_and_update(
                {"_id": product["_id"]},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            discard_images(self.images, changes.get("images", []))
            raise ConflictError("A product with this name or SKU already exists")
        discard_images(self.images, replaced)
        return updated

    def delete(self, product_id: str) -> None:
        product = self.db["products"].find_one({"_id": oid(product_id)})
        if not product:
            raise NotFoundError("Product not found")
        for image in product.get("images", []):
            self.images.delete(image["publicId"])
        self.db["products"].delete_one({"_id": product["_id"]})
        logger.info(f"Product {product['sku']} deleted")

    def update_stock(self, product_id: str, quantity: Optional[int]) -> Dict[str, Any]:
        if quantity is None or quantity < 0:
            raise ValidationError("Please provide valid quantity")
        product = self.db["products"].find_one({"_id": oid(product_id)})
        if not product:
            raise NotFoundError("Product not found")
        return self.db["products"].find_one_and_update(
            {"_id": product["_id"]},
            {"$set": {
                "quantity": quantity,
                "status": derive_status(quantity, product.get("status", "active")),
                "updatedAt": now_utc(),
            }},
            return_document=ReturnDocument.AFTER,
        )


class CategoryService:
    def __init__(self, db: Database, images: CloudinaryGateway):
        self.db = db
        self.images = images

    def list_active(self) -> List[Dict[str, Any]]:
        return list(self.db["categories"].find({"isActive": True}).sort("name", ASCENDING))

    def get(self, category_id: str) -> Dict[str, Any]:
        category = self.db["categories"].find_one({"_id": oid(category_id)})
        if not category:
            raise NotFoundError("Category not found")
        return category

    def _check_unique(self, name: str, slug: str, exclude=None):
        others = {"_id": {"$ne": exclude}} if exclude else {}
        if self.db["categories"].find_one({"$or": [{"name": name}, {"slug": slug}], **others}, {"_id": 1}):
            raise ConflictError(f"Category {name} already exists")

    def create(self, name: Optional[str], description: Optional[str],
               image: Optional[ImageFile]) -> Dict[str, Any]:
        if not image:
            raise ValidationError("Please upload category image")
        if not name or not name.strip():
            raise ValidationError("Please provide category name")
        if not description:
            raise ValidationError("Please provide category description")
        name = name.strip()
        slug = slugify(name)
        self._check_unique(name, slug)

        stored = self.images.upload(image, CATEGORIES_FOLDER)
        category = Category(
            name=name,
            slug=slug,
            description=description,
            image=CategoryImage(url=stored["url"], public_id=stored["publicId"]),
        )
        try:
            return create_document(self.db, "categories", category)
        except DuplicateKeyError:
            raise ConflictError(f"Category {name} already exists")

    def update(self, category_id: str, name: Optional[str], description: Optional[str],
               is_active: Optional[bool], image: Optional[ImageFile]) -> Dict[str, Any]:
        category = self.get(category_id)
        changes: Dict[str, Any] = {}
        if name and name.strip():
            changes["name"] = name.strip()
            changes["slug"] = slugify(changes["name"])
            self._check_unique(changes["name"], changes["slug"], exclude=category["_id"])
        if description:
            changes["description"] = description
        if is_active is not None:
            changes["isActive"] = is_active
        if image:
            changes["image"] = self.images.upload(image, CATEGORIES_FOLDER)
        changes["updatedAt"] = now_utc()
        updated = self.db["categories"].find_one_and_update(
            {"_id": category["_id"]},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if image:
            discard_images(self.images, [category["image"]])
        return updated

    def delete(self, category_id: str) -> None:
        category = self.get(category_id)
        self.images.delete(category["image"]["publicId"])
        self.db["categories"].delete_one({"_id": category["_id"]})
