import os

from pymongo.database import Database

from catalog import slugify
from database import create_document, ensure_indexes, get_db, get_documents, now_utc
from log import get_logger
from schemas import User
from security import hash_password

logger = get_logger(__name__)

ADMIN_EMAIL = os.getenv("SEED_ADMIN_EMAIL", "admin@greenmart.com")
ADMIN_PASSWORD = os.getenv("SEED_ADMIN_PASSWORD", "admin123")

CATEGORIES = [
    ("Fruits", "Fresh seasonal fruits delivered daily", "photo-1610832958506-aa56368176cf"),
    ("Vegetables", "Farm-fresh vegetables for healthy meals", "photo-1540420773420-3366772f4999"),
    ("Dairy", "Fresh milk, cheese, and dairy products", "photo-1628088062854-d1870b4553da"),
    ("Bakery", "Freshly baked bread and pastries", "photo-1509440159596-0249088772ff"),
    ("Beverages", "Refreshing drinks and beverages", "photo-1437418747212-8d9709afab22"),
]

# name, category, price, compareAtPrice, sku, quantity, unit, tags, featured
PRODUCTS = [
    ("Fresh Red Apples", "Fruits", 450, 550, "FRT-001", 50, "kg", ["fresh", "organic", "seasonal"], True),
    ("Cavendish Bananas", "Fruits", 180, None, "FRT-002", 100, "kg", ["fresh", "tropical"], True),
    ("Sweet Oranges", "Fruits", 350, None, "FRT-003", 75, "kg", ["fresh", "citrus", "vitamin-c"], False),
    ("Fresh Strawberries", "Fruits", 890, 1200, "FRT-004", 30, "pack", ["fresh", "berries", "premium"], True),
    ("Organic Carrots", "Vegetables", 220, None, "VEG-001", 60, "kg", ["organic", "fresh"], False),
    ("Broccoli", "Vegetables", 480, 520, "VEG-002", 25, "piece", ["fresh", "green"], True),
    ("Fresh Milk", "Dairy", 390, None, "DAI-001", 80, "liter", ["dairy", "fresh"], True),
    ("Cheddar Cheese", "Dairy", 1250, 1400, "DAI-002", 20, "pack", ["dairy", "cheese"], False),
    ("Whole Wheat Bread", "Bakery", 280, None, "BAK-001", 40, "piece", ["bakery", "whole-grain"], False),
    ("Orange Juice", "Beverages", 650, None, "BEV-001", 35, "liter", ["juice", "vitamin-c"], False),
]


def unsplash(photo: str) -> str:
    return f"https://images.unsplash.com/{photo}?w=500"


def seed(db: Database) -> dict:
    """Insert an admin, demo categories and products into empty collections."""
    ensure_indexes(db)
    summary = {"admin": False, "categories": 0, "products": 0}

    if not db["users"].find_one({"email": ADMIN_EMAIL}, {"_id": 1}):
        create_document(db, "users", User(
            email=ADMIN_EMAIL,
            password=hash_password(ADMIN_PASSWORD),
            first_name="Admin",
            last_name="User",
            phone="+94771234567",
            role="admin",
        ))
        summary["admin"] = True
        logger.info(f"Admin user created ({ADMIN_EMAIL})")

    if db["categories"].count_documents({}) == 0:
        stamp = now_utc()
        db["categories"].insert_many([
            {
                "name": name,
                "slug": slugify(name),
                "description": description,
                "image": {"url": unsplash(photo), "publicId": f"sample_{slugify(name)}"},
                "isActive": True,
                "createdAt": stamp,
                "updatedAt": stamp,
            }
            for name, description, photo in CATEGORIES
        ])
        summary["categories"] = len(CATEGORIES)

    if db["products"].count_documents({}) == 0:
        category_ids = {c["name"]: c["_id"] for c in get_documents(db, "categories")}
        stamp = now_utc()
        demo = []
        for name, category, price, compare_at, sku, quantity, unit, tags, featured in PRODUCTS:
            if category not in category_ids:
                continue
            doc = {
                "name": name,
                "slug": slugify(name),
                "description": f"{name}, sourced fresh for GreenMart.",
                "price": price,
                "sku": sku,
                "quantity": quantity,
                "images": [{
                    "url": f"https://picsum.photos/seed/{slugify(name)}/600/400",
                    "publicId": f"sample_{slugify(name)}",
                    "isPrimary": True,
                }],
                "category": category_ids[category],
                "unit": unit,
                "tags": tags,
                "status": "active",
                "featured": featured,
                "createdAt": stamp,
                "updatedAt": stamp,
            }
            if compare_at is not None:
                doc["compareAtPrice"] = compare_at
            demo.append(doc)
        if demo:
            db["products"].insert_many(demo)
        summary["products"] = len(demo)

    logger.info(f"Seed finished: {summary}")
    return summary


if __name__ == "__main__":
    seed(get_db())
