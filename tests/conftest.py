import json
import uuid

import mongomock
import pytest
from fastapi.testclient import TestClient

from catalog import slugify
from database import create_document, ensure_indexes, get_db
from errors import GatewayError
from images import get_image_gateway
from main import app
from payments import PaymentIntent, WebhookSignatureError, get_payment_gateway
from schemas import User
from security import create_access_token, hash_password

PASSWORD = "secret123"


class FakePayments:
    def __init__(self):
        self.intents = []
        self.cancelled = []
        self.fail = False

    def create_payment_intent(self, amount):
        if self.fail:
            raise GatewayError("Your card was declined.")
        intent = PaymentIntent(id=f"pi_{uuid.uuid4().hex[:12]}", client_secret=f"secret_{len(self.intents)}")
        self.intents.append((intent, amount))
        return intent

    def cancel_payment_intent(self, intent_id):
        self.cancelled.append(intent_id)

    def construct_event(self, payload, signature):
        if signature != "valid":
            raise WebhookSignatureError("No signatures found matching the expected signature for payload")
        return json.loads(payload)


class FakeImages:
    def __init__(self):
        self.uploaded = []
        self.deleted = []
        self.fail_after = None

    def upload(self, image, folder):
        if self.fail_after is not None and len(self.uploaded) >= self.fail_after:
            raise GatewayError("Upload failed")
        public_id = f"{folder}/{image.filename}-{len(self.uploaded)}"
        self.uploaded.append(public_id)
        return {"url": f"https://img.test/{public_id}", "publicId": public_id}

    def delete(self, public_id):
        self.deleted.append(public_id)


@pytest.fixture
def db():
    database = mongomock.MongoClient(tz_aware=True)["greenmart_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def images():
    return FakeImages()


@pytest.fixture
def client(db, payments, images):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_payment_gateway] = lambda: payments
    app.dependency_overrides[get_image_gateway] = lambda: images
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, email="jane@example.com", role="customer", is_active=True):
    return create_document(db, "users", User(
        email=email,
        password=hash_password(PASSWORD),
        first_name="Jane",
        last_name="Perera",
        phone="+94770000000",
        role=role,
        is_active=is_active,
    ))


def auth_header(user):
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest.fixture
def customer(db):
    return make_user(db)


@pytest.fixture
def admin(db):
    return make_user(db, email="admin@greenmart.com", role="admin")


@pytest.fixture
def customer_headers(customer):
    return auth_header(customer)


@pytest.fixture
def admin_headers(admin):
    return auth_header(admin)


@pytest.fixture
def category(db):
    return create_document(db, "categories", {
        "name": "Fruits",
        "slug": "fruits",
        "description": "Fresh fruit",
        "image": {"url": "https://img.test/fruits.jpg", "publicId": "categories/fruits"},
        "isActive": True,
    })


@pytest.fixture
def make_product(db, category):
    def factory(name="Red Apples", price=500.0, quantity=10, status="active", **extra):
        doc = {
            "name": name,
            "slug": slugify(name),
            "description": f"{name} description",
            "price": price,
            "sku": extra.pop("sku", slugify(name).upper()),
            "quantity": quantity,
            "images": extra.pop("images", [
                {"url": f"https://img.test/{slugify(name)}-1.jpg", "publicId": "p1", "isPrimary": False},
                {"url": f"https://img.test/{slugify(name)}-2.jpg", "publicId": "p2", "isPrimary": True},
            ]),
            "category": category["_id"],
            "unit": "kg",
            "tags": extra.pop("tags", []),
            "status": status,
            "featured": extra.pop("featured", False),
        }
        doc.update(extra)
        return create_document(db, "products", doc)

    return factory


@pytest.fixture
def shipping_address():
    return {
        "firstName": "Jane",
        "lastName": "Perera",
        "phone": "+94770000000",
        "street": "12 Galle Road",
        "city": "Colombo",
        "zipCode": "00300",
        "country": "Sri Lanka",
    }


def fill_cart(db, user, *lines):
    db["carts"].insert_one({
        "user": user["_id"],
        "items": [{"product": product_id, "quantity": quantity} for product_id, quantity in lines],
    })
