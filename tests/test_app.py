from pathlib import Path

from seed import ADMIN_EMAIL, seed

ROOT = Path(__file__).resolve().parent.parent


def test_root(client):
    assert client.get("/").json() == {"message": "GreenMart API running"}


def test_database_status(client):
    body = client.get("/test").json()
    assert body["database_name"] == "greenmart_test"
    assert body["connection_status"] == "Connected"


def test_unknown_route_uses_envelope(client):
    res = client.get("/api/nothing-here")
    assert res.status_code == 404
    assert res.json()["success"] is False


def test_seed_is_idempotent(db):
    first = seed(db)
    assert first["admin"] is True
    assert first["categories"] > 0 and first["products"] > 0
    assert db["users"].find_one({"email": ADMIN_EMAIL})["role"] == "admin"

    second = seed(db)
    assert second == {"admin": False, "categories": 0, "products": 0}


def test_seeded_catalog_is_browsable(client, db):
    seed(db)
    body = client.get("/api/products", params={"limit": 100}).json()
    assert body["total"] == db["products"].count_documents({})
    assert client.get("/api/categories").json()["count"] == db["categories"].count_documents({})


def test_modules_open_without_filename_banner():
    for path in sorted(ROOT.glob("*.py")):
        first = path.read_text(encoding="utf-8").splitlines()[0]
        assert first != f"# {path.name}", path.name
