import os

# Must be set before storefront is imported; Settings is read once
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("TRACKING_SWEEP_ENABLED", "false")

import pytest
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from storefront.shared.utils import create_access_token
from storefront.shared.security_config import limiter
from storefront.app.main import app

limiter.enabled = False

def auth_headers(user_id: str = "user-1", role: str = "USER") -> dict:
    token = create_access_token({"sub": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}

@pytest.fixture
def db():
    client = AsyncMongoMockClient()
    app.mongodb_client = client
    app.mongodb = client["storefront_test"]
    return app.mongodb

@pytest.fixture
async def client(db):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

@pytest.fixture
def user_headers():
    return auth_headers("user-1")

@pytest.fixture
def other_headers():
    return auth_headers("user-2")

@pytest.fixture
def admin_headers():
    return auth_headers("admin-1", role="ADMIN")

@pytest.fixture
async def jacket(db):
    """A product with two colors; black has an M and an L with SKUs."""
    result = await db.products.insert_one({
        "name": "Wool Jacket",
        "price": 1000.0,
        "images": ["jacket-front.png", "jacket-back.png"],
        "status": "ACTIVE",
        "variants": [
            {"color": "Black", "colorHex": "#000000", "sizes": [
                {"name": "M", "stock": 3, "sku": "JKT-BLK-M"},
                {"name": "L", "stock": 2, "sku": "JKT-BLK-L"},
            ]},
            {"color": "Navy", "colorHex": "#000080", "sizes": [
                {"name": "M", "stock": 1},
            ]},
        ],
    })
    return str(result.inserted_id)

@pytest.fixture
async def tee(db):
    """A product without variants."""
    result = await db.products.insert_one({
        "name": "Plain Tee",
        "price": 13000.0,
        "images": ["tee.png"],
        "status": "ACTIVE",
        "variants": [],
    })
    return str(result.inserted_id)

@pytest.fixture
async def scarf(db):
    result = await db.products.insert_one({
        "name": "Silk Scarf",
        "price": 500.0,
        "images": [],
        "status": "ACTIVE",
        "variants": [],
    })
    return str(result.inserted_id)
