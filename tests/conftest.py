"""Shared fixtures: an in-memory store, test settings and an authenticated client."""
import asyncio
import base64
import json
from datetime import datetime, timezone

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from auth import create_access_token
from config import Settings, get_settings
from memory_store import MemoryStore
from payments import callback_checksum

TEST_USER_ID = "64f0c2a1b2c3d4e5f6a7b8c9"
OTHER_USER_ID = "64f0c2a1b2c3d4e5f6a7b8ca"


class InterleavingStore(MemoryStore):
    """Yields to the event loop after every read so concurrent writers collide."""

    async def load_user_doc(self, kind, user_id):
        doc = await super().load_user_doc(kind, user_id)
        await asyncio.sleep(0)
        return doc

    async def find_order(self, order_ref, user_id=None):
        doc = await super().find_order(order_ref, user_id)
        await asyncio.sleep(0)
        return doc


@pytest.fixture
def settings() -> Settings:
    return Settings(
        jwt_secret="test-secret",
        admin_api_key="admin-key",
        frontend_url="https://shop.test",
        phonepe_merchant_id="MERCHANTUAT",
        phonepe_salt_key="salt-key",
        phonepe_salt_index="1",
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def interleaving_store() -> InterleavingStore:
    return InterleavingStore()


@pytest.fixture
def product_factory(store):
    """Insert catalog products straight into a store's storage."""

    def make(target=None, **overrides) -> dict:
        target = target or store
        doc = {
            "id": str(ObjectId()),
            "name": "Dino Tee",
            "description": "Cotton tee with a dinosaur print",
            "price": 300.0,
            "category": "clothing",
            "age_group": "2-4",
            "images": ["https://img.test/dino-front.jpg", "https://img.test/dino-back.jpg"],
            "stock": 10,
            "availability": True,
            "sizes": ["S", "M", "L"],
            "colors": ["red", "blue"],
            "featured": False,
            "created_at": datetime.now(timezone.utc),
        }
        doc.update(overrides)
        target._products[doc["id"]] = doc
        return doc

    return make


@pytest.fixture
def auth_headers(settings):
    token = create_access_token(TEST_USER_ID, settings.jwt_secret)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(store, settings):
    from main import app, get_store

    async def override_store():
        return store

    app.dependency_overrides[get_store] = override_store
    app.dependency_overrides[get_settings] = lambda: settings

    yield TestClient(app)

    app.dependency_overrides.clear()


def encode_callback(transaction_id: str, code: str = "PAYMENT_SUCCESS", gateway_txn: str = "T2310151234") -> str:
    envelope = {
        "success": code == "PAYMENT_SUCCESS",
        "code": code,
        "message": "Your payment is successful.",
        "data": {
            "merchantId": "MERCHANTUAT",
            "merchantTransactionId": transaction_id,
            "transactionId": gateway_txn,
            "amount": 70800,
            "state": "COMPLETED" if code == "PAYMENT_SUCCESS" else "FAILED",
        },
    }
    return base64.b64encode(json.dumps(envelope).encode("utf-8")).decode("ascii")


def sign_callback(encoded: str, settings: Settings) -> str:
    return callback_checksum(encoded, settings.phonepe_salt_key, settings.phonepe_salt_index)
