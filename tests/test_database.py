"""Tests for the persistence layer: write retries, the store provider and MongoStore."""
import os
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from bson import ObjectId
from pymongo import AsyncMongoClient
from pymongo.errors import DuplicateKeyError

import carts
from conftest import TEST_USER_ID
from database import MAX_WRITE_ATTEMPTS, MongoStore, StoreProvider, modify_user_doc
from errors import Conflict, Internal
from memory_store import MemoryStore

DATABASE_URL = os.getenv("DATABASE_URL")

requires_mongo = pytest.mark.skipif(not DATABASE_URL, reason="DATABASE_URL not set")


class StaleWriteStore(MemoryStore):
    """Every versioned write loses to a concurrent writer."""

    def __init__(self):
        super().__init__()
        self.save_attempts = 0

    async def save_user_doc(self, kind, user_id, fields, expected_version):
        self.save_attempts += 1
        return False


@pytest.mark.asyncio
class TestModifyUserDoc:
    async def test_gives_up_after_bounded_retries(self):
        store = StaleWriteStore()

        with pytest.raises(Conflict, match="Too many concurrent updates to address book"):
            await modify_user_doc(store, "address_book", TEST_USER_ID, lambda doc: {"addresses": []})

        assert store.save_attempts == MAX_WRITE_ATTEMPTS

    async def test_conflict_surfaces_from_engines(self, product_factory):
        store = StaleWriteStore()
        product = product_factory(store)

        with pytest.raises(Conflict):
            await carts.add_item(store, TEST_USER_ID, product["id"], 1)

        assert await store.load_user_doc("cart", TEST_USER_ID) is None

    async def test_no_change_skips_the_write(self):
        store = StaleWriteStore()

        result = await modify_user_doc(store, "cart", TEST_USER_ID, lambda doc: None)

        assert result is None
        assert store.save_attempts == 0

    async def test_written_document_carries_next_version(self, store):
        first = await modify_user_doc(store, "wishlist", TEST_USER_ID, lambda doc: {"items": []})
        second = await modify_user_doc(store, "wishlist", TEST_USER_ID, lambda doc: {"items": [{"product_id": "p"}]})

        assert first["version"] == 1
        assert second["version"] == 2
        assert (await store.load_user_doc("wishlist", TEST_USER_ID))["version"] == 2


@pytest.mark.asyncio
class TestStoreProvider:
    async def test_production_requires_database_url(self, settings):
        production = settings.model_copy(update={"environment": "production", "database_url": None})

        with pytest.raises(Internal, match="DATABASE_URL"):
            await StoreProvider(production).get()

    async def test_development_falls_back_to_memory_store(self, settings):
        provider = StoreProvider(settings)

        store = await provider.get()

        assert isinstance(store, MemoryStore)
        assert await provider.get() is store
        await provider.close()
        assert await provider.get() is not store


def order_document(**overrides) -> dict:
    now = datetime.now(timezone.utc)
    doc = {
        "order_number": f"ORD-{ObjectId()}",
        "user_id": TEST_USER_ID,
        "items": [],
        "status": "confirmed",
        "payment_status": "initiated",
        "merchant_transaction_id": "TXN_a_1_b",
        "created_at": now,
        "updated_at": now,
    }
    doc.update(overrides)
    return doc


@pytest_asyncio.fixture
async def mongo_store():
    client = AsyncMongoClient(DATABASE_URL, tz_aware=True)
    name = f"storefront_test_{ObjectId()}"
    store = MongoStore(client, name)
    await store.ensure_indexes()
    yield store
    await client.drop_database(name)
    await store.close()


@requires_mongo
@pytest.mark.asyncio
class TestMongoStore:
    async def test_reserve_stock_never_goes_below_zero(self, mongo_store):
        product = await mongo_store.insert_product({"name": "Wooden Train", "price": 799.0, "stock": 2, "availability": True})

        assert await mongo_store.reserve_stock(product["id"], 3) is False
        assert await mongo_store.reserve_stock(product["id"], 2) is True
        assert await mongo_store.reserve_stock(product["id"], 1) is False

        sold_out = await mongo_store.find_product(product["id"])
        assert sold_out["stock"] == 0
        assert sold_out["availability"] is False

    async def test_release_restores_only_sold_out_products(self, mongo_store):
        sold_out = await mongo_store.insert_product({"name": "Kite", "price": 99.0, "stock": 1, "availability": True})
        hidden = await mongo_store.insert_product({"name": "Drum", "price": 99.0, "stock": 1, "availability": False})
        await mongo_store.reserve_stock(sold_out["id"], 1)

        await mongo_store.release_stock(sold_out["id"], 1)
        await mongo_store.release_stock(hidden["id"], 1)

        assert (await mongo_store.find_product(sold_out["id"]))["availability"] is True
        assert (await mongo_store.find_product(hidden["id"]))["availability"] is False
        assert (await mongo_store.find_product(hidden["id"]))["stock"] == 2

    async def test_user_doc_compare_and_set(self, mongo_store):
        assert await mongo_store.save_user_doc("cart", TEST_USER_ID, {"items": []}, None) is True
        # second creation hits the unique user_id index
        assert await mongo_store.save_user_doc("cart", TEST_USER_ID, {"items": []}, None) is False
        assert await mongo_store.save_user_doc("cart", TEST_USER_ID, {"items": [1]}, 2) is False
        assert await mongo_store.save_user_doc("cart", TEST_USER_ID, {"items": [1]}, 1) is True

        cart = await mongo_store.load_user_doc("cart", TEST_USER_ID)
        assert cart["version"] == 2
        assert cart["items"] == [1]

    async def test_find_order_by_id_or_number_scoped_to_owner(self, mongo_store):
        order = await mongo_store.insert_order(order_document())

        assert (await mongo_store.find_order(order["order_number"]))["id"] == order["id"]
        assert (await mongo_store.find_order(order["id"], user_id=TEST_USER_ID))["id"] == order["id"]
        assert await mongo_store.find_order(order["id"], user_id="someone-else") is None

    async def test_update_order_applies_only_when_conditions_hold(self, mongo_store):
        order = await mongo_store.insert_order(order_document())

        assert await mongo_store.update_order(order["id"], {"status": "cancelled"}, user_id="someone-else") is None
        assert await mongo_store.update_order(
            order["id"], {"status": "cancelled"}, status_not_in=("confirmed",)
        ) is None
        assert await mongo_store.update_order(
            order["id"], {"payment_status": "paid"}, payment_status_not_in=("initiated",)
        ) is None
        assert await mongo_store.update_order(
            order["id"], {"payment_status": "paid"}, merchant_transaction_id="TXN_other"
        ) is None

        updated = await mongo_store.update_order(
            order["id"],
            {"payment_status": "paid"},
            payment_status_not_in=("paid", "completed"),
            merchant_transaction_id="TXN_a_1_b",
        )
        assert updated["payment_status"] == "paid"
        assert (await mongo_store.find_order(order["id"]))["status"] == "confirmed"

    async def test_duplicate_order_number_is_rejected(self, mongo_store):
        await mongo_store.insert_order(order_document(order_number="ORD-1-ABCDEF"))

        with pytest.raises(DuplicateKeyError):
            await mongo_store.insert_order(order_document(order_number="ORD-1-ABCDEF"))
