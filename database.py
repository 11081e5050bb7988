"""
Persistence layer.

The engines talk to a ``Store``. ``MongoStore`` is the production
implementation on the asynchronous pymongo client; ``memory_store.MemoryStore``
is used when no DATABASE_URL is configured. One store instance is shared by the
whole process through ``StoreProvider``.

Per-user documents (cart, wishlist, address book) carry a ``version`` counter
and are written with compare-and-set so concurrent requests for the same user
can never interleave two read-modify-write cycles.
"""
import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, AsyncMongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import Settings
from errors import Conflict, Internal

logger = logging.getLogger(__name__)

USER_DOCUMENTS = ("cart", "wishlist", "address_book")
MAX_WRITE_ATTEMPTS = 5


def to_str_id(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    d = dict(doc)
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    return d


def parse_object_id(id_str: str) -> Optional[ObjectId]:
    if isinstance(id_str, ObjectId):
        return id_str
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        return None
    return ObjectId(id_str)


class Store(ABC):
    """Storage contract consumed by the cart, wishlist, address and order engines."""

    @abstractmethod
    async def collection_names(self) -> List[str]:
        ...

    # ----- Products -----

    @abstractmethod
    async def find_product(self, product_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def find_products(self, product_ids: Iterable[str]) -> Dict[str, dict]:
        """Return the products that exist, keyed by id."""

    @abstractmethod
    async def list_products(self, filters: Dict[str, Any]) -> List[dict]:
        ...

    @abstractmethod
    async def insert_product(self, data: dict) -> dict:
        ...

    @abstractmethod
    async def reserve_stock(self, product_id: str, quantity: int) -> bool:
        """Atomically take ``quantity`` units; False when stock would go negative."""

    @abstractmethod
    async def release_stock(self, product_id: str, quantity: int) -> None:
        ...

    # ----- Versioned per-user documents -----

    @abstractmethod
    async def load_user_doc(self, kind: str, user_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def save_user_doc(
        self, kind: str, user_id: str, fields: dict, expected_version: Optional[int]
    ) -> bool:
        """Write ``fields`` if the stored version still equals ``expected_version``.

        ``expected_version=None`` means the document must not exist yet. Returns
        False when another writer got there first.
        """

    # ----- Orders -----

    @abstractmethod
    async def insert_order(self, data: dict) -> dict:
        ...

    @abstractmethod
    async def find_order(self, order_ref: str, user_id: Optional[str] = None) -> Optional[dict]:
        """Look an order up by internal id or by order number."""

    @abstractmethod
    async def list_orders(self, user_id: Optional[str] = None) -> List[dict]:
        ...

    @abstractmethod
    async def update_order(
        self,
        order_id: str,
        changes: dict,
        *,
        user_id: Optional[str] = None,
        status_not_in: Iterable[str] = (),
        payment_status_not_in: Iterable[str] = (),
        merchant_transaction_id: Optional[str] = None,
    ) -> Optional[dict]:
        """Apply ``changes`` only if every given condition holds; None otherwise."""

    async def close(self) -> None:
        return None


class MongoStore(Store):
    def __init__(self, client: AsyncMongoClient, database_name: str):
        self.client = client
        self.db = client[database_name]

    async def ensure_indexes(self) -> None:
        for kind in USER_DOCUMENTS:
            await self.db[kind].create_index([("user_id", ASCENDING)], unique=True)
        await self.db["order"].create_index([("order_number", ASCENDING)], unique=True)
        await self.db["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])

    async def collection_names(self) -> List[str]:
        return await self.db.list_collection_names()

    async def find_product(self, product_id: str) -> Optional[dict]:
        oid = parse_object_id(product_id)
        if oid is None:
            return None
        return to_str_id(await self.db["product"].find_one({"_id": oid}))

    async def find_products(self, product_ids: Iterable[str]) -> Dict[str, dict]:
        oids = [oid for oid in (parse_object_id(p) for p in set(product_ids)) if oid is not None]
        if not oids:
            return {}
        cursor = self.db["product"].find({"_id": {"$in": oids}})
        docs = await cursor.to_list(length=None)
        return {str(d["_id"]): to_str_id(d) for d in docs}

    async def list_products(self, filters: Dict[str, Any]) -> List[dict]:
        cursor = self.db["product"].find(filters).sort("created_at", DESCENDING)
        return [to_str_id(d) for d in await cursor.to_list(length=None)]

    async def insert_product(self, data: dict) -> dict:
        result = await self.db["product"].insert_one(dict(data))
        return to_str_id(await self.db["product"].find_one({"_id": result.inserted_id}))

    async def reserve_stock(self, product_id: str, quantity: int) -> bool:
        oid = parse_object_id(product_id)
        if oid is None:
            return False
        doc = await self.db["product"].find_one_and_update(
            {"_id": oid, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return False
        if doc.get("stock", 0) <= 0:
            await self.db["product"].update_one(
                {"_id": oid, "stock": {"$lte": 0}},
                {"$set": {"availability": False, "sold_out": True}},
            )
        return True

    async def release_stock(self, product_id: str, quantity: int) -> None:
        oid = parse_object_id(product_id)
        if oid is None:
            return
        await self.db["product"].update_one({"_id": oid}, {"$inc": {"stock": quantity}})
        # Only products that were switched off by running out come back on sale
        await self.db["product"].update_one(
            {"_id": oid, "sold_out": True, "stock": {"$gt": 0}},
            {"$set": {"availability": True}, "$unset": {"sold_out": ""}},
        )

    async def load_user_doc(self, kind: str, user_id: str) -> Optional[dict]:
        return to_str_id(await self.db[kind].find_one({"user_id": user_id}))

    async def save_user_doc(
        self, kind: str, user_id: str, fields: dict, expected_version: Optional[int]
    ) -> bool:
        if expected_version is None:
            try:
                await self.db[kind].insert_one({**fields, "user_id": user_id, "version": 1})
            except DuplicateKeyError:
                return False
            return True
        result = await self.db[kind].update_one(
            {"user_id": user_id, "version": expected_version},
            {"$set": {**fields, "version": expected_version + 1}},
        )
        return result.matched_count == 1

    def _order_query(self, order_ref: str, user_id: Optional[str]) -> dict:
        oid = parse_object_id(order_ref)
        query: Dict[str, Any] = {"_id": oid} if oid is not None else {"order_number": order_ref}
        if user_id is not None:
            query["user_id"] = user_id
        return query

    async def insert_order(self, data: dict) -> dict:
        result = await self.db["order"].insert_one(dict(data))
        return to_str_id(await self.db["order"].find_one({"_id": result.inserted_id}))

    async def find_order(self, order_ref: str, user_id: Optional[str] = None) -> Optional[dict]:
        return to_str_id(await self.db["order"].find_one(self._order_query(order_ref, user_id)))

    async def list_orders(self, user_id: Optional[str] = None) -> List[dict]:
        query = {"user_id": user_id} if user_id is not None else {}
        cursor = self.db["order"].find(query).sort("created_at", DESCENDING)
        return [to_str_id(d) for d in await cursor.to_list(length=None)]

    async def update_order(
        self,
        order_id: str,
        changes: dict,
        *,
        user_id: Optional[str] = None,
        status_not_in: Iterable[str] = (),
        payment_status_not_in: Iterable[str] = (),
        merchant_transaction_id: Optional[str] = None,
    ) -> Optional[dict]:
        oid = parse_object_id(order_id)
        if oid is None:
            return None
        query: Dict[str, Any] = {"_id": oid}
        if user_id is not None:
            query["user_id"] = user_id
        if status_not_in:
            query["status"] = {"$nin": list(status_not_in)}
        if payment_status_not_in:
            query["payment_status"] = {"$nin": list(payment_status_not_in)}
        if merchant_transaction_id is not None:
            query["merchant_transaction_id"] = merchant_transaction_id
        doc = await self.db["order"].find_one_and_update(
            query, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
        return to_str_id(doc)

    async def close(self) -> None:
        await self.client.close()


async def modify_user_doc(
    store: Store,
    kind: str,
    user_id: str,
    mutate: Callable[[Optional[dict]], Optional[dict]],
) -> Optional[dict]:
    """Read-modify-write one per-user document with optimistic retry.

    ``mutate`` receives a private copy of the current document (None if there is
    none yet) and returns the fields to write, or None to leave it untouched.
    It may raise to abort. Returns the document as written.
    """
    for _ in range(MAX_WRITE_ATTEMPTS):
        current = await store.load_user_doc(kind, user_id)
        fields = mutate(copy.deepcopy(current))
        if fields is None:
            return current
        version = current["version"] if current else None
        if await store.save_user_doc(kind, user_id, fields, version):
            written = dict(current or {"user_id": user_id})
            written.update(fields)
            written["version"] = (version or 0) + 1
            return written
        logger.debug("Write conflict on %s for user %s, retrying", kind, user_id)
    raise Conflict(f"Too many concurrent updates to {kind.replace('_', ' ')}, please retry")


class StoreProvider:
    """Process-wide store handle: opened on first use, reused by every request."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._store: Optional[Store] = None
        self._lock = asyncio.Lock()

    async def get(self) -> Store:
        if self._store is not None:
            return self._store
        async with self._lock:
            if self._store is None:
                self._store = await self._open()
        return self._store

    async def _open(self) -> Store:
        if not self.settings.database_url:
            if self.settings.is_production:
                raise Internal("DATABASE_URL not configured")
            from memory_store import MemoryStore

            logger.warning("DATABASE_URL not set, using the in-memory store")
            return MemoryStore()
        client = AsyncMongoClient(self.settings.database_url, tz_aware=True)
        store = MongoStore(client, self.settings.database_name)
        await store.ensure_indexes()
        logger.info("Connected to MongoDB database %s", self.settings.database_name)
        return store

    async def close(self) -> None:
        if self._store is not None:
            await self._store.close()
            self._store = None
