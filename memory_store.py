"""
In-process store used when no database is configured.

State lives in plain dicts. None of the methods awaits while holding state, so
each call runs to completion on the event loop without interleaving, which
gives the same atomicity the MongoDB conditional updates provide.
"""
import copy
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId

from database import USER_DOCUMENTS, Store


def _matches(doc: dict, filters: Dict[str, Any]) -> bool:
    return all(doc.get(key) == value for key, value in filters.items())


class MemoryStore(Store):
    def __init__(self):
        self._products: Dict[str, dict] = {}
        self._orders: Dict[str, dict] = {}
        self._user_docs: Dict[str, Dict[str, dict]] = {kind: {} for kind in USER_DOCUMENTS}

    async def collection_names(self) -> List[str]:
        names = []
        if self._products:
            names.append("product")
        if self._orders:
            names.append("order")
        return names + [kind for kind in USER_DOCUMENTS if self._user_docs[kind]]

    # ----- Products -----

    async def find_product(self, product_id: str) -> Optional[dict]:
        return copy.deepcopy(self._products.get(product_id))

    async def find_products(self, product_ids: Iterable[str]) -> Dict[str, dict]:
        return {
            pid: copy.deepcopy(self._products[pid])
            for pid in set(product_ids)
            if pid in self._products
        }

    async def list_products(self, filters: Dict[str, Any]) -> List[dict]:
        docs = [d for d in self._products.values() if _matches(d, filters)]
        docs.sort(key=lambda d: d["created_at"], reverse=True)
        return copy.deepcopy(docs)

    async def insert_product(self, data: dict) -> dict:
        doc = copy.deepcopy(data)
        doc["id"] = str(ObjectId())
        doc.setdefault("created_at", datetime.now(timezone.utc))
        self._products[doc["id"]] = doc
        return copy.deepcopy(doc)

    async def reserve_stock(self, product_id: str, quantity: int) -> bool:
        product = self._products.get(product_id)
        if product is None or product.get("stock", 0) < quantity:
            return False
        product["stock"] -= quantity
        if product["stock"] <= 0:
            product["availability"] = False
            product["sold_out"] = True
        return True

    async def release_stock(self, product_id: str, quantity: int) -> None:
        product = self._products.get(product_id)
        if product is None:
            return
        product["stock"] = product.get("stock", 0) + quantity
        if product.pop("sold_out", False) and product["stock"] > 0:
            product["availability"] = True

    # ----- Versioned per-user documents -----

    async def load_user_doc(self, kind: str, user_id: str) -> Optional[dict]:
        return copy.deepcopy(self._user_docs[kind].get(user_id))

    async def save_user_doc(
        self, kind: str, user_id: str, fields: dict, expected_version: Optional[int]
    ) -> bool:
        docs = self._user_docs[kind]
        current = docs.get(user_id)
        if expected_version is None:
            if current is not None:
                return False
            docs[user_id] = {
                **copy.deepcopy(fields),
                "id": str(ObjectId()),
                "user_id": user_id,
                "version": 1,
            }
            return True
        if current is None or current["version"] != expected_version:
            return False
        current.update(copy.deepcopy(fields))
        current["version"] = expected_version + 1
        return True

    # ----- Orders -----

    def _lookup_order(self, order_ref: str, user_id: Optional[str]) -> Optional[dict]:
        order = self._orders.get(order_ref)
        if order is None:
            order = next(
                (o for o in self._orders.values() if o["order_number"] == order_ref), None
            )
        if order is None or (user_id is not None and order["user_id"] != user_id):
            return None
        return order

    async def insert_order(self, data: dict) -> dict:
        doc = copy.deepcopy(data)
        doc["id"] = str(ObjectId())
        self._orders[doc["id"]] = doc
        return copy.deepcopy(doc)

    async def find_order(self, order_ref: str, user_id: Optional[str] = None) -> Optional[dict]:
        return copy.deepcopy(self._lookup_order(order_ref, user_id))

    async def list_orders(self, user_id: Optional[str] = None) -> List[dict]:
        docs = [o for o in self._orders.values() if user_id is None or o["user_id"] == user_id]
        docs.sort(key=lambda o: o["created_at"], reverse=True)
        return copy.deepcopy(docs)

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
        order = self._orders.get(order_id)
        if order is None:
            return None
        if user_id is not None and order["user_id"] != user_id:
            return None
        if order.get("status") in tuple(status_not_in):
            return None
        if order.get("payment_status") in tuple(payment_status_not_in):
            return None
        if (
            merchant_transaction_id is not None
            and order.get("merchant_transaction_id") != merchant_transaction_id
        ):
            return None
        order.update(copy.deepcopy(changes))
        return copy.deepcopy(order)
