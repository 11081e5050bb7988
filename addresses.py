"""
Address book.

All of a user's addresses live in one ``address_book`` document, so changing
which address is the default is a single versioned write: there is never a
moment where two addresses, or none, are flagged default while any exist.
"""
from datetime import datetime, timezone
from typing import List, Optional

from bson import ObjectId

from database import Store, modify_user_doc
from errors import InvalidInput, NotFound
from schemas import AddressCreate, AddressUpdate


def _age(address: dict):
    # ids are ObjectIds, which increase within a process, so they break timestamp ties
    return (address["created_at"], address["id"])


def _ordered(addresses: List[dict]) -> List[dict]:
    # default first, then newest first
    newest_first = sorted(addresses, key=_age, reverse=True)
    return sorted(newest_first, key=lambda a: not a["is_default"])


def _set_default(addresses: List[dict], address_id: str) -> None:
    for address in addresses:
        address["is_default"] = address["id"] == address_id


async def list_addresses(store: Store, user_id: str) -> List[dict]:
    book = await store.load_user_doc("address_book", user_id)
    return _ordered(book["addresses"]) if book else []


async def get_default_address(store: Store, user_id: str) -> Optional[dict]:
    addresses = await list_addresses(store, user_id)
    return next((a for a in addresses if a["is_default"]), None)


async def add_address(store: Store, user_id: str, data: AddressCreate) -> dict:
    address = data.model_dump()
    address["id"] = str(ObjectId())
    address["created_at"] = datetime.now(timezone.utc)

    def mutate(book: Optional[dict]) -> dict:
        addresses = book["addresses"] if book else []
        addresses.append(dict(address))
        if data.is_default or len(addresses) == 1:
            _set_default(addresses, address["id"])
        return {"addresses": addresses, "updated_at": address["created_at"]}

    book = await modify_user_doc(store, "address_book", user_id, mutate)
    return next(a for a in book["addresses"] if a["id"] == address["id"])


async def update_address(store: Store, user_id: str, address_id: str, update: AddressUpdate) -> dict:
    changes = update.model_dump(exclude_unset=True)
    make_default = changes.pop("is_default", None)

    def mutate(book: Optional[dict]) -> dict:
        addresses = book["addresses"] if book else []
        target = next((a for a in addresses if a["id"] == address_id), None)
        if target is None:
            raise NotFound("Address", address_id)
        if make_default is False and target["is_default"]:
            raise InvalidInput("Choose another default address instead")
        target.update(changes)
        if make_default:
            _set_default(addresses, address_id)
        return {"addresses": addresses, "updated_at": datetime.now(timezone.utc)}

    book = await modify_user_doc(store, "address_book", user_id, mutate)
    return next(a for a in book["addresses"] if a["id"] == address_id)


async def delete_address(store: Store, user_id: str, address_id: str) -> None:
    def mutate(book: Optional[dict]) -> dict:
        addresses = book["addresses"] if book else []
        target = next((a for a in addresses if a["id"] == address_id), None)
        if target is None:
            raise NotFound("Address", address_id)
        remaining = [a for a in addresses if a["id"] != address_id]
        if target["is_default"] and remaining:
            newest = max(remaining, key=_age)
            _set_default(remaining, newest["id"])
        return {"addresses": remaining, "updated_at": datetime.now(timezone.utc)}

    await modify_user_doc(store, "address_book", user_id, mutate)
