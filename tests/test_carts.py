"""Tests for the cart engine."""
import asyncio

import pytest

import carts
from conftest import TEST_USER_ID
from errors import InvalidInput, InvalidState, NotFound

pytestmark = pytest.mark.asyncio


async def test_get_cart_without_cart_returns_empty_items(store):
    assert await carts.get_cart(store, TEST_USER_ID) == {"items": []}


async def test_repeat_add_accumulates_quantity(store, product_factory):
    product = product_factory()

    await carts.add_item(store, TEST_USER_ID, product["id"], 2, "M", "red")
    cart = await carts.add_item(store, TEST_USER_ID, product["id"], 3, "M", "red")

    assert len(cart["items"]) == 1
    assert cart["items"][0]["quantity"] == 5


async def test_different_variants_are_separate_line_items(store, product_factory):
    product = product_factory()

    await carts.add_item(store, TEST_USER_ID, product["id"], 1, "M", "red")
    cart = await carts.add_item(store, TEST_USER_ID, product["id"], 1, "L", "red")

    assert [(i["size"], i["color"]) for i in cart["items"]] == [("M", "red"), ("L", "red")]


async def test_blank_and_missing_variants_share_a_key(store, product_factory):
    product = product_factory()

    await carts.add_item(store, TEST_USER_ID, product["id"], 1, "", None)
    await carts.add_item(store, TEST_USER_ID, product["id"], 1, None, "  ")
    cart = await carts.add_item(store, TEST_USER_ID, product["id"], 1)

    assert len(cart["items"]) == 1
    item = cart["items"][0]
    assert item["quantity"] == 3
    assert item["size"] is None
    assert item["color"] is None


async def test_add_resolves_product_details(store, product_factory):
    product = product_factory(name="Rocket Pyjamas", price=450.0)

    cart = await carts.add_item(store, TEST_USER_ID, product["id"], 1, "S", "blue")

    assert cart["items"][0]["product"]["name"] == "Rocket Pyjamas"
    assert cart["items"][0]["product"]["price"] == 450.0
    assert cart["items"][0]["added_at"] is not None
    assert cart["updated_at"] is not None


async def test_add_unknown_product_fails(store):
    with pytest.raises(NotFound):
        await carts.add_item(store, TEST_USER_ID, "64f0c2a1b2c3d4e5f6a7ffff", 1)


async def test_add_unavailable_product_fails(store, product_factory):
    product = product_factory(availability=False, stock=0)

    with pytest.raises(InvalidState):
        await carts.add_item(store, TEST_USER_ID, product["id"], 1)


async def test_add_rejects_non_positive_quantity(store, product_factory):
    product = product_factory()

    with pytest.raises(InvalidInput):
        await carts.add_item(store, TEST_USER_ID, product["id"], 0)


async def test_update_sets_quantity(store, product_factory):
    product = product_factory()
    await carts.add_item(store, TEST_USER_ID, product["id"], 2, "M", "red")

    cart = await carts.update_item(store, TEST_USER_ID, product["id"], 7, "M", "red")

    assert cart["items"][0]["quantity"] == 7


async def test_update_to_zero_removes_item(store, product_factory):
    product = product_factory()
    await carts.add_item(store, TEST_USER_ID, product["id"], 2, "M", "red")

    cart = await carts.update_item(store, TEST_USER_ID, product["id"], 0, "M", "red")

    assert cart["items"] == []


async def test_update_negative_quantity_removes_item(store, product_factory):
    product = product_factory()
    await carts.add_item(store, TEST_USER_ID, product["id"], 2, "M", "red")
    await carts.add_item(store, TEST_USER_ID, product["id"], 1, "L", "red")

    cart = await carts.update_item(store, TEST_USER_ID, product["id"], -1, "M", "red")

    assert [(i["size"], i["quantity"]) for i in cart["items"]] == [("L", 1)]


async def test_update_without_cart_fails(store, product_factory):
    product = product_factory()

    with pytest.raises(NotFound):
        await carts.update_item(store, TEST_USER_ID, product["id"], 1, "M", "red")


async def test_update_missing_item_fails(store, product_factory):
    product = product_factory()
    await carts.add_item(store, TEST_USER_ID, product["id"], 1, "M", "red")

    with pytest.raises(NotFound):
        await carts.update_item(store, TEST_USER_ID, product["id"], 1, "M", "blue")


async def test_remove_is_idempotent(store, product_factory):
    product = product_factory()
    await carts.add_item(store, TEST_USER_ID, product["id"], 1, "M", "red")

    first = await carts.remove_item(store, TEST_USER_ID, product["id"], "M", "red")
    second = await carts.remove_item(store, TEST_USER_ID, product["id"], "M", "red")

    assert first["items"] == []
    assert second["items"] == []


async def test_remove_without_cart_is_noop(store):
    cart = await carts.remove_item(store, TEST_USER_ID, "64f0c2a1b2c3d4e5f6a7ffff")

    assert cart == {"items": []}


async def test_clear_cart_empties_items(store, product_factory):
    product = product_factory()
    await carts.add_item(store, TEST_USER_ID, product["id"], 1, "M", "red")

    await carts.clear_cart(store, TEST_USER_ID)

    assert (await carts.get_cart(store, TEST_USER_ID))["items"] == []


async def test_cart_lists_deleted_products_without_details(store, product_factory):
    product = product_factory()
    await carts.add_item(store, TEST_USER_ID, product["id"], 1)
    del store._products[product["id"]]

    cart = await carts.get_cart(store, TEST_USER_ID)

    assert cart["items"][0]["product"] is None


async def test_concurrent_adds_on_empty_cart_produce_one_line_item(interleaving_store, product_factory):
    product = product_factory(interleaving_store)

    await asyncio.gather(
        carts.add_item(interleaving_store, TEST_USER_ID, product["id"], 2, "M", "red"),
        carts.add_item(interleaving_store, TEST_USER_ID, product["id"], 3, "M", "red"),
    )

    cart = await carts.get_cart(interleaving_store, TEST_USER_ID)
    assert len(cart["items"]) == 1
    assert cart["items"][0]["quantity"] == 5
