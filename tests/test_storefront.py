"""Tests for the cart and online-order workflows."""

from __future__ import annotations

from decimal import Decimal

import pytest

from pos_ledger import core_logic, data_manager, storefront
from pos_ledger.constants import OnlineOrderStatus


def test_add_to_cart_merges_quantities(context, make_product):
    product = make_product("Cola", selling_price="2.50")

    storefront.add_to_cart(context, product.product_id)
    item = storefront.add_to_cart(context, product.product_id, 2)

    assert item.quantity == 3
    assert item.price == Decimal("2.50")
    assert storefront.list_cart(context) == [item]
    assert storefront.cart_total(context) == Decimal("7.50")


def test_add_to_cart_rejects_unknown_product(context):
    with pytest.raises(core_logic.MissingReferenceError):
        storefront.add_to_cart(context, "PROD-404")


def test_update_cart_item_quantity_below_one_removes_line(context, make_product):
    product = make_product()
    storefront.add_to_cart(context, product.product_id, 2)

    assert storefront.update_cart_item_quantity(context, product.product_id, 5).quantity == 5
    assert storefront.update_cart_item_quantity(context, product.product_id, 0) is None
    assert storefront.list_cart(context) == []


def test_update_cart_item_quantity_requires_existing_line(context, make_product):
    product = make_product()
    with pytest.raises(core_logic.MissingReferenceError):
        storefront.update_cart_item_quantity(context, product.product_id, 2)


def test_remove_and_clear_cart(context, make_product):
    first = make_product("A")
    second = make_product("B")
    storefront.add_to_cart(context, first.product_id)
    storefront.add_to_cart(context, second.product_id)

    assert storefront.remove_from_cart(context, first.product_id) is True
    assert storefront.remove_from_cart(context, first.product_id) is False
    storefront.clear_cart(context)
    assert storefront.list_cart(context) == []


def test_place_online_order_from_cart_empties_cart(context, make_product):
    product = make_product(stock=4, selling_price="3.00")
    storefront.add_to_cart(context, product.product_id, 2)

    order = storefront.place_online_order(context, customer_name="Ana", customer_email="ana@example.com")

    assert order.status == "pending"
    assert order.total == Decimal("6.00")
    assert storefront.list_cart(context) == []
    assert core_logic.get_product(context, product.product_id).stock == 4
    assert storefront.list_online_orders(context, status=OnlineOrderStatus.PENDING) == [order]


def test_place_online_order_validates_input(context, make_product):
    product = make_product()
    with pytest.raises(core_logic.ValidationError):
        storefront.place_online_order(context, customer_name="Ana")
    storefront.add_to_cart(context, product.product_id)
    with pytest.raises(core_logic.ValidationError):
        storefront.place_online_order(context, customer_name="  ")
    assert len(storefront.list_cart(context)) == 1


def test_confirm_online_order_commits_sale_and_registers_client(context, make_product):
    product = make_product(stock=4, cost_price="1.00", selling_price="3.00")
    order = storefront.place_online_order(
        context,
        customer_name="Ana",
        customer_email="ana@example.com",
        items=[data_manager.CartItem(product.product_id, product.name, Decimal("3.00"), 5)],
    )

    sale = storefront.confirm_online_order(context, order.order_id)

    assert sale.origin == "online"
    assert sale.payment_method == "card"
    assert sale.total == Decimal("15.00")
    assert core_logic.get_product(context, product.product_id).stock == -1
    client = core_logic.get_client(context, sale.client_id)
    assert client.email == "ana@example.com"
    assert storefront.get_online_order(context, order.order_id).status == "paid"
    assert core_logic.verify_stock_history(context) == {}


def test_confirm_online_order_reuses_matching_client(context, make_product):
    existing = core_logic.add_client(context, "Ana", phone="555-0101")
    product = make_product(stock=2)
    storefront.add_to_cart(context, product.product_id)
    order = storefront.place_online_order(context, customer_name="Ana M.", customer_phone="555-0101")

    sale = storefront.confirm_online_order(context, order.order_id)

    assert sale.client_id == existing.client_id
    assert len(core_logic.list_clients(context)) == 2


def test_confirm_online_order_with_deleted_product_registers_no_client(context, make_product):
    product = make_product(stock=2)
    storefront.add_to_cart(context, product.product_id)
    order = storefront.place_online_order(context, customer_name="Ana", customer_email="ana@example.com")
    core_logic.delete_product(context, product.product_id)
    clients_before = core_logic.list_clients(context)

    with pytest.raises(core_logic.MissingReferenceError):
        storefront.confirm_online_order(context, order.order_id)

    assert core_logic.list_clients(context) == clients_before
    assert core_logic.list_sales(context) == []
    assert storefront.get_online_order(context, order.order_id).status == "pending"


def test_order_lifecycle_is_enforced(context, make_product):
    product = make_product(stock=2)
    storefront.add_to_cart(context, product.product_id)
    order = storefront.place_online_order(context, customer_name="Ana", customer_email="a@b.c")

    with pytest.raises(core_logic.InvalidStateError):
        storefront.ship_online_order(context, order.order_id)

    storefront.confirm_online_order(context, order.order_id)
    with pytest.raises(core_logic.InvalidStateError):
        storefront.confirm_online_order(context, order.order_id)

    shipped = storefront.ship_online_order(context, order.order_id)
    assert shipped.status == "shipped"
    assert core_logic.get_product(context, product.product_id).stock == 1


def test_get_online_order_unknown_raises(context):
    with pytest.raises(core_logic.MissingReferenceError):
        storefront.get_online_order(context, "ORD-404")
