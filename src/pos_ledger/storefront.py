"""Online storefront workflows for the POS ledger.

The storefront keeps a persisted shopping cart and the online orders placed
from it. Orders do not touch stock until they are confirmed; confirmation
turns the order into a regular sale through :func:`core_logic.commit_sale`,
which is where the stock ledger takes over.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from . import core_logic, data_manager, log
from .constants import OnlineOrderStatus, PaymentMethod, SaleOrigin
from .core_logic import (
    InvalidStateError,
    MissingReferenceError,
    RuntimeContext,
    ValidationError,
)
from .data_manager import CartItem, OnlineOrderRow, SaleRow


def _items_total(items: Iterable[CartItem]) -> Decimal:
    return sum((item.price * item.quantity for item in items), Decimal("0"))


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------


def list_cart(context: RuntimeContext) -> List[CartItem]:
    return data_manager.get_all(context.workbook, data_manager.CART)


def cart_total(context: RuntimeContext) -> Decimal:
    return _items_total(list_cart(context))


def _find_cart_item(context: RuntimeContext, product_id: str) -> Optional[CartItem]:
    for item in list_cart(context):
        if item.product_id == product_id:
            return item
    return None


def add_to_cart(context: RuntimeContext, product_id: str, quantity: int = 1) -> CartItem:
    """Add ``quantity`` units of a product to the cart.

    A product already in the cart has its quantity increased; a new line is
    priced at the product's current selling price.

    Raises:
        MissingReferenceError: If the product is unknown.
        ValidationError: If ``quantity`` is not positive.
    """
    core_logic.require_positive_quantity(quantity)
    product = core_logic.get_product(context, product_id)
    existing = _find_cart_item(context, product_id)
    if existing is not None:
        item = replace(existing, quantity=existing.quantity + quantity)
        data_manager.update(context.workbook, data_manager.CART, item)
    else:
        item = CartItem(
            product_id=product.product_id,
            name=product.name,
            price=product.selling_price,
            quantity=quantity,
        )
        data_manager.add(context.workbook, data_manager.CART, item)
    log.info("Cart now holds %d of product '%s'", item.quantity, product_id)
    return item


def update_cart_item_quantity(context: RuntimeContext, product_id: str, quantity: int) -> Optional[CartItem]:
    """Set the quantity of a cart line; a quantity below one removes it."""
    if quantity < 1:
        remove_from_cart(context, product_id)
        return None
    core_logic.require_positive_quantity(quantity)
    existing = _find_cart_item(context, product_id)
    if existing is None:
        log.warning("Cart lookup failed for product '%s'", product_id)
        raise MissingReferenceError(f"Product '{product_id}' is not in the cart")
    item = replace(existing, quantity=quantity)
    data_manager.update(context.workbook, data_manager.CART, item)
    return item


def remove_from_cart(context: RuntimeContext, product_id: str) -> bool:
    removed = data_manager.delete_by_id(context.workbook, data_manager.CART, product_id)
    if removed:
        log.info("Removed product '%s' from cart", product_id)
    return removed


def clear_cart(context: RuntimeContext) -> None:
    data_manager.clear(context.workbook, data_manager.CART)
    log.info("Cleared cart")


# ---------------------------------------------------------------------------
# Online orders
# ---------------------------------------------------------------------------


def list_online_orders(
    context: RuntimeContext,
    *,
    status: Optional[OnlineOrderStatus] = None,
) -> List[OnlineOrderRow]:
    orders = data_manager.get_all(context.workbook, data_manager.ONLINE_ORDERS)
    if status is None:
        return orders
    return [order for order in orders if order.status == OnlineOrderStatus(status).value]


def get_online_order(context: RuntimeContext, order_id: str) -> OnlineOrderRow:
    for order in list_online_orders(context):
        if order.order_id == order_id:
            return order
    log.warning("Online order lookup failed for id '%s'", order_id)
    raise MissingReferenceError(f"Unknown online order id: {order_id}")


def place_online_order(
    context: RuntimeContext,
    *,
    customer_name: str,
    customer_email: str = "",
    customer_phone: str = "",
    items: Optional[Sequence[CartItem]] = None,
    timestamp: Optional[datetime] = None,
) -> OnlineOrderRow:
    """Register a pending online order.

    When ``items`` is omitted the current cart is ordered and then emptied.
    Stock is untouched until the order is confirmed.

    Raises:
        ValidationError: If the customer name is blank, there are no items or
            a quantity is not positive.
    """
    name = (customer_name or "").strip()
    if not name:
        log.error("Online order validation failed: customer name is blank")
        raise ValidationError("Customer name is required")

    from_cart = items is None
    lines = tuple(list_cart(context) if from_cart else items)
    if not lines:
        log.error("Online order validation failed: no items")
        raise ValidationError("An online order needs at least one item")
    for line in lines:
        core_logic.require_positive_quantity(line.quantity)

    when = timestamp if timestamp is not None else datetime.now(UTC)
    order = OnlineOrderRow(
        order_id=core_logic.generate_record_id("ORD", when=when),
        timestamp_iso=when.isoformat(),
        customer_name=name,
        customer_email=customer_email.strip(),
        customer_phone=customer_phone.strip(),
        items=lines,
        total=_items_total(lines),
        status=OnlineOrderStatus.PENDING.value,
    )
    data_manager.add(context.workbook, data_manager.ONLINE_ORDERS, order)
    if from_cart:
        clear_cart(context)
    log.info("Placed online order '%s' (total=%s)", order.order_id, order.total)
    return order


def confirm_online_order(context: RuntimeContext, order_id: str) -> SaleRow:
    """Turn a pending online order into a committed sale.

    The customer is matched to an existing client by email or phone, or
    registered as a new client. The sale is committed with origin ``online``
    and card payment, and the order is then marked ``paid``.

    Raises:
        MissingReferenceError: If the order or one of its products is unknown.
        InvalidStateError: If the order is not pending.
    """
    order = get_online_order(context, order_id)
    if order.status != OnlineOrderStatus.PENDING.value:
        log.error("Online order '%s' is not pending (status=%s)", order_id, order.status)
        raise InvalidStateError(f"Online order '{order_id}' is not pending")

    # Lines are checked before a client can be registered.
    for item in order.items:
        core_logic.require_positive_quantity(item.quantity)
        core_logic.get_product(context, item.product_id)

    client = core_logic.find_client(
        context,
        email=order.customer_email,
        phone=order.customer_phone,
    )
    if client is None:
        client = core_logic.add_client(
            context,
            order.customer_name,
            phone=order.customer_phone,
            email=order.customer_email,
        )

    sale = core_logic.commit_sale(
        context,
        core_logic.SaleCommand(
            items=[
                core_logic.SaleLine(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=item.price,
                )
                for item in order.items
            ],
            payment_method=PaymentMethod.CARD,
            origin=SaleOrigin.ONLINE,
            client_id=client.client_id,
            customer_name=order.customer_name,
            customer_phone=order.customer_phone,
        ),
    )

    paid = replace(order, status=OnlineOrderStatus.PAID.value)
    data_manager.update(context.workbook, data_manager.ONLINE_ORDERS, paid)
    log.info("Confirmed online order '%s' as sale '%s'", order_id, sale.sale_id)
    return sale


def ship_online_order(context: RuntimeContext, order_id: str) -> OnlineOrderRow:
    """Mark a paid order as shipped.

    Raises:
        InvalidStateError: If the order has not been paid.
    """
    order = get_online_order(context, order_id)
    if order.status != OnlineOrderStatus.PAID.value:
        log.error("Online order '%s' cannot ship from status '%s'", order_id, order.status)
        raise InvalidStateError(f"Online order '{order_id}' has not been paid")
    shipped = replace(order, status=OnlineOrderStatus.SHIPPED.value)
    data_manager.update(context.workbook, data_manager.ONLINE_ORDERS, shipped)
    log.info("Shipped online order '%s'", order_id)
    return shipped
