"""
Order workflow: placing orders from a buyer's cart and moving orders through
their lifecycle.

    pending -> confirmed -> shipped -> delivered
    pending | confirmed | shipped -> cancelled

Farmers drive the forward path and may cancel anything not yet delivered.
Buyers may only cancel their own orders while they are still pending.
"""
import logging
from typing import Dict, FrozenSet, List, Tuple

from auth import Session
from errors import AuthorizationError, AvailabilityError, ForbiddenError, MarketplaceError, NotFoundError, ValidationError
from schemas import Order, OrderItem, OrderStatus, PaymentStatus, UserType
from storage import Storage

logger = logging.getLogger(__name__)

FARMER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.pending: frozenset({OrderStatus.confirmed, OrderStatus.cancelled}),
    OrderStatus.confirmed: frozenset({OrderStatus.shipped, OrderStatus.cancelled}),
    OrderStatus.shipped: frozenset({OrderStatus.delivered, OrderStatus.cancelled}),
}

BUYER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.pending: frozenset({OrderStatus.cancelled}),
}


def _unexpected_role(user_type):
    raise MarketplaceError(f"Unhandled user type: {user_type!r}")


def farmer_has_item_in(storage: Storage, order_id: str, farmer_id: str) -> bool:
    farmer_products = {p["id"] for p in storage.get_products_by_farmer(farmer_id)}
    return any(item["product_id"] in farmer_products for item in storage.get_order_items(order_id))


def can_view_order(storage: Storage, order: dict, caller: Session) -> bool:
    if caller.user_type is UserType.buyer:
        return order["buyer_id"] == caller.user_id
    elif caller.user_type is UserType.farmer:
        return farmer_has_item_in(storage, order["id"], caller.user_id)
    return _unexpected_role(caller.user_type)


def list_orders_for(storage: Storage, caller: Session) -> List[dict]:
    if caller.user_type is UserType.buyer:
        return storage.get_orders_by_buyer(caller.user_id)
    elif caller.user_type is UserType.farmer:
        return storage.get_orders_for_farmer(caller.user_id)
    return _unexpected_role(caller.user_type)


def _release(storage: Storage, reserved: List[Tuple[str, float]]) -> None:
    for product_id, quantity in reserved:
        storage.restore_stock(product_id, quantity)


def create_order(storage: Storage, buyer: Session, order_in: Order, items: List[OrderItem]) -> Tuple[dict, List[dict]]:
    """Validate a cart against live stock and place it as a pending order.

    Stock is reserved with a conditional decrement per product, so when two
    buyers race for the last units only one of them gets them. Any failure
    releases what was already reserved and leaves no order behind.
    """
    if buyer.user_type is not UserType.buyer:
        raise AuthorizationError("Only buyers can create orders")
    if not items:
        raise ValidationError("Order must include items")

    lines = []
    total_amount = 0.0
    for item in items:
        if item.quantity <= 0:
            raise ValidationError("Item quantity must be greater than 0")
        product = storage.get_product(item.product_id)
        if product is None:
            raise NotFoundError(f"Product with ID {item.product_id} not found")
        if not product.get("in_stock") or product.get("available_quantity", 0) < item.quantity:
            logger.warning("Availability check failed for product %s (wanted %s)", product["id"], item.quantity)
            raise AvailabilityError(f"Not enough quantity available for product {product['name']}")
        price_per_unit = float(product["price"])
        line_total = price_per_unit * item.quantity
        total_amount += line_total
        lines.append({
            "product_id": product["id"],
            "quantity": item.quantity,
            "price_per_unit": price_per_unit,
            "total": line_total,
        })

    reserved: List[Tuple[str, float]] = []
    for line in lines:
        if storage.decrement_stock(line["product_id"], line["quantity"]) is None:
            _release(storage, reserved)
            product = storage.get_product(line["product_id"])
            name = product["name"] if product else line["product_id"]
            logger.warning("Stock reservation failed for product %s", line["product_id"])
            raise AvailabilityError(f"Not enough quantity available for product {name}")
        reserved.append((line["product_id"], line["quantity"]))

    try:
        order = storage.create_order({
            **order_in.model_dump(),
            "buyer_id": buyer.user_id,
            "total_amount": total_amount,
            "status": OrderStatus.pending.value,
            "payment_status": PaymentStatus.pending.value,
        }, lines)
    except Exception:
        _release(storage, reserved)
        raise

    logger.info("Order %s placed by %s for %.2f", order["id"], buyer.user_id, total_amount)
    return order, storage.get_order_items(order["id"])


def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError("Invalid status")


def transition_status(storage: Storage, order_id: str, target, caller: Session) -> dict:
    target = parse_status(target)
    order = storage.get_order(order_id)
    if order is None:
        raise NotFoundError("Order not found")
    current = OrderStatus(order["status"])

    if caller.user_type is UserType.buyer:
        if order["buyer_id"] != caller.user_id:
            raise AuthorizationError("Not authorized to update this order")
        allowed = BUYER_TRANSITIONS.get(current, frozenset())
        if target not in allowed:
            raise ForbiddenError("Buyers can only cancel pending orders")
    elif caller.user_type is UserType.farmer:
        if not farmer_has_item_in(storage, order["id"], caller.user_id):
            raise AuthorizationError("Not authorized to update this order")
        allowed = FARMER_TRANSITIONS.get(current, frozenset())
        if target not in allowed:
            raise ForbiddenError(f"Cannot move order from {current.value} to {target.value}")
    else:
        _unexpected_role(caller.user_type)

    updated = storage.update_order_status(order["id"], target.value, from_status=current.value)
    if updated is None:
        if storage.get_order(order["id"]) is None:
            raise NotFoundError("Order not found")
        raise ForbiddenError("Order status changed concurrently, reload and try again")
    if target is OrderStatus.cancelled:
        for item in storage.get_order_items(order["id"]):
            storage.restore_stock(item["product_id"], item["quantity"])
    logger.info("Order %s moved %s -> %s by %s", order["id"], current.value, target.value, caller.user_id)
    return updated
