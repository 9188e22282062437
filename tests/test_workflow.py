import pytest

from auth import Session
from errors import AuthorizationError, AvailabilityError, ForbiddenError, MarketplaceError, NotFoundError, ValidationError
from orders import can_view_order, create_order, list_orders_for, transition_status
from schemas import Order, OrderItem, UserType


@pytest.fixture
def farm(storage):
    farmer = storage.create_user({"username": "ravi", "email": "ravi@greenfields.in", "user_type": "farmer"})
    buyer = storage.create_user({"username": "meena", "email": "meena@greenfields.in", "user_type": "buyer"})
    product = storage.create_product({"farmer_id": farmer["id"], "name": "Okra", "price": 40.0,
                                      "available_quantity": 5.0, "in_stock": True})
    return {
        "farmer": Session(farmer["id"], UserType.farmer),
        "buyer": Session(buyer["id"], UserType.buyer),
        "product": product,
    }


def test_create_order_totals(farm, storage):
    order, items = create_order(storage, farm["buyer"], Order(delivery_notes="Back gate"),
                                [OrderItem(product_id=farm["product"]["id"], quantity=2.5)])
    assert order["total_amount"] == 100.0
    assert order["delivery_notes"] == "Back gate"
    assert items[0]["total"] == 100.0
    assert storage.get_product(farm["product"]["id"])["available_quantity"] == 2.5


def test_create_order_errors(farm, storage):
    with pytest.raises(ValidationError):
        create_order(storage, farm["buyer"], Order(), [])
    with pytest.raises(NotFoundError):
        create_order(storage, farm["buyer"], Order(), [OrderItem(product_id="000000000000000000000000", quantity=1)])
    with pytest.raises(AvailabilityError):
        create_order(storage, farm["buyer"], Order(), [OrderItem(product_id=farm["product"]["id"], quantity=6)])
    with pytest.raises(AuthorizationError):
        create_order(storage, farm["farmer"], Order(), [OrderItem(product_id=farm["product"]["id"], quantity=1)])


def test_failed_write_releases_reservation(farm, storage, monkeypatch):
    def broken(order, items):
        raise RuntimeError("write failed")

    monkeypatch.setattr(storage, "create_order", broken)
    with pytest.raises(RuntimeError):
        create_order(storage, farm["buyer"], Order(), [OrderItem(product_id=farm["product"]["id"], quantity=3)])
    assert storage.get_product(farm["product"]["id"])["available_quantity"] == 5


def test_lost_reservation_race_reports_availability(farm, storage, monkeypatch):
    # another buyer takes the stock between the check and the reservation
    monkeypatch.setattr(storage, "decrement_stock", lambda product_id, quantity: None)
    with pytest.raises(AvailabilityError):
        create_order(storage, farm["buyer"], Order(), [OrderItem(product_id=farm["product"]["id"], quantity=1)])
    assert storage.get_orders() == []


def test_transition_rules(farm, storage):
    order, _ = create_order(storage, farm["buyer"], Order(), [OrderItem(product_id=farm["product"]["id"], quantity=1)])

    with pytest.raises(ValidationError):
        transition_status(storage, order["id"], "teleported", farm["farmer"])
    with pytest.raises(NotFoundError):
        transition_status(storage, "000000000000000000000000", "confirmed", farm["farmer"])
    with pytest.raises(ForbiddenError):
        transition_status(storage, order["id"], "confirmed", farm["buyer"])

    stranger = Session("000000000000000000000001", UserType.farmer)
    with pytest.raises(AuthorizationError):
        transition_status(storage, order["id"], "confirmed", stranger)
    assert not can_view_order(storage, order, stranger)

    assert transition_status(storage, order["id"], "confirmed", farm["farmer"])["status"] == "confirmed"
    with pytest.raises(ForbiddenError):
        transition_status(storage, order["id"], "pending", farm["farmer"])


def test_stale_status_write_is_rejected(farm, storage, monkeypatch):
    order, _ = create_order(storage, farm["buyer"], Order(), [OrderItem(product_id=farm["product"]["id"], quantity=1)])
    # someone else moved the order between our read and our write
    monkeypatch.setattr(storage, "update_order_status", lambda *args, **kwargs: None)
    with pytest.raises(ForbiddenError):
        transition_status(storage, order["id"], "cancelled", farm["buyer"])
    assert storage.get_product(farm["product"]["id"])["available_quantity"] == 4


def test_unknown_role_is_a_server_error(farm, storage):
    order, _ = create_order(storage, farm["buyer"], Order(), [OrderItem(product_id=farm["product"]["id"], quantity=1)])
    admin = Session(farm["buyer"].user_id, "admin")
    with pytest.raises(MarketplaceError) as excinfo:
        list_orders_for(storage, admin)
    assert excinfo.value.status_code == 500
    with pytest.raises(MarketplaceError):
        can_view_order(storage, order, admin)
    with pytest.raises(MarketplaceError):
        transition_status(storage, order["id"], "cancelled", admin)
