from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from marketplace.errors import (
    AuthorizationError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    ValidationError,
)
from marketplace.models import Order, OrderStatus, PaymentMethod, StoreStatus
from marketplace.observability.metrics import counter_value
from marketplace.services.catalog_service import CatalogService
from marketplace.services.checkout_service import CheckoutService, compute_total


@pytest.fixture
def service(db_session):
    return CheckoutService(db_session)


@pytest.fixture
def store(make_store, seller):
    return make_store(owner_id=seller.user_id)


@pytest.fixture
def lamp(make_product, store):
    return make_product(store, name="Lamp", price="19.99", mrp="29.99")


@pytest.fixture
def bulb(make_product, store):
    return make_product(store, name="Bulb", price="5.00", mrp="5.00")


def _order_count(db_session):
    return db_session.query(Order).count()


def test_compute_total_rounds_half_up():
    assert compute_total([(Decimal("19.99"), 3), (Decimal("5.00"), 1)], 10) == Decimal("58.47")
    assert compute_total([(Decimal("0.05"), 1)], 50) == Decimal("0.03")
    assert compute_total([(Decimal("10.00"), 2)]) == Decimal("20.00")


def test_compute_total_rejects_unstorable_amount():
    with pytest.raises(ValidationError):
        compute_total([(Decimal("19.99"), 10**30)])


def test_place_order_snapshots_everything(service, buyer, store, lamp, bulb, make_coupon, address):
    make_coupon(store, code="SAVE10", discount=10, expires_at=date(2030, 6, 30))

    order = service.place_order(
        buyer,
        store.id,
        [{"product_id": lamp.id, "quantity": 3}, {"product_id": bulb.id, "quantity": 1}],
        address,
        "cod",
        coupon_code="save10",
        today=date(2030, 6, 30),
    )

    assert order.status == OrderStatus.ORDER_PLACED
    assert order.payment_method == PaymentMethod.COD
    assert order.is_paid is False
    assert order.user_id == buyer.user_id
    assert order.coupon_code == "SAVE10"
    assert order.discount == 10
    assert order.total == Decimal("58.47")
    assert order.shipping_address == address
    assert [(item.product_name, item.quantity, item.price) for item in order.items] == [
        ("Lamp", 3, Decimal("19.99")),
        ("Bulb", 1, Decimal("5.00")),
    ]
    assert counter_value("orders_placed_total", labels={"payment_method": "COD"}) == 1


def test_later_price_change_does_not_touch_order(service, db_session, storage, buyer, seller, store, lamp, address):
    order = service.place_order(buyer, store.id, [{"product_id": lamp.id, "quantity": 2}], address, "STRIPE")

    CatalogService(db_session, storage=storage).update_product(seller, lamp.id, {"price": "9.99"})
    db_session.expire_all()

    reloaded = db_session.get(Order, order.id)
    assert reloaded.total == Decimal("39.98")
    assert reloaded.items[0].price == Decimal("19.99")
    assert reloaded.calculate_subtotal() == Decimal("39.98")


def test_duplicate_lines_are_merged(service, buyer, store, lamp, address):
    order = service.place_order(
        buyer,
        store.id,
        [{"product_id": lamp.id, "quantity": 1}, {"product_id": lamp.id, "quantity": 2}],
        address,
        "COD",
    )

    assert [(item.product_id, item.quantity) for item in order.items] == [(lamp.id, 3)]


def test_out_of_stock_rejects_whole_order(service, db_session, buyer, store, lamp, make_product, address):
    sold_out = make_product(store, name="Gone", in_stock=False)

    with pytest.raises(ConflictError):
        service.place_order(
            buyer,
            store.id,
            [{"product_id": lamp.id, "quantity": 1}, {"product_id": sold_out.id, "quantity": 1}],
            address,
            "COD",
        )
    assert _order_count(db_session) == 0
    assert counter_value("orders_rejected_total", labels={"reason": "conflict"}) == 1


def test_product_from_another_store(service, db_session, buyer, store, make_store, make_product, address):
    foreign = make_product(make_store(), name="Foreign")

    with pytest.raises(NotFoundError):
        service.place_order(buyer, store.id, [{"product_id": foreign.id, "quantity": 1}], address, "COD")
    assert _order_count(db_session) == 0


@pytest.mark.parametrize(
    "status, active",
    [(StoreStatus.APPROVED, False), (StoreStatus.PENDING, True), (StoreStatus.REJECTED, True)],
)
def test_store_must_be_open(service, buyer, make_store, make_product, address, status, active):
    closed = make_store(status=status, is_active=active)
    product = make_product(closed)

    with pytest.raises(ConflictError):
        service.place_order(buyer, closed.id, [{"product_id": product.id, "quantity": 1}], address, "COD")


def test_unknown_store(service, buyer, address):
    with pytest.raises(NotFoundError):
        service.place_order(buyer, 12345, [{"product_id": 1, "quantity": 1}], address, "COD")


def test_expired_coupon_rejects_order(service, db_session, buyer, store, lamp, make_coupon, address):
    make_coupon(store, code="OLD", expires_at=date(2030, 1, 1))

    with pytest.raises(ExpiredError):
        service.place_order(
            buyer,
            store.id,
            [{"product_id": lamp.id, "quantity": 1}],
            address,
            "COD",
            coupon_code="OLD",
            today=date(2030, 1, 2),
        )
    assert _order_count(db_session) == 0


@pytest.mark.parametrize(
    "items",
    [
        [],
        [{"product_id": 1, "quantity": 0}],
        [{"product_id": 1, "quantity": -2}],
        [{"product_id": "abc", "quantity": 1}],
        ["not-a-line"],
        [{"product_id": 1, "quantity": 10**30}],
        [{"product_id": 1, "quantity": 1001}],
        [{"product_id": 1, "quantity": 600}, {"product_id": 1, "quantity": 600}],
        [{"product_id": 10**30, "quantity": 1}],
    ],
)
def test_invalid_cart(service, buyer, store, address, items):
    with pytest.raises(ValidationError):
        service.place_order(buyer, store.id, items, address, "COD")


def test_order_total_must_fit_money_column(service, buyer, store, make_product, address, db_session):
    pricey = make_product(store, name="Chandelier", price="99999999.99", mrp="99999999.99")

    with pytest.raises(ValidationError) as excinfo:
        service.place_order(buyer, store.id, [{"product_id": pricey.id, "quantity": 2}], address, "COD")

    assert excinfo.value.field == "total"
    assert _order_count(db_session) == 0


def test_address_fields_required(service, buyer, store, lamp, address):
    address.pop("zip")

    with pytest.raises(ValidationError) as excinfo:
        service.place_order(buyer, store.id, [{"product_id": lamp.id, "quantity": 1}], address, "COD")
    assert excinfo.value.field == "zip"


def test_payment_method_validated(service, buyer, store, lamp, address):
    with pytest.raises(ValidationError):
        service.place_order(buyer, store.id, [{"product_id": lamp.id, "quantity": 1}], address, "BARTER")


def test_anonymous_checkout_refused(service, store, lamp, address):
    with pytest.raises(AuthorizationError):
        service.place_order(None, store.id, [{"product_id": lamp.id, "quantity": 1}], address, "COD")
