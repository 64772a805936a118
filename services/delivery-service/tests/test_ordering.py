from __future__ import annotations

import sqlite3
import threading
from decimal import Decimal

import pytest

from delivery_service.auth import Identity
from delivery_service.catalog import CatalogRepository
from delivery_service.domain import FulfillmentMode, OrderStatus, PaymentStatus, Role
from delivery_service.errors import (
    Conflict,
    Forbidden,
    InvalidAddress,
    InvalidQuantity,
    MenuItemUnavailable,
    NoCourierAvailable,
    NotFound,
    RestaurantUnavailable,
    ValidationFailed,
)
from delivery_service.ordering import OrderLine, OrderService, PlacedOrder, PlaceOrderCommand
from delivery_service.repository import OrderRepository

ORDER_TABLES = ("orders", "order_items", "courier_assignments", "payments")


def _command(world, items=None, **overrides) -> PlaceOrderCommand:
    fields = dict(
        customer_id=world.customer_id,
        restaurant_id=world.restaurant_id,
        address_id=world.address_id,
        payment_method="CREDIT_CARD",
        items=items
        if items is not None
        else [OrderLine(world.item_a, 2), OrderLine(world.item_b, 1)],
    )
    fields.update(overrides)
    return PlaceOrderCommand(**fields)


def _assert_nothing_persisted(seed) -> None:
    for table in ORDER_TABLES:
        assert seed.count(table) == 0, table


def test_place_order_delivers_and_pays_in_one_shot(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER", user_id=9)
    service = OrderService(connection_factory)

    placed = service.place_order(_command(marketplace))

    assert placed.total_amount == Decimal("25.00")
    assert placed.status is OrderStatus.DELIVERED
    assert placed.courier_id == 9
    assert placed.payment_status is PaymentStatus.COMPLETED

    order = OrderRepository(connection_factory).get_order(placed.order_id)
    assert order.status == "DELIVERED"
    assert order.total_amount == Decimal("25.00")
    assert [(item.name, item.quantity, item.unit_price) for item in order.items] == [
        ("Pizza", 2, Decimal("10.00")),
        ("Tiramisu", 1, Decimal("5.00")),
    ]
    assert seed.count("courier_assignments", order_id=placed.order_id, status="DELIVERED") == 1
    assert seed.scalar(
        "SELECT delivered_at FROM courier_assignments WHERE order_id = ?", placed.order_id
    )
    assert seed.count("payments", order_id=placed.order_id, status="COMPLETED") == 1


def test_total_equals_sum_of_line_items(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER")
    seed.menu_item(marketplace.restaurant_id, "Espresso", "1.15", menu_item_id=23)

    placed = OrderService(connection_factory).place_order(
        _command(marketplace, items=[OrderLine(23, 3), OrderLine(marketplace.item_b, 1)])
    )

    assert placed.total_amount == Decimal("8.45")
    order = OrderRepository(connection_factory).get_order(placed.order_id)
    assert sum(item.line_total for item in order.items) == order.total_amount


def test_item_from_another_restaurant_rolls_back_everything(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER", user_id=9)

    with pytest.raises(MenuItemUnavailable) as excinfo:
        OrderService(connection_factory).place_order(
            _command(
                marketplace,
                items=[OrderLine(marketplace.item_a, 2), OrderLine(marketplace.foreign_item, 1)],
            )
        )

    assert excinfo.value.status_code == 400
    assert str(excinfo.value) == f"Menu item {marketplace.foreign_item} not found or not in this restaurant"
    _assert_nothing_persisted(seed)


def test_unavailable_item_is_rejected(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER")
    sold_out = seed.menu_item(marketplace.restaurant_id, "Lasagna", "12.00", is_available=False)

    with pytest.raises(MenuItemUnavailable, match="is not available"):
        OrderService(connection_factory).place_order(
            _command(marketplace, items=[OrderLine(sold_out, 1)])
        )
    _assert_nothing_persisted(seed)


def test_no_courier_available_rolls_back_and_retry_behaves_identically(
    connection_factory, seed, marketplace
):
    service = OrderService(connection_factory)

    for _ in range(2):
        with pytest.raises(NoCourierAvailable, match="No courier available"):
            service.place_order(_command(marketplace))
        _assert_nothing_persisted(seed)

    seed.user("courier@example.com", "COURIER", user_id=9)
    placed = service.place_order(_command(marketplace))
    assert placed.courier_id == 9


def test_address_of_another_customer_is_rejected(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER")
    mallory = seed.user("mallory@example.com", "CUSTOMER")

    with pytest.raises(InvalidAddress):
        OrderService(connection_factory).place_order(
            _command(marketplace, customer_id=mallory)
        )
    _assert_nothing_persisted(seed)


def test_zero_quantity_is_rejected_inside_the_transaction(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER")

    with pytest.raises(InvalidQuantity):
        OrderService(connection_factory).place_order(
            _command(marketplace, items=[OrderLine(marketplace.item_a, 1), OrderLine(marketplace.item_b, 0)])
        )
    _assert_nothing_persisted(seed)


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"restaurant_id": None}, "Missing order details"),
        ({"address_id": None}, "Missing order details"),
        ({"items": []}, "Missing order details"),
        ({"payment_method": "BITCOIN"}, "Invalid payment_method"),
    ],
)
def test_validation_happens_before_any_connection(marketplace, overrides, message):
    def no_connection():
        raise AssertionError("validation must not open a connection")

    with pytest.raises(ValidationFailed, match=message):
        OrderService(no_connection).place_order(_command(marketplace, **overrides))


def test_price_snapshot_survives_menu_price_change(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER")
    owner = Identity(id=marketplace.owner_id, email="owner@example.com", roles=(Role.RESTAURANT,))
    placed = OrderService(connection_factory).place_order(_command(marketplace))

    repriced = CatalogRepository(connection_factory).update_menu_item(
        owner, marketplace.item_a, price=Decimal("99.99")
    )
    assert repriced.price == Decimal("99.99")

    order = OrderRepository(connection_factory).get_order(placed.order_id)
    assert order.items[0].unit_price == Decimal("10.00")
    assert order.total_amount == Decimal("25.00")

    reordered = OrderService(connection_factory).place_order(
        _command(marketplace, items=[OrderLine(marketplace.item_a, 1)])
    )
    assert reordered.total_amount == Decimal("99.99")


def test_unknown_restaurant_is_rejected_before_anything_is_written(
    connection_factory, seed, marketplace
):
    seed.user("courier@example.com", "COURIER")

    with pytest.raises(RestaurantUnavailable) as excinfo:
        OrderService(connection_factory).place_order(_command(marketplace, restaurant_id=999))

    assert excinfo.value.status_code == 400
    assert str(excinfo.value) == "Restaurant 999 not found"
    _assert_nothing_persisted(seed)


def test_deactivated_restaurant_does_not_take_orders(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER")
    owner = Identity(id=marketplace.owner_id, email="owner@example.com", roles=(Role.RESTAURANT,))
    CatalogRepository(connection_factory).deactivate_restaurant(owner, marketplace.restaurant_id)

    with pytest.raises(RestaurantUnavailable, match="is not accepting orders"):
        OrderService(connection_factory).place_order(_command(marketplace))
    _assert_nothing_persisted(seed)


def test_storage_failure_after_line_items_rolls_back(failing_totals_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER")

    with pytest.raises(sqlite3.OperationalError, match="disk I/O error"):
        OrderService(failing_totals_factory).place_order(_command(marketplace))
    _assert_nothing_persisted(seed)


def test_each_order_gets_exactly_one_assignment_and_payment(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER", user_id=9)
    service = OrderService(connection_factory)

    first = service.place_order(_command(marketplace))
    second = service.place_order(_command(marketplace, payment_method="CASH"))

    for placed in (first, second):
        assert seed.count("courier_assignments", order_id=placed.order_id) == 1
        assert seed.count("payments", order_id=placed.order_id) == 1
    # Delivered assignments leave the courier free for the next order.
    assert second.courier_id == 9


def test_lowest_id_free_courier_is_chosen(connection_factory, seed, marketplace):
    seed.user("slow@example.com", "COURIER", user_id=12)
    seed.user("fast@example.com", "COURIER", user_id=9)
    seed.user("not-a-courier@example.com", "CUSTOMER", user_id=5)

    placed = OrderService(connection_factory).place_order(_command(marketplace))

    assert placed.courier_id == 9


def test_staged_mode_leaves_order_open(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER", user_id=9)
    service = OrderService(connection_factory, mode=FulfillmentMode.STAGED)

    placed = service.place_order(_command(marketplace))

    assert placed.status is OrderStatus.CREATED
    assert placed.payment_status is PaymentStatus.PENDING
    assert seed.count("courier_assignments", order_id=placed.order_id, status="ASSIGNED") == 1
    assert seed.scalar(
        "SELECT delivered_at FROM courier_assignments WHERE order_id = ?", placed.order_id
    ) is None


def test_staged_mode_busy_courier_is_skipped(connection_factory, seed, marketplace):
    seed.user("first@example.com", "COURIER", user_id=9)
    seed.user("second@example.com", "COURIER", user_id=10)
    service = OrderService(connection_factory, mode=FulfillmentMode.STAGED)

    first = service.place_order(_command(marketplace))
    second = service.place_order(_command(marketplace))

    assert (first.courier_id, second.courier_id) == (9, 10)
    with pytest.raises(NoCourierAvailable):
        service.place_order(_command(marketplace))
    assert seed.count("orders") == 2


def test_serialized_courier_selection_places_orders(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER", user_id=9)
    service = OrderService(
        connection_factory, mode=FulfillmentMode.STAGED, serialize_courier_selection=True
    )

    placed = service.place_order(_command(marketplace))

    assert placed.courier_id == 9


def test_concurrent_placements_never_share_the_last_courier(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER", user_id=9)
    service = OrderService(
        connection_factory, mode=FulfillmentMode.STAGED, serialize_courier_selection=True
    )
    start = threading.Barrier(2)
    outcomes = []

    def place():
        start.wait()
        try:
            outcomes.append(service.place_order(_command(marketplace)))
        except NoCourierAvailable as exc:
            outcomes.append(exc)

    workers = [threading.Thread(target=place) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=30)

    placed = [outcome for outcome in outcomes if isinstance(outcome, PlacedOrder)]
    rejected = [outcome for outcome in outcomes if isinstance(outcome, NoCourierAvailable)]
    assert len(placed) == 1
    assert len(rejected) == 1
    assert placed[0].courier_id == 9
    assert seed.count("courier_assignments", courier_id=9, status="ASSIGNED") == 1
    assert seed.count("orders") == 1
    assert seed.count("order_items", order_id=placed[0].order_id) == 2


def test_cancel_frees_courier_and_fails_pending_payment(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER", user_id=9)
    service = OrderService(connection_factory, mode=FulfillmentMode.STAGED)
    placed = service.place_order(_command(marketplace))

    order = service.cancel_order(marketplace.customer_id, placed.order_id)

    assert order.status == "CANCELLED"
    assert seed.count("courier_assignments", order_id=placed.order_id) == 0
    assert seed.count("payments", order_id=placed.order_id, status="FAILED") == 1
    assert service.place_order(_command(marketplace)).courier_id == 9


def test_cancel_delivered_order_is_rejected(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER")
    service = OrderService(connection_factory)
    placed = service.place_order(_command(marketplace))

    with pytest.raises(ValidationFailed, match="Cannot cancel delivered order"):
        service.cancel_order(marketplace.customer_id, placed.order_id)


def test_cancel_someone_elses_order_is_not_found(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER")
    service = OrderService(connection_factory, mode=FulfillmentMode.STAGED)
    placed = service.place_order(_command(marketplace))

    with pytest.raises(NotFound):
        service.cancel_order(marketplace.customer_id + 100, placed.order_id)


def test_restaurant_owner_moves_order_through_kitchen(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER")
    service = OrderService(connection_factory, mode=FulfillmentMode.STAGED)
    placed = service.place_order(_command(marketplace))
    owner = Identity(id=marketplace.owner_id, email="owner@example.com", roles=(Role.RESTAURANT,))

    assert service.update_order_status(owner, placed.order_id, "PREPARING").status == "PREPARING"
    assert service.update_order_status(owner, placed.order_id, "READY").status == "READY"


def test_order_status_rules(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER")
    service = OrderService(connection_factory, mode=FulfillmentMode.STAGED)
    placed = service.place_order(_command(marketplace))
    owner = Identity(id=marketplace.owner_id, email="owner@example.com", roles=(Role.RESTAURANT,))
    stranger = Identity(id=999, email="other@example.com", roles=(Role.RESTAURANT,))

    with pytest.raises(ValidationFailed, match="Invalid status"):
        service.update_order_status(owner, placed.order_id, "SHIPPED")
    with pytest.raises(ValidationFailed, match="courier assignment"):
        service.update_order_status(owner, placed.order_id, "DELIVERED")
    with pytest.raises(NotFound):
        service.update_order_status(owner, 4242, "READY")
    with pytest.raises(Forbidden):
        service.update_order_status(stranger, placed.order_id, "READY")

    cancelled = service.update_order_status(owner, placed.order_id, "CANCELLED")
    assert cancelled.status == "CANCELLED"
    assert seed.count("courier_assignments", order_id=placed.order_id) == 0
    with pytest.raises(Conflict):
        service.update_order_status(owner, placed.order_id, "PREPARING")


def test_list_customer_orders_newest_first(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER")
    service = OrderService(connection_factory)
    first = service.place_order(_command(marketplace))
    second = service.place_order(_command(marketplace))

    orders = OrderRepository(connection_factory).list_customer_orders(marketplace.customer_id)

    assert [order.id for order in orders][:2] == [second.order_id, first.order_id]
    assert orders[0].restaurant_name == "Trattoria"
