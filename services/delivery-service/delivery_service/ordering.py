from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from .auth import Identity
from .database import ConnectionFactory, insert_returning_id, placeholder_for, transaction
from .domain import (
    ACTIVE_ASSIGNMENT_STATUSES,
    TERMINAL_ORDER_STATUSES,
    AssignmentStatus,
    FulfillmentMode,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Role,
    to_money,
)
from .errors import (
    Conflict,
    DeliveryServiceError,
    Forbidden,
    InvalidAddress,
    InvalidQuantity,
    MenuItemUnavailable,
    NoCourierAvailable,
    NotFound,
    RestaurantUnavailable,
    ValidationFailed,
)
from .repository import OrderRecord, OrderRepository

logger = logging.getLogger("delivery-service.orders")

COURIER_DRIVEN_STATUSES = frozenset({OrderStatus.PICKED_UP, OrderStatus.DELIVERED})


@dataclass
class OrderLine:
    menu_item_id: Optional[int]
    quantity: Optional[int]


@dataclass
class PlaceOrderCommand:
    customer_id: int
    restaurant_id: Optional[int]
    address_id: Optional[int]
    payment_method: Optional[str]
    items: List[OrderLine] = field(default_factory=list)


@dataclass(frozen=True)
class PlacedOrder:
    order_id: int
    total_amount: Decimal
    courier_id: int
    status: OrderStatus
    payment_status: PaymentStatus


class OrderService:
    """Places orders atomically and drives their customer/restaurant-side status."""

    def __init__(
        self,
        connection_factory: ConnectionFactory,
        mode: FulfillmentMode = FulfillmentMode.INSTANT,
        serialize_courier_selection: bool = False,
    ):
        self._connection_factory = connection_factory
        self._mode = mode
        self._serialize = serialize_courier_selection
        self._orders = OrderRepository(connection_factory)

    def place_order(self, command: PlaceOrderCommand) -> PlacedOrder:
        method = _validate(command)
        try:
            with transaction(self._connection_factory, exclusive=self._serialize) as conn:
                placed = self._place(conn, command, method)
        except DeliveryServiceError as exc:
            logger.warning(
                "Order rejected customer=%s restaurant=%s: %s",
                command.customer_id,
                command.restaurant_id,
                exc,
            )
            raise

        logger.info(
            "Order placed id=%s customer=%s total=%s courier=%s status=%s",
            placed.order_id,
            command.customer_id,
            placed.total_amount,
            placed.courier_id,
            placed.status.value,
        )
        return placed

    def _place(self, conn, command: PlaceOrderCommand, method: PaymentMethod) -> PlacedOrder:
        placeholder = placeholder_for(conn)
        instant = self._mode is FulfillmentMode.INSTANT
        now = _now()

        address = conn.execute(
            f"SELECT id FROM user_addresses WHERE id = {placeholder} AND user_id = {placeholder};",
            (command.address_id, command.customer_id),
        ).fetchone()
        if address is None:
            raise InvalidAddress()

        restaurant = conn.execute(
            f"SELECT is_active FROM restaurants WHERE id = {placeholder};",
            (command.restaurant_id,),
        ).fetchone()
        if restaurant is None:
            raise RestaurantUnavailable(command.restaurant_id)
        if not restaurant["is_active"]:
            raise RestaurantUnavailable(command.restaurant_id, "is not accepting orders")

        order_id = insert_returning_id(
            conn,
            f"""
            INSERT INTO orders (customer_id, restaurant_id, address_id, status, created_at, updated_at)
            VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder})
            RETURNING id;
            """,
            (
                command.customer_id,
                command.restaurant_id,
                command.address_id,
                OrderStatus.CREATED.value,
                now,
                now,
            ),
        )

        total = Decimal("0.00")
        for line in command.items:
            if not line.menu_item_id or line.quantity is None or line.quantity <= 0:
                raise InvalidQuantity()
            menu_item = conn.execute(
                f"""
                SELECT price, is_available FROM menu_items
                WHERE id = {placeholder} AND restaurant_id = {placeholder};
                """,
                (line.menu_item_id, command.restaurant_id),
            ).fetchone()
            if menu_item is None:
                raise MenuItemUnavailable(line.menu_item_id)
            if not menu_item["is_available"]:
                raise MenuItemUnavailable(line.menu_item_id, "is not available")
            unit_price = to_money(menu_item["price"])
            total += unit_price * line.quantity
            conn.execute(
                f"""
                INSERT INTO order_items (order_id, menu_item_id, quantity, unit_price)
                VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder});
                """,
                (order_id, line.menu_item_id, line.quantity, unit_price),
            )

        order_status = OrderStatus.DELIVERED if instant else OrderStatus.CREATED
        conn.execute(
            f"""
            UPDATE orders
            SET total_amount = {placeholder}, status = {placeholder}, updated_at = {placeholder}
            WHERE id = {placeholder};
            """,
            (total, order_status.value, now, order_id),
        )

        courier_id = _select_available_courier(conn)
        if courier_id is None:
            raise NoCourierAvailable()

        assignment_status = AssignmentStatus.DELIVERED if instant else AssignmentStatus.ASSIGNED
        conn.execute(
            f"""
            INSERT INTO courier_assignments (order_id, courier_id, status, assigned_at, delivered_at)
            VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder});
            """,
            (order_id, courier_id, assignment_status.value, now, now if instant else None),
        )

        payment_status = PaymentStatus.COMPLETED if instant else PaymentStatus.PENDING
        conn.execute(
            f"""
            INSERT INTO payments (order_id, amount, payment_method, status, created_at)
            VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder})
            ON CONFLICT (order_id) DO UPDATE SET
                amount = excluded.amount,
                payment_method = excluded.payment_method,
                status = excluded.status;
            """,
            (order_id, total, method.value, payment_status.value, now),
        )

        return PlacedOrder(
            order_id=order_id,
            total_amount=total,
            courier_id=courier_id,
            status=order_status,
            payment_status=payment_status,
        )

    def cancel_order(self, customer_id: int, order_id: int) -> OrderRecord:
        with transaction(self._connection_factory) as conn:
            placeholder = placeholder_for(conn)
            row = conn.execute(
                f"SELECT id, status FROM orders WHERE id = {placeholder} AND customer_id = {placeholder};",
                (order_id, customer_id),
            ).fetchone()
            if row is None:
                raise NotFound("Order not found")
            if row["status"] == OrderStatus.DELIVERED.value:
                raise ValidationFailed("Cannot cancel delivered order")

            _cancel(conn, order_id)

        logger.info("Order cancelled id=%s customer=%s", order_id, customer_id)
        return self._orders.get_order(order_id)

    def update_order_status(self, identity: Identity, order_id: int, status: str) -> OrderRecord:
        try:
            target = OrderStatus(status)
        except ValueError:
            allowed = ", ".join(item.value for item in OrderStatus)
            raise ValidationFailed(f"Invalid status, allowed: {allowed}")
        if target in COURIER_DRIVEN_STATUSES:
            raise ValidationFailed(f"Status {target.value} is set through the courier assignment")

        with transaction(self._connection_factory) as conn:
            placeholder = placeholder_for(conn)
            row = conn.execute(
                f"""
                SELECT o.status, r.owner_id
                FROM orders o
                LEFT JOIN restaurants r ON r.id = o.restaurant_id
                WHERE o.id = {placeholder};
                """,
                (order_id,),
            ).fetchone()
            if row is None:
                raise NotFound("Order not found")
            if row["owner_id"] != identity.id and not identity.has_role(Role.ADMIN):
                raise Forbidden("Forbidden")
            if OrderStatus(row["status"]) in TERMINAL_ORDER_STATUSES:
                raise Conflict(f"Order is already {row['status']}")

            if target is OrderStatus.CANCELLED:
                _cancel(conn, order_id)
            else:
                conn.execute(
                    f"UPDATE orders SET status = {placeholder}, updated_at = {placeholder} WHERE id = {placeholder};",
                    (target.value, _now(), order_id),
                )

        logger.info("Order status id=%s -> %s by user=%s", order_id, target.value, identity.id)
        return self._orders.get_order(order_id)


def _validate(command: PlaceOrderCommand) -> PaymentMethod:
    if not command.restaurant_id or not command.address_id or not command.items:
        raise ValidationFailed("Missing order details")
    try:
        return PaymentMethod(command.payment_method)
    except ValueError:
        allowed = ", ".join(item.value for item in PaymentMethod)
        raise ValidationFailed(f"Invalid payment_method, allowed: {allowed}")


def _cancel(conn, order_id: int) -> None:
    placeholder = placeholder_for(conn)
    conn.execute(
        f"UPDATE orders SET status = {placeholder}, updated_at = {placeholder} WHERE id = {placeholder};",
        (OrderStatus.CANCELLED.value, _now(), order_id),
    )
    # Free the courier and void the open payment.
    conn.execute(
        f"""
        DELETE FROM courier_assignments
        WHERE order_id = {placeholder} AND status IN ({placeholder}, {placeholder});
        """,
        (order_id, *(status.value for status in ACTIVE_ASSIGNMENT_STATUSES)),
    )
    conn.execute(
        f"UPDATE payments SET status = {placeholder} WHERE order_id = {placeholder} AND status = {placeholder};",
        (PaymentStatus.FAILED.value, order_id, PaymentStatus.PENDING.value),
    )


def _select_available_courier(conn) -> Optional[int]:
    placeholder = placeholder_for(conn)
    row = conn.execute(
        f"""
        SELECT u.id
        FROM users u
        JOIN user_roles ur ON ur.user_id = u.id
        JOIN roles r ON r.id = ur.role_id
        WHERE r.name = {placeholder}
          AND NOT EXISTS (
              SELECT 1 FROM courier_assignments ca
              WHERE ca.courier_id = u.id
                AND ca.status IN ({placeholder}, {placeholder})
          )
        ORDER BY u.id ASC
        LIMIT 1;
        """,
        (Role.COURIER.value, *(status.value for status in ACTIVE_ASSIGNMENT_STATUSES)),
    ).fetchone()
    return row["id"] if row is not None else None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
