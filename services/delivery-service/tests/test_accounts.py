from __future__ import annotations

from decimal import Decimal

import jwt
import pytest

from delivery_service.accounts import AccountRepository
from delivery_service.auth import Identity, decode_token, generate_token
from delivery_service.catalog import CatalogRepository
from delivery_service.config import load_settings
from delivery_service.domain import FulfillmentMode, Role, has_any_role, to_money
from delivery_service.errors import (
    AuthenticationFailed,
    Conflict,
    Forbidden,
    NotFound,
    ValidationFailed,
)
from delivery_service.ordering import OrderLine, OrderService, PlaceOrderCommand
from delivery_service.ratings import RatingRepository

SECRET = "test-secret"


@pytest.fixture()
def accounts(connection_factory) -> AccountRepository:
    return AccountRepository(connection_factory)


def test_register_and_authenticate(accounts):
    user = accounts.register("Alice Rossi", "alice@example.com", "s3cret", Role.CUSTOMER)

    identity = accounts.authenticate("alice@example.com", "s3cret")

    assert identity.id == user.id
    assert identity.roles == (Role.CUSTOMER,)
    with pytest.raises(AuthenticationFailed, match="Invalid credentials"):
        accounts.authenticate("alice@example.com", "wrong")
    with pytest.raises(AuthenticationFailed):
        accounts.authenticate("nobody@example.com", "s3cret")


def test_password_is_stored_hashed(accounts, seed):
    accounts.register("Alice Rossi", "alice@example.com", "s3cret", Role.CUSTOMER)

    stored = seed.scalar("SELECT password FROM users WHERE email = ?", "alice@example.com")

    assert stored != "s3cret"
    assert stored.startswith("$2")


def test_register_rejects_duplicates_and_missing_fields(accounts):
    accounts.register("Alice Rossi", "alice@example.com", "s3cret", Role.CUSTOMER)

    with pytest.raises(Conflict, match="User already exists"):
        accounts.register("Alice Again", "alice@example.com", "other", Role.CUSTOMER)
    with pytest.raises(ValidationFailed, match="Missing required fields"):
        accounts.register("", "bob@example.com", "pw", Role.CUSTOMER)


def test_login_for_a_role_the_user_does_not_hold(accounts):
    accounts.register("Carlo", "carlo@example.com", "pw", Role.COURIER)

    with pytest.raises(Forbidden, match="role=RESTAURANT"):
        accounts.authenticate("carlo@example.com", "pw", Role.RESTAURANT)
    assert accounts.authenticate("carlo@example.com", "pw", Role.COURIER).has_role(Role.COURIER)


def test_assign_role_is_idempotent(accounts):
    accounts.register("Carlo", "carlo@example.com", "pw", Role.CUSTOMER)

    accounts.assign_role("carlo@example.com", Role.COURIER)
    accounts.assign_role("carlo@example.com", Role.COURIER)

    roles = accounts.authenticate("carlo@example.com", "pw").roles
    assert sorted(role.value for role in roles) == ["COURIER", "CUSTOMER"]
    with pytest.raises(NotFound):
        accounts.assign_role("ghost@example.com", Role.ADMIN)


def test_seed_roles_twice_keeps_one_row_per_role(accounts, seed):
    accounts.seed_roles()
    accounts.seed_roles()

    assert seed.count("roles") == len(Role)


def test_new_default_address_replaces_previous_default(accounts):
    user = accounts.register("Alice Rossi", "alice@example.com", "s3cret", Role.CUSTOMER)

    first = accounts.add_address(user.id, "Via Roma 1", "Milano", is_default=True)
    second = accounts.add_address(user.id, "Corso Italia 5", "Torino", title="Work", is_default=True)

    listed = accounts.list_addresses(user.id)
    assert [address.id for address in listed] == [second.id, first.id]
    assert [address.is_default for address in listed] == [True, False]
    assert first.title == "Home"
    with pytest.raises(ValidationFailed):
        accounts.add_address(user.id, "", "Milano")


def test_update_address_changes_given_fields_and_moves_default(accounts):
    user = accounts.register("Alice Rossi", "alice@example.com", "s3cret", Role.CUSTOMER)
    home = accounts.add_address(user.id, "Via Roma 1", "Milano", is_default=True)
    work = accounts.add_address(user.id, "Corso Italia 5", "Torino", title="Work")

    moved = accounts.update_address(user.id, work.id, street="Corso Italia 7", is_default=True)

    assert (moved.title, moved.street, moved.city, moved.is_default) == ("Work", "Corso Italia 7", "Torino", True)
    defaults = {address.id: address.is_default for address in accounts.list_addresses(user.id)}
    assert defaults == {home.id: False, work.id: True}
    assert accounts.update_address(user.id, home.id, title="Casa").is_default is False


def test_addresses_of_other_users_cannot_be_changed(accounts):
    alice = accounts.register("Alice Rossi", "alice@example.com", "s3cret", Role.CUSTOMER)
    mallory = accounts.register("Mallory", "mallory@example.com", "s3cret", Role.CUSTOMER)
    home = accounts.add_address(alice.id, "Via Roma 1", "Milano")

    with pytest.raises(NotFound, match="Address not found"):
        accounts.update_address(mallory.id, home.id, city="Roma")
    with pytest.raises(NotFound):
        accounts.delete_address(mallory.id, home.id)

    accounts.delete_address(alice.id, home.id)

    assert accounts.list_addresses(alice.id) == []


def test_token_round_trip():
    identity = Identity(id=5, email="eve@example.com", roles=(Role.CUSTOMER, Role.COURIER))

    decoded = decode_token(generate_token(identity, SECRET, 1), SECRET)

    assert decoded == identity


def test_expired_and_forged_tokens_are_rejected():
    identity = Identity(id=5, email="eve@example.com", roles=(Role.CUSTOMER,))

    with pytest.raises(AuthenticationFailed, match="Token expired"):
        decode_token(generate_token(identity, SECRET, -1), SECRET)
    with pytest.raises(AuthenticationFailed, match="Invalid or expired token"):
        decode_token(generate_token(identity, "another-secret", 1), SECRET)
    with pytest.raises(AuthenticationFailed, match="Invalid or expired token"):
        decode_token(jwt.encode({"email": "x@example.com"}, SECRET, algorithm="HS256"), SECRET)


@pytest.mark.parametrize(
    "required, held, expected",
    [
        ({Role.ADMIN}, [Role.ADMIN], True),
        ({Role.RESTAURANT, Role.ADMIN}, ["ADMIN"], True),
        ({Role.COURIER}, [Role.CUSTOMER], False),
        ({Role.COURIER}, [], False),
        ({Role.COURIER}, ["SUPERUSER"], False),
    ],
)
def test_has_any_role(required, held, expected):
    assert has_any_role(required, held) is expected


def test_to_money_rounds_half_up():
    assert to_money("2.345") == Decimal("2.35")
    assert to_money(10) == Decimal("10.00")
    assert to_money(None) == Decimal("0.00")


def test_load_settings_reads_environment():
    settings = load_settings(
        {
            "DATABASE_URL": "sqlite:///tmp/x.db",
            "FULFILLMENT_MODE": "STAGED",
            "SERIALIZE_COURIER_SELECTION": "yes",
            "ALLOWED_ORIGINS": "http://a.test, http://b.test",
            "log_level": "ignored",
        }
    )

    assert settings.database_url == "sqlite:///tmp/x.db"
    assert settings.fulfillment_mode is FulfillmentMode.STAGED
    assert settings.serialize_courier_selection is True
    assert settings.allowed_origins == ("http://a.test", "http://b.test")
    assert settings.jwt_expires_hours == 168


def test_load_settings_builds_postgres_url_and_rejects_unknown_mode():
    settings = load_settings({"DB_HOST": "db", "DB_NAME": "food"})
    assert settings.database_url == "postgresql://delivery:delivery@db:5432/food"

    with pytest.raises(RuntimeError, match="FULFILLMENT_MODE"):
        load_settings({"FULFILLMENT_MODE": "teleport"})


def test_menu_management_is_owner_only(connection_factory, marketplace):
    catalog = CatalogRepository(connection_factory)
    owner = Identity(id=marketplace.owner_id, email="owner@example.com", roles=(Role.RESTAURANT,))
    rival = Identity(id=marketplace.customer_id, email="alice@example.com", roles=(Role.RESTAURANT,))

    item = catalog.add_menu_item(owner, marketplace.restaurant_id, "Calzone", Decimal("8.5"))

    assert item.price == Decimal("8.50")
    names = [entry.name for entry in catalog.get_menu(marketplace.restaurant_id)]
    assert names == ["Calzone", "Pizza", "Tiramisu"]
    with pytest.raises(Forbidden):
        catalog.add_menu_item(rival, marketplace.restaurant_id, "Fake", Decimal("1"))
    with pytest.raises(NotFound):
        catalog.get_menu(999)


def test_create_and_list_restaurants(connection_factory, marketplace):
    catalog = CatalogRepository(connection_factory)

    created = catalog.create_restaurant(marketplace.owner_id, "Burger Joint", "Smash burgers")

    assert created.is_active
    assert [r.name for r in catalog.list_restaurants()] == ["Burger Joint", "Sushi Bar", "Trattoria"]


def test_ratings_only_for_delivered_orders(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER")
    command = PlaceOrderCommand(
        customer_id=marketplace.customer_id,
        restaurant_id=marketplace.restaurant_id,
        address_id=marketplace.address_id,
        payment_method="CASH",
        items=[OrderLine(marketplace.item_a, 1)],
    )
    delivered = OrderService(connection_factory).place_order(command)
    open_order = OrderService(connection_factory, mode=FulfillmentMode.STAGED).place_order(command)
    ratings = RatingRepository(connection_factory)

    ratings.add_rating(marketplace.customer_id, delivered.order_id, 4, "Good")
    updated = ratings.add_rating(marketplace.customer_id, delivered.order_id, 5, "Great")

    assert (updated.score, updated.comment) == (5, "Great")
    listed = ratings.list_ratings(marketplace.restaurant_id)
    assert len(listed) == 1
    assert listed[0].customer_name == "Alice"
    with pytest.raises(ValidationFailed, match="Can only rate delivered orders"):
        ratings.add_rating(marketplace.customer_id, open_order.order_id, 3)
    with pytest.raises(ValidationFailed):
        ratings.add_rating(marketplace.customer_id, delivered.order_id, 6)
    with pytest.raises(Forbidden):
        ratings.add_rating(marketplace.owner_id, delivered.order_id, 1)


def test_customer_deletes_own_rating(connection_factory, seed, marketplace):
    seed.user("courier@example.com", "COURIER")
    delivered = OrderService(connection_factory).place_order(
        PlaceOrderCommand(
            customer_id=marketplace.customer_id,
            restaurant_id=marketplace.restaurant_id,
            address_id=marketplace.address_id,
            payment_method="CASH",
            items=[OrderLine(marketplace.item_a, 1)],
        )
    )
    ratings = RatingRepository(connection_factory)
    rating = ratings.add_rating(marketplace.customer_id, delivered.order_id, 2)

    with pytest.raises(NotFound, match="Rating not found"):
        ratings.delete_rating(marketplace.owner_id, rating.id)
    ratings.delete_rating(marketplace.customer_id, rating.id)

    assert ratings.list_ratings(marketplace.restaurant_id) == []
    with pytest.raises(NotFound):
        ratings.delete_rating(marketplace.customer_id, rating.id)
