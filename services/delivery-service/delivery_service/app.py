from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import schemas
from .accounts import AccountRepository
from .analytics import AnalyticsRepository
from .auth import Identity, generate_token, get_identity, require_roles
from .catalog import CatalogRepository
from .config import Settings, load_settings
from .couriers import CourierService
from .database import ConnectionFactory, init_db, make_connection_factory
from .domain import Role
from .errors import DeliveryServiceError, NotFound, ValidationFailed
from .ordering import OrderLine, OrderService, PlaceOrderCommand
from .payments import PaymentService
from .ratings import RatingRepository
from .repository import OrderRepository

logger = logging.getLogger("delivery-service")

REGISTERABLE_ROLES = {
    "customer": Role.CUSTOMER,
    "restaurant": Role.RESTAURANT,
    "courier": Role.COURIER,
}


def get_accounts(request: Request) -> AccountRepository:
    return AccountRepository(request.app.state.connection_factory)


def get_catalog(request: Request) -> CatalogRepository:
    return CatalogRepository(request.app.state.connection_factory)


def get_order_repository(request: Request) -> OrderRepository:
    return OrderRepository(request.app.state.connection_factory)


def get_order_service(request: Request) -> OrderService:
    settings: Settings = request.app.state.settings
    return OrderService(
        request.app.state.connection_factory,
        mode=settings.fulfillment_mode,
        serialize_courier_selection=settings.serialize_courier_selection,
    )


def get_courier_service(request: Request) -> CourierService:
    return CourierService(request.app.state.connection_factory)


def get_payment_service(request: Request) -> PaymentService:
    return PaymentService(request.app.state.connection_factory)


def get_ratings(request: Request) -> RatingRepository:
    return RatingRepository(request.app.state.connection_factory)


def get_analytics(request: Request) -> AnalyticsRepository:
    return AnalyticsRepository(request.app.state.connection_factory)


def create_app(
    settings: Optional[Settings] = None,
    connection_factory: Optional[ConnectionFactory] = None,
) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if connection_factory is None:
        connection_factory = make_connection_factory(
            settings.database_url,
            retries=settings.db_connect_max_retries,
            delay=settings.db_connect_retry_delay,
        )
    init_db(connection_factory)

    app = FastAPI(
        title="Delivery Service",
        version="0.1.0",
        description="Food-delivery marketplace: restaurants, orders, couriers and payments.",
    )
    app.state.settings = settings
    app.state.connection_factory = connection_factory
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    logger.info("Delivery service ready (fulfillment mode=%s)", settings.fulfillment_mode.value)

    @app.exception_handler(DeliveryServiceError)
    async def service_error(request: Request, exc: DeliveryServiceError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"loc": [str(part) for part in error["loc"]], "msg": error["msg"]}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid request", "details": details},
        )

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.get("/healthz", response_model=schemas.HealthResponse, tags=["system"])
    async def healthz() -> schemas.HealthResponse:
        return schemas.HealthResponse(status="ok")

    # -- auth -------------------------------------------------------------

    @app.post(
        "/auth/register/{role}",
        response_model=schemas.RegisterResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["auth"],
    )
    def register(
        role: str,
        payload: schemas.RegisterRequest,
        accounts: AccountRepository = Depends(get_accounts),
    ) -> schemas.RegisterResponse:
        role_name = REGISTERABLE_ROLES.get(role.lower())
        if role_name is None:
            raise ValidationFailed(f"Cannot register with role {role!r}")
        user = accounts.register(
            payload.full_name, payload.email, payload.password, role_name, phone=payload.phone
        )
        return schemas.RegisterResponse(
            message=f"{role_name.value} registered successfully",
            user=schemas.UserSummary.model_validate(user),
            role=role_name,
        )

    @app.post("/auth/login", response_model=schemas.TokenResponse, tags=["auth"])
    def login(
        payload: schemas.LoginRequest,
        request: Request,
        accounts: AccountRepository = Depends(get_accounts),
    ) -> schemas.TokenResponse:
        identity = accounts.authenticate(payload.email, payload.password, payload.role)
        token = generate_token(
            identity,
            request.app.state.settings.jwt_secret,
            request.app.state.settings.jwt_expires_hours,
        )
        return schemas.TokenResponse(
            token=token, user=schemas.IdentitySummary.model_validate(identity)
        )

    @app.post("/admin/seed-roles", response_model=schemas.MessageResponse, tags=["admin"])
    def seed_roles(
        _: Identity = Depends(require_roles(Role.ADMIN)),
        accounts: AccountRepository = Depends(get_accounts),
    ) -> schemas.MessageResponse:
        accounts.seed_roles()
        return schemas.MessageResponse(message="Roles seeded (idempotent)")

    @app.post("/admin/assign-role", response_model=schemas.MessageResponse, tags=["admin"])
    def assign_role(
        payload: schemas.AssignRoleRequest,
        _: Identity = Depends(require_roles(Role.ADMIN)),
        accounts: AccountRepository = Depends(get_accounts),
    ) -> schemas.MessageResponse:
        accounts.assign_role(payload.email, payload.role)
        return schemas.MessageResponse(
            message=f"Role {payload.role.value} assigned to {payload.email}"
        )

    # -- addresses --------------------------------------------------------

    @app.get("/users/addresses", response_model=List[schemas.Address], tags=["users"])
    def list_addresses(
        identity: Identity = Depends(require_roles(Role.CUSTOMER)),
        accounts: AccountRepository = Depends(get_accounts),
    ) -> List[schemas.Address]:
        return [schemas.Address.model_validate(row) for row in accounts.list_addresses(identity.id)]

    @app.post(
        "/users/addresses",
        response_model=schemas.Address,
        status_code=status.HTTP_201_CREATED,
        tags=["users"],
    )
    def add_address(
        payload: schemas.AddressRequest,
        identity: Identity = Depends(require_roles(Role.CUSTOMER)),
        accounts: AccountRepository = Depends(get_accounts),
    ) -> schemas.Address:
        record = accounts.add_address(identity.id, **payload.model_dump())
        return schemas.Address.model_validate(record)

    @app.put("/users/addresses/{address_id}", response_model=schemas.Address, tags=["users"])
    def update_address(
        address_id: int,
        payload: schemas.AddressUpdateRequest,
        identity: Identity = Depends(require_roles(Role.CUSTOMER)),
        accounts: AccountRepository = Depends(get_accounts),
    ) -> schemas.Address:
        record = accounts.update_address(identity.id, address_id, **payload.model_dump())
        return schemas.Address.model_validate(record)

    @app.delete(
        "/users/addresses/{address_id}", response_model=schemas.DeletedResponse, tags=["users"]
    )
    def delete_address(
        address_id: int,
        identity: Identity = Depends(require_roles(Role.CUSTOMER)),
        accounts: AccountRepository = Depends(get_accounts),
    ) -> schemas.DeletedResponse:
        accounts.delete_address(identity.id, address_id)
        return schemas.DeletedResponse(message="Address deleted", id=address_id)

    # -- catalog ----------------------------------------------------------

    @app.get("/restaurants", response_model=List[schemas.Restaurant], tags=["restaurants"])
    def list_restaurants(
        catalog: CatalogRepository = Depends(get_catalog),
    ) -> List[schemas.Restaurant]:
        return [schemas.Restaurant.model_validate(row) for row in catalog.list_restaurants()]

    @app.post(
        "/restaurants",
        response_model=schemas.Restaurant,
        status_code=status.HTTP_201_CREATED,
        tags=["restaurants"],
    )
    def create_restaurant(
        payload: schemas.RestaurantRequest,
        identity: Identity = Depends(require_roles(Role.RESTAURANT, Role.ADMIN)),
        catalog: CatalogRepository = Depends(get_catalog),
    ) -> schemas.Restaurant:
        record = catalog.create_restaurant(identity.id, payload.name, payload.description)
        return schemas.Restaurant.model_validate(record)

    # Must precede /restaurants/{restaurant_id}.
    @app.get("/restaurants/my", response_model=List[schemas.Restaurant], tags=["restaurants"])
    def my_restaurants(
        identity: Identity = Depends(require_roles(Role.RESTAURANT, Role.ADMIN)),
        catalog: CatalogRepository = Depends(get_catalog),
    ) -> List[schemas.Restaurant]:
        records = catalog.list_owned_restaurants(identity)
        return [schemas.Restaurant.model_validate(record) for record in records]

    @app.get(
        "/restaurants/{restaurant_id}", response_model=schemas.Restaurant, tags=["restaurants"]
    )
    def get_restaurant(
        restaurant_id: int, catalog: CatalogRepository = Depends(get_catalog)
    ) -> schemas.Restaurant:
        return schemas.Restaurant.model_validate(catalog.get_restaurant(restaurant_id))

    @app.put(
        "/restaurants/{restaurant_id}", response_model=schemas.Restaurant, tags=["restaurants"]
    )
    def update_restaurant(
        restaurant_id: int,
        payload: schemas.RestaurantUpdateRequest,
        identity: Identity = Depends(require_roles(Role.RESTAURANT, Role.ADMIN)),
        catalog: CatalogRepository = Depends(get_catalog),
    ) -> schemas.Restaurant:
        record = catalog.update_restaurant(identity, restaurant_id, **payload.model_dump())
        return schemas.Restaurant.model_validate(record)

    @app.delete(
        "/restaurants/{restaurant_id}", response_model=schemas.Restaurant, tags=["restaurants"]
    )
    def deactivate_restaurant(
        restaurant_id: int,
        identity: Identity = Depends(require_roles(Role.RESTAURANT, Role.ADMIN)),
        catalog: CatalogRepository = Depends(get_catalog),
    ) -> schemas.Restaurant:
        record = catalog.deactivate_restaurant(identity, restaurant_id)
        return schemas.Restaurant.model_validate(record)

    @app.put(
        "/restaurants/{restaurant_id}/address",
        response_model=schemas.RestaurantAddress,
        tags=["restaurants"],
    )
    def set_restaurant_address(
        restaurant_id: int,
        payload: schemas.RestaurantAddressRequest,
        identity: Identity = Depends(require_roles(Role.RESTAURANT, Role.ADMIN)),
        catalog: CatalogRepository = Depends(get_catalog),
    ) -> schemas.RestaurantAddress:
        record = catalog.set_restaurant_address(identity, restaurant_id, **payload.model_dump())
        return schemas.RestaurantAddress.model_validate(record)

    @app.get(
        "/restaurants/{restaurant_id}/menu",
        response_model=List[schemas.MenuItem],
        tags=["restaurants"],
    )
    def get_menu(
        restaurant_id: int, catalog: CatalogRepository = Depends(get_catalog)
    ) -> List[schemas.MenuItem]:
        return [schemas.MenuItem.model_validate(row) for row in catalog.get_menu(restaurant_id)]

    @app.post(
        "/restaurants/{restaurant_id}/menu",
        response_model=schemas.MenuItem,
        status_code=status.HTTP_201_CREATED,
        tags=["restaurants"],
    )
    def add_menu_item(
        restaurant_id: int,
        payload: schemas.MenuItemRequest,
        identity: Identity = Depends(require_roles(Role.RESTAURANT, Role.ADMIN)),
        catalog: CatalogRepository = Depends(get_catalog),
    ) -> schemas.MenuItem:
        record = catalog.add_menu_item(
            identity,
            restaurant_id,
            payload.name,
            payload.price,
            description=payload.description,
            is_available=payload.is_available,
            category_ids=payload.category_ids,
        )
        return schemas.MenuItem.model_validate(record)

    @app.put("/menu-items/{menu_item_id}", response_model=schemas.MenuItem, tags=["menu"])
    def update_menu_item(
        menu_item_id: int,
        payload: schemas.MenuItemUpdateRequest,
        identity: Identity = Depends(require_roles(Role.RESTAURANT, Role.ADMIN)),
        catalog: CatalogRepository = Depends(get_catalog),
    ) -> schemas.MenuItem:
        record = catalog.update_menu_item(identity, menu_item_id, **payload.model_dump())
        return schemas.MenuItem.model_validate(record)

    @app.delete(
        "/menu-items/{menu_item_id}", response_model=schemas.DeletedResponse, tags=["menu"]
    )
    def delete_menu_item(
        menu_item_id: int,
        identity: Identity = Depends(require_roles(Role.RESTAURANT, Role.ADMIN)),
        catalog: CatalogRepository = Depends(get_catalog),
    ) -> schemas.DeletedResponse:
        catalog.delete_menu_item(identity, menu_item_id)
        return schemas.DeletedResponse(message="Menu item deleted", id=menu_item_id)

    @app.post(
        "/menu-items/{menu_item_id}/categories", response_model=schemas.MenuItem, tags=["menu"]
    )
    def link_category(
        menu_item_id: int,
        payload: schemas.CategoryLinkRequest,
        identity: Identity = Depends(require_roles(Role.RESTAURANT, Role.ADMIN)),
        catalog: CatalogRepository = Depends(get_catalog),
    ) -> schemas.MenuItem:
        record = catalog.link_category(identity, menu_item_id, payload.category_id)
        return schemas.MenuItem.model_validate(record)

    @app.delete(
        "/menu-items/{menu_item_id}/categories/{category_id}",
        response_model=schemas.MenuItem,
        tags=["menu"],
    )
    def unlink_category(
        menu_item_id: int,
        category_id: int,
        identity: Identity = Depends(require_roles(Role.RESTAURANT, Role.ADMIN)),
        catalog: CatalogRepository = Depends(get_catalog),
    ) -> schemas.MenuItem:
        record = catalog.unlink_category(identity, menu_item_id, category_id)
        return schemas.MenuItem.model_validate(record)

    @app.get("/categories", response_model=List[schemas.Category], tags=["menu"])
    def list_categories(
        catalog: CatalogRepository = Depends(get_catalog),
    ) -> List[schemas.Category]:
        return [schemas.Category.model_validate(row) for row in catalog.list_categories()]

    @app.post(
        "/categories",
        response_model=schemas.Category,
        status_code=status.HTTP_201_CREATED,
        tags=["menu"],
    )
    def create_category(
        payload: schemas.CategoryRequest,
        _: Identity = Depends(require_roles(Role.ADMIN)),
        catalog: CatalogRepository = Depends(get_catalog),
    ) -> schemas.Category:
        return schemas.Category.model_validate(catalog.create_category(payload.name))

    @app.put("/categories/{category_id}", response_model=schemas.Category, tags=["menu"])
    def rename_category(
        category_id: int,
        payload: schemas.CategoryRequest,
        _: Identity = Depends(require_roles(Role.ADMIN)),
        catalog: CatalogRepository = Depends(get_catalog),
    ) -> schemas.Category:
        return schemas.Category.model_validate(catalog.rename_category(category_id, payload.name))

    @app.delete(
        "/categories/{category_id}", response_model=schemas.DeletedResponse, tags=["menu"]
    )
    def delete_category(
        category_id: int,
        _: Identity = Depends(require_roles(Role.ADMIN)),
        catalog: CatalogRepository = Depends(get_catalog),
    ) -> schemas.DeletedResponse:
        catalog.delete_category(category_id)
        return schemas.DeletedResponse(message="Category deleted", id=category_id)

    # -- orders -----------------------------------------------------------

    @app.post(
        "/orders",
        response_model=schemas.OrderPlacement,
        status_code=status.HTTP_201_CREATED,
        tags=["orders"],
    )
    def create_order(
        payload: schemas.CreateOrderRequest,
        identity: Identity = Depends(require_roles(Role.CUSTOMER)),
        orders: OrderService = Depends(get_order_service),
    ) -> schemas.OrderPlacement:
        placed = orders.place_order(
            PlaceOrderCommand(
                customer_id=identity.id,
                restaurant_id=payload.restaurant_id,
                address_id=payload.address_id,
                payment_method=payload.payment_method.value,
                items=[OrderLine(**item.model_dump()) for item in payload.items],
            )
        )
        return schemas.OrderPlacement(
            orderId=placed.order_id,
            totalAmount=placed.total_amount,
            courierId=placed.courier_id,
            status=placed.status,
            payment_status=placed.payment_status.value,
        )

    @app.get("/orders/me", response_model=List[schemas.OrderSummary], tags=["orders"])
    def my_orders(
        limit: int = 50,
        identity: Identity = Depends(get_identity),
        repo: OrderRepository = Depends(get_order_repository),
    ) -> List[schemas.OrderSummary]:
        records = repo.list_customer_orders(identity.id, limit=limit)
        return [schemas.OrderSummary.model_validate(record) for record in records]

    @app.get("/orders/{order_id}", response_model=schemas.OrderSummary, tags=["orders"])
    def get_order(
        order_id: int,
        identity: Identity = Depends(get_identity),
        repo: OrderRepository = Depends(get_order_repository),
    ) -> schemas.OrderSummary:
        record = repo.get_order(order_id)
        if record is None or (
            record.customer_id != identity.id and not identity.has_role(Role.ADMIN)
        ):
            raise NotFound("Order not found")
        return schemas.OrderSummary.model_validate(record)

    @app.put("/orders/{order_id}/cancel", response_model=schemas.OrderSummary, tags=["orders"])
    def cancel_order(
        order_id: int,
        identity: Identity = Depends(require_roles(Role.CUSTOMER)),
        orders: OrderService = Depends(get_order_service),
    ) -> schemas.OrderSummary:
        return schemas.OrderSummary.model_validate(orders.cancel_order(identity.id, order_id))

    @app.put("/orders/{order_id}/status", response_model=schemas.OrderSummary, tags=["orders"])
    def update_order_status(
        order_id: int,
        payload: schemas.UpdateOrderStatusRequest,
        identity: Identity = Depends(require_roles(Role.RESTAURANT, Role.ADMIN)),
        orders: OrderService = Depends(get_order_service),
    ) -> schemas.OrderSummary:
        record = orders.update_order_status(identity, order_id, payload.status.value)
        return schemas.OrderSummary.model_validate(record)

    # -- couriers ---------------------------------------------------------

    @app.post(
        "/courier/assign",
        response_model=schemas.Assignment,
        status_code=status.HTTP_201_CREATED,
        tags=["couriers"],
    )
    def assign_courier(
        payload: schemas.AssignCourierRequest,
        _: Identity = Depends(require_roles(Role.RESTAURANT, Role.ADMIN)),
        couriers: CourierService = Depends(get_courier_service),
    ) -> schemas.Assignment:
        record = couriers.assign_courier(payload.order_id, payload.courier_id)
        return schemas.Assignment.model_validate(record)

    @app.get("/courier/assignments", response_model=List[schemas.Assignment], tags=["couriers"])
    def list_assignments(
        identity: Identity = Depends(require_roles(Role.COURIER, Role.ADMIN)),
        couriers: CourierService = Depends(get_courier_service),
    ) -> List[schemas.Assignment]:
        records = couriers.list_active_assignments(identity.id)
        return [schemas.Assignment.model_validate(record) for record in records]

    @app.get(
        "/courier/assignments/{assignment_id}",
        response_model=schemas.Assignment,
        tags=["couriers"],
    )
    def get_assignment(
        assignment_id: int,
        identity: Identity = Depends(require_roles(Role.COURIER, Role.ADMIN)),
        couriers: CourierService = Depends(get_courier_service),
    ) -> schemas.Assignment:
        return schemas.Assignment.model_validate(couriers.get_assignment(identity, assignment_id))

    @app.put(
        "/courier/assignments/{assignment_id}/status",
        response_model=schemas.Assignment,
        tags=["couriers"],
    )
    def update_assignment_status(
        assignment_id: int,
        payload: schemas.AssignmentStatusRequest,
        identity: Identity = Depends(require_roles(Role.COURIER, Role.ADMIN)),
        couriers: CourierService = Depends(get_courier_service),
    ) -> schemas.Assignment:
        record = couriers.update_assignment_status(identity, assignment_id, payload.status.value)
        return schemas.Assignment.model_validate(record)

    @app.delete(
        "/courier/assignments/{assignment_id}",
        response_model=schemas.DeletedResponse,
        tags=["couriers"],
    )
    def delete_assignment(
        assignment_id: int,
        _: Identity = Depends(require_roles(Role.ADMIN)),
        couriers: CourierService = Depends(get_courier_service),
    ) -> schemas.DeletedResponse:
        couriers.delete_assignment(assignment_id)
        return schemas.DeletedResponse(message="Assignment deleted", id=assignment_id)

    @app.get("/admin/assignments", response_model=List[schemas.Assignment], tags=["admin"])
    def list_all_assignments(
        _: Identity = Depends(require_roles(Role.ADMIN)),
        couriers: CourierService = Depends(get_courier_service),
    ) -> List[schemas.Assignment]:
        return [schemas.Assignment.model_validate(row) for row in couriers.list_all_assignments()]

    # -- payments ---------------------------------------------------------

    @app.post("/payments/pay", response_model=schemas.Payment, tags=["payments"])
    def pay(
        payload: schemas.PayRequest,
        identity: Identity = Depends(require_roles(Role.CUSTOMER)),
        payments: PaymentService = Depends(get_payment_service),
    ) -> schemas.Payment:
        record = payments.complete_payment(identity.id, payload.order_id, payload.payment_method.value)
        return schemas.Payment.model_validate(record)

    @app.get("/payments/by-order/{order_id}", response_model=schemas.Payment, tags=["payments"])
    def payment_for_order(
        order_id: int,
        identity: Identity = Depends(get_identity),
        payments: PaymentService = Depends(get_payment_service),
    ) -> schemas.Payment:
        record = payments.get_payment_for_order(order_id, identity)
        if record is None:
            raise NotFound("Payment not found")
        return schemas.Payment.model_validate(record)

    @app.delete(
        "/payments/by-order/{order_id}", response_model=schemas.DeletedResponse, tags=["payments"]
    )
    def delete_payment(
        order_id: int,
        _: Identity = Depends(require_roles(Role.ADMIN)),
        payments: PaymentService = Depends(get_payment_service),
    ) -> schemas.DeletedResponse:
        payments.delete_payment_for_order(order_id)
        return schemas.DeletedResponse(message="Payment deleted", id=order_id)

    # -- ratings ----------------------------------------------------------

    @app.post(
        "/ratings",
        response_model=schemas.Rating,
        status_code=status.HTTP_201_CREATED,
        tags=["ratings"],
    )
    def add_rating(
        payload: schemas.RatingRequest,
        identity: Identity = Depends(require_roles(Role.CUSTOMER)),
        ratings: RatingRepository = Depends(get_ratings),
    ) -> schemas.Rating:
        record = ratings.add_rating(identity.id, payload.order_id, payload.score, payload.comment)
        return schemas.Rating.model_validate(record)

    @app.get(
        "/ratings/by-restaurant/{restaurant_id}",
        response_model=List[schemas.Rating],
        tags=["ratings"],
    )
    def list_ratings(
        restaurant_id: int, ratings: RatingRepository = Depends(get_ratings)
    ) -> List[schemas.Rating]:
        return [schemas.Rating.model_validate(row) for row in ratings.list_ratings(restaurant_id)]

    @app.delete("/ratings/{rating_id}", response_model=schemas.DeletedResponse, tags=["ratings"])
    def delete_rating(
        rating_id: int,
        identity: Identity = Depends(require_roles(Role.CUSTOMER)),
        ratings: RatingRepository = Depends(get_ratings),
    ) -> schemas.DeletedResponse:
        ratings.delete_rating(identity.id, rating_id)
        return schemas.DeletedResponse(message="Rating deleted", id=rating_id)

    # -- analytics --------------------------------------------------------

    @app.get(
        "/analytics/top-restaurants",
        response_model=List[schemas.RestaurantScore],
        tags=["analytics"],
    )
    def top_restaurants(
        min_ratings: int = Query(default=1, ge=1),
        limit: int = Query(default=10, ge=1, le=100),
        analytics: AnalyticsRepository = Depends(get_analytics),
    ) -> List[schemas.RestaurantScore]:
        records = analytics.top_restaurants(min_ratings=min_ratings, limit=limit)
        return [schemas.RestaurantScore.model_validate(record) for record in records]

    @app.get(
        "/analytics/restaurants/{restaurant_id}/popular-items",
        response_model=List[schemas.PopularItem],
        tags=["analytics"],
    )
    def popular_items(
        restaurant_id: int,
        limit: int = Query(default=5, ge=1, le=100),
        analytics: AnalyticsRepository = Depends(get_analytics),
    ) -> List[schemas.PopularItem]:
        records = analytics.popular_items(restaurant_id, limit=limit)
        return [schemas.PopularItem.model_validate(record) for record in records]

    @app.get(
        "/analytics/me/order-history",
        response_model=List[schemas.OrderHistoryEntry],
        tags=["analytics"],
    )
    def order_history(
        identity: Identity = Depends(get_identity),
        analytics: AnalyticsRepository = Depends(get_analytics),
    ) -> List[schemas.OrderHistoryEntry]:
        records = analytics.order_history(identity.id)
        return [schemas.OrderHistoryEntry.model_validate(record) for record in records]

    return app
