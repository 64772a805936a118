from __future__ import annotations


class DeliveryServiceError(Exception):
    """Base class for errors rendered as ``{"error": message}`` to clients."""

    status_code = 400


class ValidationFailed(DeliveryServiceError):
    """Raised for missing or malformed input before any transaction is opened."""


class InvalidAddress(DeliveryServiceError):
    """Raised when an address is unknown or owned by somebody else."""

    def __init__(self, message: str = "Invalid address_id (not found or not yours)"):
        super().__init__(message)


class RestaurantUnavailable(DeliveryServiceError):
    def __init__(self, restaurant_id: int, reason: str = "not found"):
        super().__init__(f"Restaurant {restaurant_id} {reason}")
        self.restaurant_id = restaurant_id


class MenuItemUnavailable(DeliveryServiceError):
    def __init__(self, menu_item_id: int, reason: str = "not found or not in this restaurant"):
        super().__init__(f"Menu item {menu_item_id} {reason}")
        self.menu_item_id = menu_item_id


class InvalidQuantity(DeliveryServiceError):
    def __init__(self, message: str = "Each item must include menu_item_id and quantity > 0"):
        super().__init__(message)


class NoCourierAvailable(DeliveryServiceError):
    def __init__(self, message: str = "No courier available"):
        super().__init__(message)


class AuthenticationFailed(DeliveryServiceError):
    status_code = 401


class Forbidden(DeliveryServiceError):
    status_code = 403


class NotFound(DeliveryServiceError):
    status_code = 404


class Conflict(DeliveryServiceError):
    status_code = 409
