"""
Typed failures raised by the cart, checkout and order services.

Every error carries the HTTP status it maps to; main.py turns them into
``{"detail": ...}`` responses with a single exception handler.
"""


class ShopError(Exception):
    status_code = 500
    detail = "Server error"

    def __init__(self, detail: str = None):
        self.detail = detail or self.detail
        super().__init__(self.detail)


# Validation

class ValidationFailed(ShopError):
    status_code = 400
    detail = "Invalid request"


class InvalidStatusValue(ValidationFailed):
    detail = "Invalid status value"


class InvalidRating(ValidationFailed):
    detail = "Rating must be between 1 and 5"


# Not found

class NotFound(ShopError):
    status_code = 404
    detail = "Not found"


class OrderNotFound(NotFound):
    detail = "Order not found"


class ProductNotFound(NotFound):
    detail = "Product not found"


class VariantNotFound(NotFound):
    detail = "Variant not found"


class UserNotFound(NotFound):
    detail = "User not found"


class ItemNotFound(NotFound):
    detail = "Item not found in order"


class CartEntryNotFound(NotFound):
    detail = "Item not found in cart"


# Conflicts

class OutOfStock(ShopError):
    status_code = 400
    detail = "Insufficient stock"


class InvalidStatusTransition(ShopError):
    status_code = 400
    detail = "Order cannot be cancelled at this stage"


class ItemAlreadyCancelled(ShopError):
    status_code = 400
    detail = "Item is already cancelled"


class DuplicateVariantConflict(ShopError):
    status_code = 409
    detail = "Another cart entry already holds this variant"


class ConcurrentUpdateError(ShopError):
    status_code = 409
    detail = "Document was modified concurrently, retry the request"


# External

class GatewayError(ShopError):
    status_code = 502
    detail = "Payment gateway request failed"


class RefundGatewayError(GatewayError):
    detail = "Refund request failed"


class SignatureMismatch(ShopError):
    status_code = 400
    detail = "Invalid signature"


class OrderSuperseded(ShopError):
    status_code = 409
    detail = "Order was replaced by a paid order"


class AmountMismatch(ShopError):
    status_code = 409
    detail = "Order total does not match the amount paid"
