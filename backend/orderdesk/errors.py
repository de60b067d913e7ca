from typing import Optional


class OrderDeskError(Exception):
    """Base class for errors the API layer knows how to translate."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(OrderDeskError):
    status_code = 400


class NotFoundError(OrderDeskError):
    status_code = 404


class InvalidTransitionError(OrderDeskError):
    status_code = 409


class PersistenceError(OrderDeskError):
    status_code = 500


class ShopifyError(OrderDeskError):
    """Network failure or non-2xx answer from the Shopify Admin API."""

    status_code = 502

    def __init__(self, message: str, *, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status


# Name used by the assignment resolver for the absorbed failure case
ExternalLookupFailure = ShopifyError
