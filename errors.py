class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MarketplaceError):
    status_code = 400


class AvailabilityError(MarketplaceError):
    """Requested quantity exceeds stock, or the product is marked out of stock."""
    status_code = 400


class AuthenticationError(MarketplaceError):
    status_code = 401


class AuthorizationError(MarketplaceError):
    status_code = 403


class ForbiddenError(AuthorizationError):
    """Order status change not permitted for the caller's role and the order's state."""


class NotFoundError(MarketplaceError):
    status_code = 404
