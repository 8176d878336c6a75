"""Domain exceptions mapped to HTTP responses by the app's exception handlers.

Every handler returns ``{"error": message}`` with the exception's status code.
"""

from fastapi import status


class MarketplaceError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationFailedError(MarketplaceError):
    status_code = status.HTTP_400_BAD_REQUEST


class InsufficientBalanceError(ValidationFailedError):
    def __init__(self, message: str = "Insufficient balance"):
        super().__init__(message)


class AuthenticationError(MarketplaceError):
    status_code = status.HTTP_401_UNAUTHORIZED


class PermissionDeniedError(MarketplaceError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(MarketplaceError):
    status_code = status.HTTP_404_NOT_FOUND


class StateConflictError(MarketplaceError):
    status_code = status.HTTP_409_CONFLICT


class UpstreamError(MarketplaceError):
    """A collaborator (payment gateway, object storage) failed."""

    status_code = status.HTTP_502_BAD_GATEWAY


class GatewayNotConfiguredError(MarketplaceError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
