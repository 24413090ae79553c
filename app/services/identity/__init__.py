"""
Identity Service Package

Pi access-token verification and user status views.
"""

from app.services.identity.service import (
    IdentityService,
    UserView,
    build_user_view,
)

from app.services.identity.exceptions import (
    IdentityServiceError,
    MissingAccessTokenError,
    InvalidAccessTokenError,
    IdentityProviderUnavailableError,
    UserNotFoundError,
)

__all__ = [
    "IdentityService",
    "UserView",
    "build_user_view",
    "IdentityServiceError",
    "MissingAccessTokenError",
    "InvalidAccessTokenError",
    "IdentityProviderUnavailableError",
    "UserNotFoundError",
]
