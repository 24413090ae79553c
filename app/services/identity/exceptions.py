"""
Identity Service Domain Exceptions
"""

from app.core.exceptions import AuthenticationError, NotFoundError, ProviderError, ValidationError


class IdentityServiceError(Exception):
    """Marker base for identity service errors"""
    pass


class MissingAccessTokenError(IdentityServiceError, ValidationError):
    """Raised when no access token was supplied"""
    pass


class InvalidAccessTokenError(IdentityServiceError, AuthenticationError):
    """Raised when the provider rejects the token or returns no uid"""
    pass


class IdentityProviderUnavailableError(IdentityServiceError, ProviderError):
    """Raised when /me times out or fails on the provider side"""
    pass


class UserNotFoundError(IdentityServiceError, NotFoundError):
    """Raised when a status query names an unknown uid"""
    pass
