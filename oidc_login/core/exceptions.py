"""
Domain exceptions for the core business logic.

HTTP-facing exceptions are caught by centralized exception handlers in
main.py. The rest are resolved inside the callback flow.
"""


class AccessDeniedError(Exception):
    """
    Raised when the callback's anti-forgery state token is missing,
    wrong or already spent.

    Results in a 403 response; no further processing happens.
    """

    pass


class ProviderNotFoundError(Exception):
    """
    Raised when a provider id is unknown or not configured, or when the
    callback is visited outside of an active flow.

    Results in a 404 response.
    """

    pass


class ProviderConfigurationError(Exception):
    """Raised when provider settings are incomplete or inconsistent."""

    pass


class AccountError(Exception):
    """Raised for errors reading or writing local accounts."""

    pass


class SubjectAlreadyBoundError(AccountError):
    """
    Raised when a provider subject is already bound to a different account.

    Subjects are never silently rebound.
    """

    pass


class AuthorizationDeniedError(Exception):
    """Raised when a pre-authorize hook vetoes an authorization."""

    pass
