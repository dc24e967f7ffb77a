from __future__ import annotations


class RlsGuardError(RuntimeError):
    pass


class InvalidInputError(RlsGuardError, ValueError):
    pass


class AuthorizationError(InvalidInputError):
    """OAuth callback could not be matched to a live authorization session.

    ``reason`` is a short machine-readable code (``missing_session_data``,
    ``session_expired``, ``state_mismatch``, ``invalid_state``) that the web
    layer forwards in its redirect.
    """

    def __init__(self, reason: str, message: str | None = None):
        super().__init__(message or reason)
        self.reason = reason


class ConfigurationError(RlsGuardError):
    pass


class IntegrityError(RlsGuardError):
    pass


class CredentialError(RlsGuardError):
    pass


class IntegrationNotFoundError(CredentialError):
    pass


class ReauthorizationRequired(CredentialError):
    pass


class TokenExchangeError(CredentialError):
    pass


class TokenRefreshError(CredentialError):
    pass


class ManagementApiError(RlsGuardError):
    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SchemaQueryError(RlsGuardError):
    pass
