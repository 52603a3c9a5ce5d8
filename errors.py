"""OAuth 2.0 error taxonomy.

Every validation failure in the authorization server is raised as one of the
exceptions below and rendered by the app as ``{"error", "error_description"}``.
Descriptions are fixed strings and never echo store contents.
"""

from typing import Any, Dict


class OAuthError(Exception):
    """Base class for protocol errors returned to the caller"""

    error = "invalid_request"
    status_code = 400

    def __init__(self, description: str = ""):
        super().__init__(description or self.error)
        self.description = description

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidRequestError(OAuthError):
    error = "invalid_request"


class InvalidClientError(OAuthError):
    error = "invalid_client"


class InvalidGrantError(OAuthError):
    error = "invalid_grant"


class InvalidScopeError(OAuthError):
    error = "invalid_scope"


class UnauthorizedClientError(OAuthError):
    error = "unauthorized_client"


class UnsupportedGrantTypeError(OAuthError):
    error = "unsupported_grant_type"


class InvalidClientMetadataError(OAuthError):
    error = "invalid_client_metadata"


class InvalidTokenError(OAuthError):
    error = "invalid_token"
    status_code = 401


class RateLimitExceededError(OAuthError):
    error = "rate_limit_exceeded"
    status_code = 429


class StorageError(Exception):
    """Raised when a store backend fails; fatal for the current request only"""
