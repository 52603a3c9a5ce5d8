import asyncio
import base64
import hashlib
import hmac
import logging
import secrets
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode, urlparse

from pydantic import ValidationError

from config import Config
from errors import (
    InvalidClientError,
    InvalidClientMetadataError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    InvalidTokenError,
    UnauthorizedClientError,
    UnsupportedGrantTypeError,
)
from models import (
    AuthorizationParams,
    ClientRegistrationRequest,
    IssuedToken,
    PendingAuthorization,
    Principal,
    RegisteredClient,
    TokenIntrospectionResponse,
    TokenResponse,
)
from stores import ClientRegistry, PendingAuthorizationStore, TokenStore, create_store

logger = logging.getLogger(__name__)

SUPPORTED_GRANT_TYPES = ("authorization_code", "refresh_token")
SUPPORTED_CHALLENGE_METHODS = ("S256", "plain")


def compute_code_challenge(code_verifier: str, method: str = "S256") -> str:
    """Derive the PKCE code challenge for a verifier (RFC 7636)"""
    if method == "plain":
        return code_verifier
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def sign_callback(secret_key: str, mcp_code: str, subject: str, tenant_endpoint: str) -> str:
    """HMAC signature the upstream provider attaches to its callback redirect"""
    message = f"{mcp_code}\n{subject}\n{tenant_endpoint}".encode("utf-8")
    return hmac.new(secret_key.encode("utf-8"), message, hashlib.sha256).hexdigest()


class AuthManager:
    """OAuth 2.1 authorization server with PKCE, single-use codes and rotating refresh tokens"""

    def __init__(self, config: Config, clock: Callable[[], float] = time.time):
        self.config = config
        self.clock = clock

        self.clients = ClientRegistry(create_store(config, "oauth_clients"))
        self.pending = PendingAuthorizationStore(create_store(config, "pending_authorizations"))
        self.tokens = TokenStore(
            create_store(config, "access_tokens"),
            create_store(config, "refresh_tokens"),
        )

        self.rate_limits: Dict[str, List[float]] = {}

    @property
    def _stores(self):
        return [
            self.clients.store,
            self.pending.store,
            self.tokens.access_store,
            self.tokens.refresh_store,
        ]

    async def initialize(self) -> None:
        for store in self._stores:
            await store.initialize()
        logger.info(f"OAuth stores ready ({self.config.storage_backend} backend)")

    async def close(self) -> None:
        for store in self._stores:
            await store.close()

    # Client registry

    async def register_client(self, client_metadata: Dict[str, Any]) -> RegisteredClient:
        """Register a new OAuth client (RFC 7591)"""
        try:
            request = ClientRegistrationRequest.model_validate(client_metadata)
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"])
            raise InvalidClientMetadataError(f"Invalid value for {field}") from e

        scope = request.scope or self.config.oauth_default_scope
        self._check_supported_scopes(scope.split(), InvalidClientMetadataError)

        unknown_grants = set(request.grant_types) - set(SUPPORTED_GRANT_TYPES)
        if unknown_grants:
            raise InvalidClientMetadataError(f"Unsupported grant_types: {' '.join(sorted(unknown_grants))}")

        client_id = secrets.token_urlsafe(24)
        while await self.clients.get(client_id) is not None:
            client_id = secrets.token_urlsafe(24)

        metadata = request.model_dump()
        metadata.pop("client_id", None)
        metadata.pop("client_id_issued_at", None)
        metadata["scope"] = scope
        client = RegisteredClient(
            **metadata,
            client_id=client_id,
            client_id_issued_at=int(self.clock()),
        )
        await self.clients.save(client)

        logger.info(f"Registered client {client_id} ({client.client_name or 'unnamed'})")
        return client

    async def get_client(self, client_id: str) -> Optional[RegisteredClient]:
        return await self.clients.get(client_id)

    # Authorization

    async def create_authorization(
        self,
        client: RegisteredClient,
        params: AuthorizationParams,
    ) -> Tuple[str, str]:
        """Record a pending authorization and build the upstream provider redirect"""
        if client is None:
            raise InvalidClientError("Unknown client")

        if "authorization_code" not in client.grant_types:
            raise UnauthorizedClientError("Client is not allowed to use the authorization_code grant")

        redirect_uri = self._resolve_redirect_uri(client, params.redirect_uri)
        scopes = self._resolve_scopes(client, params.scopes)

        code_challenge = params.code_challenge or None
        code_challenge_method = params.code_challenge_method or None
        if code_challenge is None and code_challenge_method is not None:
            raise InvalidRequestError("code_challenge_method requires code_challenge")
        if code_challenge is not None:
            # RFC 7636 section 4.3: a missing method means plain
            code_challenge_method = code_challenge_method or "plain"
            if code_challenge_method not in SUPPORTED_CHALLENGE_METHODS:
                raise InvalidRequestError("Unsupported code_challenge_method")

        code = secrets.token_urlsafe(32)
        pending = PendingAuthorization(
            code=code,
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            state=params.state,
            scopes=scopes,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            issued_at=self.clock(),
            ttl=self.config.oauth_code_expiry,
        )
        await self.pending.save(pending)

        upstream_params = {
            "response_type": "code",
            "client_id": client.client_id,
            "redirect_uri": redirect_uri,
            "state": params.state,
            "scope": " ".join(scopes),
            "code_challenge": code_challenge,
            "code_challenge_method": code_challenge_method,
            "mcp_code": code,
        }
        query = urlencode({k: v for k, v in upstream_params.items() if v is not None})
        separator = "&" if "?" in self.config.upstream_authorize_url else "?"
        redirect_url = f"{self.config.upstream_authorize_url}{separator}{query}"

        logger.info(f"Authorization code {code[:8]}... created for client {client.client_id}")
        return code, redirect_url

    async def complete_authorization(
        self,
        mcp_code: str,
        subject: str,
        tenant_endpoint: str,
        signature: str,
    ) -> str:
        """Bind the upstream user and tenant to a pending code; return the client redirect"""
        if not (mcp_code and subject and tenant_endpoint and signature):
            raise InvalidRequestError("mcp_code, subject, tenant_endpoint and signature are required")

        expected = sign_callback(self.config.secret_key, mcp_code, subject, tenant_endpoint)
        if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            logger.warning(f"Rejected upstream callback with bad signature for code {mcp_code[:8]}...")
            raise InvalidRequestError("Invalid callback signature")

        if not self._is_valid_tenant_endpoint(tenant_endpoint):
            raise InvalidRequestError("Invalid tenant_endpoint")

        pending = await self.pending.get(mcp_code)
        if pending is None or self.clock() >= pending.expires_at:
            raise InvalidGrantError("Invalid or expired authorization code")
        if pending.subject is not None:
            raise InvalidGrantError("Authorization already completed")

        completed = pending.model_copy(update={
            "subject": subject,
            "tenant_endpoint": tenant_endpoint.rstrip("/"),
        })
        # A code redeemed in the meantime stays gone
        if not await self.pending.replace_if_present(completed):
            raise InvalidGrantError("Invalid or expired authorization code")

        query = {"code": completed.code}
        if completed.state:
            query["state"] = completed.state
        separator = "&" if "?" in completed.redirect_uri else "?"

        logger.info(f"Upstream authorization completed for client {completed.client_id}")
        return f"{completed.redirect_uri}{separator}{urlencode(query)}"

    # Token exchange

    async def handle_token_request(self, form_data: Dict[str, str]) -> TokenResponse:
        """Token endpoint dispatch on grant_type"""
        grant_type = form_data.get("grant_type")
        if not grant_type:
            raise InvalidRequestError("grant_type is required")
        if grant_type not in SUPPORTED_GRANT_TYPES:
            raise UnsupportedGrantTypeError("Unsupported grant_type")

        client_id = form_data.get("client_id")
        if not client_id:
            raise InvalidRequestError("client_id is required")

        client = await self.get_client(client_id)
        if client is None:
            raise InvalidClientError("Unknown client")
        if grant_type not in client.grant_types:
            raise UnauthorizedClientError(f"Client is not allowed to use the {grant_type} grant")

        if grant_type == "authorization_code":
            code = form_data.get("code")
            if not code:
                raise InvalidRequestError("code is required")
            return await self.exchange_authorization_code(
                client,
                code,
                code_verifier=form_data.get("code_verifier") or None,
                redirect_uri=form_data.get("redirect_uri") or None,
            )

        refresh_token = form_data.get("refresh_token")
        if not refresh_token:
            raise InvalidRequestError("refresh_token is required")
        scope = form_data.get("scope")
        return await self.exchange_refresh_token(
            client,
            refresh_token,
            requested_scopes=scope.split() if scope else None,
        )

    async def exchange_authorization_code(
        self,
        client: RegisteredClient,
        code: str,
        code_verifier: Optional[str] = None,
        redirect_uri: Optional[str] = None,
    ) -> TokenResponse:
        """Redeem an authorization code; the code is consumed whatever the outcome"""
        pending = await self.pending.take(code)
        if pending is None:
            logger.warning(f"Rejected unknown or already used code for client {client.client_id}")
            raise InvalidGrantError("Invalid authorization code")

        if self.clock() >= pending.expires_at:
            logger.warning(f"Rejected expired code {code[:8]}... for client {client.client_id}")
            raise InvalidGrantError("Authorization code expired")

        if pending.client_id != client.client_id:
            logger.warning(f"Client {client.client_id} tried to redeem a code issued to another client")
            raise InvalidGrantError("Authorization code was not issued to this client")

        if redirect_uri is not None and redirect_uri != pending.redirect_uri:
            raise InvalidGrantError("redirect_uri does not match the authorization request")

        if not self._verify_pkce(code_verifier, pending.code_challenge, pending.code_challenge_method):
            logger.warning(f"PKCE verification failed for client {client.client_id}")
            raise InvalidGrantError("Invalid code_verifier")

        if pending.subject is None and self.config.oauth_require_upstream_callback:
            logger.warning(f"Rejected code {code[:8]}... not completed by the upstream provider")
            raise InvalidGrantError("Authorization was not completed")

        return await self._issue_tokens(
            client_id=client.client_id,
            scopes=pending.scopes,
            subject=pending.subject,
            tenant_endpoint=pending.tenant_endpoint or self.config.document_api_base,
        )

    async def exchange_refresh_token(
        self,
        client: RegisteredClient,
        refresh_token: str,
        requested_scopes: Optional[List[str]] = None,
    ) -> TokenResponse:
        """Rotate a refresh token: single use, optional scope narrowing"""
        current = await self.tokens.get_refresh_token(refresh_token)
        if current is not None and current.client_id == client.client_id and requested_scopes:
            # Checked before consuming so a bad scope request leaves the token usable
            self._check_scope_subset(requested_scopes, current.scopes)

        record = await self.tokens.take_refresh_token(refresh_token)
        if record is None:
            logger.warning(f"Rejected unknown or already used refresh token for client {client.client_id}")
            raise InvalidGrantError("Invalid refresh token")

        if record.client_id != client.client_id:
            logger.warning(f"Client {client.client_id} presented a refresh token issued to another client")
            raise InvalidGrantError("Invalid refresh token")

        if self.clock() >= record.refresh_expires_at:
            raise InvalidGrantError("Refresh token expired")

        scopes = record.scopes
        if requested_scopes:
            self._check_scope_subset(requested_scopes, record.scopes)
            scopes = [scope for scope in record.scopes if scope in requested_scopes]

        await self.tokens.delete_access_token(record.access_token)

        return await self._issue_tokens(
            client_id=client.client_id,
            scopes=scopes,
            subject=record.subject,
            tenant_endpoint=record.tenant_endpoint,
        )

    async def _issue_tokens(
        self,
        client_id: str,
        scopes: List[str],
        subject: Optional[str],
        tenant_endpoint: str,
    ) -> TokenResponse:
        now = self.clock()
        token = IssuedToken(
            access_token=secrets.token_urlsafe(32),
            refresh_token=secrets.token_urlsafe(32),
            client_id=client_id,
            scopes=scopes,
            subject=subject,
            tenant_endpoint=tenant_endpoint,
            issued_at=now,
            expires_at=now + self.config.oauth_token_expiry,
            refresh_expires_at=now + self.config.oauth_refresh_token_expiry,
        )
        await self.tokens.save(token)

        logger.info(f"Access token issued for client {client_id}")
        return TokenResponse(
            access_token=token.access_token,
            token_type="Bearer",
            expires_in=self.config.oauth_token_expiry,
            refresh_token=token.refresh_token,
            scope=" ".join(scopes),
        )

    # Verification

    async def verify_access_token(self, token: str) -> Principal:
        """Resolve a bearer token to its principal"""
        record = await self.tokens.get_access_token(token)
        if record is None:
            raise InvalidTokenError("Invalid or expired token")

        if self.clock() >= record.expires_at:
            await self.tokens.delete_access_token(token)
            raise InvalidTokenError("Invalid or expired token")

        return Principal(
            client_id=record.client_id,
            scopes=record.scopes,
            expires_at=record.expires_at,
            subject=record.subject,
            tenant_endpoint=record.tenant_endpoint,
        )

    async def introspect_token(self, token: str) -> TokenIntrospectionResponse:
        """OAuth 2.0 Token Introspection (RFC 7662)"""
        try:
            principal = await self.verify_access_token(token)
        except InvalidTokenError:
            return TokenIntrospectionResponse(active=False)

        record = await self.tokens.get_access_token(token)
        return TokenIntrospectionResponse(
            active=True,
            client_id=principal.client_id,
            scope=" ".join(principal.scopes),
            token_type="Bearer",
            exp=int(principal.expires_at),
            iat=int(record.issued_at) if record else None,
            sub=principal.subject,
        )

    async def revoke_token(self, token: str) -> bool:
        """Revoke an access or refresh token (RFC 7009)"""
        if not token:
            return False
        revoked = await self.tokens.revoke(token)
        if revoked:
            logger.info(f"Token revoked: {token[:8]}...")
        return revoked

    # Rate limiting

    def check_rate_limit(self, key: str, max_requests: int = 100, window_seconds: int = 3600) -> bool:
        """Check if a request is within rate limits"""
        if not self.config.rate_limit_enabled:
            return True

        now = self.clock()
        window_start = now - window_seconds

        timestamps = [t for t in self.rate_limits.get(key, []) if t > window_start]
        if len(timestamps) >= max_requests:
            self.rate_limits[key] = timestamps
            return False

        timestamps.append(now)
        self.rate_limits[key] = timestamps
        return True

    # Helpers

    def _resolve_redirect_uri(self, client: RegisteredClient, redirect_uri: Optional[str]) -> str:
        if not redirect_uri:
            if len(client.redirect_uris) == 1:
                return client.redirect_uris[0]
            raise InvalidRequestError("redirect_uri is required")

        # Exact match only
        if redirect_uri not in client.redirect_uris:
            logger.warning(f"Unregistered redirect_uri requested by client {client.client_id}")
            raise InvalidRequestError("redirect_uri is not registered for this client")
        return redirect_uri

    def _resolve_scopes(self, client: RegisteredClient, requested: List[str]) -> List[str]:
        registered = (client.scope or self.config.oauth_default_scope).split()
        scopes = requested or registered
        self._check_supported_scopes(scopes, InvalidScopeError)
        if not set(scopes) <= set(registered):
            raise InvalidScopeError("Requested scope exceeds the scope registered for this client")
        return list(dict.fromkeys(scopes))

    def _check_supported_scopes(self, scopes: List[str], error_class) -> None:
        unsupported = [scope for scope in scopes if scope not in self.config.oauth_scopes_supported]
        if unsupported:
            raise error_class(f"Unsupported scope: {' '.join(unsupported)}")

    def _check_scope_subset(self, requested: List[str], granted: List[str]) -> None:
        if not set(requested) <= set(granted):
            raise InvalidScopeError("Requested scope exceeds the original grant")

    def _verify_pkce(
        self,
        code_verifier: Optional[str],
        code_challenge: Optional[str],
        code_challenge_method: Optional[str],
    ) -> bool:
        """Verify PKCE code challenge using constant-time comparison"""
        if code_challenge is None:
            return code_verifier is None
        if not code_verifier:
            return False
        try:
            challenge = compute_code_challenge(code_verifier, code_challenge_method or "plain")
        except UnicodeEncodeError:
            return False
        return hmac.compare_digest(challenge.encode("utf-8"), code_challenge.encode("utf-8"))

    def _is_valid_tenant_endpoint(self, uri: str) -> bool:
        parsed = urlparse(uri)
        if not parsed.netloc:
            return False
        if parsed.scheme == "https":
            return True
        return parsed.scheme == "http" and not self.config.is_production

    async def sweep_expired(self) -> int:
        """Drop expired codes, tokens and rate limit entries; returns records removed"""
        now = self.clock()
        removed = 0
        for store in (self.pending.store, self.tokens.access_store, self.tokens.refresh_store):
            removed += await store.cleanup_expired(now)

        for key in list(self.rate_limits.keys()):
            self.rate_limits[key] = [
                timestamp for timestamp in self.rate_limits[key]
                if timestamp > now - self.config.rate_limit_window
            ]
            if not self.rate_limits[key]:
                del self.rate_limits[key]

        return removed

    async def cleanup_expired_tokens(self):
        """Background task to clean up expired tokens and codes"""
        while True:
            try:
                removed = await self.sweep_expired()
                if removed:
                    logger.info(f"Cleaned up {removed} expired codes and tokens")

                await asyncio.sleep(self.config.cleanup_interval)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in cleanup task: {e}")
                await asyncio.sleep(60)  # Wait 1 minute on error
