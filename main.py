#!/usr/bin/env python3

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
import uvicorn

from auth import AuthManager
from config import Config
from document_client import DocumentClient
from errors import (
    InvalidClientError,
    InvalidRequestError,
    InvalidTokenError,
    OAuthError,
    RateLimitExceededError,
    StorageError,
)
from mcp_transport import MCPTransport
from models import AuthorizationParams, HealthCheckResponse, Principal

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def www_authenticate_header(config: Config, error: str = "invalid_token") -> str:
    return (
        f'Bearer realm="morphik-mcp", error="{error}", '
        f'resource_metadata="{config.protected_resource_metadata_url}"'
    )


def create_app(
    config: Config,
    auth_manager: Optional[AuthManager] = None,
    document_client: Optional[DocumentClient] = None,
) -> FastAPI:
    """Build the FastAPI app: OAuth endpoints, discovery metadata and the protected MCP endpoint"""
    auth_manager = auth_manager or AuthManager(config)
    document_client = document_client or DocumentClient(config)
    mcp_transport = MCPTransport(config, document_client)

    app = FastAPI(
        title="Morphik Remote MCP Server",
        description="MCP server for Morphik documents with an embedded OAuth 2.1 authorization server",
        version=config.mcp_server_version,
        docs_url="/docs" if config.is_development else None,
        redoc_url="/redoc" if config.is_development else None,
    )
    app.state.config = config
    app.state.auth_manager = auth_manager
    app.state.document_client = document_client
    app.state.cleanup_task = None

    @app.exception_handler(OAuthError)
    async def oauth_error_handler(request: Request, exc: OAuthError):
        headers = dict(NO_STORE_HEADERS)
        if isinstance(exc, InvalidTokenError):
            headers["WWW-Authenticate"] = www_authenticate_header(config, exc.error)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers=headers,
        )

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error(f"Storage failure on {request.method} {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"error": "server_error", "error_description": "Temporary storage failure"},
        )

    # Add security headers middleware
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # HTTPS enforcement in production
        if config.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials=config.allowed_origins != ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Mcp-Session-Id", "WWW-Authenticate"],
    )

    def enforce_rate_limit(key: str, max_requests: int, window_seconds: int) -> None:
        if not auth_manager.check_rate_limit(key, max_requests=max_requests, window_seconds=window_seconds):
            raise RateLimitExceededError("Too many requests, retry later")

    async def require_principal(request: Request) -> Principal:
        """Resolve the bearer token of a protected request"""
        auth_header = request.headers.get("Authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise InvalidTokenError("Authentication required")
        return await auth_manager.verify_access_token(token.strip())

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return HealthCheckResponse(
            status="healthy",
            service=config.mcp_server_name,
            version=config.mcp_server_version,
            timestamp=datetime.now(timezone.utc).isoformat(),
            components={
                "auth": "ready",
                "storage": config.storage_backend,
                "document_api": config.document_api_base,
            },
            environment=config.environment,
        )

    @app.get("/")
    async def root():
        """Server information"""
        return {
            "name": config.mcp_server_name,
            "version": config.mcp_server_version,
            "authentication": "OAuth 2.1 with Dynamic Client Registration and PKCE",
            "endpoints": {
                "mcp": f"{config.base_url}/mcp",
                "oauth_metadata": f"{config.base_url}/.well-known/oauth-authorization-server",
                "protected_resource_metadata": config.protected_resource_metadata_url,
                "registration": f"{config.base_url}/register",
                "authorization": f"{config.base_url}/authorize",
                "token": f"{config.base_url}/token",
            },
        }

    # OAuth 2.1 Authorization Server Metadata (RFC 8414)
    @app.get("/.well-known/oauth-authorization-server")
    async def oauth_authorization_server_metadata():
        return {
            "issuer": config.base_url,
            "authorization_endpoint": f"{config.base_url}/authorize",
            "token_endpoint": f"{config.base_url}/token",
            "registration_endpoint": f"{config.base_url}/register",
            "revocation_endpoint": f"{config.base_url}/revoke",
            "introspection_endpoint": f"{config.base_url}/introspect",
            "scopes_supported": config.oauth_scopes_supported,
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "code_challenge_methods_supported": ["S256", "plain"],
            "token_endpoint_auth_methods_supported": ["none"],
            "revocation_endpoint_auth_methods_supported": ["none"],
        }

    # OAuth 2.0 Protected Resource Metadata (RFC 9728)
    @app.get("/.well-known/oauth-protected-resource")
    async def oauth_protected_resource_metadata():
        return {
            "resource": config.base_url,
            "authorization_servers": [config.base_url],
            "scopes_supported": config.oauth_scopes_supported,
            "bearer_methods_supported": ["header"],
        }

    # Dynamic Client Registration (RFC 7591)
    @app.post("/register")
    async def dynamic_client_registration(request: Request):
        try:
            client_metadata = await request.json()
        except ValueError:
            # Covers malformed JSON and bodies that are not UTF-8
            raise InvalidRequestError("Request body must be JSON")
        if not isinstance(client_metadata, dict):
            raise InvalidRequestError("Request body must be a JSON object")

        client_ip = request.client.host if request.client else "unknown"
        enforce_rate_limit(f"register:{client_ip}", max_requests=5, window_seconds=300)

        client = await auth_manager.register_client(client_metadata)
        logger.info(f"Registered new client: {client.client_id} from {client_ip}")
        return JSONResponse(status_code=201, content=client.model_dump(mode="json"), headers=NO_STORE_HEADERS)

    # OAuth Authorization endpoint
    @app.get("/authorize")
    async def oauth_authorize(
        client_id: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        response_type: str = "code",
        scope: Optional[str] = None,
        state: Optional[str] = None,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
    ):
        if not client_id:
            raise InvalidRequestError("client_id is required")
        if response_type != "code":
            raise InvalidRequestError("Unsupported response_type")

        enforce_rate_limit(f"authorize:{client_id}", max_requests=10, window_seconds=300)

        client = await auth_manager.get_client(client_id)
        if client is None:
            raise InvalidClientError("Unknown client")

        _, redirect_url = await auth_manager.create_authorization(
            client,
            AuthorizationParams(
                redirect_uri=redirect_uri,
                state=state,
                scopes=scope.split() if scope else [],
                code_challenge=code_challenge,
                code_challenge_method=code_challenge_method,
            ),
        )
        return RedirectResponse(url=redirect_url, status_code=302)

    # Upstream identity provider hands the user agent back here
    @app.get("/callback")
    async def oauth_callback(
        mcp_code: Optional[str] = None,
        subject: Optional[str] = None,
        tenant_endpoint: Optional[str] = None,
        signature: Optional[str] = None,
    ):
        redirect_url = await auth_manager.complete_authorization(
            mcp_code or "",
            subject or "",
            tenant_endpoint or "",
            signature or "",
        )
        return RedirectResponse(url=redirect_url, status_code=302)

    # OAuth Token endpoint
    @app.post("/token")
    async def oauth_token(request: Request):
        form_data = await request.form()

        client_id = form_data.get("client_id")
        if client_id:
            enforce_rate_limit(f"token:{client_id}", max_requests=20, window_seconds=300)

        token_response = await auth_manager.handle_token_request(
            {key: value for key, value in form_data.items() if isinstance(value, str)}
        )
        return JSONResponse(content=token_response.model_dump(exclude_none=True), headers=NO_STORE_HEADERS)

    # Token introspection endpoint (RFC 7662)
    @app.post("/introspect")
    async def token_introspection(request: Request):
        form_data = await request.form()
        token = form_data.get("token")
        if not token:
            raise InvalidRequestError("token parameter required")

        result = await auth_manager.introspect_token(token)
        return JSONResponse(content=result.model_dump(exclude_none=True), headers=NO_STORE_HEADERS)

    # Token revocation endpoint (RFC 7009)
    @app.post("/revoke")
    async def token_revocation(request: Request):
        form_data = await request.form()
        token = form_data.get("token")
        if not token:
            raise InvalidRequestError("token parameter required")

        await auth_manager.revoke_token(token)
        return JSONResponse(content={}, headers=NO_STORE_HEADERS)

    # MCP endpoint
    @app.post("/mcp")
    async def mcp_endpoint(request: Request, principal: Principal = Depends(require_principal)):
        enforce_rate_limit(f"mcp:{principal.client_id}", config.rate_limit_requests, config.rate_limit_window)
        return await mcp_transport.handle_post_request(request, principal)

    @app.on_event("startup")
    async def startup_event():
        logger.info(f"Starting {config.mcp_server_name} v{config.mcp_server_version}")
        logger.info(f"Environment: {config.environment}")
        logger.info(f"Base URL: {config.base_url}")

        await auth_manager.initialize()
        app.state.cleanup_task = asyncio.create_task(auth_manager.cleanup_expired_tokens())

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info(f"Shutting down {config.mcp_server_name}")
        task = app.state.cleanup_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await document_client.close()
        await auth_manager.close()

    return app


# Initialize configuration
config = Config()

# Configure logging
logging.basicConfig(level=config.log_level, format=config.log_format)

app = create_app(config)

if __name__ == "__main__":
    print(f"Starting {config.mcp_server_name} v{config.mcp_server_version}")
    print(f"Environment: {config.environment}")
    print(f"Base URL: {config.base_url}")
    print(f"Storage backend: {config.storage_backend}")

    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.is_development,
        log_level=config.log_level.lower(),
        access_log=True,
    )
