import os
from typing import List

class Config:
    """Configuration management for the MCP server"""

    def __init__(self):
        # Server configuration
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = int(os.getenv("PORT", 8000))
        self.environment = os.getenv("ENVIRONMENT", "development")
        self.base_url = os.getenv("BASE_URL", "http://localhost:8000").rstrip("/")

        # Security configuration
        self.secret_key = os.getenv("SECRET_KEY", "your-secret-key-change-in-production")
        self.allowed_origins = self._parse_allowed_origins()

        # Rate limiting configuration
        self.rate_limit_enabled = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
        self.rate_limit_requests = int(os.getenv("RATE_LIMIT_REQUESTS", 100))
        self.rate_limit_window = int(os.getenv("RATE_LIMIT_WINDOW", 3600))  # 1 hour

        # Upstream identity provider
        self.upstream_authorize_url = os.getenv("UPSTREAM_AUTHORIZE_URL", "https://www.morphik.ai/oauth/authorize")

        # OAuth configuration
        self.oauth_code_expiry = int(os.getenv("OAUTH_CODE_EXPIRY", 60))  # 1 minute
        self.oauth_token_expiry = int(os.getenv("OAUTH_TOKEN_EXPIRY", 3600))  # 1 hour
        self.oauth_refresh_token_expiry = int(os.getenv("OAUTH_REFRESH_TOKEN_EXPIRY", 2592000))  # 30 days
        self.oauth_scopes_supported = os.getenv("OAUTH_SCOPES_SUPPORTED", "mcp:read mcp:write mcp:admin").split()
        self.oauth_default_scope = os.getenv("OAUTH_DEFAULT_SCOPE", "mcp:read mcp:write")
        # Codes must be completed by the upstream callback before redemption
        self.oauth_require_upstream_callback = os.getenv(
            "OAUTH_REQUIRE_UPSTREAM_CALLBACK", "true" if self.environment == "production" else "false"
        ).lower() == "true"

        # Storage configuration
        self.storage_backend = os.getenv("STORAGE_BACKEND", "memory").lower()
        self.storage_path = os.getenv("STORAGE_PATH", "./data/oauth.db")

        # Cleanup configuration
        self.cleanup_interval = int(os.getenv("CLEANUP_INTERVAL", 300))  # 5 minutes

        # Document API configuration (default tenant endpoint)
        self.document_api_base = os.getenv("DOCUMENT_API_BASE", "http://localhost:8000").rstrip("/")
        self.document_api_token = os.getenv("DOCUMENT_API_TOKEN")
        self.document_api_timeout = int(os.getenv("DOCUMENT_API_TIMEOUT", 30))

        # MCP configuration
        self.mcp_protocol_version = os.getenv("MCP_PROTOCOL_VERSION", "2025-03-26")
        self.mcp_server_name = os.getenv("MCP_SERVER_NAME", "morphik-remote-mcp")
        self.mcp_server_version = os.getenv("MCP_SERVER_VERSION", "1.0.0")

        # Logging configuration
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.log_format = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        self._validate_config()

    def _parse_allowed_origins(self) -> List[str]:
        """Parse allowed origins from environment variable"""
        origins_str = os.getenv("ALLOWED_ORIGINS", "*")
        if origins_str == "*":
            return ["*"]
        return [origin.strip() for origin in origins_str.split(",")]

    def _validate_config(self):
        """Validate configuration values"""
        if self.environment == "production":
            if self.secret_key == "your-secret-key-change-in-production":
                raise ValueError("SECRET_KEY must be set in production")

            if not self.base_url.startswith("https://"):
                raise ValueError("BASE_URL must use HTTPS in production")

            if not self.upstream_authorize_url.startswith("https://"):
                raise ValueError("UPSTREAM_AUTHORIZE_URL must use HTTPS in production")

        if self.oauth_code_expiry < 30 or self.oauth_code_expiry > 600:
            raise ValueError("OAUTH_CODE_EXPIRY must be between 30 and 600 seconds")

        if self.oauth_token_expiry < 60:
            raise ValueError("OAUTH_TOKEN_EXPIRY must be at least 60 seconds")

        if self.oauth_refresh_token_expiry < self.oauth_token_expiry:
            raise ValueError("OAUTH_REFRESH_TOKEN_EXPIRY must not be shorter than OAUTH_TOKEN_EXPIRY")

        if self.storage_backend not in ("memory", "sqlite"):
            raise ValueError("STORAGE_BACKEND must be 'memory' or 'sqlite'")

        unsupported = set(self.oauth_default_scope.split()) - set(self.oauth_scopes_supported)
        if unsupported:
            raise ValueError(f"OAUTH_DEFAULT_SCOPE contains unsupported scopes: {' '.join(sorted(unsupported))}")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.environment == "production"

    @property
    def protected_resource_metadata_url(self) -> str:
        return f"{self.base_url}/.well-known/oauth-protected-resource"
