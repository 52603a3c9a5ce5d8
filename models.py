from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator

# OAuth Models
class ClientRegistrationRequest(BaseModel):
    """OAuth 2.1 Dynamic Client Registration Request"""
    model_config = ConfigDict(extra="allow")

    client_name: Optional[str] = Field(None, description="Human-readable client name")
    redirect_uris: List[str] = Field(default_factory=list, description="Array of redirection URI strings")
    token_endpoint_auth_method: str = Field("none", description="Authentication method")
    grant_types: List[str] = Field(["authorization_code", "refresh_token"], description="Grant types")
    response_types: List[str] = Field(["code"], description="Response types")
    scope: Optional[str] = Field(None, description="Requested scope")

    @field_validator('redirect_uris')
    @classmethod
    def validate_redirect_uris(cls, v):
        for uri in v:
            if '://' not in uri:
                raise ValueError(f'Invalid redirect URI: {uri}')
        return v

class RegisteredClient(ClientRegistrationRequest):
    """Stored client record; immutable once issued"""
    client_id: str
    client_id_issued_at: int

class AuthorizationParams(BaseModel):
    """Parameters of a single authorize request"""
    redirect_uri: Optional[str] = None
    state: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None

class PendingAuthorization(BaseModel):
    """In-flight authorization request keyed by the server-minted code"""
    code: str
    client_id: str
    redirect_uri: str
    state: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    issued_at: float
    ttl: int
    subject: Optional[str] = None
    tenant_endpoint: Optional[str] = None

    @property
    def expires_at(self) -> float:
        return self.issued_at + self.ttl

class IssuedToken(BaseModel):
    """Access/refresh token pair as persisted by the token store"""
    access_token: str
    refresh_token: str
    client_id: str
    scopes: List[str] = Field(default_factory=list)
    subject: Optional[str] = None
    tenant_endpoint: str
    issued_at: float
    expires_at: float
    refresh_expires_at: float

class Principal(BaseModel):
    """Result of verifying a bearer token"""
    client_id: str
    scopes: List[str]
    expires_at: float
    subject: Optional[str] = None
    tenant_endpoint: str

    def has_scope(self, *scopes: str) -> bool:
        return any(scope in self.scopes for scope in scopes)

class TokenResponse(BaseModel):
    """OAuth 2.1 Token Response"""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    scope: Optional[str] = None

class TokenIntrospectionResponse(BaseModel):
    """OAuth 2.1 Token Introspection Response"""
    active: bool
    client_id: Optional[str] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None
    exp: Optional[int] = None
    iat: Optional[int] = None
    sub: Optional[str] = None

# MCP Models
class MCPRequest(BaseModel):
    """MCP JSON-RPC Request"""
    jsonrpc: str = Field("2.0", description="JSON-RPC version")
    method: str = Field(..., description="Method name")
    params: Optional[Dict[str, Any]] = Field(None, description="Method parameters")
    id: Optional[Union[str, int]] = Field(None, description="Request identifier")

class MCPTool(BaseModel):
    """MCP Tool Definition"""
    name: str
    description: str
    inputSchema: Dict[str, Any]
    write: bool = Field(False, exclude=True)

# API Response Models
class HealthCheckResponse(BaseModel):
    """Health Check Response"""
    status: str
    service: str
    version: str
    timestamp: str
    components: Dict[str, str]
    environment: str
