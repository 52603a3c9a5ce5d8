from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import pytest
import pytest_asyncio

from auth import AuthManager, compute_code_challenge
from config import Config
from models import AuthorizationParams, RegisteredClient

REDIRECT_URI = "https://client.example.com/callback"
DOCUMENT_API_BASE = "https://docs.example.com"
SECRET_KEY = "test-secret-key"


class FakeClock:
    """Manually advanced replacement for time.time"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDocumentClient:
    """Records document API calls instead of making them"""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []

    async def close(self):
        pass

    async def _record(self, operation: str, base_url: str, **kwargs):
        self.calls.append({"operation": operation, "base_url": base_url, **kwargs})
        return {"operation": operation}

    async def ingest_text(self, base_url, content, **kwargs):
        return await self._record("ingest_text", base_url, content=content, **kwargs)

    async def retrieve_chunks(self, base_url, query, **kwargs):
        return await self._record("retrieve_chunks", base_url, query=query, **kwargs)

    async def retrieve_docs(self, base_url, query, **kwargs):
        return await self._record("retrieve_docs", base_url, query=query, **kwargs)

    async def list_documents(self, base_url, **kwargs):
        return await self._record("list_documents", base_url, **kwargs)

    async def get_document(self, base_url, document_id):
        return await self._record("get_document", base_url, document_id=document_id)

    async def delete_document(self, base_url, document_id):
        return await self._record("delete_document", base_url, document_id=document_id)


@pytest.fixture
def env(monkeypatch):
    values = {
        "ENVIRONMENT": "development",
        "BASE_URL": "http://testserver",
        "SECRET_KEY": SECRET_KEY,
        "RATE_LIMIT_ENABLED": "false",
        "STORAGE_BACKEND": "memory",
        "DOCUMENT_API_BASE": DOCUMENT_API_BASE,
        "UPSTREAM_AUTHORIZE_URL": "https://idp.example.com/oauth/authorize",
    }
    for key, value in values.items():
        monkeypatch.setenv(key, value)
    for key in ("OAUTH_CODE_EXPIRY", "OAUTH_TOKEN_EXPIRY", "OAUTH_REFRESH_TOKEN_EXPIRY",
                "OAUTH_SCOPES_SUPPORTED", "OAUTH_DEFAULT_SCOPE", "ALLOWED_ORIGINS",
                "OAUTH_REQUIRE_UPSTREAM_CALLBACK"):
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture
def config(env) -> Config:
    return Config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def auth_manager(config: Config, clock: FakeClock):
    manager = AuthManager(config, clock=clock)
    await manager.initialize()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def client(auth_manager: AuthManager) -> RegisteredClient:
    return await auth_manager.register_client({
        "client_name": "Test Client",
        "redirect_uris": [REDIRECT_URI],
    })


async def authorize(
    manager: AuthManager,
    client: RegisteredClient,
    code_verifier: Optional[str] = None,
    method: Optional[str] = "S256",
    **params,
) -> str:
    """Run an authorize request and return the minted code"""
    challenge = None
    if code_verifier is not None:
        challenge = compute_code_challenge(code_verifier, method or "plain")
    else:
        method = None
    params.setdefault("redirect_uri", REDIRECT_URI)
    code, _ = await manager.create_authorization(
        client,
        AuthorizationParams(code_challenge=challenge, code_challenge_method=method, **params),
    )
    return code


def query_params(url: str) -> Dict[str, str]:
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}
