import json

import httpx
import pytest
import pytest_asyncio

from document_client import DocumentAPIError, DocumentClient


@pytest_asyncio.fixture
async def document_client(config):
    client = DocumentClient(config)
    requests = []
    responses = {}

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        status, body = responses.get(request.url.path, (200, {"ok": True}))
        if isinstance(body, Exception):
            raise body
        return httpx.Response(status, json=body) if body is not None else httpx.Response(status)

    await client.client.aclose()
    client.client = httpx.AsyncClient(transport=httpx.MockTransport(handler), headers=client.client.headers)
    client.requests = requests
    client.responses = responses
    yield client
    await client.close()


@pytest.mark.asyncio
async def test_requests_go_to_the_given_tenant(document_client):
    await document_client.retrieve_chunks("https://tenant-a.example.com/", "what is mcp?", k=2)

    request = document_client.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://tenant-a.example.com/retrieve/chunks"
    assert json.loads(request.content) == {"query": "what is mcp?", "filters": {}, "k": 2, "min_score": 0.0}


@pytest.mark.asyncio
async def test_ingest_text_drops_unset_fields(document_client):
    await document_client.ingest_text("https://tenant-a.example.com", "hello", filename="a.txt")

    body = json.loads(document_client.requests[0].content)
    assert body == {"content": "hello", "filename": "a.txt", "metadata": {}}


@pytest.mark.asyncio
async def test_document_ids_are_quoted(document_client):
    await document_client.get_document("https://tenant-a.example.com", "a/b c")

    assert document_client.requests[0].url.raw_path == b"/documents/a%2Fb%20c"


@pytest.mark.asyncio
async def test_list_documents_sends_pagination(document_client):
    await document_client.list_documents("https://tenant-a.example.com", skip=5, limit=10)

    request = document_client.requests[0]
    assert request.url.params["skip"] == "5"
    assert request.url.params["limit"] == "10"


@pytest.mark.asyncio
async def test_no_content_response(document_client):
    document_client.responses["/documents/doc-1"] = (204, None)

    assert await document_client.delete_document("https://tenant-a.example.com", "doc-1") == {"success": True}


@pytest.mark.asyncio
@pytest.mark.parametrize("status, message", [
    (401, "credentials"),
    (403, "forbidden"),
    (404, "not found"),
    (429, "Rate limit"),
    (500, "HTTP 500"),
])
async def test_error_statuses_are_mapped(document_client, status, message):
    document_client.responses["/documents/doc-1"] = (status, {"detail": "nope"})

    with pytest.raises(DocumentAPIError, match=message):
        await document_client.get_document("https://tenant-a.example.com", "doc-1")


@pytest.mark.asyncio
async def test_network_errors_are_mapped(document_client):
    document_client.responses["/retrieve/docs"] = (0, httpx.ConnectError("refused"))

    with pytest.raises(DocumentAPIError, match="Network error"):
        await document_client.retrieve_docs("https://tenant-a.example.com", "q")


@pytest.mark.asyncio
async def test_retrieval_forwards_folder_and_end_user_scope(document_client):
    await document_client.retrieve_docs(
        "https://tenant-a.example.com", "q", folder_name=["reports", "notes"], end_user_id="user-7",
    )

    body = json.loads(document_client.requests[0].content)
    assert body["folder_name"] == ["reports", "notes"]
    assert body["end_user_id"] == "user-7"
