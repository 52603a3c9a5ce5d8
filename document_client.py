import logging
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

import httpx

from config import Config

logger = logging.getLogger(__name__)


class DocumentAPIError(Exception):
    """Raised when the document API rejects or fails a request"""


class DocumentClient:
    """Pass-through client for the document ingestion/retrieval API.

    Every call takes the tenant endpoint of the verified principal as its base
    URL, so one client instance serves all tenants.
    """

    def __init__(self, config: Config):
        self.config = config
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"{config.mcp_server_name}/{config.mcp_server_version}",
        }
        if config.document_api_token:
            headers["Authorization"] = f"Bearer {config.document_api_token}"
        self.client = httpx.AsyncClient(headers=headers, timeout=config.document_api_timeout)

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()

    async def _request(self, method: str, base_url: str, path: str, **kwargs) -> Any:
        """Make a request to the tenant's document API and map failures"""
        url = f"{base_url.rstrip('/')}{path}"
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            logger.error(f"Document API timeout: {method} {path}")
            raise DocumentAPIError("Request timeout - document API is not responding")
        except httpx.NetworkError as e:
            logger.error(f"Network error: {e}")
            raise DocumentAPIError("Network error - unable to connect to document API")

        if response.status_code == 204:
            return {"success": True}
        if response.status_code in (200, 201):
            return response.json()
        if response.status_code == 401:
            raise DocumentAPIError("Document API rejected the credentials")
        if response.status_code == 403:
            raise DocumentAPIError("Access forbidden")
        if response.status_code == 404:
            raise DocumentAPIError("Resource not found")
        if response.status_code == 429:
            raise DocumentAPIError("Rate limit exceeded - please wait before retrying")

        logger.error(f"Document API HTTP error: {response.status_code} - {response.text}")
        raise DocumentAPIError(f"Document API error: HTTP {response.status_code}")

    async def ingest_text(
        self,
        base_url: str,
        content: str,
        filename: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        folder_name: Optional[str] = None,
        end_user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Add a text document to the knowledge base"""
        data = {
            "content": content,
            "filename": filename,
            "metadata": metadata or {},
            "folder_name": folder_name,
            "end_user_id": end_user_id,
        }
        return await self._request("POST", base_url, "/ingest/text", json={k: v for k, v in data.items() if v is not None})

    def _retrieve_body(self, query, filters, k, min_score, folder_name, end_user_id) -> Dict[str, Any]:
        data = {"query": query, "filters": filters or {}, "k": k, "min_score": min_score}
        if folder_name is not None:
            data["folder_name"] = folder_name
        if end_user_id is not None:
            data["end_user_id"] = end_user_id
        return data

    async def retrieve_chunks(
        self,
        base_url: str,
        query: str,
        filters: Optional[Dict[str, Any]] = None,
        k: int = 4,
        min_score: float = 0.0,
        folder_name: Optional[Union[str, List[str]]] = None,
        end_user_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Retrieve the most relevant chunks for a query"""
        data = self._retrieve_body(query, filters, k, min_score, folder_name, end_user_id)
        return await self._request("POST", base_url, "/retrieve/chunks", json=data)

    async def retrieve_docs(
        self,
        base_url: str,
        query: str,
        filters: Optional[Dict[str, Any]] = None,
        k: int = 4,
        min_score: float = 0.0,
        folder_name: Optional[Union[str, List[str]]] = None,
        end_user_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Retrieve the most relevant documents for a query"""
        data = self._retrieve_body(query, filters, k, min_score, folder_name, end_user_id)
        return await self._request("POST", base_url, "/retrieve/docs", json=data)

    async def list_documents(
        self,
        base_url: str,
        skip: int = 0,
        limit: int = 100,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """List documents with pagination"""
        return await self._request(
            "POST", base_url, "/documents",
            params={"skip": skip, "limit": limit},
            json=filters or {},
        )

    async def get_document(self, base_url: str, document_id: str) -> Dict[str, Any]:
        """Get a document by ID"""
        return await self._request("GET", base_url, f"/documents/{quote(document_id, safe='')}")

    async def delete_document(self, base_url: str, document_id: str) -> Dict[str, Any]:
        """Delete a document by ID"""
        return await self._request("DELETE", base_url, f"/documents/{quote(document_id, safe='')}")
