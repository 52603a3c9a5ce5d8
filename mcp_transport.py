import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from config import Config
from document_client import DocumentAPIError, DocumentClient
from models import MCPRequest, MCPTool, Principal

logger = logging.getLogger(__name__)

READ_SCOPES = ("mcp:read", "mcp:write", "mcp:admin")
WRITE_SCOPES = ("mcp:write", "mcp:admin")

_FILTERS = {"type": "object", "description": "Optional metadata filters"}
_FOLDER_SCOPE = {
    "type": ["string", "array"],
    "items": {"type": "string"},
    "description": "Optional folder scope (single folder name or array of folder names)",
}
_END_USER_SCOPE = {"type": "string", "description": "Optional end-user scope"}

TOOLS = [
    MCPTool(
        name="ingest_text",
        description="Add text content to the knowledge base so it becomes searchable",
        inputSchema={
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "Text content to ingest"},
                "filename": {"type": "string", "description": "Optional filename to help determine content type"},
                "metadata": {"type": "object", "description": "Optional metadata dictionary"},
                "folderName": {"type": "string", "description": "Optional folder scope"},
                "endUserId": {"type": "string", "description": "Optional end-user scope"},
            },
            "required": ["content"],
        },
        write=True,
    ),
    MCPTool(
        name="retrieve_chunks",
        description="Find the most relevant content chunks for a question",
        inputSchema={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The search query"},
                "filters": _FILTERS,
                "k": {"type": "number", "description": "Number of results to return (default: 4)"},
                "minScore": {"type": "number", "description": "Minimum relevance score (default: 0)"},
                "folderName": _FOLDER_SCOPE,
                "endUserId": _END_USER_SCOPE,
            },
            "required": ["query"],
        },
    ),
    MCPTool(
        name="retrieve_docs",
        description="Find the most relevant whole documents for a question",
        inputSchema={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The search query"},
                "filters": _FILTERS,
                "k": {"type": "number", "description": "Number of results to return (default: 4)"},
                "minScore": {"type": "number", "description": "Minimum relevance score (default: 0)"},
                "folderName": _FOLDER_SCOPE,
                "endUserId": _END_USER_SCOPE,
            },
            "required": ["query"],
        },
    ),
    MCPTool(
        name="list_documents",
        description="List documents in the knowledge base",
        inputSchema={
            "type": "object",
            "properties": {
                "skip": {"type": "number", "description": "Number of documents to skip"},
                "limit": {"type": "number", "description": "Maximum number of documents to return"},
                "filters": _FILTERS,
            },
            "required": [],
        },
    ),
    MCPTool(
        name="get_document",
        description="Get a document by ID",
        inputSchema={
            "type": "object",
            "properties": {"documentId": {"type": "string", "description": "The document ID"}},
            "required": ["documentId"],
        },
    ),
    MCPTool(
        name="delete_document",
        description="Delete a document by ID",
        inputSchema={
            "type": "object",
            "properties": {"documentId": {"type": "string", "description": "The document ID"}},
            "required": ["documentId"],
        },
        write=True,
    ),
]


class MCPTransport:
    """
    JSON-RPC over HTTP POST for the document tools.
    Every tool call is routed to the tenant endpoint of the verified principal.
    """

    def __init__(self, config: Config, document_client: DocumentClient):
        self.config = config
        self.document_client = document_client
        self.tools = {tool.name: tool for tool in TOOLS}

        self.server_info = {
            "name": config.mcp_server_name,
            "version": config.mcp_server_version,
        }

    async def handle_post_request(self, request: Request, principal: Principal) -> Response:
        """Handle POST request for JSON-RPC messages"""
        content_type = request.headers.get("content-type", "")
        if not content_type.startswith("application/json"):
            raise HTTPException(status_code=400, detail="Content-Type must be application/json")

        body = await request.body()
        if not body:
            raise HTTPException(status_code=400, detail="Request body is required")

        try:
            message = json.loads(body)
        except json.JSONDecodeError as e:
            raise HTTPException(status_code=400, detail=f"Invalid JSON: {e}")

        protocol_version = request.headers.get("mcp-protocol-version")
        if protocol_version and protocol_version != self.config.mcp_protocol_version:
            logger.warning(f"Unsupported protocol version: {protocol_version}")

        if isinstance(message, list):
            responses = []
            for msg in message:
                response = await self.handle_message(msg, principal)
                if response is not None:
                    responses.append(response)
            if not responses:
                return Response(status_code=202)
            return JSONResponse(content=responses)

        response = await self.handle_message(message, principal)
        if response is None:
            return Response(status_code=202)
        return JSONResponse(content=response)

    async def handle_message(self, message: Any, principal: Principal) -> Optional[Dict[str, Any]]:
        """Dispatch one JSON-RPC message; notifications get no response"""
        try:
            rpc = MCPRequest.model_validate(message)
        except ValidationError:
            msg_id = message.get("id") if isinstance(message, dict) else None
            return self._create_error_response(msg_id, -32600, "Invalid Request")

        if rpc.id is None and rpc.method.startswith("notifications/"):
            return None

        params = rpc.params or {}
        if rpc.method == "initialize":
            return self._result(rpc.id, {
                "protocolVersion": self.config.mcp_protocol_version,
                "serverInfo": self.server_info,
                "capabilities": {"tools": {}},
            })
        if rpc.method == "ping":
            return self._result(rpc.id, {
                "status": "pong",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            })
        if rpc.method == "tools/list":
            if not principal.has_scope(*READ_SCOPES):
                return self._create_error_response(rpc.id, -32603, "Insufficient permissions", "mcp:read scope required")
            return self._result(rpc.id, {
                "tools": [tool.model_dump() for tool in self.tools.values()],
            })
        if rpc.method == "tools/call":
            return await self._handle_tools_call(rpc.id, params, principal)

        return self._create_error_response(rpc.id, -32601, "Method not found", f"Unknown method: {rpc.method}")

    async def _handle_tools_call(
        self,
        msg_id: Optional[Union[str, int]],
        params: Dict[str, Any],
        principal: Principal,
    ) -> Dict[str, Any]:
        tool_name = params.get("name")
        arguments = params.get("arguments") or {}

        if not tool_name:
            return self._create_error_response(msg_id, -32602, "Invalid params", "Tool name is required")

        tool = self.tools.get(tool_name)
        if tool is None:
            return self._create_error_response(msg_id, -32601, "Tool not found", f"Tool '{tool_name}' not found")

        required = WRITE_SCOPES if tool.write else READ_SCOPES
        if not principal.has_scope(*required):
            scope_name = "mcp:write" if tool.write else "mcp:read"
            return self._create_error_response(msg_id, -32603, "Insufficient permissions", f"{scope_name} scope required")

        missing = [name for name in tool.inputSchema.get("required", []) if arguments.get(name) in (None, "")]
        if missing:
            return self._create_error_response(msg_id, -32602, "Invalid params", f"Missing arguments: {', '.join(missing)}")

        try:
            result = await self._execute_tool(tool_name, arguments, principal)
        except (TypeError, ValueError) as e:
            return self._create_error_response(msg_id, -32602, "Invalid params", str(e))
        except DocumentAPIError as e:
            logger.error(f"Error executing tool {tool_name}: {e}")
            return self._result(msg_id, {
                "content": [{"type": "text", "text": str(e)}],
                "isError": True,
            })

        return self._result(msg_id, {
            "content": [{"type": "text", "text": json.dumps(result, indent=2)}],
        })

    async def _execute_tool(self, tool_name: str, arguments: Dict[str, Any], principal: Principal) -> Any:
        """Execute the specified tool against the principal's tenant endpoint"""
        base_url = principal.tenant_endpoint
        client = self.document_client

        if tool_name == "ingest_text":
            return await client.ingest_text(
                base_url,
                arguments["content"],
                filename=arguments.get("filename"),
                metadata=arguments.get("metadata"),
                folder_name=arguments.get("folderName"),
                end_user_id=arguments.get("endUserId"),
            )
        if tool_name in ("retrieve_chunks", "retrieve_docs"):
            retrieve = client.retrieve_chunks if tool_name == "retrieve_chunks" else client.retrieve_docs
            return await retrieve(
                base_url,
                arguments["query"],
                filters=arguments.get("filters"),
                k=int(arguments.get("k", 4)),
                min_score=float(arguments.get("minScore", 0)),
                folder_name=arguments.get("folderName"),
                end_user_id=arguments.get("endUserId"),
            )
        if tool_name == "list_documents":
            return await client.list_documents(
                base_url,
                skip=int(arguments.get("skip", 0)),
                limit=int(arguments.get("limit", 100)),
                filters=arguments.get("filters"),
            )
        if tool_name == "get_document":
            return await client.get_document(base_url, arguments["documentId"])
        if tool_name == "delete_document":
            return await client.delete_document(base_url, arguments["documentId"])

        raise ValueError(f"Unknown tool: {tool_name}")

    def _result(self, msg_id: Optional[Union[str, int]], result: Dict[str, Any]) -> Dict[str, Any]:
        return {"jsonrpc": "2.0", "id": msg_id, "result": result}

    def _create_error_response(
        self,
        msg_id: Optional[Union[str, int]],
        code: int,
        message: str,
        data: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a JSON-RPC error response"""
        error = {
            "code": code,
            "message": message
        }
        if data:
            error["data"] = data

        return {
            "jsonrpc": "2.0",
            "id": msg_id,
            "error": error
        }
