"""MCP (Model Context Protocol) tool source for agent-engine.

Exposes the tools of an MCP server as `Tool` instances that can be
registered in a `ToolRegistry`:

    async with MCPConnection("http://localhost:8000/mcp") as tools:
        registry = ToolRegistry(tools)
        loop = ConversationLoop(model, ToolExecutor(registry))
        request = ProviderRequest(tools=registry.descriptors(), ...)

Requires: pip install agent-engine[mcp]
"""

import asyncio
import json
import logging
from contextlib import AsyncExitStack
from typing import Any, Literal, Optional, Union

from mcp import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.client.streamable_http import streamablehttp_client
from pydantic import BaseModel, Field, create_model

from agent_engine.exceptions import ToolExecutionError
from agent_engine.tools import Tool

logger = logging.getLogger(__name__)

_JSON_TYPE_MAP: dict[str, type] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
}

DEFAULT_TIMEOUT = 30.0


def _json_schema_to_python_type(prop_schema: dict, prop_name: str, parent_name: str) -> type:
    """Map one JSON Schema property to a type annotation; Any when unrecognized."""
    if "enum" in prop_schema:
        return Literal[tuple(prop_schema["enum"])]  # type: ignore[valid-type]

    schema_type = prop_schema.get("type")
    if schema_type in _JSON_TYPE_MAP:
        return _JSON_TYPE_MAP[schema_type]

    if schema_type == "array":
        items = prop_schema.get("items") or {}
        if items.get("type") in _JSON_TYPE_MAP:
            return list[_JSON_TYPE_MAP[items["type"]]]
        return list

    if schema_type == "object":
        if "properties" in prop_schema:
            return _schema_to_pydantic(f"{parent_name}_{prop_name}", prop_schema)
        return dict

    return Any


def _schema_to_pydantic(tool_id: str, schema: dict) -> type[BaseModel]:
    """Build a Pydantic model from an MCP inputSchema.

    Non-required fields without a default become Optional with None.
    """
    required = set(schema.get("required", []))
    fields: dict[str, Any] = {}

    for prop_name, prop_schema in schema.get("properties", {}).items():
        python_type = _json_schema_to_python_type(prop_schema, prop_name, tool_id)
        is_required = prop_name in required
        default = ... if is_required else prop_schema.get("default", None)
        if not is_required and default is None:
            python_type = Optional[python_type]
        fields[prop_name] = (
            python_type,
            Field(default=default, description=prop_schema.get("description", "")),
        )

    return create_model(f"{tool_id}_Input", **fields)


def _render_content(tool_id: str, result: Any) -> str:
    """Flatten a CallToolResult into the string the loop sends back to the model."""
    texts = [block.text for block in result.content if hasattr(block, "text")]
    if result.isError:
        raise ToolExecutionError(f"MCP tool '{tool_id}' returned error: {' '.join(texts)}")

    skipped = len(result.content) - len(texts)
    if skipped:
        texts.append(f"[{skipped} non-text content block(s) omitted]")

    if not texts:
        return ""
    if len(texts) == 1:
        return texts[0]
    return json.dumps(texts)


class MCPTool(Tool):
    """One MCP server tool, callable through a ToolExecutor."""

    def __init__(
        self,
        id: str,
        description: str,
        input_schema: dict,
        session: ClientSession,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.id = id
        self.description = description
        self.input_schema = input_schema
        self.input_model = _schema_to_pydantic(id, input_schema)
        self._session = session
        self._timeout = timeout

    def schema(self) -> dict:
        # The server's own schema, not the one regenerated from input_model
        return self.input_schema

    async def execute(self, **kwargs) -> str:
        # Unset optionals were filled with None by validation; the server
        # applies its own defaults
        arguments = {k: v for k, v in kwargs.items() if v is not None}
        call = self._session.call_tool(self.id, arguments=arguments)
        try:
            result = await asyncio.wait_for(call, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise ToolExecutionError(f"MCP tool '{self.id}' timed out after {self._timeout}s")
        except Exception as e:
            raise ToolExecutionError(f"MCP tool '{self.id}' call failed: {e}") from e
        return _render_content(self.id, result)


class MCPConnection:
    """One MCP server connection whose tools feed a ToolRegistry.

    Args:
        server_params: StdioServerParameters for stdio, or a URL string for
            streamable HTTP.
        timeout: Seconds allowed for initialize, list_tools and each tool call.
    """

    def __init__(
        self,
        server_params: Union[StdioServerParameters, str],
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._server_params = server_params
        self._timeout = timeout
        self._exit_stack: Optional[AsyncExitStack] = None
        self._session: Optional[ClientSession] = None

    async def connect(self) -> list[Tool]:
        """Open the session and return the server's tools as MCPTool instances."""
        if self._exit_stack is not None:
            await self.disconnect()

        self._exit_stack = AsyncExitStack()
        try:
            self._session = await self._open_session(self._exit_stack)
            await asyncio.wait_for(self._session.initialize(), timeout=self._timeout)
            listing = await asyncio.wait_for(self._session.list_tools(), timeout=self._timeout)
        except BaseException:
            await self.disconnect()
            raise

        tools = [self._wrap(server_tool) for server_tool in listing.tools]
        logger.info(f"Connected to MCP server with {len(tools)} tools")
        return tools

    async def disconnect(self) -> None:
        """Close the session and transport; safe to call when not connected."""
        if self._exit_stack is None:
            return
        exit_stack, self._exit_stack, self._session = self._exit_stack, None, None
        await exit_stack.aclose()

    async def _open_session(self, exit_stack: AsyncExitStack) -> ClientSession:
        if isinstance(self._server_params, str):
            transport = streamablehttp_client(self._server_params)
        else:
            transport = stdio_client(self._server_params)
        read_stream, write_stream, *_ = await exit_stack.enter_async_context(transport)
        return await exit_stack.enter_async_context(ClientSession(read_stream, write_stream))

    def _wrap(self, server_tool: Any) -> MCPTool:
        return MCPTool(
            id=server_tool.name,
            description=server_tool.description or "",
            input_schema=server_tool.inputSchema,
            session=self._session,
            timeout=self._timeout,
        )

    async def __aenter__(self) -> list[Tool]:
        return await self.connect()

    async def __aexit__(self, *exc: Any) -> None:
        await self.disconnect()
