#!/usr/bin/env python3
"""Conversation loop using tools discovered on an MCP server.

Starts mcp_server.py over stdio, registers its tools and runs one loop
with a scripted model, so no API key is needed.

Requirements:
    pip install agent-engine[mcp]

Run:
    python examples/mcp_loop.py
"""

import asyncio
import os
import sys

from mcp.client.stdio import StdioServerParameters

from agent_engine import (
    ConversationLoop,
    Message,
    ProviderAdaptor,
    ProviderRequest,
    ProviderResponse,
    ToolCall,
    ToolExecutor,
    ToolRegistry,
)
from agent_engine.mcp import MCPConnection


class ScriptedModel(ProviderAdaptor):
    """Calls 'word_count' once, then answers with the tool output."""

    def __init__(self):
        super().__init__(api_key="offline")
        self.call_count = 0

    async def _call(self, messages, request, api_key):
        self.call_count += 1
        if self.call_count == 1:
            return ProviderResponse(
                tool_calls=[
                    ToolCall(
                        id="call_1",
                        tool_id="word_count",
                        arguments={"text": "the quick brown fox"},
                    )
                ],
            )
        return ProviderResponse(content=f"The text has {messages[-1].content} words.")


async def main():
    server_params = StdioServerParameters(
        command=sys.executable,
        args=[os.path.join(os.path.dirname(__file__), "mcp_server.py")],
    )

    async with MCPConnection(server_params) as mcp_tools:
        registry = ToolRegistry(mcp_tools)
        print(f"Discovered {len(registry)} MCP tool(s): {[t.id for t in mcp_tools]}")

        loop = ConversationLoop(model=ScriptedModel(), executor=ToolExecutor(registry))
        result = await loop.run_async(ProviderRequest(
            messages=[Message(role="user", content="How many words?")],
            tools=registry.descriptors(),
        ))

        print(f"State: {result.state}")
        for tc in result.tool_calls:
            print(f"  {tc.tool_id}({tc.arguments}) -> {tc.result}")
        print(f"Response: {result.content}")


if __name__ == "__main__":
    asyncio.run(main())
