"""Anthropic API adaptor for agent-engine."""

import json
import logging
from typing import Optional

from anthropic import APIError, AsyncAnthropic

from agent_engine.exceptions import ProviderRequestError
from agent_engine.execution import Message, TokenUsage, ToolCall
from agent_engine.provider import ProviderAdaptor, ProviderRequest, ProviderResponse
from agent_engine.tools import ToolDescriptor

logger = logging.getLogger(__name__)


class AnthropicAdaptor(ProviderAdaptor):
    """Anthropic provider adaptor using the official SDK.

    Structured output is enforced through a synthetic tool whose input
    schema is the requested schema; its input comes back as JSON content.

    Args:
        api_key: Anthropic API key. Falls back to ANTHROPIC_API_KEY environment variable.
        model: Model name (default: claude-sonnet-4-5-20250929).
        max_tokens: Maximum tokens in the response when the request sets none.
    """

    name = "Anthropic"
    env_var = "ANTHROPIC_API_KEY"
    default_model = "claude-sonnet-4-5-20250929"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 1024,
    ):
        super().__init__(api_key=api_key, model=model)
        self.max_tokens = max_tokens
        self._client: Optional[AsyncAnthropic] = None
        self._client_key: Optional[str] = None

    def _client_for(self, api_key: str) -> AsyncAnthropic:
        if self._client is None or self._client_key != api_key:
            self._client = AsyncAnthropic(api_key=api_key)
            self._client_key = api_key
        return self._client

    async def _call(
        self,
        messages: list[Message],
        request: ProviderRequest,
        api_key: str,
    ) -> ProviderResponse:
        create_kwargs = self._build_kwargs(messages, request)
        try:
            response = await self._client_for(api_key).messages.create(**create_kwargs)
        except APIError as e:
            raise ProviderRequestError(
                f"Anthropic API error: {e}",
                status_code=getattr(e, "status_code", None),
            ) from e
        return self._parse_response(response, request)

    def _build_kwargs(self, messages: list[Message], request: ProviderRequest) -> dict:
        create_kwargs = {
            "model": request.model or self.model,
            "max_tokens": request.max_tokens or self.max_tokens,
            "messages": self._convert_messages(messages),
        }

        system = "\n\n".join(
            m.content for m in messages if m.role == "system" and m.content
        )
        if system:
            create_kwargs["system"] = system
        if request.temperature is not None:
            create_kwargs["temperature"] = request.temperature

        tools = [self._convert_tool(tool) for tool in request.tools]
        if request.response_format is not None:
            tools.append({
                "name": request.response_format.name,
                "description": "Respond with output matching this schema.",
                "input_schema": request.response_format.schema,
            })
            if not request.tools:
                create_kwargs["tool_choice"] = {
                    "type": "tool",
                    "name": request.response_format.name,
                }
            logger.info("Added structured output tool to Anthropic request")
        if tools:
            create_kwargs["tools"] = tools

        return create_kwargs

    def _convert_messages(self, messages: list[Message]) -> list[dict]:
        anthropic_messages = []
        for msg in messages:
            if msg.role == "user":
                anthropic_messages.append({"role": "user", "content": msg.content or ""})
            elif msg.role == "assistant":
                content_blocks = []
                if msg.content:
                    content_blocks.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls or []:
                    content_blocks.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.tool_id,
                        "input": tc.arguments,
                    })
                anthropic_messages.append({
                    "role": "assistant",
                    "content": content_blocks or (msg.content or ""),
                })
            elif msg.role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.content or "",
                }
                # Results of one turn's calls share a single user message
                previous = anthropic_messages[-1] if anthropic_messages else None
                if (
                    previous
                    and previous["role"] == "user"
                    and isinstance(previous["content"], list)
                    and all(b.get("type") == "tool_result" for b in previous["content"])
                ):
                    previous["content"].append(block)
                else:
                    anthropic_messages.append({"role": "user", "content": [block]})
        return anthropic_messages

    def _convert_tool(self, tool: ToolDescriptor) -> dict:
        return {
            "name": tool.id,
            "description": tool.description,
            "input_schema": tool.model_parameters() or {"type": "object", "properties": {}},
        }

    def _parse_response(self, response, request: ProviderRequest) -> ProviderResponse:
        structured_name = (
            request.response_format.name if request.response_format else None
        )
        texts = []
        tool_calls = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                if block.name == structured_name:
                    texts.append(json.dumps(block.input))
                    continue
                tool_calls.append(
                    ToolCall(id=block.id, tool_id=block.name, arguments=dict(block.input))
                )

        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "input_tokens", 0) or 0
        output_tokens = getattr(usage, "output_tokens", 0) or 0

        return ProviderResponse(
            content="".join(texts) or None,
            usage=TokenUsage(
                prompt=input_tokens,
                completion=output_tokens,
                total=input_tokens + output_tokens,
            ),
            tool_calls=tool_calls,
        )
