"""OpenAI API adaptor for agent-engine."""

import json
import logging
import os
from typing import Optional

import httpx

from agent_engine.exceptions import ProviderRequestError
from agent_engine.execution import Message, TokenUsage, ToolCall
from agent_engine.provider import (
    ProviderAdaptor,
    ProviderRequest,
    ProviderResponse,
    ResponseFormat,
)
from agent_engine.tools import ToolDescriptor

logger = logging.getLogger(__name__)


class OpenAIAdaptor(ProviderAdaptor):
    """OpenAI-compatible provider adaptor.

    Supports OpenAI API and compatible endpoints (local models, proxies, etc.).

    Args:
        api_key: OpenAI API key. Falls back to OPENAI_API_KEY environment variable.
        model: Model name (default: gpt-4o).
        base_url: Base URL for the API. Falls back to OPENAI_BASE_URL, then
            https://api.openai.com/v1.
        timeout: Request timeout in seconds.
    """

    name = "OpenAI"
    env_var = "OPENAI_API_KEY"
    default_model = "gpt-4o"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
    ):
        super().__init__(api_key=api_key, model=model)
        self.base_url = (
            base_url or os.environ.get("OPENAI_BASE_URL") or "https://api.openai.com/v1"
        )
        self.timeout = timeout

    async def _call(
        self,
        messages: list[Message],
        request: ProviderRequest,
        api_key: str,
    ) -> ProviderResponse:
        """Call the chat completions endpoint.

        Raises:
            ProviderRequestError: If the request fails or the response is malformed.
        """
        payload = self._build_payload(messages, request)

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {api_key}",
                        "Content-Type": "application/json",
                    },
                    timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            raise ProviderRequestError(f"OpenAI request failed: {e}") from e

        if response.status_code != 200:
            raise ProviderRequestError(
                f"OpenAI API error: {self._error_message(response)}",
                status_code=response.status_code,
            )

        return self._parse_response(response.json())

    def _build_payload(self, messages: list[Message], request: ProviderRequest) -> dict:
        model = request.model or self.model
        logger.info(
            f"Preparing OpenAI request: model={model}, messages={len(messages)}, "
            f"tools={len(request.tools)}, structured={request.response_format is not None}"
        )

        payload = {
            "model": model,
            "messages": self._convert_messages(messages),
        }

        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens

        if request.response_format is not None:
            payload["response_format"] = self._convert_response_format(
                request.response_format
            )

        if request.tools:
            payload["tools"] = [self._convert_tool(tool) for tool in request.tools]
            payload["tool_choice"] = "auto"

        return payload

    def _error_message(self, response: httpx.Response) -> str:
        try:
            error_data = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        error = error_data.get("error") if isinstance(error_data, dict) else None
        if isinstance(error, dict):
            return error.get("message", "Unknown error")
        return "Unknown error"

    def _convert_messages(self, messages: list[Message]) -> list[dict]:
        """Convert agent-engine Message objects to OpenAI format."""
        openai_messages = []
        for msg in messages:
            openai_msg = {"role": msg.role, "content": msg.content}

            # Handle tool messages - include tool_call_id
            if msg.tool_call_id:
                openai_msg["tool_call_id"] = msg.tool_call_id

            # Handle assistant messages with tool calls
            if msg.role == "assistant" and msg.tool_calls:
                openai_msg["tool_calls"] = self._format_tool_calls(msg.tool_calls)

            openai_messages.append(openai_msg)
        return openai_messages

    def _format_tool_calls(self, tool_calls: list[ToolCall]) -> list[dict]:
        return [
            {
                "id": tool_call.id,
                "type": "function",
                "function": {
                    "name": tool_call.tool_id,
                    "arguments": json.dumps(tool_call.arguments),
                },
            }
            for tool_call in tool_calls
        ]

    def _convert_tool(self, tool: ToolDescriptor) -> dict:
        return {
            "type": "function",
            "function": {
                "name": tool.id,
                "description": tool.description,
                "parameters": tool.model_parameters(),
            },
        }

    def _convert_response_format(self, response_format: ResponseFormat) -> dict:
        return {
            "type": "json_schema",
            "json_schema": {
                "name": response_format.name,
                "schema": response_format.schema,
                "strict": response_format.strict,
            },
        }

    def _parse_response(self, data: dict) -> ProviderResponse:
        """Parse OpenAI API response into ProviderResponse.

        Raises:
            ProviderRequestError: If response format is unexpected.
        """
        if not data.get("choices"):
            raise ProviderRequestError("OpenAI response missing 'choices' field")

        message = data["choices"][0].get("message", {})
        usage = data.get("usage") or {}

        tool_calls = []
        for tool_call_data in message.get("tool_calls") or []:
            name = tool_call_data["function"]["name"]
            raw_arguments = tool_call_data["function"]["arguments"] or "{}"
            error = None
            try:
                arguments = json.loads(raw_arguments)
            except json.JSONDecodeError as e:
                # Kept with an error so the loop skips this call and runs the rest
                logger.warning(f"OpenAI returned malformed arguments for '{name}': {e}")
                arguments = {}
                error = f"Malformed arguments {raw_arguments!r}: {e}"
            tool_calls.append(
                ToolCall(
                    id=tool_call_data["id"],
                    tool_id=name,
                    arguments=arguments,
                    error=error,
                )
            )

        return ProviderResponse(
            content=message.get("content") or None,
            usage=TokenUsage(
                prompt=usage.get("prompt_tokens") or 0,
                completion=usage.get("completion_tokens") or 0,
                total=usage.get("total_tokens") or 0,
            ),
            tool_calls=tool_calls,
        )
