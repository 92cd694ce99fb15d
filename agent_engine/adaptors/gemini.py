"""Google Gemini API adaptor for agent-engine."""

import logging
from typing import Optional

from google import genai
from google.genai import errors, types

from agent_engine.exceptions import ProviderRequestError
from agent_engine.execution import Message, TokenUsage, ToolCall
from agent_engine.provider import ProviderAdaptor, ProviderRequest, ProviderResponse
from agent_engine.tools import ToolDescriptor

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMA_KEYS = {
    "type", "description", "enum", "items",
    "properties", "required", "nullable",
}


class GeminiAdaptor(ProviderAdaptor):
    """Google Gemini provider adaptor using the official google-genai SDK.

    Args:
        api_key: Google AI API key. Falls back to GOOGLE_API_KEY environment variable.
        model: Model name (default: gemini-2.5-flash).
    """

    name = "Google"
    env_var = "GOOGLE_API_KEY"
    default_model = "gemini-2.5-flash"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
    ):
        super().__init__(api_key=api_key, model=model)
        self._client: Optional[genai.Client] = None
        self._client_key: Optional[str] = None

    def _client_for(self, api_key: str) -> genai.Client:
        if self._client is None or self._client_key != api_key:
            self._client = genai.Client(api_key=api_key)
            self._client_key = api_key
        return self._client

    async def _call(
        self,
        messages: list[Message],
        request: ProviderRequest,
        api_key: str,
    ) -> ProviderResponse:
        contents = self._convert_messages(messages)
        config = self._build_config(messages, request)

        try:
            response = await self._client_for(api_key).aio.models.generate_content(
                model=request.model or self.model,
                contents=contents,
                config=config,
            )
        except errors.APIError as e:
            raise ProviderRequestError(
                f"Gemini API error: {e}", status_code=getattr(e, "code", None)
            ) from e
        return self._parse_response(response)

    def _build_config(
        self, messages: list[Message], request: ProviderRequest
    ) -> types.GenerateContentConfig:
        system = "\n\n".join(
            m.content for m in messages if m.role == "system" and m.content
        )
        config_kwargs = {
            "tools": [self._convert_tools(request.tools)] if request.tools else None,
            "automatic_function_calling": types.AutomaticFunctionCallingConfig(
                disable=True,
            ),
        }
        if system:
            config_kwargs["system_instruction"] = system
        if request.temperature is not None:
            config_kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            config_kwargs["max_output_tokens"] = request.max_tokens
        if request.response_format is not None:
            config_kwargs["response_mime_type"] = "application/json"
            config_kwargs["response_schema"] = self._clean_schema(
                request.response_format.schema
            )
            logger.info("Added JSON schema response format to Gemini request")
        return types.GenerateContentConfig(**config_kwargs)

    def _convert_messages(self, messages: list[Message]) -> list[types.Content]:
        contents = []
        for msg in messages:
            if msg.role == "user":
                contents.append(types.Content(
                    role="user",
                    parts=[types.Part(text=msg.content or "")],
                ))
            elif msg.role == "assistant":
                parts = []
                if msg.content:
                    parts.append(types.Part(text=msg.content))
                for tc in msg.tool_calls or []:
                    part_kwargs = {
                        "function_call": types.FunctionCall(
                            name=tc.tool_id,
                            args=tc.arguments,
                        ),
                    }
                    if tc.thought_signature is not None:
                        part_kwargs["thought_signature"] = tc.thought_signature
                    parts.append(types.Part(**part_kwargs))
                contents.append(types.Content(role="model", parts=parts))
            elif msg.role == "tool":
                part = types.Part(
                    function_response=types.FunctionResponse(
                        name=self._find_tool_id(messages, msg.tool_call_id),
                        response={"result": msg.content},
                    ),
                )
                previous = contents[-1] if contents else None
                if previous is not None and previous.role == "user" and all(
                    p.function_response is not None for p in previous.parts
                ):
                    previous.parts.append(part)
                else:
                    contents.append(types.Content(role="user", parts=[part]))
        return contents

    def _find_tool_id(self, messages: list[Message], tool_call_id: str) -> str:
        for msg in messages:
            for tc in msg.tool_calls or []:
                if tc.id == tool_call_id:
                    return tc.tool_id
        return "unknown"

    def _convert_tools(self, tools: list[ToolDescriptor]) -> types.Tool:
        declarations = []
        for tool in tools:
            declarations.append(types.FunctionDeclaration(
                name=tool.id,
                description=tool.description,
                parameters=self._clean_schema(tool.model_parameters()) or None,
            ))
        return types.Tool(function_declarations=declarations)

    def _clean_schema(self, schema: dict, is_properties: bool = False) -> dict:
        """Remove JSON Schema fields that Gemini doesn't support.

        Pydantic generates fields like additionalProperties, anyOf, $defs,
        title, default, etc. that the Gemini API rejects. Only a subset of
        OpenAPI 3.0 is supported.
        """
        if not isinstance(schema, dict):
            return schema

        cleaned = {}
        for key, value in schema.items():
            # Inside "properties", keys are user-defined property names
            if is_properties:
                cleaned[key] = self._clean_schema(value) if isinstance(value, dict) else value
                continue

            # anyOf: [{"type": "X"}, {"type": "null"}] -> type X + nullable
            if key == "anyOf":
                non_null = [s for s in value if s.get("type") != "null"]
                has_null = any(s.get("type") == "null" for s in value)
                if len(non_null) == 1:
                    resolved = self._clean_schema(non_null[0])
                    if has_null:
                        resolved["nullable"] = True
                    cleaned.update(resolved)
                continue

            if key not in SUPPORTED_SCHEMA_KEYS:
                continue

            if key == "properties" and isinstance(value, dict):
                cleaned[key] = self._clean_schema(value, is_properties=True)
            elif isinstance(value, dict):
                cleaned[key] = self._clean_schema(value)
            elif isinstance(value, list):
                cleaned[key] = [
                    self._clean_schema(item) if isinstance(item, dict) else item
                    for item in value
                ]
            else:
                cleaned[key] = value

        return cleaned

    def _parse_response(self, response) -> ProviderResponse:
        tool_calls = []
        texts = []
        for candidate in (response.candidates or [])[:1]:
            parts = candidate.content.parts if candidate.content else None
            for index, part in enumerate(parts or []):
                if part.function_call:
                    fc = part.function_call
                    tool_calls.append(ToolCall(
                        id=fc.id or f"call_{fc.name}_{index}",
                        tool_id=fc.name,
                        arguments=dict(fc.args) if fc.args else {},
                        thought_signature=getattr(part, "thought_signature", None),
                    ))
                elif part.text:
                    texts.append(part.text)

        usage = response.usage_metadata
        prompt = (usage.prompt_token_count or 0) if usage else 0
        completion = (usage.candidates_token_count or 0) if usage else 0
        total = (usage.total_token_count or prompt + completion) if usage else 0

        return ProviderResponse(
            content="".join(texts) or None,
            usage=TokenUsage(prompt=prompt, completion=completion, total=total),
            tool_calls=tool_calls,
        )
