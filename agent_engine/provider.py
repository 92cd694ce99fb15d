import os
from dataclasses import dataclass, field
from typing import Optional

from agent_engine.exceptions import AuthenticationError
from agent_engine.execution import Message, TokenUsage, ToolCall
from agent_engine.tools import ToolDescriptor


@dataclass
class ResponseFormat:
    """Structured-output schema the provider must enforce."""

    schema: dict
    name: str = "response_schema"
    strict: bool = True


@dataclass
class ProviderRequest:
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    context: Optional[str] = None
    messages: list[Message] = field(default_factory=list)
    tools: list[ToolDescriptor] = field(default_factory=list)
    response_format: Optional[ResponseFormat] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    api_key: Optional[str] = None


@dataclass
class ProviderResponse:
    content: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    tool_calls: list[ToolCall] = field(default_factory=list)


class ProviderAdaptor:
    """Normalizes one request into one vendor call and back.

    Subclasses set `env_var` and `default_model` and implement `_call`.
    Exactly one outbound call per `call`; retries belong to the caller.
    """

    name: str = "provider"
    env_var: Optional[str] = None
    default_model: Optional[str] = None

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key or (os.environ.get(self.env_var) if self.env_var else None)
        self.model = model or self.default_model

    def resolve_api_key(self, request: ProviderRequest) -> str:
        api_key = request.api_key or self.api_key
        if not api_key:
            hint = f" or set {self.env_var} environment variable" if self.env_var else ""
            raise AuthenticationError(
                f"{self.name} API key not provided. Pass api_key{hint}."
            )
        return api_key

    async def call(
        self,
        messages: list[Message],
        request: ProviderRequest,
    ) -> ProviderResponse:
        """Call the model with the transcript and the request's options."""
        api_key = self.resolve_api_key(request)
        return await self._call(messages, request, api_key)

    async def _call(
        self,
        messages: list[Message],
        request: ProviderRequest,
        api_key: str,
    ) -> ProviderResponse:
        raise NotImplementedError
