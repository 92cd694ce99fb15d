"""Tests for OpenAI provider adaptor."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from pydantic import BaseModel

from agent_engine.adaptors.openai import OpenAIAdaptor
from agent_engine.exceptions import AuthenticationError, ProviderRequestError
from agent_engine.execution import Message, ToolCall
from agent_engine.loop import ConversationLoop
from agent_engine.provider import ProviderRequest, ResponseFormat
from agent_engine.tools import Tool, ToolExecutor, ToolRegistry


# --- Test Fixtures ---


class DummyToolInput(BaseModel):
    query: str
    api_key: str


class DummyTool(Tool):
    id = "dummy"
    description = "A dummy tool for testing"
    input_model = DummyToolInput

    async def execute(self, query: str, api_key: str) -> str:
        return f"Result for {query}"


def completion(message: dict, usage: dict = None) -> dict:
    data = {"choices": [{"message": {"role": "assistant", **message}}]}
    if usage is not None:
        data["usage"] = usage
    return data


def mock_http(status_code: int = 200, data: dict = None):
    """Patch httpx.AsyncClient; returns (patcher, client instance)."""
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.json.return_value = data if data is not None else {}
    mock_response.text = ""

    patcher = patch("httpx.AsyncClient")
    mock_client = patcher.start()
    mock_instance = AsyncMock()
    mock_client.return_value.__aenter__.return_value = mock_instance
    mock_instance.post.return_value = mock_response
    return patcher, mock_instance


@pytest.fixture
def no_env(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_BASE_URL", raising=False)


# --- Tests for Initialization ---


class TestOpenAIAdaptorInit:
    def test_init_with_explicit_api_key(self, no_env):
        adaptor = OpenAIAdaptor(api_key="sk-test123", model="gpt-4")
        assert adaptor.api_key == "sk-test123"
        assert adaptor.model == "gpt-4"
        assert adaptor.base_url == "https://api.openai.com/v1"

    def test_init_with_env_var(self, no_env, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env123")
        adaptor = OpenAIAdaptor()
        assert adaptor.api_key == "sk-env123"
        assert adaptor.model == "gpt-4o"

    def test_init_base_url_from_env(self, no_env, monkeypatch):
        monkeypatch.setenv("OPENAI_BASE_URL", "http://proxy:9000/v1")
        assert OpenAIAdaptor(api_key="sk").base_url == "http://proxy:9000/v1"

    def test_init_custom_base_url_wins(self, no_env, monkeypatch):
        monkeypatch.setenv("OPENAI_BASE_URL", "http://proxy:9000/v1")
        adaptor = OpenAIAdaptor(api_key="sk-test", base_url="http://localhost:8000/v1")
        assert adaptor.base_url == "http://localhost:8000/v1"

    def test_init_without_key_does_not_raise(self, no_env):
        assert OpenAIAdaptor().api_key is None

    def test_init_explicit_api_key_overrides_env(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        adaptor = OpenAIAdaptor(api_key="sk-explicit")
        assert adaptor.api_key == "sk-explicit"


# --- Tests for Message Conversion ---


class TestConvertMessages:
    def test_convert_plain_messages(self):
        adaptor = OpenAIAdaptor(api_key="sk-test")
        messages = [
            Message(role="system", content="Be brief"),
            Message(role="user", content="Hi"),
            Message(role="assistant", content="Hello there"),
        ]

        result = adaptor._convert_messages(messages)

        assert [m["role"] for m in result] == ["system", "user", "assistant"]
        assert result[1]["content"] == "Hi"

    def test_convert_tool_flow(self):
        adaptor = OpenAIAdaptor(api_key="sk-test")
        tool_call = ToolCall(id="call_456", tool_id="dummy", arguments={"query": "x"})
        messages = [
            Message(role="user", content="Do something"),
            Message(role="assistant", content=None, tool_calls=[tool_call]),
            Message(role="tool", content="Result: success", tool_call_id="call_456"),
        ]

        result = adaptor._convert_messages(messages)

        assert result[1]["content"] is None
        formatted = result[1]["tool_calls"][0]
        assert formatted["id"] == "call_456"
        assert formatted["type"] == "function"
        assert formatted["function"]["name"] == "dummy"
        assert json.loads(formatted["function"]["arguments"]) == {"query": "x"}

        assert result[2]["role"] == "tool"
        assert result[2]["tool_call_id"] == "call_456"


# --- Tests for Payload ---


class TestBuildPayload:
    def test_minimal_payload(self):
        adaptor = OpenAIAdaptor(api_key="sk-test", model="gpt-4")
        payload = adaptor._build_payload(
            [Message(role="user", content="Hello")], ProviderRequest()
        )

        assert payload["model"] == "gpt-4"
        assert "temperature" not in payload
        assert "max_tokens" not in payload
        assert "tools" not in payload
        assert "response_format" not in payload

    def test_request_model_overrides_default(self):
        adaptor = OpenAIAdaptor(api_key="sk-test", model="gpt-4")
        payload = adaptor._build_payload([], ProviderRequest(model="gpt-4o-mini"))
        assert payload["model"] == "gpt-4o-mini"

    def test_tools_hide_fixed_params(self):
        adaptor = OpenAIAdaptor(api_key="sk-test")
        request = ProviderRequest(tools=[DummyTool().descriptor(params={"api_key": "secret"})])

        payload = adaptor._build_payload([], request)

        assert payload["tool_choice"] == "auto"
        function = payload["tools"][0]["function"]
        assert function["name"] == "dummy"
        assert function["description"] == "A dummy tool for testing"
        assert "query" in function["parameters"]["properties"]
        assert "api_key" not in function["parameters"]["properties"]

    def test_structured_output(self):
        adaptor = OpenAIAdaptor(api_key="sk-test")
        schema = {"type": "object", "properties": {"answer": {"type": "string"}}}
        request = ProviderRequest(
            response_format=ResponseFormat(schema=schema, name="answer"),
            temperature=0.2,
            max_tokens=256,
        )

        payload = adaptor._build_payload([], request)

        assert payload["response_format"] == {
            "type": "json_schema",
            "json_schema": {"name": "answer", "schema": schema, "strict": True},
        }
        assert payload["temperature"] == 0.2
        assert payload["max_tokens"] == 256


# --- Tests for Response Parsing ---


class TestParseResponse:
    def test_parse_final_response(self):
        adaptor = OpenAIAdaptor(api_key="sk-test")
        data = completion(
            {"content": "This is the final answer.", "tool_calls": None},
            usage={"prompt_tokens": 12, "completion_tokens": 5, "total_tokens": 17},
        )

        result = adaptor._parse_response(data)

        assert result.content == "This is the final answer."
        assert result.tool_calls == []
        assert (result.usage.prompt, result.usage.completion, result.usage.total) == (12, 5, 17)

    def test_parse_returns_every_tool_call(self):
        adaptor = OpenAIAdaptor(api_key="sk-test")
        data = completion({
            "content": None,
            "tool_calls": [
                {
                    "id": "call_1",
                    "type": "function",
                    "function": {"name": "dummy", "arguments": json.dumps({"query": "first"})},
                },
                {
                    "id": "call_2",
                    "type": "function",
                    "function": {"name": "another", "arguments": json.dumps({"value": 42})},
                },
            ],
        })

        result = adaptor._parse_response(data)

        assert result.content is None
        assert [(c.id, c.tool_id) for c in result.tool_calls] == [
            ("call_1", "dummy"),
            ("call_2", "another"),
        ]
        assert result.tool_calls[1].arguments == {"value": 42}

    def test_parse_missing_usage_is_zero(self):
        adaptor = OpenAIAdaptor(api_key="sk-test")
        result = adaptor._parse_response(completion({"content": "ok"}))
        assert result.usage.total == 0

    def test_parse_response_missing_choices(self):
        adaptor = OpenAIAdaptor(api_key="sk-test")
        with pytest.raises(ProviderRequestError, match="missing 'choices'"):
            adaptor._parse_response({})

    def test_parse_malformed_arguments_keeps_the_call(self):
        adaptor = OpenAIAdaptor(api_key="sk-test")
        data = completion({
            "content": None,
            "tool_calls": [
                {"id": "c1", "type": "function", "function": {"name": "dummy", "arguments": "{oops"}},
                {
                    "id": "c2",
                    "type": "function",
                    "function": {"name": "dummy", "arguments": '{"query": "ok"}'},
                },
            ],
        })

        result = adaptor._parse_response(data)

        bad, good = result.tool_calls
        assert (bad.id, bad.tool_id, bad.arguments) == ("c1", "dummy", {})
        assert bad.error.startswith("Malformed arguments '{oops'")
        assert good.arguments == {"query": "ok"}
        assert good.error is None

    def test_parse_non_object_arguments_passed_through(self):
        adaptor = OpenAIAdaptor(api_key="sk-test")
        data = completion({
            "content": None,
            "tool_calls": [
                {"id": "c1", "type": "function", "function": {"name": "dummy", "arguments": "null"}},
                {"id": "c2", "type": "function", "function": {"name": "dummy", "arguments": "[1]"}},
            ],
        })

        result = adaptor._parse_response(data)

        assert [c.arguments for c in result.tool_calls] == [None, [1]]
        assert all(c.error is None for c in result.tool_calls)


# --- Tests for API Calls ---


class TestOpenAIAdaptorCall:
    @pytest.mark.asyncio
    async def test_call_final_response(self):
        adaptor = OpenAIAdaptor(api_key="sk-test")
        patcher, client = mock_http(data=completion({"content": "Hi there!"}))
        try:
            result = await adaptor.call(
                [Message(role="user", content="Hello")], ProviderRequest()
            )
        finally:
            patcher.stop()

        assert result.content == "Hi there!"
        call_args = client.post.call_args
        assert call_args.args[0] == "https://api.openai.com/v1/chat/completions"
        assert call_args.kwargs["headers"]["Authorization"] == "Bearer sk-test"

    @pytest.mark.asyncio
    async def test_request_key_wins(self):
        adaptor = OpenAIAdaptor(api_key="sk-constructor")
        patcher, client = mock_http(data=completion({"content": "ok"}))
        try:
            await adaptor.call([], ProviderRequest(api_key="sk-request"))
        finally:
            patcher.stop()

        headers = client.post.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer sk-request"

    @pytest.mark.asyncio
    async def test_call_without_key(self, no_env):
        adaptor = OpenAIAdaptor()
        with patch("httpx.AsyncClient") as mock_client:
            with pytest.raises(AuthenticationError, match="OPENAI_API_KEY"):
                await adaptor.call([Message(role="user", content="Hello")], ProviderRequest())
            mock_client.assert_not_called()

    @pytest.mark.asyncio
    async def test_call_api_error(self):
        adaptor = OpenAIAdaptor(api_key="sk-test")
        patcher, _ = mock_http(401, {"error": {"message": "Invalid API key"}})
        try:
            with pytest.raises(ProviderRequestError, match="Invalid API key") as exc_info:
                await adaptor.call([Message(role="user", content="Hello")], ProviderRequest())
        finally:
            patcher.stop()

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_call_transport_error(self):
        adaptor = OpenAIAdaptor(api_key="sk-test")
        with patch("httpx.AsyncClient") as mock_client:
            mock_instance = AsyncMock()
            mock_client.return_value.__aenter__.return_value = mock_instance
            mock_instance.post.side_effect = httpx.ConnectError("connection refused")

            with pytest.raises(ProviderRequestError, match="request failed"):
                await adaptor.call([Message(role="user", content="Hello")], ProviderRequest())

    @pytest.mark.asyncio
    async def test_call_with_custom_base_url(self):
        adaptor = OpenAIAdaptor(api_key="sk-test", base_url="http://localhost:8000/v1")
        patcher, client = mock_http(data=completion({"content": "Response"}))
        try:
            await adaptor.call([Message(role="user", content="Hello")], ProviderRequest())
        finally:
            patcher.stop()

        assert client.post.call_args.args[0] == "http://localhost:8000/v1/chat/completions"


# --- Tests with the Conversation Loop ---


class EchoInput(BaseModel):
    text: str


class EchoTool(Tool):
    id = "echo"
    description = "Echoes input"
    input_model = EchoInput

    def __init__(self):
        self.received = []

    async def execute(self, text: str) -> str:
        self.received.append(text)
        return text


def http_response(data: dict) -> MagicMock:
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = data
    return response


class TestOpenAIAdaptorInLoop:
    @pytest.mark.asyncio
    async def test_malformed_call_skipped_and_run_continues(self):
        echo = EchoTool()
        first = completion({
            "content": None,
            "tool_calls": [
                {"id": "c1", "type": "function", "function": {"name": "echo", "arguments": "{bad json"}},
                {
                    "id": "c2",
                    "type": "function",
                    "function": {"name": "echo", "arguments": '{"text":"ok"}'},
                },
            ],
        })
        patcher, client = mock_http()
        client.post.side_effect = [
            http_response(first),
            http_response(completion({"content": "done"})),
        ]
        loop = ConversationLoop(
            model=OpenAIAdaptor(api_key="sk-test"),
            executor=ToolExecutor(ToolRegistry([echo])),
        )
        try:
            result = await loop.run_async(ProviderRequest(
                messages=[Message(role="user", content="Hi")],
                tools=[echo.descriptor()],
            ))
        finally:
            patcher.stop()

        assert result.content == "done"
        assert echo.received == ["ok"]
        assert result.tool_calls[0].error.startswith("Malformed arguments")
        second_payload = client.post.call_args_list[1].kwargs["json"]
        declared = second_payload["messages"][-2]["tool_calls"]
        assert [c["id"] for c in declared] == ["c2"]
