"""Minimal agent-engine example with a hook. Requires OPENAI_API_KEY."""

from pydantic import Field

from agent_engine import (
    ConversationLoop,
    Message,
    OpenAIAdaptor,
    ProviderRequest,
    Tool,
    ToolExecutor,
    ToolInput,
    ToolRegistry,
)


class CityInput(ToolInput):
    city: str = Field(description="City name")


class GetPopulation(Tool):
    id = "get_population"
    description = "Returns the approximate population of a city"
    input_model = CityInput

    async def execute(self, city: str) -> str:
        populations = {"tokyo": "14M", "paris": "2.1M", "new york": "8.3M"}
        return populations.get(city.lower(), "unknown")


registry = ToolRegistry([GetPopulation()])
loop = ConversationLoop(
    model=OpenAIAdaptor(model="gpt-4.1-mini"),
    executor=ToolExecutor(registry),
)


@loop.hook("after_tool_call")
async def on_tool_call(event):
    print(f"[hook] {event.tool_id}({event.tool_call.arguments}) -> {event.output}")


if __name__ == "__main__":
    result = loop.run(ProviderRequest(
        messages=[Message(role="user", content="What's the population of Tokyo and Paris?")],
        tools=registry.descriptors(),
    ))
    print(result.content)
