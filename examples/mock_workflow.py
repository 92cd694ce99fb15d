#!/usr/bin/env python3
"""Offline walkthrough of agent-engine: loop, debug stepping and run batches.

Uses a scripted provider, so no API key is needed.

Run:
    python examples/mock_workflow.py
"""

import asyncio
import json

from pydantic import Field

from agent_engine import (
    BlockPlan,
    CancellationToken,
    ConversationLoop,
    DebugController,
    DebugSession,
    FunctionBlock,
    LoopBlock,
    Message,
    Middleware,
    ProviderAdaptor,
    ProviderRequest,
    ProviderResponse,
    RunBatcher,
    Tool,
    ToolCall,
    ToolExecutor,
    ToolInput,
    ToolRegistry,
    TokenUsage,
)


class CalculatorInput(ToolInput):
    expression: str = Field(description="Arithmetic expression, e.g. '2 + 2'")


class CalculatorTool(Tool):
    id = "calculator"
    description = "Evaluates a basic arithmetic expression"
    input_model = CalculatorInput

    async def execute(self, expression: str) -> dict:
        result = eval(expression, {"__builtins__": {}}, {})
        return {"expression": expression, "result": result}


class ScriptedProvider(ProviderAdaptor):
    """Asks for the calculator on the first call, answers on the second."""

    def __init__(self):
        super().__init__(api_key="offline")

    async def _call(self, messages, request, api_key):
        if messages[-1].role != "tool":
            return ProviderResponse(
                tool_calls=[
                    ToolCall(id="call-1", tool_id="calculator", arguments={"expression": "25 + 17"})
                ],
                usage=TokenUsage(prompt=40, completion=12, total=52),
            )
        result = json.loads(messages[-1].content)["result"]
        return ProviderResponse(
            content=f"25 + 17 = {result}",
            usage=TokenUsage(prompt=60, completion=8, total=68),
        )


class ConsoleLog(Middleware):
    async def after_tool_call(self, event):
        print(f"  [tool] {event.tool_id} -> {event.output} ({event.execution_time_ms:.1f}ms)")

    async def block_executed(self, event):
        print(f"  [debug] executed {event.block_id}; pending {event.pending_blocks}")

    async def batch_finished(self, event):
        print(f"  [{event.level}] {event.message}")


def build_loop() -> tuple[ConversationLoop, ProviderRequest]:
    calculator = CalculatorTool()
    loop = ConversationLoop(
        model=ScriptedProvider(),
        executor=ToolExecutor(ToolRegistry([calculator])),
        middlewares=[ConsoleLog()],
    )
    request = ProviderRequest(
        system_prompt="You are a careful calculator.",
        messages=[Message(role="user", content="What is 25 + 17?")],
        tools=[calculator.descriptor()],
    )
    return loop, request


async def main():
    print("== Single loop ==")
    loop, request = build_loop()
    result = await loop.run_async(request)
    print(f"  {result.content}")
    print(
        f"  state={result.state} iterations={result.iterations} "
        f"tokens={result.tokens.total} model={result.timing.model_time:.4f}s"
    )

    print("\n== Debug stepping ==")

    async def fetch(inputs):
        return "25 and 17"

    plan = BlockPlan([
        FunctionBlock("fetch", fetch),
        LoopBlock("answer", loop, request, depends_on=["fetch"]),
    ])
    controller = DebugController(DebugSession(debug_mode=True), middlewares=[ConsoleLog()])
    await controller.start(plan)
    await controller.step()
    outputs = await controller.resume()
    print(f"  answer block: {outputs['answer'].content}")

    print("\n== Run batch ==")
    token = CancellationToken()

    async def run_once(index):
        await loop.run_async(request)
        if index == 1:
            token.cancel()

    batcher = RunBatcher(run_once, middlewares=[ConsoleLog()])
    batch = await batcher.run(5, token)
    print(f"  outcome={batch.outcome.value} completed={batch.completed_runs}/{batch.run_count}")


if __name__ == "__main__":
    asyncio.run(main())
