import asyncio
import json
import logging
import time
from typing import Any, Callable, Optional

from agent_engine.exceptions import AgentEngineError, ProviderRequestError
from agent_engine.execution import ExecutionResult, Message, ToolCall, ToolResult
from agent_engine.hooks import (
    AfterIterationEventData,
    AfterModelCallEventData,
    AfterRunEventData,
    AfterToolCallEventData,
    BeforeIterationEventData,
    BeforeModelCallEventData,
    BeforeRunEventData,
    BeforeToolCallEventData,
    HookRegistry,
    Middleware,
    OnToolErrorEventData,
)
from agent_engine.provider import ProviderAdaptor, ProviderRequest, ProviderResponse
from agent_engine.timing import TimingRecorder
from agent_engine.tools import ToolDescriptor, ToolExecutor

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 10


class ConversationLoop:
    """Drives model calls and tool execution until the model stops asking for tools.

    Each iteration runs the requested tools one at a time, in the order the
    model listed them, appends the calls and their results to the transcript
    and calls the model again. Hitting `max_iterations` ends the run with
    state "max_iterations"; it is not an error.
    """

    def __init__(
        self,
        model: ProviderAdaptor,
        executor: ToolExecutor,
        max_iterations: int = MAX_ITERATIONS,
        hooks: Optional[HookRegistry] = None,
        middlewares: Optional[list[Middleware]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.model = model
        self.executor = executor
        self.max_iterations = max_iterations
        self._clock = clock

        if hooks is None:
            hooks = HookRegistry()
        self.hooks = hooks
        if middlewares:
            self.hooks.register_middlewares(middlewares)

    def hook(self, hook_name: str):
        """Decorator for registering hooks directly on the loop.

        Usage:
            @loop.hook('after_tool_call')
            async def log_tool(event):
                print(f"Tool: {event.tool_id}")
        """
        return self.hooks.on(hook_name)

    def run(self, request: ProviderRequest) -> ExecutionResult:
        """Run the loop synchronously."""
        return asyncio.run(self.run_async(request))

    async def run_async(self, request: ProviderRequest) -> ExecutionResult:
        start_time = time.monotonic()
        recorder = TimingRecorder(clock=self._clock)
        result = ExecutionResult(
            model=request.model or getattr(self.model, "model", None),
            messages=self._build_transcript(request),
        )

        await self.hooks.trigger(
            "before_run", BeforeRunEventData(loop=self, request=request)
        )

        iteration_count = 0
        response = await self._call_model(
            result, request, recorder, "Initial response", iteration_count
        )
        result.content = response.content or ""

        while response.tool_calls and iteration_count < self.max_iterations:
            iteration_start = time.monotonic()
            logger.info(
                f"Processing {len(response.tool_calls)} tool calls "
                f"(iteration {iteration_count + 1}/{self.max_iterations})"
            )
            await self.hooks.trigger(
                "before_iteration",
                BeforeIterationEventData(
                    result=result,
                    iteration_count=iteration_count,
                    tool_call_count=len(response.tool_calls),
                ),
            )

            completed = await self._execute_tool_calls(
                response.tool_calls, request, recorder, result, iteration_count
            )
            if completed:
                result.messages.append(
                    Message(
                        role="assistant",
                        content=None,
                        tool_calls=[call for call, _ in completed],
                    )
                )
                for call, output in completed:
                    result.messages.append(
                        Message(
                            role="tool",
                            content=self._serialize(output),
                            tool_call_id=call.id,
                        )
                    )

            response = await self._call_model(
                result,
                request,
                recorder,
                f"Model response (iteration {iteration_count + 1})",
                iteration_count,
            )
            if response.content:
                result.content = response.content

            iteration_count += 1

            await self.hooks.trigger(
                "after_iteration",
                AfterIterationEventData(
                    result=result,
                    iteration_count=iteration_count,
                    elapsed_time_ms=(time.monotonic() - iteration_start) * 1000,
                ),
            )

        if response.tool_calls:
            logger.warning(
                f"Stopped after {iteration_count} iterations with tool calls still pending"
            )
            result.state = "max_iterations"
        else:
            result.state = "completed"
        result.timing = recorder.summary(iterations=iteration_count + 1)

        await self.hooks.trigger(
            "after_run",
            AfterRunEventData(
                result=result, total_time_ms=(time.monotonic() - start_time) * 1000
            ),
        )
        return result

    def _build_transcript(self, request: ProviderRequest) -> list[Message]:
        messages = []
        if request.system_prompt:
            messages.append(Message(role="system", content=request.system_prompt))
        if request.context:
            messages.append(Message(role="user", content=request.context))
        messages.extend(request.messages)
        return messages

    async def _call_model(
        self,
        result: ExecutionResult,
        request: ProviderRequest,
        recorder: TimingRecorder,
        label: str,
        iteration_count: int,
    ) -> ProviderResponse:
        """One provider call, timed; failures carry the timing so far."""
        await self.hooks.trigger(
            "before_model_call",
            BeforeModelCallEventData(result=result, messages=result.messages, label=label),
        )

        measurement = recorder.measure("model", label)
        try:
            with measurement:
                response = await self.model.call(list(result.messages), request)
        except AgentEngineError as e:
            e.timing = recorder.summary(iterations=iteration_count + 1)
            logger.error(f"Provider call '{label}' failed: {e}")
            raise
        except Exception as e:
            logger.error(f"Provider call '{label}' failed: {e}")
            raise ProviderRequestError(
                str(e), timing=recorder.summary(iterations=iteration_count + 1)
            ) from e

        result.tokens.add(response.usage)

        await self.hooks.trigger(
            "after_model_call",
            AfterModelCallEventData(
                result=result,
                response=response,
                response_time_ms=measurement.segment.duration * 1000,
                label=label,
            ),
        )
        return response

    async def _execute_tool_calls(
        self,
        tool_calls: list[ToolCall],
        request: ProviderRequest,
        recorder: TimingRecorder,
        result: ExecutionResult,
        iteration_count: int,
    ) -> list[tuple[ToolCall, Any]]:
        """Run requested calls sequentially; return (call, output) of the successful ones."""
        completed = []
        for call in tool_calls:
            descriptor = self._find_descriptor(request.tools, call.tool_id)
            if descriptor is None:
                logger.warning(
                    f"Model requested unknown tool '{call.tool_id}'; skipping call {call.id}"
                )
                continue

            error = call.error
            if error is None and not isinstance(call.arguments, dict):
                error = (
                    f"Arguments must be a JSON object, got {type(call.arguments).__name__}"
                )
            if error is not None:
                await self._reject_tool_call(call, error, result)
                continue

            arguments = {**descriptor.params, **call.arguments}

            before_tool_response = await self.hooks.trigger(
                "before_tool_call",
                BeforeToolCallEventData(
                    result=result,
                    tool_id=call.tool_id,
                    arguments=arguments,
                    tool_index=len(result.tool_calls),
                    iteration=iteration_count,
                ),
            )

            with recorder.measure("tool", call.tool_id) as measurement:
                if before_tool_response and before_tool_response.action == "skip":
                    tool_result = ToolResult(
                        success=True,
                        output=before_tool_response.cached_result,
                        call_id=call.id,
                    )
                else:
                    tool_result = await self.executor.execute(
                        call.tool_id, arguments, call_id=call.id
                    )

            record = ToolCall(
                id=call.id,
                tool_id=call.tool_id,
                arguments=call.arguments,
                start_time=measurement.segment.start,
                end_time=measurement.segment.end,
                thought_signature=call.thought_signature,
            )
            result.tool_calls.append(record)

            if not tool_result.success:
                record.error = tool_result.error
                await self.hooks.trigger(
                    "on_tool_error",
                    OnToolErrorEventData(
                        result=result,
                        tool_id=call.tool_id,
                        arguments=arguments,
                        error_message=tool_result.error or "",
                    ),
                )
                continue

            record.result = tool_result.output
            result.tool_results.append(tool_result.output)
            completed.append((call, tool_result.output))

            await self.hooks.trigger(
                "after_tool_call",
                AfterToolCallEventData(
                    result=result,
                    tool_call=record,
                    tool_id=call.tool_id,
                    output=tool_result.output,
                    execution_time_ms=record.duration * 1000,
                ),
            )
        return completed

    async def _reject_tool_call(
        self, call: ToolCall, error: str, result: ExecutionResult
    ) -> None:
        """Log a call whose arguments could not be used and record it as failed."""
        logger.warning(f"Skipping call {call.id} to '{call.tool_id}': {error}")
        now = self._clock()
        result.tool_calls.append(
            ToolCall(
                id=call.id,
                tool_id=call.tool_id,
                arguments=call.arguments,
                error=error,
                start_time=now,
                end_time=now,
                thought_signature=call.thought_signature,
            )
        )
        await self.hooks.trigger(
            "on_tool_error",
            OnToolErrorEventData(
                result=result,
                tool_id=call.tool_id,
                arguments=call.arguments if isinstance(call.arguments, dict) else {},
                error_message=error,
            ),
        )

    def _find_descriptor(
        self, tools: list[ToolDescriptor], tool_id: str
    ) -> Optional[ToolDescriptor]:
        for tool in tools:
            if tool.id == tool_id:
                return tool
        return None

    def _serialize(self, output: Any) -> str:
        if isinstance(output, str):
            return output
        return json.dumps(output, default=str)
