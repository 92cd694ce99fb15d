import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ValidationError

from agent_engine.exceptions import ToolExecutionError, ToolNotFound
from agent_engine.execution import ToolResult

logger = logging.getLogger(__name__)


class ToolInput(BaseModel):
    """Subclass this for tool-specific input validation."""


class Tool:
    id: str
    description: str
    input_model: type[BaseModel]

    def schema(self) -> dict:
        """Return JSON schema from Pydantic model."""
        return self.input_model.model_json_schema()

    def descriptor(self, params: Optional[dict] = None) -> "ToolDescriptor":
        """Describe this tool to a provider, with caller-fixed parameter values."""
        return ToolDescriptor(
            id=self.id,
            description=self.description,
            parameters=self.schema(),
            params=dict(params or {}),
        )

    async def invoke(self, args: dict) -> Any:
        """Validate args against input_model and execute."""
        validated = self.input_model(**args)
        return await self.execute(**validated.model_dump())

    async def execute(self, **kwargs) -> Any:
        """Execute tool. Always async; sync tools wrap sync code.

        Pydantic validates inputs before this is called.
        """
        raise NotImplementedError


@dataclass
class ToolDescriptor:
    """What the caller offers the model for one tool.

    `params` are default/fixed values merged under the model's arguments.
    """

    id: str
    description: str = ""
    parameters: dict = field(default_factory=dict)
    params: dict = field(default_factory=dict)

    def model_parameters(self) -> dict:
        """The parameter schema without the properties the caller already fixed."""
        if not self.params or "properties" not in self.parameters:
            return self.parameters
        schema = dict(self.parameters)
        schema["properties"] = {
            k: v for k, v in self.parameters["properties"].items() if k not in self.params
        }
        if "required" in schema:
            schema["required"] = [r for r in schema["required"] if r not in self.params]
        return schema


class ToolRegistry:
    """Lookup of tool implementations by id."""

    def __init__(self, tools: Optional[Iterable[Tool]] = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.id in self._tools:
            raise ValueError(f"Tool '{tool.id}' is already registered")
        self._tools[tool.id] = tool

    def lookup(self, tool_id: str) -> Optional[Tool]:
        return self._tools.get(tool_id)

    def get(self, tool_id: str) -> Tool:
        tool = self.lookup(tool_id)
        if tool is None:
            raise ToolNotFound(f"Tool '{tool_id}' not found")
        return tool

    def descriptors(self) -> list[ToolDescriptor]:
        return [tool.descriptor() for tool in self._tools.values()]

    def __contains__(self, tool_id: str) -> bool:
        return tool_id in self._tools

    def __len__(self) -> int:
        return len(self._tools)


class ToolExecutor:
    """Invokes registry tools; failures come back as results, never raised."""

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    async def execute(
        self, tool_id: str, args: dict, call_id: Optional[str] = None
    ) -> ToolResult:
        tool = self.registry.lookup(tool_id)
        if tool is None:
            logger.warning(f"Tool '{tool_id}' not found in registry")
            return ToolResult(
                success=False, error=f"Tool '{tool_id}' not found", call_id=call_id
            )

        try:
            output = await tool.invoke(args)
        except ValidationError as e:
            error = f"Validation error: {e}"
        except ToolExecutionError as e:
            error = f"Tool error: {e}"
        except Exception as e:
            error = f"Error: {e}"
        else:
            return ToolResult(success=True, output=output, call_id=call_id)

        logger.warning(f"Tool '{tool_id}' failed: {error}")
        return ToolResult(success=False, error=error, call_id=call_id)
