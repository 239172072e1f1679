"""Tool registry built on Pydantic v2 models."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, ConfigDict, Field

from tool_rag.errors import DuplicateTool, InvalidInput, UnknownTool
from tool_rag.types import ToolDefinition


class ToolSpec(BaseModel):
    """Declarative tool specification for registration and validation.

    `handler` receives the validated `args_schema` instance and returns a
    JSON-serialisable payload.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    name: str = Field(min_length=1)
    description: str
    args_schema: type[BaseModel]
    handler: Callable[[Any], Any]
    tags: list[str] = Field(default_factory=list)

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            input_schema=self.args_schema.model_json_schema(),
        )


class ToolRegistry:
    """Stores tool specs and exports tool definitions for the model.

    The registry is filled once at startup and then frozen; after that it is
    only read, so concurrent requests can share it without locking.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._frozen = False

    def register(self, spec: ToolSpec) -> None:
        if self._frozen:
            raise InvalidInput(f"Tool registry is frozen; cannot register {spec.name}")
        if spec.name in self._tools:
            raise DuplicateTool(spec.name)
        self._tools[spec.name] = spec

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def tools(self) -> Mapping[str, ToolSpec]:
        return MappingProxyType(self._tools)

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def require(self, name: str) -> ToolSpec:
        spec = self._tools.get(name)
        if spec is None:
            raise UnknownTool(name, self.names())
        return spec

    def names(self) -> list[str]:
        return list(self._tools)

    def specs(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def definitions(self) -> list[ToolDefinition]:
        return [spec.definition() for spec in self._tools.values()]

    def as_langchain_tools(self) -> list[StructuredTool]:
        """Export tool schemas for `bind_tools`.

        The exported callables are never run by the conversation loop, which
        routes calls through `ToolRouter` instead.
        """

        tools: list[StructuredTool] = []
        for spec in self._tools.values():
            tools.append(
                StructuredTool.from_function(
                    name=spec.name,
                    description=spec.description,
                    args_schema=spec.args_schema,
                    func=self._build_function(spec),
                )
            )
        return tools

    @staticmethod
    def _build_function(spec: ToolSpec) -> Callable[..., Any]:
        def _callable(**kwargs: Any) -> Any:
            return spec.handler(spec.args_schema.model_validate(kwargs))

        return _callable


def build_registry(specs: list[ToolSpec]) -> ToolRegistry:
    """Register an explicit list of tools and freeze the result."""

    registry = ToolRegistry()
    for spec in specs:
        registry.register(spec)
    registry.freeze()
    return registry
