import pytest
from pydantic import BaseModel, Field

from tool_rag.agent.registry import ToolRegistry, ToolSpec, build_registry
from tool_rag.errors import DuplicateTool, InvalidInput, UnknownTool


class EchoInput(BaseModel):
    value: int = Field(ge=1)


def _echo_spec(name: str = "echo") -> ToolSpec:
    def _handler(data: EchoInput) -> dict[str, int]:
        return {"value": data.value}

    return ToolSpec(
        name=name,
        description="echo positive int",
        args_schema=EchoInput,
        handler=_handler,
    )


def test_registry_exports_definitions_with_input_schema() -> None:
    registry = build_registry([_echo_spec()])

    [definition] = registry.definitions()

    assert definition.name == "echo"
    assert definition.input_schema["properties"]["value"]["type"] == "integer"
    assert definition.input_schema["required"] == ["value"]
    assert [tool.name for tool in registry.as_langchain_tools()] == ["echo"]


def test_duplicate_tool_registration_rejected() -> None:
    registry = ToolRegistry()
    registry.register(_echo_spec())

    with pytest.raises(DuplicateTool) as excinfo:
        registry.register(_echo_spec())

    assert excinfo.value.message == "Tool already registered: echo"
    assert registry.names() == ["echo"]


def test_frozen_registry_rejects_registration() -> None:
    registry = build_registry([_echo_spec()])

    assert registry.frozen
    with pytest.raises(InvalidInput):
        registry.register(_echo_spec("other"))
    with pytest.raises(TypeError):
        registry.tools["other"] = _echo_spec("other")  # type: ignore[index]


def test_require_unknown_tool_lists_registered_names() -> None:
    registry = build_registry([_echo_spec("echo"), _echo_spec("other")])

    with pytest.raises(UnknownTool) as excinfo:
        registry.require("foo")

    assert excinfo.value.available_tools == ["echo", "other"]
    assert registry.require("echo").name == "echo"
