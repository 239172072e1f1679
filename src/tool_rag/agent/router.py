"""Tool router: validate an invocation against the registry, then execute it."""

from __future__ import annotations

import json
from typing import Any, Protocol

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from tool_rag.agent.registry import ToolRegistry, ToolSpec
from tool_rag.errors import (
    ToolHandlerError,
    ToolRouterUnavailable,
    ToolValidationError,
    UnknownTool,
)
from tool_rag.obs.tracing import Timer
from tool_rag.types import ToolError, ToolOk, ToolResult

logger = structlog.get_logger(__name__)


class ToolInvoker(Protocol):
    """Anything that can execute a named tool and return a `ToolResult`."""

    def invoke(self, name: str, parameters: dict[str, Any]) -> ToolResult: ...


class ToolRouter:
    """Executes registered tools and never lets a handler failure escape.

    Unknown names, schema violations, and handler exceptions all come back as
    `ToolError` values so that callers only branch on the result type.
    """

    def __init__(self, registry: ToolRegistry) -> None:
        self.registry = registry

    def invoke(self, name: str, parameters: dict[str, Any]) -> ToolResult:
        try:
            spec = self.registry.require(name)
            arguments = _validate(spec.args_schema, parameters)
            with Timer() as timer:
                payload = self._execute(spec, arguments)
        except UnknownTool as exc:
            logger.warning("tool.unknown", tool_name=name, available_tools=exc.available_tools)
            return ToolError(
                message=exc.message,
                kind="unknown_tool",
                tool_name=name,
                available_tools=exc.available_tools,
            )
        except ToolValidationError as exc:
            logger.warning("tool.invalid_parameters", tool_name=name, error=exc.message)
            return ToolError(message=exc.message, kind="validation", tool_name=name)
        except ToolHandlerError as exc:
            logger.warning(
                "tool.failed",
                tool_name=name,
                error=exc.message,
                error_type=exc.__cause__.__class__.__name__,
                latency_ms=round(timer.elapsed_ms, 2),
            )
            return ToolError(message=exc.message, kind="handler", tool_name=name)

        logger.info("tool.invoked", tool_name=name, latency_ms=round(timer.elapsed_ms, 2))
        return ToolOk(tool_name=name, payload=payload)

    @staticmethod
    def _execute(spec: ToolSpec, arguments: BaseModel) -> Any:
        try:
            return _jsonable(spec.handler(arguments))
        except Exception as exc:  # handler failures become error envelopes
            raise ToolHandlerError(spec.name, str(exc) or exc.__class__.__name__) from exc


class HttpToolRouter:
    """Client for a router exposed over HTTP (`POST {base_url}/tools/invoke`).

    Error envelopes map back onto `ToolError`; transport failures and
    unexpected responses raise `ToolRouterUnavailable`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/tools/invoke"
        self._client = client or httpx.Client(timeout=timeout)

    def invoke(self, name: str, parameters: dict[str, Any]) -> ToolResult:
        try:
            response = self._client.post(
                self._url, json={"tool_name": name, "parameters": parameters}
            )
            body = response.json()
        except httpx.HTTPError as exc:
            raise ToolRouterUnavailable(f"Tool router unreachable: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ToolRouterUnavailable(
                f"Tool router returned non-JSON response ({response.status_code})"
            ) from exc
        if not isinstance(body, dict):
            raise ToolRouterUnavailable(
                f"Tool router returned {type(body).__name__}, expected an object"
            )

        if response.status_code == 200 and body.get("success"):
            try:
                payload = json.loads(body["result"])
            except (KeyError, TypeError, ValueError) as exc:
                raise ToolRouterUnavailable(
                    f"Tool router returned a malformed result for {name}"
                ) from exc
            return ToolOk(tool_name=name, payload=payload)
        if response.status_code == 400 and "error" in body:
            if "available_tools" in body:
                return ToolError(
                    message=body["error"],
                    kind="unknown_tool",
                    tool_name=name,
                    available_tools=list(body["available_tools"]),
                )
            return ToolError(message=body["error"], kind="validation", tool_name=name)
        if response.status_code == 500 and "error" in body:
            return ToolError(message=body["error"], kind="handler", tool_name=name)
        raise ToolRouterUnavailable(
            f"Unexpected tool router response {response.status_code}: {str(body)[:200]}"
        )


def _validate(schema: type[BaseModel], parameters: Any) -> BaseModel:
    if not isinstance(parameters, dict):
        raise ToolValidationError("parameters must be an object")
    try:
        return schema.model_validate(parameters)
    except ValidationError as exc:
        raise ToolValidationError(_validation_message(exc)) from exc


def _validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    for error in errors:
        if error["type"] == "missing":
            return f"missing field: {_location(error['loc'])}"
    first = errors[0]
    return f"invalid field: {_location(first['loc'])}: {first['msg']}"


def _location(loc: tuple[Any, ...]) -> str:
    return ".".join(str(part) for part in loc) or "parameters"


def _jsonable(payload: Any) -> Any:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    try:
        json.dumps(payload)
    except (TypeError, ValueError) as exc:
        raise TypeError(f"Tool result is not JSON serialisable: {exc}") from exc
    return payload
