"""Tool-calling conversation loop over a LangChain chat model."""

from __future__ import annotations

import json
import uuid
from typing import Any

import structlog
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from tool_rag.agent.registry import ToolRegistry
from tool_rag.agent.router import ToolInvoker
from tool_rag.config import AgentConfig
from tool_rag.errors import ToolRagError
from tool_rag.obs.logging_config import bind_request_context, clear_request_context
from tool_rag.obs.tracing import Timer, preview
from tool_rag.types import (
    ConversationResult,
    ConversationTurn,
    ToolInvocation,
    ToolOk,
    ToolResult,
    ToolTrace,
)

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = """
You are an assistant that answers questions using tools.

Rules:
1) Use `search_knowledge_base` to ground answers in indexed documents.
2) Cite sources by the label shown in each `[Source: ...]` block.
3) Use the data tools for questions about a specific entity.
4) If the tools return no evidence, say that you cannot verify the answer.
""".strip()


class ToolCallingAgent:
    """Drives one conversation until the model answers with plain text.

    Each model round receives the full turn history plus the tool definitions.
    When the model asks for tools, every tool call in that response is routed,
    its result appended as a `tool` turn, and the model is called again. The
    loop is bounded by `max_rounds` tool rounds and always returns text:
    model failures and router failures become a textual answer.
    """

    def __init__(
        self,
        *,
        llm: Any,
        tool_registry: ToolRegistry,
        router: ToolInvoker,
        config: AgentConfig | None = None,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        self.tool_registry = tool_registry
        self.router = router
        self.config = config or AgentConfig()
        self.system_prompt = system_prompt
        self.model = llm.bind_tools(tool_registry.as_langchain_tools())

    def converse(
        self,
        user_message: str,
        *,
        history: list[ConversationTurn] | None = None,
    ) -> ConversationResult:
        turns = list(history or [])
        turns.append(ConversationTurn(role="user", content=user_message))
        traces: list[ToolTrace] = []
        bind_request_context(conversation_id=str(uuid.uuid4()))
        try:
            with Timer() as timer:
                answer, rounds = self._run(turns, traces)
        finally:
            clear_request_context()

        logger.info(
            "conversation.completed",
            rounds=rounds,
            tool_calls=len(traces),
            latency_ms=round(timer.elapsed_ms, 2),
        )
        return ConversationResult(
            answer=answer,
            turns=turns,
            tool_traces=traces,
            rounds=rounds,
            latency_ms=timer.elapsed_ms,
        )

    def _run(self, turns: list[ConversationTurn], traces: list[ToolTrace]) -> tuple[str, int]:
        tool_rounds = 0
        while True:
            try:
                response = self.model.invoke(self._to_messages(turns))
            except Exception as exc:  # the loop always ends with text
                logger.exception("conversation.model_failed")
                return f"The language model request failed: {exc}", tool_rounds

            text = extract_text(getattr(response, "content", response))
            tool_calls = list(getattr(response, "tool_calls", None) or [])
            if not tool_calls:
                turns.append(ConversationTurn(role="assistant", content=text))
                return text, tool_rounds

            if tool_rounds >= self.config.max_rounds:
                logger.warning("conversation.max_rounds", max_rounds=self.config.max_rounds)
                return (
                    f"Stopped after {tool_rounds} tool rounds without a final answer.",
                    tool_rounds,
                )
            tool_rounds += 1

            invocations = [
                ToolInvocation(
                    name=str(call.get("name", "")),
                    parameters=dict(call.get("args") or {}),
                    call_id=call.get("id") or f"call_{tool_rounds}_{index}",
                )
                for index, call in enumerate(tool_calls)
            ]
            turns.append(ConversationTurn(role="assistant", content=text, tool_calls=invocations))

            for invocation in invocations:
                try:
                    with Timer() as timer:
                        result = self.router.invoke(invocation.name, invocation.parameters)
                except Exception as exc:  # the loop always ends with text
                    message = exc.message if isinstance(exc, ToolRagError) else str(exc)
                    logger.error("conversation.tool_failed", tool_name=invocation.name, error=message)
                    return f"Error executing tool {invocation.name}: {message}", tool_rounds

                content = _result_content(result)
                traces.append(
                    ToolTrace(
                        name=invocation.name,
                        input_payload=invocation.parameters,
                        output_preview=preview(content, self.config.max_preview_chars),
                        latency_ms=timer.elapsed_ms,
                        success=result.ok,
                    )
                )
                turns.append(
                    ConversationTurn(
                        role="tool",
                        content=content,
                        tool_call_id=invocation.call_id,
                        name=invocation.name,
                        is_error=not result.ok,
                    )
                )

    def _to_messages(self, turns: list[ConversationTurn]) -> list[BaseMessage]:
        messages: list[BaseMessage] = [SystemMessage(content=self.system_prompt)]
        for turn in turns:
            if turn.role == "user":
                messages.append(HumanMessage(content=turn.content))
            elif turn.role == "assistant":
                messages.append(
                    AIMessage(
                        content=turn.content,
                        tool_calls=[
                            {
                                "name": call.name,
                                "args": call.parameters,
                                "id": call.call_id,
                                "type": "tool_call",
                            }
                            for call in turn.tool_calls
                        ],
                    )
                )
            else:
                messages.append(
                    ToolMessage(
                        content=turn.content,
                        tool_call_id=turn.tool_call_id or "",
                        name=turn.name,
                        status="error" if turn.is_error else "success",
                    )
                )
        return messages


def extract_text(content: Any) -> str:
    """Concatenate the text segments of a model response in order."""

    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return str(content)
    parts: list[str] = []
    for item in content:
        if isinstance(item, str):
            parts.append(item)
        elif isinstance(item, dict) and item.get("type", "text") == "text" and "text" in item:
            parts.append(str(item["text"]))
    return "\n".join(parts)


def _result_content(result: ToolResult) -> str:
    if isinstance(result, ToolOk):
        return json.dumps(result.payload, ensure_ascii=False)
    body: dict[str, Any] = {"error": result.message}
    if result.available_tools:
        body["available_tools"] = result.available_tools
    return json.dumps(body, ensure_ascii=False)
