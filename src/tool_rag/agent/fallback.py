"""Deterministic stand-in chat model for when no LLM credential is configured."""

from __future__ import annotations

import json
import uuid
from typing import Any

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, ToolMessage

NO_EVIDENCE_ANSWER = "I cannot verify an answer from the indexed documents."


class RetrievalOnlyChatModel:
    """Chat model that answers from retrieval evidence without LLM dependency.

    It speaks the same `bind_tools`/`invoke` contract as a LangChain chat
    model, so the conversation loop runs unchanged: the first round asks for
    `search_knowledge_base` with the latest user message (earlier user turns
    go along as `context`), the second round lists the retrieved passages
    with their source labels.
    """

    search_tool = "search_knowledge_base"

    def __init__(self, *, top_k: int = 3, snippet_chars: int = 220) -> None:
        self.top_k = top_k
        self.snippet_chars = snippet_chars
        self._tool_names: list[str] = []

    def bind_tools(self, tools: list[Any], **kwargs: Any) -> "RetrievalOnlyChatModel":
        del kwargs
        self._tool_names = [str(getattr(tool, "name", tool)) for tool in tools]
        return self

    def invoke(self, messages: list[BaseMessage], **kwargs: Any) -> AIMessage:
        del kwargs
        last = messages[-1] if messages else None
        if isinstance(last, ToolMessage):
            return AIMessage(content=self._answer(str(last.content)))
        if isinstance(last, HumanMessage) and self.search_tool in self._tool_names:
            args: dict[str, Any] = {"query": str(last.content), "top_k": self.top_k}
            earlier = [str(m.content) for m in messages[:-1] if isinstance(m, HumanMessage)]
            if earlier:
                args["context"] = "\n".join(earlier)
            return AIMessage(
                content="",
                tool_calls=[
                    {
                        "name": self.search_tool,
                        "args": args,
                        "id": f"call_{uuid.uuid4().hex[:12]}",
                        "type": "tool_call",
                    }
                ],
            )
        return AIMessage(content=NO_EVIDENCE_ANSWER)

    def _answer(self, tool_output: str) -> str:
        try:
            payload = json.loads(tool_output)
        except json.JSONDecodeError:
            return NO_EVIDENCE_ANSWER
        results = payload.get("results") if isinstance(payload, dict) else None
        if not results:
            return NO_EVIDENCE_ANSWER

        lines: list[str] = []
        for idx, result in enumerate(results[: self.top_k], start=1):
            snippet = _truncate(" ".join(str(result["content"]).split()), self.snippet_chars)
            lines.append(f"{idx}. {snippet} [Source: {result['source']}]")
        return "\n".join(lines)


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."
