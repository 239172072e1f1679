"""Built-in tool implementations for the tool-calling agent."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Protocol

from pydantic import BaseModel, Field

from tool_rag.agent.registry import ToolSpec
from tool_rag.retrieval.retriever import RetrievalService, format_context


class SearchToolInput(BaseModel):
    query: str = Field(min_length=1)
    top_k: int | None = Field(default=None, ge=1, le=20)
    context: str | None = Field(
        default=None, description="Recent conversation text used to disambiguate the query"
    )


class AnalyzeDataInput(BaseModel):
    entity_id: str = Field(min_length=1, description="The entity identifier to analyze")
    time_period_days: int = Field(
        default=730, ge=1, description="Number of days to look back"
    )


class SummaryInput(BaseModel):
    entity_id: str = Field(min_length=1)


@dataclass(slots=True)
class EntityRecord:
    source: str
    observed_on: date
    metrics: dict[str, float] = field(default_factory=dict)


class EntityDataSource(Protocol):
    """Backing data for the entity analysis tools."""

    def records(self, entity_id: str) -> list[EntityRecord]:
        """Return all records of an entity; raise `LookupError` if unknown."""


class InMemoryEntityDataSource:
    def __init__(self, records: dict[str, list[EntityRecord]] | None = None) -> None:
        self._records = records or {}

    def records(self, entity_id: str) -> list[EntityRecord]:
        if entity_id not in self._records:
            raise LookupError(f"Unknown entity: {entity_id}")
        return list(self._records[entity_id])


def builtin_tool_specs(
    retriever: RetrievalService,
    data_source: EntityDataSource,
    *,
    today: Callable[[], date] = date.today,
) -> list[ToolSpec]:
    """Default tool set offered to the model.

    Tools:
    - `search_knowledge_base`: top-K retrieval with source attribution.
    - `analyze_data`: aggregate an entity's metrics across data sources.
    - `get_summary`: one-line overview of an entity's records.
    """

    def _search(input_data: SearchToolInput) -> dict[str, Any]:
        results = retriever.retrieve(
            input_data.query, top_k=input_data.top_k, context=input_data.context
        )
        return {
            "query": input_data.query,
            "results": [
                {
                    "source": result.source,
                    "similarity": round(result.similarity, 4),
                    "content": result.chunk.text,
                }
                for result in results
            ],
            "context": format_context(results),
        }

    def _analyze(input_data: AnalyzeDataInput) -> dict[str, Any]:
        cutoff = today() - timedelta(days=input_data.time_period_days)
        records = [
            record
            for record in data_source.records(input_data.entity_id)
            if record.observed_on >= cutoff
        ]
        return {
            "entity_id": input_data.entity_id,
            "time_period_days": input_data.time_period_days,
            "data_sources": sorted({record.source for record in records}),
            "aggregated_data": _aggregate(records),
        }

    def _summary(input_data: SummaryInput) -> dict[str, Any]:
        records = data_source.records(input_data.entity_id)
        sources = sorted({record.source for record in records})
        if not records:
            summary = f"Entity {input_data.entity_id} has no recorded data."
        else:
            latest = max(record.observed_on for record in records)
            summary = (
                f"Entity {input_data.entity_id} has {len(records)} records from "
                f"{len(sources)} sources; latest observation on {latest.isoformat()}."
            )
        return {"entity_id": input_data.entity_id, "summary": summary}

    return [
        ToolSpec(
            name="search_knowledge_base",
            description="Search the indexed document knowledge base and return cited passages.",
            args_schema=SearchToolInput,
            handler=_search,
            tags=["retrieval", "rag"],
        ),
        ToolSpec(
            name="analyze_data",
            description="Analyze an entity's data across multiple sources over a time window.",
            args_schema=AnalyzeDataInput,
            handler=_analyze,
            tags=["analysis"],
        ),
        ToolSpec(
            name="get_summary",
            description="Get a quick summary of an entity's data.",
            args_schema=SummaryInput,
            handler=_summary,
            tags=["analysis"],
        ),
    ]


def _aggregate(records: list[EntityRecord]) -> dict[str, Any]:
    if not records:
        return {"record_count": 0, "metrics": {}}

    values: dict[str, list[float]] = {}
    for record in records:
        for name, value in record.metrics.items():
            values.setdefault(name, []).append(value)

    return {
        "record_count": len(records),
        "first_observed": min(record.observed_on for record in records).isoformat(),
        "last_observed": max(record.observed_on for record in records).isoformat(),
        "metrics": {
            name: {
                "total": sum(series),
                "mean": sum(series) / len(series),
                "min": min(series),
                "max": max(series),
            }
            for name, series in sorted(values.items())
        },
    }
