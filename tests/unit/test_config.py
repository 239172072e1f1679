from tool_rag.config import Settings


def test_environment_overrides_reach_stage_configs(monkeypatch) -> None:
    monkeypatch.setenv("TOOL_RAG_INGEST_BUDGET_SECONDS", "60")
    monkeypatch.setenv("TOOL_RAG_INGEST_BUDGET_MARGIN_SECONDS", "2.5")
    monkeypatch.setenv("TOOL_RAG_CONTEXT_TURNS", "1")

    settings = Settings(_env_file=None)

    assert settings.ingestion().budget_seconds == 60
    assert settings.ingestion().budget_margin_seconds == 2.5
    assert settings.retrieval().context_turns == 1


def test_defaults_match_stage_defaults() -> None:
    settings = Settings(_env_file=None)

    assert settings.ingestion().budget_margin_seconds == 5.0
    assert settings.retrieval().context_turns == 3
