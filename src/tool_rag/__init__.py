"""Tool-calling agent with retrieval-augmented grounding."""

from .config import ChunkingConfig, RetrievalConfig, Settings

__all__ = ["ChunkingConfig", "RetrievalConfig", "Settings"]
