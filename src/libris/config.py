# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH. All rights reserved.
# Non-commercial use only. Commercial licensing: info@4rce.com

"""
Central configuration – configurable via:
1. Environment variables (LIBRIS_ prefix)
2. .env file

The engine consumes this configuration; it never writes it back.
"""
from pathlib import Path
from pydantic_settings import BaseSettings
from typing import Literal


class Config(BaseSettings):
    # ── Storage ──────────────────────────────────
    data_dir: str = "./data"
    db_filename: str = "library.db"

    # ── Embeddings ───────────────────────────────
    embedding_provider: Literal["local", "openai"] = "local"
    embedding_model: str = "all-MiniLM-L6-v2"
    openai_api_key: str = ""
    openai_embedding_model: str = "text-embedding-3-small"
    embedding_cache_size: int = 256

    # ── Chunking (text ingestion only) ───────────
    chunk_strategy: Literal["character", "heading", "semantic", "llm_enhanced"] = "character"
    chunk_size: int = 500
    chunk_overlap: int = 100
    semantic_breakpoint_threshold: float = 95

    # ── Retrieval ────────────────────────────────
    retrieval_k: int = 4
    hybrid_search: bool = False
    keyword_weight: float = 0.5
    rrf_c: int = 60
    similarity_threshold: float = 1.5
    history_limit: int = 6
    history_summary_enabled: bool = False

    # ── Reranking ────────────────────────────────
    rerank_enabled: bool = False
    rerank_fetch_multiplier: int = 5
    reranker_model: str = "BAAI/bge-reranker-base"
    reranker_cache_dir: str = ""
    rerank_timeout: float = 300.0
    reranker_load_timeout: float = 600.0
    reranker_respawn_interval: float = 1.0

    # ── Corrective RAG ───────────────────────────
    crag_enabled: bool = False
    web_search_max_results: int = 5
    web_search_timeout: float = 15.0

    # ── LLM ──────────────────────────────────────
    llm_provider: Literal["deepseek", "gemini"] = "deepseek"
    deepseek_api_key: str = ""
    deepseek_base_url: str = "https://api.deepseek.com"
    deepseek_model: str = "deepseek-chat"
    google_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    gemini_model: str = "gemini-2.0-flash"
    llm_temperature: float = 0.7
    llm_max_tokens: int = 2048
    llm_timeout: float = 120.0
    llm_max_retries: int = 3
    tools_enabled: bool = True

    # ── Server / Transport ───────────────────────
    transport: Literal["stdio", "sse"] = "sse"
    sse_port: int = 8081
    web_port: int = 8080

    class Config:
        env_prefix = "LIBRIS_"
        env_file = ".env"

    @classmethod
    def load(cls) -> "Config":
        """Load config: ENV -> .env."""
        config = cls()
        Path(config.data_dir).mkdir(parents=True, exist_ok=True)
        return config

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / self.db_filename

    @property
    def active_embedding_model(self) -> str:
        if self.embedding_provider == "local":
            return self.embedding_model
        return self.openai_embedding_model

    def to_safe_dict(self) -> dict:
        """Config without secrets (for display)."""
        d = self.model_dump()
        for key in ("openai_api_key", "deepseek_api_key", "google_api_key"):
            if d.get(key):
                d[key] = d[key][:8] + "..."
        return d
