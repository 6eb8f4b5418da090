# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH. All rights reserved.
# Non-commercial use only. Commercial licensing: info@4rce.com

"""
Centralized health/status tracker – shared across engine, MCP server, web API.
Thread-safe, no external dependencies.
"""
import threading
from datetime import datetime, timezone

QUESTION_OUTCOMES = ("answered", "no_content", "aborted", "failed")


class HealthTracker:
    def __init__(self):
        self._lock = threading.Lock()
        self._data = {
            "started_at": datetime.now(timezone.utc).isoformat(),
            "store_ok": False,
            "store_error": None,

            "last_ingest_at": None,
            "last_ingest_ok": False,
            "last_ingest_chunks": 0,
            "last_ingest_sources": 0,
            "last_ingest_failed": [],

            "questions_total": 0,
            "questions_by_outcome": {outcome: 0 for outcome in QUESTION_OUTCOMES},
            "last_question_at": None,
            "last_question_error": None,

            "searches_total": 0,
            "searches_hits": 0,
            "searches_misses": 0,
            "last_search_at": None,

            "rerank_fallbacks": 0,
            "last_rerank_error": None,

            "web_searches_total": 0,
            "web_searches_failed": 0,
            "last_web_search_error": None,
        }

    def record_store(self, ok: bool, error: str | None = None):
        with self._lock:
            self._data["store_ok"] = ok
            self._data["store_error"] = error

    def record_ingest(self, ok: bool, chunks: int = 0, sources: int = 0, failed: list[dict] | None = None):
        with self._lock:
            self._data["last_ingest_at"] = datetime.now(timezone.utc).isoformat()
            self._data["last_ingest_ok"] = ok
            self._data["last_ingest_chunks"] = chunks
            self._data["last_ingest_sources"] = sources
            self._data["last_ingest_failed"] = list(failed or [])

    def record_question(self, outcome: str, error: str | None = None):
        with self._lock:
            self._data["questions_total"] += 1
            by_outcome = self._data["questions_by_outcome"]
            if outcome in by_outcome:
                by_outcome[outcome] += 1
            self._data["last_question_at"] = datetime.now(timezone.utc).isoformat()
            if outcome == "failed":
                self._data["last_question_error"] = error

    def record_search(self, hit: bool):
        with self._lock:
            self._data["searches_total"] += 1
            if hit:
                self._data["searches_hits"] += 1
            else:
                self._data["searches_misses"] += 1
            self._data["last_search_at"] = datetime.now(timezone.utc).isoformat()

    def record_rerank_fallback(self, error: str):
        with self._lock:
            self._data["rerank_fallbacks"] += 1
            self._data["last_rerank_error"] = error

    def record_web_search(self, ok: bool, error: str | None = None):
        with self._lock:
            self._data["web_searches_total"] += 1
            if not ok:
                self._data["web_searches_failed"] += 1
                self._data["last_web_search_error"] = error

    @property
    def status(self) -> dict:
        with self._lock:
            data = dict(self._data)
            data["questions_by_outcome"] = dict(self._data["questions_by_outcome"])
            return data

    @property
    def is_healthy(self) -> bool:
        with self._lock:
            return self._data["store_ok"]
