# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Hybrid store: chunks + dense vectors + keyword index + chat history in
one SQLite file.

  chunks       relational rows (content, source, position)
  chunks_vec   sqlite-vec vec0 table, one vector per chunk id (L2 distance)
  chunks_fts   FTS5 table, kept in sync with chunks by triggers
  chat_history append-only conversation log
  store_meta   embedding model / dimension the store was created with

Every insert/delete touches all three chunk structures inside a single
BEGIN IMMEDIATE transaction, so a chunk is never visible with a vector but
no keyword row or vice versa.

Connections are per thread (the async layer calls in via
asyncio.to_thread). Writes are serialized by a lock; WAL lets readers
keep working on their snapshot while a write is in progress.
"""
import re
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Sequence

import numpy as np
import sqlite_vec

from .embeddings import Embedder
from .errors import EmbeddingError, StorageInitError, StorageReadError, StorageWriteError
from .models import Chunk, Distance, HistoryEntry, KeywordScore, RetrievalResult

_SCHEMA = """
CREATE TABLE IF NOT EXISTS store_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chunks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content TEXT NOT NULL,
    source TEXT NOT NULL,
    filename TEXT NOT NULL DEFAULT '',
    chunk_index INTEGER NOT NULL DEFAULT 0,
    total_chunks INTEGER NOT NULL DEFAULT 1,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chunks_source ON chunks(source);

CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(content);

CREATE TRIGGER IF NOT EXISTS chunks_ai AFTER INSERT ON chunks BEGIN
    INSERT INTO chunks_fts(rowid, content) VALUES (new.id, new.content);
END;

CREATE TRIGGER IF NOT EXISTS chunks_ad AFTER DELETE ON chunks BEGIN
    DELETE FROM chunks_fts WHERE rowid = old.id;
END;

CREATE TABLE IF NOT EXISTS chat_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
    content TEXT NOT NULL,
    timestamp INTEGER NOT NULL
);
"""

_VEC_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS chunks_vec USING vec0(
    chunk_id INTEGER PRIMARY KEY,
    embedding FLOAT[{dim}]
);
"""

_CHUNK_COLUMNS = "c.id, c.content, c.source, c.filename, c.chunk_index, c.total_chunks"

# Largest k a vec0 KNN query accepts
VEC_KNN_MAX_K = 4096


def _load_extensions(conn: sqlite3.Connection) -> None:
    """Load sqlite-vec extension."""
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)


# Lucene/Elasticsearch English stop words
STOPWORDS_EN = frozenset((
    "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "if", "in",
    "into", "is", "it", "no", "not", "of", "on", "or", "such", "that", "the",
    "their", "then", "there", "these", "they", "this", "to", "was", "will", "with",
))

_TOKEN = re.compile(r"(?u)\b\w\w+\b")


def keyword_tokens(text: str) -> list[str]:
    """Lower-cased, stop-word-free query tokens, first occurrence order."""
    tokens: list[str] = []
    for tok in _TOKEN.findall(text.lower()):
        if tok not in STOPWORDS_EN and tok not in tokens:
            tokens.append(tok)
    return tokens


def build_match_expression(tokens: list[str]) -> str:
    """OR of quoted phrases, so user text never hits FTS5 query syntax."""
    return " OR ".join('"' + t.replace('"', '""') + '"' for t in tokens)


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        content=row["content"],
        source=row["source"],
        filename=row["filename"],
        chunk_index=row["chunk_index"],
        total_chunks=row["total_chunks"],
    )


class HybridStore:
    def __init__(self, db_path: Path | str, embedder: Embedder):
        self._db_path = Path(db_path)
        self._embedder = embedder
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._conn_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self.dimension: Optional[int] = None
        self._closed = False

    # ── Lifecycle ────────────────────────────────────────

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False, isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        _load_extensions(conn)
        conn.execute("PRAGMA busy_timeout = 5000")
        return conn

    def _conn(self) -> sqlite3.Connection:
        if self._closed:
            raise StorageInitError("Store is closed")
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
            with self._conn_lock:
                self._connections.append(conn)
        return conn

    def initialize(self) -> "HybridStore":
        """Open/create the database, probe the embedding dimension and
        create the schema. Raises StorageInitError on any failure."""
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            dim = self._embedder.probe_dimension()
        except (OSError, EmbeddingError) as e:
            raise StorageInitError(f"Cannot prepare store at {self._db_path}: {e}") from e

        try:
            conn = self._conn()
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(_SCHEMA)

            existing_dim = self._existing_vector_dimension(conn)
            if existing_dim is not None and existing_dim != dim:
                stored_model = self._get_meta(conn, "embedding_model") or "unknown"
                raise StorageInitError(
                    f"Embedding dimension mismatch in {self._db_path}: "
                    f"store={existing_dim}d (model '{stored_model}'), "
                    f"current model '{self._embedder.model_name}'={dim}d. "
                    f"Re-ingest into a new store or switch back the model."
                )
            stored_model = self._get_meta(conn, "embedding_model")
            if stored_model and self._embedder.model_name and stored_model != self._embedder.model_name:
                print(
                    f"Warning: store was created with '{stored_model}', "
                    f"now using '{self._embedder.model_name}' (same {dim}d)"
                )

            conn.executescript(_VEC_SCHEMA.format(dim=dim))
            conn.execute(
                "INSERT OR REPLACE INTO store_meta (key, value) VALUES ('embedding_dim', ?)",
                (str(dim),),
            )
            if self._embedder.model_name:
                conn.execute(
                    "INSERT OR REPLACE INTO store_meta (key, value) VALUES ('embedding_model', ?)",
                    (self._embedder.model_name,),
                )
        except sqlite3.Error as e:
            raise StorageInitError(f"Schema creation failed for {self._db_path}: {e}") from e

        self.dimension = dim
        print(f"[Store] Opened {self._db_path} ({dim}d vectors, {self.count_chunks()} chunks)")
        return self

    @staticmethod
    def _existing_vector_dimension(conn: sqlite3.Connection) -> Optional[int]:
        row = conn.execute(
            "SELECT sql FROM sqlite_master WHERE name = 'chunks_vec'"
        ).fetchone()
        if row is None or not row[0]:
            return None
        match = re.search(r"float\[(\d+)\]", row[0], re.IGNORECASE)
        return int(match.group(1)) if match else None

    @staticmethod
    def _get_meta(conn: sqlite3.Connection, key: str) -> Optional[str]:
        row = conn.execute("SELECT value FROM store_meta WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def _require_ready(self):
        if self.dimension is None:
            raise StorageInitError("Store not initialized, call initialize() first")

    def close(self):
        with self._conn_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error:
                    pass
            self._connections.clear()
        self._local = threading.local()
        self._closed = True

    @contextmanager
    def _write_tx(self) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            conn = self._conn()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    # ── Chunks ───────────────────────────────────────────

    def add_chunks(self, chunks: Sequence[Chunk], replace_sources: bool = False) -> list[Chunk]:
        """Insert a batch atomically. Chunks without an embedding are
        embedded first; if that fails nothing is written.

        With replace_sources, existing chunks of every source in the batch
        are removed in the same transaction.
        """
        self._require_ready()
        if not chunks:
            return []

        vectors: list = [c.embedding for c in chunks]
        missing = [i for i, v in enumerate(vectors) if v is None]
        if missing:
            computed = self._embedder.embed_documents([chunks[i].content for i in missing])
            for i, vec in zip(missing, computed):
                vectors[i] = vec
        for chunk, vec in zip(chunks, vectors):
            if len(vec) != self.dimension:
                raise EmbeddingError(
                    f"Vector for chunk {chunk.chunk_index} of {chunk.source} has "
                    f"{len(vec)} dimensions, store expects {self.dimension}"
                )

        now = int(datetime.now(timezone.utc).timestamp())
        stored: list[Chunk] = []
        try:
            with self._write_tx() as conn:
                if replace_sources:
                    for source in dict.fromkeys(c.source for c in chunks):
                        self._delete_source_rows(conn, source)
                for chunk, vec in zip(chunks, vectors):
                    cur = conn.execute(
                        "INSERT INTO chunks"
                        " (content, source, filename, chunk_index, total_chunks, created_at)"
                        " VALUES (?, ?, ?, ?, ?, ?)",
                        (chunk.content, chunk.source, chunk.filename,
                         chunk.chunk_index, chunk.total_chunks, now),
                    )
                    chunk_id = cur.lastrowid
                    conn.execute(
                        "INSERT INTO chunks_vec (chunk_id, embedding) VALUES (?, ?)",
                        (chunk_id, sqlite_vec.serialize_float32(list(vec))),
                    )
                    stored.append(replace(chunk, id=chunk_id, embedding=None))
        except sqlite3.Error as e:
            raise StorageWriteError(
                f"Insert of {len(chunks)} chunks rolled back: {e}"
            ) from e
        return stored

    @staticmethod
    def _delete_source_rows(conn: sqlite3.Connection, source: str) -> int:
        ids = [
            row[0] for row in conn.execute(
                "SELECT id FROM chunks WHERE source = ?", (source,)
            ).fetchall()
        ]
        if ids:
            conn.executemany("DELETE FROM chunks_vec WHERE chunk_id = ?", [(i,) for i in ids])
            # chunks_ad trigger removes the keyword rows
            conn.execute("DELETE FROM chunks WHERE source = ?", (source,))
        return len(ids)

    def delete_by_source(self, source: str) -> int:
        """Remove every chunk of *source*. Idempotent. Returns rows removed."""
        self._require_ready()
        try:
            with self._write_tx() as conn:
                removed = self._delete_source_rows(conn, source)
        except sqlite3.Error as e:
            raise StorageWriteError(f"Delete of {source} rolled back: {e}") from e
        if removed:
            print(f"[Store] Deleted {removed} chunks of {source}")
        return removed

    def similarity_search(self, query_vector: Sequence[float], k: int) -> list[RetrievalResult]:
        """k nearest chunks by L2 distance, closest first. Returns fewer
        than k only when the corpus holds fewer chunks."""
        self._require_ready()
        if k <= 0:
            return []
        if len(query_vector) != self.dimension:
            raise EmbeddingError(
                f"Query vector has {len(query_vector)} dimensions, store expects {self.dimension}"
            )
        query = sqlite_vec.serialize_float32(list(query_vector))
        try:
            total = self.count_chunks()
            if total == 0:
                return []
            k = min(k, total)
            if k <= VEC_KNN_MAX_K:
                rows = self._conn().execute(
                    f"""
                    WITH matches AS (
                        SELECT chunk_id, distance
                        FROM chunks_vec
                        WHERE embedding MATCH ? AND k = ?
                    )
                    SELECT {_CHUNK_COLUMNS}, m.distance AS distance
                    FROM matches m
                    JOIN chunks c ON c.id = m.chunk_id
                    ORDER BY m.distance
                    """,
                    (query, k),
                ).fetchall()
            else:
                # vec0 KNN refuses k above its limit; brute-force scan instead
                rows = self._conn().execute(
                    f"""
                    SELECT {_CHUNK_COLUMNS}, vec_distance_l2(v.embedding, ?) AS distance
                    FROM chunks_vec v
                    JOIN chunks c ON c.id = v.chunk_id
                    ORDER BY distance
                    LIMIT ?
                    """,
                    (query, k),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageReadError(f"Vector search failed: {e}") from e
        return [RetrievalResult(_row_to_chunk(r), Distance(float(r["distance"]))) for r in rows]

    def keyword_search(self, query_text: str, k: int) -> list[RetrievalResult]:
        """BM25 keyword search, most relevant first. No match -> []."""
        self._require_ready()
        tokens = keyword_tokens(query_text)
        if not tokens or k <= 0:
            return []
        try:
            rows = self._conn().execute(
                f"""
                SELECT {_CHUNK_COLUMNS}, bm25(chunks_fts) AS rank
                FROM chunks_fts
                JOIN chunks c ON c.id = chunks_fts.rowid
                WHERE chunks_fts MATCH ?
                ORDER BY rank
                LIMIT ?
                """,
                (build_match_expression(tokens), k),
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageReadError(f"Keyword search failed: {e}") from e
        # bm25() is negative, closer to 0 is worse; flip so larger is better
        return [RetrievalResult(_row_to_chunk(r), KeywordScore(-float(r["rank"]))) for r in rows]

    def all_vectors(self) -> list[tuple[Chunk, list[float]]]:
        """Every chunk with its stored vector, in insertion order."""
        self._require_ready()
        try:
            rows = self._conn().execute(
                f"""
                SELECT {_CHUNK_COLUMNS}, v.embedding AS embedding
                FROM chunks_vec v
                JOIN chunks c ON c.id = v.chunk_id
                ORDER BY c.id
                """
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageReadError(f"Vector dump failed: {e}") from e
        return [
            (_row_to_chunk(r), np.frombuffer(r["embedding"], dtype=np.float32).tolist())
            for r in rows
        ]

    def list_sources(self) -> list[str]:
        rows = self._conn().execute(
            "SELECT DISTINCT source FROM chunks WHERE source != '' ORDER BY source"
        ).fetchall()
        return [r[0] for r in rows]

    def count_chunks(self) -> int:
        return self._conn().execute("SELECT COUNT(*) FROM chunks").fetchone()[0]

    def consistency_report(self) -> dict[str, set[int]]:
        """Id sets of the chunk table, vector index and keyword index."""
        self._require_ready()
        conn = self._conn()
        return {
            "chunks": {r[0] for r in conn.execute("SELECT id FROM chunks")},
            "vectors": {r[0] for r in conn.execute("SELECT chunk_id FROM chunks_vec")},
            "keywords": {r[0] for r in conn.execute("SELECT rowid FROM chunks_fts")},
        }

    def is_consistent(self) -> bool:
        report = self.consistency_report()
        return report["chunks"] == report["vectors"] == report["keywords"]

    # ── Chat history ─────────────────────────────────────

    def add_history(self, role: str, content: str) -> HistoryEntry:
        if role not in ("user", "assistant"):
            raise ValueError(f"Invalid history role: {role!r}")
        entry = HistoryEntry(role=role, content=content)
        try:
            with self._write_tx() as conn:
                conn.execute(
                    "INSERT INTO chat_history (role, content, timestamp) VALUES (?, ?, ?)",
                    (entry.role, entry.content, entry.timestamp),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(f"History append failed: {e}") from e
        return entry

    def add_exchange(self, question: str, answer: str) -> tuple[HistoryEntry, HistoryEntry]:
        """Append a question and its answer in one transaction: both rows or neither."""
        user = HistoryEntry(role="user", content=question)
        assistant = HistoryEntry(role="assistant", content=answer)
        try:
            with self._write_tx() as conn:
                conn.executemany(
                    "INSERT INTO chat_history (role, content, timestamp) VALUES (?, ?, ?)",
                    [(e.role, e.content, e.timestamp) for e in (user, assistant)],
                )
        except sqlite3.Error as e:
            raise StorageWriteError(f"History append failed: {e}") from e
        return user, assistant

    def get_history(self, limit: Optional[int] = None) -> list[HistoryEntry]:
        """Entries in insertion order; with *limit*, only the most recent."""
        conn = self._conn()
        if limit is not None:
            rows = conn.execute(
                "SELECT role, content, timestamp FROM chat_history ORDER BY id DESC LIMIT ?",
                (max(limit, 0),),
            ).fetchall()
            rows = list(reversed(rows))
        else:
            rows = conn.execute(
                "SELECT role, content, timestamp FROM chat_history ORDER BY id ASC"
            ).fetchall()
        return [HistoryEntry(role=r["role"], content=r["content"], timestamp=r["timestamp"]) for r in rows]

    def clear_history(self):
        try:
            with self._write_tx() as conn:
                conn.execute("DELETE FROM chat_history")
        except sqlite3.Error as e:
            raise StorageWriteError(f"History clear failed: {e}") from e

    # ── Stats ────────────────────────────────────────────

    @property
    def stats(self) -> dict:
        return {
            "total_chunks": self.count_chunks(),
            "sources": len(self.list_sources()),
            "dimension": self.dimension,
            "embedding_model": self._embedder.model_name,
            "db_path": str(self._db_path),
        }
