# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Reranker child process.

Runs in its own OS process (multiprocessing spawn context) so a crash or a
long model load never takes the engine down. Talks to the parent over a
Pipe with plain dicts:

  child  -> parent  {"type": "ready"}
                    {"type": "init-error", "message": str}
                    {"type": "result", "id": str, "scores": [float, ...]}
                    {"type": "error", "id": str, "message": str}
  parent -> child   {"type": "rerank", "id": str, "query": str, "documents": [str, ...]}
                    {"type": "shutdown"}
"""
import shutil
from pathlib import Path
from typing import Any, Callable, Optional

# Substrings of errors raised when a cached model file is truncated or corrupt
CORRUPTED_CACHE_MARKERS = (
    "Protobuf",
    "out of bounds",
    "Deserialize tensor",
    "SafetensorError",
    "HeaderTooLarge",
    "invalid load key",
    "Unable to load weights",
    "incomplete metadata",
)


def is_corrupted_cache_error(error: BaseException) -> bool:
    message = f"{type(error).__name__}: {error}"
    return any(marker in message for marker in CORRUPTED_CACHE_MARKERS)


def model_cache_dir(model_name: str, cache_folder: Optional[str] = None) -> Path:
    """Hugging Face hub cache directory of *model_name*."""
    if cache_folder:
        root = Path(cache_folder)
    else:
        from huggingface_hub import constants
        root = Path(constants.HF_HUB_CACHE)
    return root / ("models--" + model_name.replace("/", "--"))


def relevance_scores(raw: Any) -> list[float]:
    """One float per pair. Two-logit classifiers keep the 'relevant' logit."""
    if hasattr(raw, "tolist"):
        raw = raw.tolist()
    scores = []
    for row in raw:
        if isinstance(row, (list, tuple)):
            row = row[1] if len(row) == 2 else row[0]
        scores.append(float(row))
    return scores


def load_with_recovery(load_model: Callable[[], Any], clear_cache: Optional[Callable[[], None]] = None):
    """Load the model; on a corrupted-cache error wipe the cache once and retry once."""
    try:
        return load_model()
    except Exception as e:
        if clear_cache is None or not is_corrupted_cache_error(e):
            raise
        print(f"[Reranker] Model cache looks corrupted ({e}), clearing and retrying")
    clear_cache()
    return load_model()


def serve(conn, load_model: Callable[[], Any], clear_cache: Optional[Callable[[], None]] = None):
    """Worker loop. Returns when the parent sends shutdown or closes the pipe."""
    try:
        model = load_with_recovery(load_model, clear_cache)
    except Exception as e:
        conn.send({"type": "init-error", "message": f"{type(e).__name__}: {e}"})
        return
    conn.send({"type": "ready"})

    while True:
        try:
            msg = conn.recv()
        except (EOFError, OSError):
            return
        kind = msg.get("type")
        if kind == "shutdown":
            return
        if kind != "rerank":
            continue

        request_id = msg.get("id")
        documents = msg.get("documents") or []
        try:
            if documents:
                pairs = [(msg["query"], doc) for doc in documents]
                scores = relevance_scores(model.predict(pairs))
            else:
                scores = []
            conn.send({"type": "result", "id": request_id, "scores": scores})
        except Exception as e:
            conn.send({"type": "error", "id": request_id, "message": f"{type(e).__name__}: {e}"})


def worker_main(conn, model_name: str, cache_folder: Optional[str] = None):
    """Process target: host a sentence-transformers CrossEncoder."""
    cache_dir = model_cache_dir(model_name, cache_folder)

    def load_model():
        from sentence_transformers import CrossEncoder
        return CrossEncoder(model_name, cache_folder=cache_folder or None)

    def clear_cache():
        if cache_dir.exists():
            shutil.rmtree(cache_dir, ignore_errors=True)
            print(f"[Reranker] Removed {cache_dir}")

    try:
        serve(conn, load_model, clear_cache)
    finally:
        conn.close()
