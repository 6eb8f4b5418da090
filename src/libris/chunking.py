# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Text -> chunks for ingest_text(). Document parsing happens upstream;
this only splits already-extracted text.

Strategies:
  character    – fixed windows of chunk_size with chunk_overlap, cut at a
                 sentence or line end when one is in the second half
  heading      – split at markdown headings (# .. ###), keeping the heading
                 path; sections longer than chunk_size are windowed
  semantic     – split between sentences whose embeddings are much less
                 similar than the document average
  llm_enhanced – the chat model extracts question/answer pairs and
                 rephrases each question; one chunk per phrasing
"""
import asyncio
import json
import re
from pathlib import PurePath
from typing import Callable, Optional

import numpy as np

from .errors import GenerationError
from .models import Chunk
from .prompts import QA_EXPAND_PROMPT, QA_EXTRACT_PROMPT

_HEADING = re.compile(r"^(#{1,3})\s+(.*)")
_SENTENCE_END = re.compile(r"([.!?。！？\n]+)")
_CODE_FENCE = re.compile(r"```(?:json)?\n?|\n?```")

EmbedFunction = Callable[[list[str]], list[list[float]]]


def split_fixed(text: str, chunk_size: int = 500, chunk_overlap: int = 100) -> list[str]:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    overlap = max(0, min(chunk_overlap, chunk_size - 1))
    pieces = []
    start = 0
    while start < len(text):
        end = start + chunk_size
        piece = text[start:end]
        if end < len(text):
            cut = max(piece.rfind(". "), piece.rfind("\n"))
            if cut > chunk_size * 0.5:
                piece = piece[: cut + 1]
                end = start + cut + 1
        piece = piece.strip()
        if piece:
            pieces.append(piece)
        if end >= len(text):
            break
        start = max(end - overlap, start + 1)
    return pieces


def split_by_heading(text: str, chunk_size: int = 500, chunk_overlap: int = 100) -> list[str]:
    """Split at headings, prefixing each section with its heading path."""
    sections: list[tuple[str, list[str]]] = []
    heading_stack: list[tuple[int, str]] = []
    current_lines: list[str] = []
    current_path = ""

    for line in text.split("\n"):
        match = _HEADING.match(line)
        if match:
            if current_lines:
                sections.append((current_path, current_lines))
            level = len(match.group(1))
            heading_stack = [(l, t) for l, t in heading_stack if l < level]
            heading_stack.append((level, match.group(2).strip()))
            current_path = " > ".join(t for _, t in heading_stack)
            current_lines = [line]
        else:
            current_lines.append(line)
    if current_lines:
        sections.append((current_path, current_lines))

    pieces = []
    for path, lines in sections:
        raw = "\n".join(lines).strip()
        if not raw:
            continue
        parts = [raw] if len(raw) <= chunk_size else split_fixed(raw, chunk_size, chunk_overlap)
        for part in parts:
            pieces.append(f"[{path}]\n\n{part}" if path else part)
    return pieces


# ── Semantic ─────────────────────────────────────────


def split_sentences(text: str) -> list[str]:
    """Sentences with their closing punctuation, blank ones dropped."""
    parts = _SENTENCE_END.split(text)
    sentences = []
    for i in range(0, len(parts), 2):
        sentence = parts[i] + (parts[i + 1] if i + 1 < len(parts) else "")
        if sentence.strip():
            sentences.append(sentence.strip())
    return sentences


def split_semantic(text: str, embed: EmbedFunction, breakpoint_threshold: float = 95) -> list[str]:
    """Group consecutive sentences; break where the cosine similarity of
    neighbours drops below mean - sigma * stddev.

    breakpoint_threshold keeps the 0-100 scale of a percentile setting and
    maps onto sigma: 95 -> 1.8, 75 -> 1.0, never below 0.5.
    """
    sentences = split_sentences(text)
    if len(sentences) < 2:
        return sentences

    vectors = np.asarray(embed(sentences), dtype=np.float64)
    norms = np.linalg.norm(vectors, axis=1)
    norms[norms == 0] = 1.0
    unit = vectors / norms[:, None]
    similarities = np.sum(unit[:-1] * unit[1:], axis=1)

    sigma = max(0.5, (breakpoint_threshold - 50) / 25)
    cutoff = similarities.mean() - sigma * similarities.std()

    pieces = []
    current = [sentences[0]]
    for similarity, sentence in zip(similarities, sentences[1:]):
        if similarity < cutoff:
            pieces.append(" ".join(current))
            current = [sentence]
        else:
            current.append(sentence)
    pieces.append(" ".join(current))
    return pieces


# ── LLM enhanced ─────────────────────────────────────


def parse_json_array(text: str) -> Optional[list]:
    """The JSON array in a model reply (code fences and chatter around it
    tolerated), or None."""
    clean = _CODE_FENCE.sub("", text).strip()
    start, end = clean.find("["), clean.rfind("]")
    if start != -1 and end > start:
        clean = clean[start:end + 1]
    try:
        parsed = json.loads(clean)
    except ValueError:
        return None
    return parsed if isinstance(parsed, list) else None


async def extract_qa_pairs(content: str, model, retries: int = 3,
                           retry_delay: float = 2.0) -> list[tuple[str, str]]:
    """(question, answer) pairs for *content*. Raises GenerationError when
    the model gives no usable JSON after *retries* attempts."""
    prompt = QA_EXTRACT_PROMPT.format(content=content)
    last_error = "no attempts"
    for attempt in range(retries):
        if attempt:
            await asyncio.sleep(retry_delay * 2 ** (attempt - 1))
        try:
            parsed = parse_json_array(await model.complete(prompt))
        except GenerationError as e:
            last_error = str(e)
            continue
        if parsed is None:
            last_error = "reply is not a JSON array"
            continue
        return [
            (str(item["question"]).strip(), str(item["answer"]).strip())
            for item in parsed
            if isinstance(item, dict) and item.get("question") and item.get("answer")
        ]
    raise GenerationError(f"QA extraction failed after {retries} attempts: {last_error}")


async def expand_question(question: str, model, count: int = 5, retries: int = 2,
                          retry_delay: float = 2.0) -> list[str]:
    """Alternative phrasings of *question*; [] if the model cannot produce them."""
    prompt = QA_EXPAND_PROMPT.format(count=count, question=question)
    for attempt in range(retries):
        if attempt:
            await asyncio.sleep(retry_delay * 2 ** (attempt - 1))
        try:
            parsed = parse_json_array(await model.complete(prompt))
        except GenerationError:
            continue
        if parsed is not None:
            return [str(q).strip() for q in parsed if str(q).strip()]
    print(f"Warning: could not rephrase '{question}', keeping only the original")
    return []


async def extract_qa_chunks(text: str, source: str, model, retries: int = 3,
                            retry_delay: float = 2.0) -> list[Chunk]:
    """One chunk per question phrasing, each carrying the full answer."""
    if not text.strip():
        return []
    pairs = await extract_qa_pairs(text, model, retries=retries, retry_delay=retry_delay)
    print(f"[Chunking] {len(pairs)} QA pairs extracted from {source}")

    pieces: list[str] = []
    for question, answer in pairs:
        variants = await expand_question(question, model, retry_delay=retry_delay)
        for phrasing in [question] + variants:
            piece = f"{phrasing}\n\n{answer}"
            if piece not in pieces:
                pieces.append(piece)
    return _to_chunks(pieces, source)


# ── Entry point ──────────────────────────────────────


def _to_chunks(pieces: list[str], source: str) -> list[Chunk]:
    filename = PurePath(source).name
    return [
        Chunk(
            content=piece,
            source=source,
            filename=filename,
            chunk_index=i,
            total_chunks=len(pieces),
        )
        for i, piece in enumerate(pieces)
    ]


def chunk_text(text: str, source: str, strategy: str = "character",
               chunk_size: int = 500, chunk_overlap: int = 100,
               embed: Optional[EmbedFunction] = None,
               breakpoint_threshold: float = 95) -> list[Chunk]:
    """Split *text* with one of the synchronous strategies.
    llm_enhanced needs a chat model; use extract_qa_chunks for it."""
    if strategy == "heading":
        pieces = split_by_heading(text, chunk_size, chunk_overlap)
    elif strategy == "semantic":
        if embed is None:
            raise ValueError("semantic chunking needs an embed function")
        pieces = split_semantic(text, embed, breakpoint_threshold)
    elif strategy == "llm_enhanced":
        raise ValueError("llm_enhanced chunking is async, use extract_qa_chunks()")
    else:
        pieces = split_fixed(text, chunk_size, chunk_overlap)
    return _to_chunks(pieces, source)
