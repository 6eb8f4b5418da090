# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""Prompt templates (str.format placeholders) and formatting helpers."""
from typing import Sequence

from .models import Chunk, HistoryEntry

RAG_TEMPLATE = """You are a local knowledge base assistant. You also have general knowledge.
Answer primarily from the [Context] and [Conversation] below.
If the context contains the answer, cite it.
If the context is irrelevant or empty, ignore it and answer from your general knowledge.

Context:
{context}

Conversation:
{chat_history}

Question: {question}

Answer:"""

SUMMARY_SECTION = """Summary of the earlier conversation:
{summary}

"""

CRAG_GRADE_PROMPT = """You are a grader assessing the relevance of a retrieved document to a user question.

Retrieved document:
{context}

User question:
{question}

If the document contains keywords or meaning related to the question, grade it as relevant.
Give a binary score 'yes' or 'no' to indicate whether the document is relevant.

Answer strictly in this JSON format:
{{
  "score": "yes" or "no",
  "reason": "short reason"
}}"""

CRAG_GENERATE_PROMPT = """Answer the user question based on the background information below. If you do not know the answer, say so; do not make one up.

Background information:
{context}

Question: {question}

Answer:"""

SUMMARY_SYSTEM_PROMPT = """You are a conversation summarizer. Compress a conversation history into a concise summary kept as long-term memory.

Requirements:
1. Keep key information: user intent, key facts (names, preferences, project background) and the assistant's key answers.
2. Describe the current state of the conversation, e.g. "The user asked ... the assistant answered ...".
3. Be concise: drop small talk, keep only the core logic.

Input:
- Existing summary (if any)
- New conversation to merge

Output:
- The full updated summary"""

SUMMARY_USER_TEMPLATE = """Existing summary:
{summary}

New conversation:
{conversation}

Write the updated summary:"""


QA_EXTRACT_PROMPT = """You are a knowledge extraction expert. Read the document below and turn its core knowledge into question-answer pairs.

Rules:
1. Keep one complete procedure or explanation in one pair. An answer is a short self-contained text, not a single sentence.
2. Extract how-to, concept and why knowledge. Skip trivial details.
3. Each pair must be understandable without the rest of the document.
4. Answers stay faithful to the document. Add nothing that is not in it.
5. Reply with a JSON array only. Each item is an object with "question" and "answer" fields.

Document:
{content}"""

QA_EXPAND_PROMPT = """Rewrite the question below as {count} different search queries a real user might type: other wording, synonyms, other angles.
Reply with a JSON array of strings only.

Question: {question}"""


def format_history(history: Sequence[HistoryEntry]) -> str:
    return "\n".join(
        f"{'Human' if entry.role == 'user' else 'Assistant'}: {entry.content}"
        for entry in history
    )


def format_documents(chunks: Sequence[Chunk]) -> str:
    return "\n\n".join(chunk.content for chunk in chunks)


def build_rag_prompt(question: str, chunks: Sequence[Chunk],
                     history: Sequence[HistoryEntry], summary: str = "") -> str:
    prompt = RAG_TEMPLATE.format(
        context=format_documents(chunks),
        chat_history=format_history(history),
        question=question,
    )
    if summary:
        prompt = SUMMARY_SECTION.format(summary=summary) + prompt
    return prompt
