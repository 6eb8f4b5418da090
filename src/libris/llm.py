# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Chat model access over OpenAI-compatible endpoints (DeepSeek, Gemini).

Streams are normalized to ChatDelta objects: a text fragment and/or
partial tool-call fragments. Tool-call fragments arrive split across
deltas and are stitched back together by ToolCallAccumulator.
"""
import json
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

import openai
from openai import AsyncOpenAI

from .config import Config
from .errors import GenerationError
from .models import ToolCall


@dataclass
class ToolCallFragment:
    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""


@dataclass
class ChatDelta:
    text: str = ""
    tool_fragments: list[ToolCallFragment] = field(default_factory=list)


class ToolCallAccumulator:
    """Collects streamed tool-call fragments keyed by their index."""

    def __init__(self):
        self._calls: dict[int, dict] = {}

    def add(self, fragment: ToolCallFragment):
        slot = self._calls.setdefault(fragment.index, {"id": None, "name": "", "arguments": ""})
        if fragment.id:
            slot["id"] = fragment.id
        if fragment.name and not slot["name"]:
            slot["name"] = fragment.name
        if fragment.arguments:
            slot["arguments"] += fragment.arguments

    def __len__(self) -> int:
        return len(self._calls)

    def finalize(self) -> list[ToolCall]:
        calls = []
        for index in sorted(self._calls):
            slot = self._calls[index]
            if not slot["name"]:
                continue
            raw = slot["arguments"]
            try:
                args = json.loads(raw) if raw.strip() else {}
            except json.JSONDecodeError:
                args = {"_raw": raw}
            if not isinstance(args, dict):
                args = {"_raw": raw}
            calls.append(ToolCall(name=slot["name"], args=args))
        return calls


def _fragments(delta) -> list[ToolCallFragment]:
    fragments = []
    for tc in getattr(delta, "tool_calls", None) or []:
        fn = getattr(tc, "function", None)
        fragments.append(ToolCallFragment(
            index=tc.index if tc.index is not None else 0,
            id=getattr(tc, "id", None),
            name=getattr(fn, "name", None) if fn else None,
            arguments=(getattr(fn, "arguments", None) or "") if fn else "",
        ))
    return fragments


class ChatModel:
    def __init__(self, client: AsyncOpenAI, model: str, temperature: float = 0.7,
                 max_tokens: int = 2048, provider: str = ""):
        self._client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.provider = provider

    async def complete(self, prompt: str) -> str:
        """Single non-streaming completion for a user prompt."""
        try:
            resp = await self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.OpenAIError as e:
            raise GenerationError(f"{self.provider or 'LLM'} request failed: {e}") from e
        if not resp.choices:
            return ""
        return resp.choices[0].message.content or ""

    async def stream(self, messages: list[dict], tools: Optional[list[dict]] = None) -> AsyncIterator[ChatDelta]:
        kwargs = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": True,
        }
        if tools:
            kwargs["tools"] = tools
        try:
            stream = await self._client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            raise GenerationError(f"{self.provider or 'LLM'} request failed: {e}") from e

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is None:
                    continue
                fragments = _fragments(delta)
                if delta.content or fragments:
                    yield ChatDelta(text=delta.content or "", tool_fragments=fragments)
        except openai.OpenAIError as e:
            raise GenerationError(f"{self.provider or 'LLM'} stream failed: {e}") from e
        finally:
            await stream.close()


def get_chat_model(config: Config, provider: Optional[str] = None) -> ChatModel:
    """Build a ChatModel for *provider* (defaults to config.llm_provider)."""
    provider = provider or config.llm_provider
    if provider == "deepseek":
        api_key, base_url, model = config.deepseek_api_key, config.deepseek_base_url, config.deepseek_model
    elif provider == "gemini":
        api_key, base_url, model = config.google_api_key, config.gemini_base_url, config.gemini_model
    else:
        raise GenerationError(f"Unknown LLM provider '{provider}'")
    if not api_key:
        raise GenerationError(f"No API key configured for provider '{provider}'")

    client = AsyncOpenAI(
        api_key=api_key,
        base_url=base_url,
        timeout=config.llm_timeout,
        max_retries=config.llm_max_retries,
    )
    return ChatModel(
        client, model,
        temperature=config.llm_temperature,
        max_tokens=config.llm_max_tokens,
        provider=provider,
    )
