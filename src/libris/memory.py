# Libris – Local-first knowledge base with grounded answers
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Rolling summary of the conversation that has scrolled out of the prompt
window. Entries are folded in once; a failed summarization keeps the
previous summary.
"""
from typing import Sequence

from .errors import GenerationError
from .llm import ChatModel
from .models import HistoryEntry
from .prompts import SUMMARY_SYSTEM_PROMPT, SUMMARY_USER_TEMPLATE, format_history


class HistorySummarizer:
    def __init__(self):
        self.summary = ""
        self._folded = 0

    def reset(self):
        self.summary = ""
        self._folded = 0

    async def summarize(self, older: Sequence[HistoryEntry], model: ChatModel) -> str:
        """Fold entries of *older* not seen before into the summary."""
        if len(older) < self._folded:
            # history was cleared or replaced
            self.reset()
        new_entries = older[self._folded:]
        if not new_entries:
            return self.summary

        prompt = SUMMARY_SYSTEM_PROMPT + "\n\n" + SUMMARY_USER_TEMPLATE.format(
            summary=self.summary or "none",
            conversation=format_history(new_entries),
        )
        try:
            text = (await model.complete(prompt)).strip()
        except GenerationError as e:
            print(f"Warning: conversation summary failed, keeping previous: {e}")
            return self.summary

        if text:
            self.summary = text
        self._folded = len(older)
        print(f"[Memory] Summary updated ({len(new_entries)} entries folded)")
        return self.summary
