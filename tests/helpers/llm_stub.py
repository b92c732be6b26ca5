"""Test helpers to stub the text generator used by the generative fallback.

``StubTextGenerator`` matches the ``TextGenerator`` protocol: it returns the
queued responses in order (repeating the last one) or raises the configured
exception, and records every prompt so tests can assert on what the model saw.
"""

from __future__ import annotations

import json
from typing import Any


def llm_json(category_slug: str, confidence: float = 0.9, attributes: dict | None = None, rationale: str = "stub") -> str:
    """Render a model answer in the JSON shape the parser expects."""
    return json.dumps(
        {
            "category_slug": category_slug,
            "confidence": confidence,
            "attributes": attributes or {},
            "rationale": rationale,
        }
    )


class StubTextGenerator:
    """Minimal async generator with canned answers.

    Parameters
    ----------
    responses:
        Texts returned in order; the last one repeats once the list runs out.
    error:
        Exception raised on every call instead of answering.
    fail_times:
        Raise ``error`` only for the first ``fail_times`` calls, then answer.
    """

    def __init__(
        self,
        responses: list[str] | None = None,
        error: Exception | None = None,
        fail_times: int | None = None,
    ) -> None:
        self._responses = list(responses or [])
        self._error = error
        self._fail_times = fail_times
        self.prompts: list[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self._error is not None and (self._fail_times is None or len(self.prompts) <= self._fail_times):
            raise self._error
        if not self._responses:
            raise AssertionError("StubTextGenerator: no response queued")
        answered = len(self.prompts) - (self._fail_times or 0)
        return self._responses[min(answered, len(self._responses)) - 1]


class AnthropicMessagesStub:
    """Shape-compatible stand-in for ``anthropic.AsyncAnthropic``."""

    def __init__(self, text: str) -> None:
        self.calls: list[dict[str, Any]] = []
        outer = self

        class _Usage:
            input_tokens = 120
            output_tokens = 30

        class _Block:
            def __init__(self, value: str) -> None:
                self.text = value

        class _Response:
            def __init__(self, value: str) -> None:
                self.content = [_Block(value)]
                self.usage = _Usage()

        class _Messages:
            async def create(self, **kwargs):
                outer.calls.append(kwargs)
                return _Response(text)

        self.messages = _Messages()
