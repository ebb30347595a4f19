"""
Shared test doubles.

FakeChatModel stands in for the hosted Gemini models: it records every
message list it receives and replies with a canned string, an exception, or
nothing at all (when a delay exceeds the caller's timeout).
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, List, Optional

import pytest
from langchain_core.messages import AIMessage


class FakeChatModel:
    def __init__(self, reply: Any = None, error: Optional[BaseException] = None, delay: float = 0.0):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls: List[list] = []

    async def ainvoke(self, messages):
        self.calls.append(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if isinstance(self.reply, dict):
            return AIMessage(content=json.dumps(self.reply))
        return AIMessage(content=self.reply or "")


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def no_api_key(monkeypatch):
    """Tests never talk to the hosted models."""
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)


@pytest.fixture
def clock():
    return FakeClock()


PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
