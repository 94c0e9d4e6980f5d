"""
Shared fixtures for the aide test suite.

Provides a scripted user channel, a scripted completion engine and a
deterministic embedding provider so tests exercise real behavior without
any network access or terminal.
"""

from __future__ import annotations

from collections import deque
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

import pytest

from aide.channels.base import UserChannel
from aide.config import CacheConfig, SafetyConfig
from aide.tools.compiler import DynamicToolCompiler
from aide.tools.registry import ToolRegistry
from aide.tools.store import ToolStore
from aide.types import Message, ModelTurn, ToolCall


# ---------------------------------------------------------------------------
# Scripted user channel
# ---------------------------------------------------------------------------

class ScriptedChannel(UserChannel):
    """
    A UserChannel whose answers are queued up front.

    ``inputs`` feed read_user_input(), ``texts`` feed prompt_text() (the
    safety gate's confirmation), ``confirms`` feed prompt_confirm() and
    ``selections`` feed prompt_select_one(). Everything shown is recorded.
    """

    def __init__(
        self,
        inputs: Iterable[Optional[str]] = (),
        texts: Iterable[Optional[str]] = (),
        confirms: Iterable[bool] = (),
        selections: Iterable[Optional[int]] = (),
    ):
        self.inputs = deque(inputs)
        self.texts = deque(texts)
        self.confirms = deque(confirms)
        self.selections = deque(selections)
        self.text_prompts: list[str] = []
        self.confirm_prompts: list[str] = []
        self.select_prompts: list[tuple[str, list[str]]] = []
        self.shown: list[Message] = []
        self.notices: list[str] = []
        self.settings_shown: list[Sequence[tuple[str, str]]] = []
        self.history_redraws = 0

    async def read_user_input(self) -> Optional[str]:
        return self.inputs.popleft() if self.inputs else None

    async def prompt_text(self, label: str) -> Optional[str]:
        self.text_prompts.append(label)
        return self.texts.popleft() if self.texts else None

    async def prompt_confirm(self, label: str) -> bool:
        self.confirm_prompts.append(label)
        return self.confirms.popleft() if self.confirms else False

    async def prompt_select_one(self, title: str, options: Sequence[str]) -> Optional[int]:
        self.select_prompts.append((title, list(options)))
        return self.selections.popleft() if self.selections else None

    def show_message(self, message: Message) -> None:
        self.shown.append(message)

    def show_notice(self, text: str, style: str = "dim") -> None:
        self.notices.append(text)

    def show_history(self, messages: Sequence[Message]) -> None:
        self.history_redraws += 1

    def show_settings(self, rows: Sequence[tuple[str, str]]) -> None:
        self.settings_shown.append(list(rows))


# ---------------------------------------------------------------------------
# Scripted completion engine
# ---------------------------------------------------------------------------

def text_turn(text: str) -> ModelTurn:
    return ModelTurn(text=text)


def tool_turn(*calls: ToolCall, text: str = "") -> ModelTurn:
    return ModelTurn(text=text, tool_calls=list(calls), stop_reason="tool_use")


class MockEngine:
    """
    Returns pre-scripted ModelTurns in order and records every request.

    When the script runs out it answers with a plain "done".
    """

    def __init__(self, turns: Iterable[ModelTurn] = ()):
        self._turns = deque(turns)
        self.calls: list[dict[str, Any]] = []

    async def complete(self, system: str, messages: Sequence[Message], tools=()) -> ModelTurn:
        self.calls.append({
            "system": system,
            "messages": list(messages),
            "tool_names": [tool.name for tool in tools],
        })
        if self._turns:
            return self._turns.popleft()
        return text_turn("done")

    async def describe_image(self, path: str) -> str:
        return f"an image at {path}"

    async def generate_tags(self, prompt: str) -> list[str]:
        return ["tag"]

    @property
    def call_count(self) -> int:
        return len(self.calls)


# ---------------------------------------------------------------------------
# Deterministic embeddings
# ---------------------------------------------------------------------------

class FakeEmbeddings:
    """Maps known texts to fixed vectors; unknown texts get a default vector."""

    dimensions = 4

    def __init__(self, vectors: Optional[dict[str, list[float]]] = None, default=None):
        self._vectors = dict(vectors or {})
        self._default = default or [0.0, 0.0, 0.0, 1.0]
        self.requests: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.requests.append(text)
        return list(self._vectors.get(text, self._default))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def channel() -> ScriptedChannel:
    return ScriptedChannel()


@pytest.fixture()
def registry() -> ToolRegistry:
    return ToolRegistry()


@pytest.fixture()
def tool_store(tmp_path: Path):
    store = ToolStore(tmp_path / "tools.db")
    store.initialize()
    yield store
    store.close()


@pytest.fixture()
def compiler(registry: ToolRegistry, tool_store: ToolStore) -> DynamicToolCompiler:
    return DynamicToolCompiler(registry, tool_store)


@pytest.fixture()
def safety_config() -> SafetyConfig:
    return SafetyConfig()


@pytest.fixture()
def cache_config() -> CacheConfig:
    return CacheConfig(enabled=True, generate_tags=False)
