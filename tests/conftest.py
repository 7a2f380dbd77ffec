from __future__ import annotations

import datetime as dt
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

import pytest

from boss.confirm import InMemoryConfirmationStore
from boss.errors import ModelError
from boss.kernel import AssistantKernel, KernelConfig
from boss.llm import ModelProvider
from boss.storage import Storage
from boss.tags import ensure_core_tag


TODAY = dt.date(2026, 3, 14)
TEST_MODEL = "claude:test-model"


class ScriptedProvider(ModelProvider):
    """Replays canned replies in order; raises ModelError once the script runs out."""

    def __init__(self, replies: Optional[List[Union[str, Exception]]] = None):
        super().__init__(TEST_MODEL, env={})
        self.replies: List[Union[str, Exception]] = list(replies or [])
        self.calls: List[Tuple[str, str, Optional[str]]] = []

    def push(self, *replies: Union[str, Exception]) -> None:
        self.replies.extend(replies)

    def complete(self, system: str, user_prompt: str, model_identifier: Optional[str] = None) -> str:
        self.calls.append((system, user_prompt, model_identifier))
        if not self.replies:
            raise ModelError("script exhausted", provider="scripted")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def storage(tmp_path: Path) -> Iterator[Storage]:
    s = Storage(tmp_path / "store")
    yield s
    s.close()


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def confirm_store() -> InMemoryConfirmationStore:
    return InMemoryConfirmationStore()


@pytest.fixture
def kernel(storage: Storage, provider: ScriptedProvider, confirm_store: InMemoryConfirmationStore) -> AssistantKernel:
    cfg = KernelConfig(storage=str(storage.root), model=TEST_MODEL, planner="llm")
    return AssistantKernel(storage, provider, confirm_store, cfg, today=lambda: TODAY)


@pytest.fixture
def core_tag(storage: Storage) -> str:
    return ensure_core_tag(storage)
