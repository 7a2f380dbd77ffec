from __future__ import annotations

import pytest

from boss.ir import ContextItem, TurnState
from boss.memory import (
    CoreConflict,
    MemoryWriter,
    build_audit_entry,
    build_memory_entry,
    is_action_worth_persisting,
    jaccard,
    markdown_section,
    resolve_merge_strategy,
    should_persist,
)
from boss.storage import Storage

from conftest import TODAY


def _persist(**overrides: object) -> bool:
    kwargs: dict = {
        "request": "search x",
        "reply": "nothing",
        "actions": [],
        "related_record_ids": [],
        "confirmation_required": False,
        "succeeded": True,
        "explicit_merge": None,
    }
    kwargs.update(overrides)
    return should_persist(**kwargs)


def test_should_persist_rules() -> None:
    assert _persist() is False
    assert _persist(request="remember I take the 8:10 train") is True
    assert _persist(request="记住我的偏好") is True
    assert _persist(actions=["record.create:ABC:ok"]) is True
    assert _persist(actions=["skill.run:S1:llm"]) is False
    assert _persist(actions=["skill.run:S1:append:R1"]) is True
    assert _persist(reply="Decision: ship friday", related_record_ids=["R1"]) is True
    assert _persist(reply="Decision: ship friday") is False


def test_gates_win_over_signal() -> None:
    assert _persist(request="remember this", confirmation_required=True) is False
    assert _persist(request="remember this", succeeded=False) is False
    assert _persist(succeeded=False, explicit_merge="keep") is True


@pytest.mark.parametrize(
    "action, worth",
    [
        ("record.delete:R:ok", True),
        ("record.delete:R:failed", False),
        ("task.run:T:ok", True),
        ("record.search:x:3", False),
        ("skill.run:S:create:R", True),
    ],
)
def test_is_action_worth_persisting(action: str, worth: bool) -> None:
    assert is_action_worth_persisting(action) is worth


def test_jaccard_and_sections() -> None:
    assert jaccard(set(), {"a"}) == 0.0
    assert jaccard({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)
    text = "# Entry\n\n## Request\nhello there\n\n## Reply\nhi\n\n## Tool Plan\n- x"
    assert markdown_section("Request", text) == "hello there"
    assert markdown_section("Reply", text) == "hi"
    assert markdown_section("Missing", text) is None


def test_resolve_merge_strategy() -> None:
    conflict = CoreConflict(record_id="R", score=0.5)
    assert resolve_merge_strategy("overwrite", conflict) == "overwrite"
    assert resolve_merge_strategy(None, conflict) == "versioned"
    assert resolve_merge_strategy(None, None) == "versioned"


def _item(rid: str, snippet: str) -> ContextItem:
    return ContextItem(id=rid, filename=f"assistant-core-{rid}.txt", snippet=snippet, updated_at=0.0)


def _entry(request: str, reply: str) -> str:
    return f"# Core Memory Entry\n\n## Request\n{request}\n\n## Reply\n{reply}"


def test_detect_conflict_picks_the_diverging_entry(storage: Storage) -> None:
    writer = MemoryWriter(storage, today=lambda: TODAY)
    daily = _entry("weekly review day", "Reviews happen on Monday.") + "\n\n---\n\n" + _entry(
        "what is my preferred editor", "You prefer vim for editing."
    )

    hit = writer.detect_conflict("what is my preferred editor", "You prefer emacs now with org mode.", [_item("A", daily)])

    assert hit is not None
    assert hit.record_id == "A"
    assert hit.score == pytest.approx(0.8)


def test_detect_conflict_ignores_agreeing_and_unrelated_memories(storage: Storage) -> None:
    writer = MemoryWriter(storage, today=lambda: TODAY)
    ctx = [
        _item("A", _entry("what is my preferred editor", "You prefer vim for editing.")),
        _item("B", _entry("grocery list", "Milk and eggs.")),
    ]

    assert writer.detect_conflict("what is my preferred editor", "You prefer vim for editing.", ctx) is None
    assert writer.detect_conflict("what should I buy", "Bread.", ctx) is None
    assert writer.detect_conflict("", "x", ctx) is None


def test_append_daily_reuses_the_days_record(storage: Storage) -> None:
    writer = MemoryWriter(storage, today=lambda: TODAY)
    tag = storage.ensure_tag("Core")

    first = writer.append_daily(tag, "assistant-core", "  one  ")
    second = writer.append_daily(tag, "assistant-core", "two")

    assert first == second
    assert storage.get_record(first)["filename"] == "assistant-core-2026-03-14.txt"
    assert storage.load_text(first) == "one\n\n---\n\ntwo"


def _turn(**fields: object) -> TurnState:
    base: dict = {"request_id": "REQ-1", "source": "cli", "request": "create a note: x", "started_at": 1_700_000_000.0}
    base.update(fields)
    return TurnState(**base)


def test_memory_entry_lists_key_actions_only() -> None:
    turn = _turn(
        intent="record.create(note.txt)",
        reply="Created text record",
        actions=["tag.ensure:Core", "record.create:R1:ok", "memory.merge.use:versioned"],
        related_record_ids=["R1"],
        conflict_record_id="OLD",
        conflict_score=0.51234,
    )

    text = build_memory_entry(turn, now=1_700_000_000.0)

    assert text.startswith("# Core Memory Entry\nat: 2023-11-14T22:13:20+00:00")
    assert "## Key Actions\n- record.create:R1:ok\n\n" in text
    assert "conflict_ref: OLD" in text
    assert "conflict_score: 0.51" in text
    assert markdown_section("Request", text) == "create a note: x"


def test_audit_entry_status() -> None:
    ok = build_audit_entry(_turn(actions=["plan:rule"]), finished_at=1_700_000_001.5)
    failed = build_audit_entry(_turn(actions=["plan:rule", "error:boom"]), finished_at=1_700_000_001.5)

    assert "status: ok" in ok
    assert "duration_ms: 1500" in ok
    assert "confirmation_token: -" in ok
    assert "status: failed" in failed
    assert "- error:boom" in failed
