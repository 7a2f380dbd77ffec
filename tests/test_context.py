from __future__ import annotations

from boss.context import ContextLoader, lexical_score, request_tokens
from boss.storage import Storage


def test_lexical_score_caps_long_tokens() -> None:
    assert lexical_score(["swift", "concurrency"], "Notes on Swift concurrency") == 13
    assert lexical_score(["swift"], "swiftly") == 0


def test_request_tokens() -> None:
    assert request_tokens("Swift, Concurrency!") == ["swift", "concurrency"]
    assert request_tokens("!!!") == ["!!!"]
    assert request_tokens("   ") == []


def test_load_ranks_by_score_then_recency(storage: Storage, core_tag: str) -> None:
    older = storage.create_text_record("a.txt", "swift concurrency notes", tag_ids=[core_tag])
    storage.create_text_record("b.txt", "groceries", tag_ids=[core_tag])
    newer = storage.create_text_record("c.txt", "swift tips", tag_ids=[core_tag])
    storage.create_text_record("untagged.txt", "swift concurrency everywhere")

    items = ContextLoader(storage).load(core_tag, "swift concurrency")

    assert [it.id for it in items][:2] == [older, newer]
    assert [it.score for it in items] == [13, 5, 0]
    assert items[0].snippet == "swift concurrency notes"


def test_load_respects_limit_and_archive(storage: Storage, core_tag: str) -> None:
    for i in range(3):
        storage.create_text_record(f"n{i}.txt", "note", tag_ids=[core_tag])
    archived = storage.create_text_record("old.txt", "note", tag_ids=[core_tag])
    storage.set_archived(archived, True)

    loader = ContextLoader(storage)
    assert len(loader.load(core_tag, "note", limit=2)) == 2
    assert archived not in [it.id for it in loader.load(core_tag, "note")]
    assert loader.load(core_tag, "note", limit=0) == []


def test_load_is_read_only(storage: Storage, core_tag: str) -> None:
    rid = storage.create_text_record("a.txt", "swift", tag_ids=[core_tag])
    before = storage.get_record(rid)

    loader = ContextLoader(storage)
    first = loader.load(core_tag, "swift")
    second = loader.load(core_tag, "swift")

    assert first == second
    assert storage.get_record(rid) == before
