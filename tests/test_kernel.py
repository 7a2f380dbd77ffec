from __future__ import annotations

import http.client
import json
import urllib.request

import pytest

from boss.confirm import InMemoryConfirmationStore
from boss.errors import StorageError
from boss.kernel import AssistantKernel, KernelConfig
from boss.llm import ModelProvider
from boss.planner import CLARIFY_TOOL_PLAN
from boss.storage import Storage

from conftest import TODAY, ScriptedProvider


def _action_id(actions: list[str], prefix: str) -> str:
    hit = next(a for a in actions if a.startswith(prefix))
    return hit[len(prefix) :].split(":")[0]


def test_empty_request_gets_clarification(kernel: AssistantKernel) -> None:
    result = kernel.handle("   ")

    assert result.succeeded is True
    assert result.request == ""
    assert result.planner_source == "rule"
    assert result.tool_plan == CLARIFY_TOOL_PLAN
    assert "What would you like me to do?" in result.reply
    assert "clarify.ask" in result.actions
    assert result.actions[:3] == ["tag.ensure:Core", "tag.ensure:AuditLog", "context.load:0"]
    assert result.audit_record_id is not None


def test_create_without_content_asks_instead_of_writing(kernel: AssistantKernel) -> None:
    result = kernel.handle("create a new note")

    assert "clarify.ask" in result.actions
    assert "What should the new record say?" in result.reply
    assert not any(a.startswith("record.create:") for a in result.actions)
    assert "memory.skip:low_signal" in result.actions


def test_create_then_search_round_trip(kernel: AssistantKernel) -> None:
    created = kernel.handle("create a note: quarterly budget review")
    rid = _action_id(created.actions, "record.create:")
    assert f"record.create:{rid}:ok" in created.actions
    assert created.related_record_ids == [rid]
    assert "LLM planning failed" in (created.planner_note or "")

    found = kernel.handle("search budget")
    assert rid in found.related_record_ids
    assert any(a.startswith("record.search:budget:") for a in found.actions)


def test_zero_match_search(kernel: AssistantKernel) -> None:
    result = kernel.handle("search zzqxv")

    assert result.succeeded is True
    assert result.reply == 'No records matched "zzqxv".'
    assert "record.search:zzqxv:0" in result.actions
    assert result.related_record_ids == []
    assert "memory.skip:low_signal" in result.actions


def test_delete_requires_confirmation_then_redeems(kernel: AssistantKernel, storage: Storage) -> None:
    rid = storage.create_text_record("scratch.txt", "throwaway text")

    gated = kernel.handle(f"delete record {rid}", source="cli")
    token = gated.confirmation_token
    assert gated.confirmation_required is True
    assert token and len(token) == 12 and token == token.upper()
    assert gated.confirmation_expires_at is not None
    assert f"confirm.required:{token}" in gated.actions
    assert "dryrun.preview:1" in gated.actions
    assert f"#CONFIRM:{token}" in gated.reply
    assert f"boss assistant confirm {token}" in gated.reply
    assert "will delete" in gated.reply
    assert gated.related_record_ids == [rid]
    assert storage.get_record(rid) is not None
    assert gated.core_memory_record_id is None

    done = kernel.handle(f"#CONFIRM:{token.lower()}", source="cli")
    assert done.succeeded is True
    assert done.planner_source == "confirmation-token"
    assert done.intent.endswith("[confirmed]")
    assert f"confirm.consume:{token}" in done.actions
    assert f"record.delete:{rid}:ok" in done.actions
    assert storage.get_record(rid) is None
    assert done.core_memory_record_id is not None


def test_confirmation_token_is_single_use(kernel: AssistantKernel, storage: Storage) -> None:
    rid = storage.create_text_record("scratch.txt", "throwaway text")
    token = kernel.handle(f"delete record {rid}").confirmation_token

    kernel.handle(f"#CONFIRM:{token}")
    again = kernel.handle(f"#CONFIRM:{token}")

    assert again.succeeded is False
    assert again.intent == f"confirm.invalid({token})"
    assert again.tool_plan == ["validate-confirmation-token"]
    assert f"confirm.invalid:{token}" in again.actions
    assert "submit the original request again" in again.reply


def test_confirmation_from_another_source_is_rejected(kernel: AssistantKernel, storage: Storage) -> None:
    rid = storage.create_text_record("scratch.txt", "throwaway text")
    token = kernel.handle(f"delete record {rid}", source="cli").confirmation_token

    other = kernel.handle(f"#CONFIRM:{token}", source="gui")
    assert other.succeeded is False
    assert f"confirm.invalid:{token}" in other.actions
    assert storage.get_record(rid) is not None

    # The failed attempt consumed the token.
    retry = kernel.handle(f"#CONFIRM:{token}", source="cli")
    assert f"confirm.invalid:{token}" in retry.actions
    assert storage.get_record(rid) is not None


def test_expired_token_does_not_execute(kernel: AssistantKernel, storage: Storage) -> None:
    rid = storage.create_text_record("scratch.txt", "throwaway text")
    gated = kernel.handle(f"delete record {rid}")

    kernel.gate.clock = lambda: gated.confirmation_expires_at + 1
    late = kernel.handle(f"#CONFIRM:{gated.confirmation_token}")

    assert late.succeeded is False
    assert storage.get_record(rid) is not None


def test_replace_is_gated_and_leaves_text_unchanged(kernel: AssistantKernel, storage: Storage) -> None:
    rid = storage.create_text_record("draft.txt", "original body")

    gated = kernel.handle(f"replace {rid} with: brand new body")

    assert gated.confirmation_required is True
    assert "will rewrite" in gated.reply
    assert storage.load_text(rid) == "original body"

    kernel.handle(f"#CONFIRM:{gated.confirmation_token}")
    assert storage.load_text(rid) == "brand new body"


def test_task_run_is_gated_and_logged(kernel: AssistantKernel, storage: Storage) -> None:
    tid = storage.add_task("say hi", {"type": "shell_command", "command": "echo hi-from-task"})

    gated = kernel.handle(f"run task {tid}")
    assert gated.confirmation_required is True
    assert storage.task_run_logs(tid) == []

    done = kernel.handle(f"#CONFIRM:{gated.confirmation_token}")
    assert f"task.run:{tid}:ok" in done.actions
    assert "hi-from-task" in done.reply
    logs = storage.task_run_logs(tid)
    assert [row["status"] for row in logs] == ["success"]
    assert storage.get_task(tid)["last_run_at"] is not None


def test_skill_run_executes_without_confirmation(kernel: AssistantKernel, storage: Storage) -> None:
    sid = storage.add_skill(
        "journal",
        {"type": "create_record", "filename_template": "journal-{{date}}.txt", "content_template": "{{input}}"},
    )

    result = kernel.handle("run skill:journal, input: shipped the release")

    assert result.confirmation_required is False
    rid = _action_id(result.actions, f"skill.run:{sid}:create:")
    assert storage.load_text(rid) == "shipped the release"
    assert result.core_memory_record_id is not None


def test_llm_plan_is_used_when_model_answers(kernel: AssistantKernel, provider: ScriptedProvider) -> None:
    provider.push(json.dumps({"calls": [{"name": "record.search", "arguments": {"query": "budget"}}], "note": "lookup"}))

    result = kernel.handle("please tidy things")

    assert result.planner_source == "llm:claude:test-model"
    assert result.planner_note == "lookup"
    assert "plan:llm:claude:test-model" in result.actions
    assert "record.search:budget:0" in result.actions


def test_memory_is_appended_to_one_daily_record(kernel: AssistantKernel, storage: Storage) -> None:
    first = kernel.handle("create a note: quarterly budget review")
    second = kernel.handle("create a note: dentist appointment friday")

    assert first.core_memory_record_id is not None
    assert first.core_memory_record_id == second.core_memory_record_id
    rec = storage.get_record(first.core_memory_record_id)
    assert rec["filename"] == f"assistant-core-{TODAY.isoformat()}.txt"
    text = storage.load_text(rec["id"])
    assert text.count("# Core Memory Entry") == 2
    assert "\n\n---\n\n" in text
    assert f"memory.append:{first.core_memory_record_id}" in first.actions


def test_every_request_is_audited(kernel: AssistantKernel, storage: Storage) -> None:
    a = kernel.handle("search nothing here")
    b = kernel.handle("help")

    assert a.audit_record_id == b.audit_record_id
    assert a.actions[-1] == f"audit.append:{a.audit_record_id}"
    rec = storage.get_record(a.audit_record_id)
    assert rec["filename"] == f"assistant-audit-{TODAY.isoformat()}.txt"
    text = storage.load_text(rec["id"])
    assert a.request_id in text and b.request_id in text
    assert "status: ok" in text


def test_explicit_merge_directive_forces_memory(kernel: AssistantKernel) -> None:
    result = kernel.handle("I like green tea #MERGE:keep")

    assert "memory.merge.requested:keep" in result.actions
    assert "memory.merge.use:keep" in result.actions
    assert result.core_memory_record_id is not None


def _seed_memory(storage: Storage, core_tag: str) -> str:
    entry = "# Core Memory Entry\n\n## Request\nwhat is my preferred editor\n\n## Reply\nYou prefer vim for editing."
    return storage.create_text_record("assistant-core-2026-03-01.txt", entry, tag_ids=[core_tag])


@pytest.mark.parametrize(
    "answer, conflicting",
    [
        ("You prefer emacs now with org mode.", True),
        ("You prefer vim for editing.", False),
    ],
)
def test_conflicting_memory_is_versioned(
    kernel: AssistantKernel,
    storage: Storage,
    provider: ScriptedProvider,
    core_tag: str,
    answer: str,
    conflicting: bool,
) -> None:
    old = _seed_memory(storage, core_tag)
    provider.push(
        json.dumps({"calls": [{"name": "assistant.answer", "arguments": {"question": "what is my preferred editor?"}}]}),
        answer,
    )

    result = kernel.handle("what is my preferred editor?")

    assert result.reply == answer
    assert "assistant.answer:context" in result.actions
    assert "memory.merge.use:versioned" in result.actions
    assert old in result.core_context_record_ids
    audit = storage.load_text(result.audit_record_id)
    if conflicting:
        assert f"conflict_record_id: {old}" in audit
    else:
        assert "conflict_record_id: -" in audit


def test_storage_failure_fails_the_request(kernel: AssistantKernel, storage: Storage, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    def boom(query: str, limit: int = 10) -> list:
        raise StorageError("disk gone")

    monkeypatch.setattr(storage, "search_records", boom)
    result = kernel.handle("search anything")

    assert result.succeeded is False
    assert result.reply == "Execution failed: disk gone"
    assert result.actions[-1] == "error:disk gone"
    assert result.audit_record_id is not None
    assert "status: failed" in storage.load_text(result.audit_record_id)


def test_result_is_frozen(kernel: AssistantKernel) -> None:
    result = kernel.handle("help")
    with pytest.raises(Exception):
        result.reply = "changed"  # type: ignore[misc]


def test_dropped_model_connection_degrades_to_rules(storage: Storage, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    def urlopen(req, timeout=None):  # type: ignore[no-untyped-def]
        raise http.client.RemoteDisconnected("Remote end closed connection without response")

    monkeypatch.setattr(urllib.request, "urlopen", urlopen)
    model = "ollama:llama3.2"
    cfg = KernelConfig(storage=str(storage.root), model=model, planner="llm")
    kernel = AssistantKernel(storage, ModelProvider(model, env={}), InMemoryConfirmationStore(), cfg, today=lambda: TODAY)

    result = kernel.handle("搜索 swift 并发")

    assert result.succeeded is True
    assert result.planner_source == "rule"
    assert "connection failed" in (result.planner_note or "")
    assert not result.reply.startswith("Execution failed")
    assert any(a.startswith("record.search:") for a in result.actions)


def test_gated_date_reference_reports_the_real_record(kernel: AssistantKernel, storage: Storage) -> None:
    rid = storage.create_text_record("plan-2026-03-14.txt", "gym at 6")

    gated = kernel.handle("replace the plan for today with: gym at 7")

    assert gated.confirmation_required is True
    assert gated.related_record_ids == [rid]
    assert "TODAY" not in gated.related_record_ids
