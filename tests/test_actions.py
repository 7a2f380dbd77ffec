from __future__ import annotations

import datetime as dt

import pytest

from boss.actions import (
    SKILL_MANIFEST_FILENAME,
    build_skill_manifest,
    ensure_skillpack_tag,
    execute_skill,
    load_skill_manifest,
    refresh_skill_manifest,
    render_template,
    resolve_record_reference,
    resolve_skill,
    resolve_task,
    run_shell,
    run_task_now,
)
from boss.errors import InvalidData, NotFound, ShellCommandError
from boss.storage import Storage

from conftest import TODAY, ScriptedProvider


def test_render_template() -> None:
    now = dt.datetime(2026, 3, 14, 8, 0, 0)
    out = render_template("{{date}} {{timestamp}} {{input}} / {{request}}", input="in", request="req", now=now)
    assert out == "2026-03-14 20260314-080000 in / req"


def test_run_shell_merges_output() -> None:
    assert run_shell("echo out; echo err 1>&2") == "out\nerr\n"
    with pytest.raises(ShellCommandError) as err:
        run_shell("echo nope; exit 2")
    assert err.value.returncode == 2
    assert "nope" in err.value.output


def test_run_task_now_logs_success_and_failure(storage: Storage, provider: ScriptedProvider) -> None:
    ok = storage.add_task("ok", {"type": "create_record", "title": "daily", "content_template": "made on {{date}}"})
    bad = storage.add_task("bad", {"type": "model_prompt", "user_prompt_template": "hi"})

    out = run_task_now(storage, provider, ok)
    rid = out.removeprefix("Created record: ")
    assert storage.get_record(rid)["filename"] == "daily.txt"
    assert storage.task_run_logs(ok)[0]["status"] == "success"

    with pytest.raises(Exception, match="script exhausted"):
        run_task_now(storage, provider, bad)
    row = storage.task_run_logs(bad)[0]
    assert (row["status"], row["error"]) == ("failed", "script exhausted")

    with pytest.raises(NotFound):
        run_task_now(storage, provider, "missing")


def test_task_with_undecodable_action_is_logged_as_failed(storage: Storage, provider: ScriptedProvider) -> None:
    tid = storage.add_task("weird", {"type": "teleport"})

    with pytest.raises(InvalidData):
        run_task_now(storage, provider, tid)
    assert storage.task_run_logs(tid)[0]["status"] == "failed"


def test_resolve_task_order(storage: Storage) -> None:
    a = storage.add_task("backup nightly", {"type": "shell_command", "command": "true"})
    b = storage.add_task("backup", {"type": "shell_command", "command": "true"})

    assert resolve_task(storage, a.lower())["id"] == a
    assert resolve_task(storage, "BACKUP")["id"] == b
    assert resolve_task(storage, "nightly")["id"] == a
    with pytest.raises(NotFound):
        resolve_task(storage, "restore")
    with pytest.raises(InvalidData):
        resolve_task(storage, " ")


def test_resolve_task_without_tasks(storage: Storage) -> None:
    with pytest.raises(NotFound, match="no tasks"):
        resolve_task(storage, "anything")


def test_resolve_record_reference(storage: Storage) -> None:
    rid = "0F8FAD5B-D9CB-469F-A165-70867728950E"

    assert resolve_record_reference(storage, rid.lower()) == (rid, False)
    assert resolve_record_reference(storage, "<id>", request=f"delete {rid}") == (rid, False)
    with pytest.raises(InvalidData):
        resolve_record_reference(storage, "<id>", request="delete it")
    with pytest.raises(InvalidData):
        resolve_record_reference(storage, "")
    with pytest.raises(NotFound):
        resolve_record_reference(storage, "TOMORROW", today=TODAY)


def test_skill_llm_prompt(storage: Storage, provider: ScriptedProvider) -> None:
    storage.add_skill(
        "standup",
        {"type": "llm_prompt", "system_prompt": "be terse", "user_prompt_template": "summarize: {{input}}", "model": "ollama:phi3"},
    )
    provider.push("done yesterday: x")

    skill = resolve_skill(storage, "stand")
    out = execute_skill(storage, provider, skill, input="x", request="run skill stand")

    assert out.reply == "Skill standup finished.\ndone yesterday: x"
    assert out.actions == [f"skill.run:{skill['id']}:llm"]
    assert provider.calls[0] == ("be terse", "summarize: x", "ollama:phi3")


def test_skill_append_creates_dated_record(storage: Storage, provider: ScriptedProvider) -> None:
    storage.add_skill("jot", {"type": "append_to_record", "content_template": "- {{input}}"})

    skill = resolve_skill(storage, "jot")
    first = execute_skill(storage, provider, skill, input="a", request="jot", today=TODAY)
    second = execute_skill(storage, provider, skill, input="b", request="jot", today=TODAY)

    rid = first.related_record_ids[0]
    assert second.related_record_ids == [rid]
    assert storage.load_text(rid) == "- a\n\n---\n\n- b"


def test_skill_create_rejects_empty_content(storage: Storage, provider: ScriptedProvider) -> None:
    storage.add_skill("blank", {"type": "create_record", "content_template": "   "})

    with pytest.raises(InvalidData):
        execute_skill(storage, provider, resolve_skill(storage, "blank"), input="", request="")


def test_manifest_lists_skills_and_base_interfaces(storage: Storage) -> None:
    storage.add_skill("standup", {"type": "shell_command", "command": "echo hi"}, trigger_hint="mornings")
    text = build_skill_manifest(storage.list_skills(), now=0.0)

    assert text.startswith("# Assistant Skill Manifest\ngenerated_at: 1970-01-01T00:00:00+00:00\nskills_total: 1")
    assert "- record.replace" in text
    assert "- trigger_hint: mornings" in text
    assert "- action: shell_command(echo hi)" in text
    assert "- (empty)" in build_skill_manifest([], now=0.0)


def test_manifest_refresh_rewrites_one_record(storage: Storage) -> None:
    first = refresh_skill_manifest(storage)
    storage.add_skill("later", {"type": "llm_prompt"})
    second = refresh_skill_manifest(storage)

    assert first == second
    assert "## later" in load_skill_manifest(storage)
    tagged = storage.records_with_tag(ensure_skillpack_tag(storage))
    assert [r["filename"] for r in tagged] == [SKILL_MANIFEST_FILENAME]


def test_load_manifest_without_refresh(storage: Storage) -> None:
    text = load_skill_manifest(storage, refresh_if_missing=False)

    assert "skills_total: 0" in text
    assert storage.list_records() == []
