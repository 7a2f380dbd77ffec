from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterator, List

import pytest

from boss.cli import main
from boss.ir import KernelResult


@pytest.fixture(autouse=True)
def _restore_root_handlers() -> Iterator[None]:
    root = logging.getLogger()
    saved = root.handlers[:]
    level = root.level
    yield
    root.handlers[:] = saved
    root.setLevel(level)


@pytest.fixture
def run(tmp_path: Path, capsys):  # type: ignore[no-untyped-def]
    def _run(*argv: str) -> tuple[int, str, str]:
        base: List[str] = ["--storage", str(tmp_path / "store"), "--model", "stub", "--no-color"]
        code = main(base + list(argv))
        captured = capsys.readouterr()
        return code, captured.out, captured.err

    return _run


def test_ask_json_has_result_fields(run) -> None:  # type: ignore[no-untyped-def]
    code, out, _ = run("assistant", "ask", "--json", "help")

    payload = json.loads(out)
    assert code == 0
    assert set(payload) == set(KernelResult.model_fields)
    assert list(payload) == sorted(payload)
    assert payload["planner_source"] == "rule"
    assert payload["succeeded"] is True


def test_delete_confirmed_in_a_second_process(run) -> None:  # type: ignore[no-untyped-def]
    code, out, _ = run("record", "create", "scratch.txt", "throwaway")
    assert code == 0
    rid = out.strip()

    code, out, _ = run("assistant", "ask", "--json", "delete", "record", rid)
    gated = json.loads(out)
    assert code == 0
    assert gated["confirmation_required"] is True

    code, out, _ = run("assistant", "confirm", "--json", gated["confirmation_token"])
    done = json.loads(out)
    assert code == 0
    assert f"record.delete:{rid}:ok" in done["actions"]

    code, out, _ = run("assistant", "confirm", gated["confirmation_token"])
    assert code == 1
    assert "status: failed" in out


def test_record_commands(run, tmp_path: Path) -> None:  # type: ignore[no-untyped-def]
    _, out, _ = run("record", "create", "plan-2026-03-15.txt", "gym")
    rid = out.strip()

    code, out, _ = run("record", "append", "--json", "2026-03-15", "stretch")
    assert code == 0
    assert json.loads(out) == {"created": False, "message": f"Appended text to record: {rid}", "record_id": rid}

    _, out, _ = run("record", "show", rid.lower())
    assert "plan-2026-03-15.txt" in out
    assert "gym\n\n---\n\nstretch" in out

    _, out, _ = run("record", "search", "--json", "stretch")
    assert [h["id"] for h in json.loads(out)] == [rid]

    src = tmp_path / "notes.md"
    src.write_text("# imported", encoding="utf-8")
    code, out, _ = run("record", "import", str(src))
    assert code == 0 and out.strip()


def test_missing_record_is_an_error(run) -> None:  # type: ignore[no-untyped-def]
    code, _, err = run("record", "show", "NOPE")
    assert code == 2
    assert err.startswith("error: Record not found")


def test_task_add_validates_action(run) -> None:  # type: ignore[no-untyped-def]
    code, _, err = run("task", "add", "--name", "x", "--action-json", '{"type": "teleport"}')
    assert code == 2
    assert "Cannot decode task action" in err

    code, out, _ = run("task", "add", "--name", "hello", "--action-json", '{"type": "shell_command", "command": "echo hi"}')
    assert code == 0
    tid = out.strip()

    _, out, _ = run("task", "run", "hello")
    assert out.strip() == "hi"
    _, out, _ = run("task", "logs", tid)
    assert "success" in out


def test_skill_lifecycle(run) -> None:  # type: ignore[no-untyped-def]
    action = json.dumps({"type": "create_record", "filename_template": "jot.txt", "content_template": "{{input}}"})
    code, out, _ = run("skills", "add", "--name", "jot", "--action-json", action)
    assert code == 0
    sid = out.strip()

    _, out, _ = run("skill", "run", "--json", "jot", "remember", "the", "milk")
    payload = json.loads(out)
    assert payload["status"] == "success"
    assert payload["skill_id"] == sid
    assert payload["related_record_ids"]

    run("skills", "disable", "jot")
    _, out, _ = run("skill", "run", "--json", "jot", "again")
    assert json.loads(out)["status"] == "disabled"

    _, out, _ = run("skills", "catalog", "--json")
    catalog = json.loads(out)
    assert "- enabled: no" in catalog["manifest"]


def test_selftest(run) -> None:  # type: ignore[no-untyped-def]
    code, out, _ = run("selftest")
    assert code == 0
    assert out.startswith("Selftest OK")
