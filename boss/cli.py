from __future__ import annotations

import argparse
import datetime as dt
import json
import os
import shutil
import sys
import tempfile
from typing import Any, Dict, List, Optional

from .actions import (
    describe_task_action,
    execute_skill,
    load_skill_manifest,
    refresh_skill_manifest,
    resolve_record_reference,
    resolve_skill,
    resolve_task,
    run_task_now,
)
from .errors import BossError, InvalidArguments, NotFound
from .ir import KernelResult, parse_skill_action, parse_task_action, parse_task_trigger
from .kernel import AssistantKernel, KernelConfig
from .storage import TEXT_LIKE_TYPES
from .util import iso, jload, short


class _Style:
    def __init__(self, enabled: bool):
        self.enabled = bool(enabled)

    def _wrap(self, code: str, s: str) -> str:
        if not self.enabled:
            return s
        return f"\033[{code}m{s}\033[0m"

    def dim(self, s: str) -> str:
        return self._wrap("2", s)

    def bold(self, s: str) -> str:
        return self._wrap("1", s)

    def red(self, s: str) -> str:
        return self._wrap("31", s)

    def green(self, s: str) -> str:
        return self._wrap("32", s)

    def yellow(self, s: str) -> str:
        return self._wrap("33", s)


def _style(args: argparse.Namespace) -> _Style:
    return _Style(enabled=sys.stdout.isatty() and not args.no_color)


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, sort_keys=True, indent=2, default=str))


def _config(args: argparse.Namespace) -> KernelConfig:
    cfg = KernelConfig(log_level=args.log_level, json_logs=args.json_logs)
    if args.storage:
        cfg.storage = args.storage
    if args.model:
        cfg.model = args.model
    if args.planner:
        cfg.planner = args.planner
    return cfg


def _open(args: argparse.Namespace) -> AssistantKernel:
    return AssistantKernel.from_config(_config(args))


def _read_json_object(raw: str, what: str) -> Dict[str, Any]:
    try:
        obj = jload(raw)
    except json.JSONDecodeError as e:
        raise InvalidArguments(f"{what} is not valid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise InvalidArguments(f"{what} must be a JSON object")
    return obj


# ---- assistant ----


def _print_result(result: KernelResult, *, as_json: bool, style: _Style) -> None:
    if as_json:
        _print_json(result.model_dump())
        return
    print(result.reply)
    print(style.dim(f"intent: {result.intent}"))
    print(style.dim(f"planner: {result.planner_source}"))
    if result.planner_note:
        print(style.dim(f"planner note: {result.planner_note}"))
    if result.confirmation_required:
        print(style.yellow("confirmation required: yes"))
        if result.confirmation_token:
            print(style.yellow(f"confirmation token: {result.confirmation_token}"))
        if result.confirmation_expires_at:
            print(style.yellow(f"confirmation expires: {iso(result.confirmation_expires_at)}"))
    if result.core_memory_record_id:
        print(style.dim(f"core memory: {result.core_memory_record_id}"))
    if result.audit_record_id:
        print(style.dim(f"audit log: {result.audit_record_id}"))
    if result.related_record_ids:
        print(style.dim(f"related records: {', '.join(result.related_record_ids)}"))
    if not result.succeeded:
        print(style.red("status: failed"))


def cmd_assistant_ask(args: argparse.Namespace) -> int:
    request = " ".join(args.request).strip()
    if not request:
        raise InvalidArguments("assistant ask needs a natural-language request")
    kernel = _open(args)
    try:
        result = kernel.handle(request, source=args.source)
    finally:
        kernel.close()
    _print_result(result, as_json=args.json, style=_style(args))
    return 0 if result.succeeded else 1


def cmd_assistant_confirm(args: argparse.Namespace) -> int:
    token = args.token.strip()
    if not token:
        raise InvalidArguments("assistant confirm needs a confirmation token")
    kernel = _open(args)
    try:
        result = kernel.handle(f"#CONFIRM:{token}", source=args.source)
    finally:
        kernel.close()
    _print_result(result, as_json=args.json, style=_style(args))
    return 0 if result.succeeded else 1


# ---- records ----


def cmd_record_list(args: argparse.Namespace) -> int:
    style = _style(args)
    kernel = _open(args)
    try:
        rows = kernel.storage.list_records(include_archived=args.all, limit=args.limit)
    finally:
        kernel.close()
    if not rows:
        print("(no records)")
    for r in rows:
        flag = " [archived]" if r["is_archived"] else ""
        print(f"{r['id']}  {style.bold(r['filename'])}{flag}  {style.dim(iso(r['updated_at']))}")
    return 0


def cmd_record_search(args: argparse.Namespace) -> int:
    kernel = _open(args)
    try:
        hits = kernel.storage.search_records(args.query, limit=args.limit)
    finally:
        kernel.close()
    if args.json:
        _print_json(hits)
        return 0
    if not hits:
        print(f"No matches for: {args.query}")
    for h in hits:
        print(f"- [{h['id']}] {h['filename']}: {short(h['preview'] or '', 90)}")
    return 0


def cmd_record_create(args: argparse.Namespace) -> int:
    text = args.text if args.text is not None else sys.stdin.read()
    kernel = _open(args)
    try:
        rid = kernel.storage.create_text_record(args.filename, text)
    finally:
        kernel.close()
    print(rid)
    return 0


def _edit_record(args: argparse.Namespace, *, append: bool) -> int:
    kernel = _open(args)
    try:
        rid, created = resolve_record_reference(
            kernel.storage,
            args.ref,
            request=args.ref,
            create_content=args.text if append else None,
            today=dt.date.today(),
        )
        if created:
            message = f"Created record with text: {rid}"
        elif append:
            message = kernel.storage.append_text(rid, args.text)
        else:
            message = kernel.storage.replace_text(rid, args.text)
    finally:
        kernel.close()
    if args.json:
        _print_json({"record_id": rid, "created": created, "message": message})
    else:
        print(message)
    return 0


def cmd_record_append(args: argparse.Namespace) -> int:
    return _edit_record(args, append=True)


def cmd_record_replace(args: argparse.Namespace) -> int:
    return _edit_record(args, append=False)


def cmd_record_show(args: argparse.Namespace) -> int:
    style = _style(args)
    kernel = _open(args)
    try:
        rec = kernel.storage.get_record(args.id.upper())
        if rec is None:
            raise NotFound(f"Record not found: {args.id}")
        body = kernel.storage.load_text(rec["id"]) if rec["file_type"] in TEXT_LIKE_TYPES else rec["preview"]
        tag_ids = kernel.storage.record_tag_ids(rec["id"])
        tags = [t["name"] for t in kernel.storage.list_tags() if t["id"] in tag_ids]
    finally:
        kernel.close()
    print(style.bold(rec["filename"]))
    print(style.dim(f"id: {rec['id']}  type: {rec['file_type']}  size: {rec['size_bytes']}  updated: {iso(rec['updated_at'])}"))
    if tags:
        print(style.dim(f"tags: {', '.join(tags)}"))
    print()
    print(body)
    return 0


def cmd_record_delete(args: argparse.Namespace) -> int:
    kernel = _open(args)
    try:
        kernel.storage.delete_record(args.id.upper())
    finally:
        kernel.close()
    print(f"Deleted record: {args.id.upper()}")
    return 0


def cmd_record_import(args: argparse.Namespace) -> int:
    kernel = _open(args)
    try:
        rid = kernel.storage.import_file(args.path)
    finally:
        kernel.close()
    print(rid)
    return 0


# ---- tasks ----


def cmd_task_list(args: argparse.Namespace) -> int:
    style = _style(args)
    kernel = _open(args)
    try:
        tasks = kernel.storage.list_tasks()
    finally:
        kernel.close()
    if not tasks:
        print("(no tasks)")
    for t in tasks:
        try:
            action = describe_task_action(parse_task_action(t["action_json"]))
        except BossError:
            action = "unknown"
        state = style.green("enabled") if t["is_enabled"] else style.dim("disabled")
        last = iso(t["last_run_at"]) if t["last_run_at"] else "-"
        print(f"{t['id']}  {style.bold(t['name'])}  [{state}]  {action}  last_run={last}")
    return 0


def cmd_task_add(args: argparse.Namespace) -> int:
    action = parse_task_action(_read_json_object(args.action_json, "--action-json"))
    trigger = parse_task_trigger(_read_json_object(args.trigger_json, "--trigger-json") if args.trigger_json else None)
    kernel = _open(args)
    try:
        tid = kernel.storage.add_task(
            args.name, action.model_dump(), description=args.description, trigger=trigger.model_dump()
        )
    finally:
        kernel.close()
    print(tid)
    return 0


def cmd_task_run(args: argparse.Namespace) -> int:
    kernel = _open(args)
    try:
        task = resolve_task(kernel.storage, args.ref)
        output = run_task_now(kernel.storage, kernel.provider, task["id"])
    finally:
        kernel.close()
    print(output)
    return 0


def cmd_task_logs(args: argparse.Namespace) -> int:
    kernel = _open(args)
    try:
        logs = kernel.storage.task_run_logs(args.id.upper(), limit=args.limit)
    finally:
        kernel.close()
    if not logs:
        print("(no runs)")
    for row in logs:
        finished = iso(row["finished_at"]) if row["finished_at"] else "-"
        print(f"{row['id']}  {row['status']}  started={iso(row['started_at'])}  finished={finished}")
        if row["error"]:
            print(f"    error: {short(row['error'], 200)}")
        elif row["output"]:
            print(f"    output: {short(row['output'], 200)}")
    return 0


# ---- skills ----


def cmd_skills_list(args: argparse.Namespace) -> int:
    style = _style(args)
    kernel = _open(args)
    try:
        skills = kernel.storage.list_skills()
    finally:
        kernel.close()
    if not skills:
        print("(no skills)")
    for s in skills:
        state = style.green("enabled") if s["is_enabled"] else style.dim("disabled")
        print(f"{s['id']}  {style.bold(s['name'])}  [{state}]  {s['description'] or '-'}")
    return 0


def cmd_skills_catalog(args: argparse.Namespace) -> int:
    kernel = _open(args)
    try:
        text = load_skill_manifest(kernel.storage, refresh_if_missing=True)
    finally:
        kernel.close()
    if args.json:
        _print_json({"generated_at": iso(dt.datetime.now(dt.timezone.utc).timestamp()), "manifest": text})
    else:
        print(text)
    return 0


def cmd_skills_refresh(args: argparse.Namespace) -> int:
    kernel = _open(args)
    try:
        rid = refresh_skill_manifest(kernel.storage)
    finally:
        kernel.close()
    print(f"Skill manifest refreshed: {rid}")
    return 0


def cmd_skills_add(args: argparse.Namespace) -> int:
    action = parse_skill_action(_read_json_object(args.action_json, "--action-json"))
    kernel = _open(args)
    try:
        sid = kernel.storage.add_skill(
            args.name,
            action.model_dump(),
            description=args.description,
            trigger_hint=args.trigger_hint,
            enabled=not args.disabled,
        )
        refresh_skill_manifest(kernel.storage)
    finally:
        kernel.close()
    print(sid)
    return 0


def _set_skill_enabled(args: argparse.Namespace, enabled: bool) -> int:
    kernel = _open(args)
    try:
        skill = resolve_skill(kernel.storage, args.ref)
        kernel.storage.set_skill_enabled(skill["id"], enabled)
        refresh_skill_manifest(kernel.storage)
    finally:
        kernel.close()
    print(f"Skill {'enabled' if enabled else 'disabled'}: {skill['name']} ({skill['id']})")
    return 0


def cmd_skills_enable(args: argparse.Namespace) -> int:
    return _set_skill_enabled(args, True)


def cmd_skills_disable(args: argparse.Namespace) -> int:
    return _set_skill_enabled(args, False)


def cmd_skill_run(args: argparse.Namespace) -> int:
    kernel = _open(args)
    try:
        skill = resolve_skill(kernel.storage, args.ref)
        if not skill["is_enabled"]:
            payload: Dict[str, Any] = {
                "status": "disabled",
                "skill_id": skill["id"],
                "skill_name": skill["name"],
                "actions": [f"skill.run:{skill['id']}:disabled"],
                "related_record_ids": [],
            }
            if args.json:
                _print_json(payload)
            else:
                print(f"Skill disabled: {skill['name']} ({skill['id']})")
            return 0
        text = " ".join(args.input).strip()
        request = text or f"skill.run {args.ref} from {args.source}"
        outcome = execute_skill(kernel.storage, kernel.provider, skill, input=request, request=request, today=dt.date.today())
    finally:
        kernel.close()
    if args.json:
        _print_json(
            {
                "status": "success",
                "skill_id": skill["id"],
                "skill_name": skill["name"],
                "actions": outcome.actions,
                "related_record_ids": outcome.related_record_ids,
                "output": outcome.reply,
            }
        )
    else:
        print(outcome.reply)
    return 0


# ---- selftest ----


def cmd_selftest(args: argparse.Namespace) -> int:
    """
    Quick sanity checks you can run in CI or after installation.

    Runs against a throwaway storage directory with model calls disabled:
    - SQLite write/read and FTS5 (or the LIKE fallback)
    - create → search round trip through the kernel
    - delete gated by a confirmation token, then redeemed
    """
    tmp_dir = tempfile.mkdtemp(prefix="boss_selftest_")
    cfg = KernelConfig(storage=tmp_dir, model="stub", planner="rule", log_level="WARNING")
    kernel = AssistantKernel.from_config(cfg)
    try:
        created = kernel.handle("create a note: selftest marmalade sandwich")
        rid = next((a.split(":")[1] for a in created.actions if a.startswith("record.create:")), "")
        assert rid, f"record not created: {created.actions}"

        found = kernel.handle("search marmalade")
        assert rid in found.related_record_ids, f"record not searchable: {found.actions}"

        gated = kernel.handle(f"delete record {rid}")
        assert gated.confirmation_required and gated.confirmation_token, "delete was not gated"
        assert kernel.storage.get_record(rid) is not None, "delete ran without confirmation"

        done = kernel.handle(f"#CONFIRM:{gated.confirmation_token}")
        assert f"record.delete:{rid}:ok" in done.actions, f"confirmed delete failed: {done.actions}"

        print(f"Selftest OK (fts={kernel.storage.fts_ok})")
        return 0
    except AssertionError as e:
        print("Selftest FAILED")
        print(str(e))
        return 1
    finally:
        kernel.close()
        shutil.rmtree(tmp_dir, ignore_errors=True)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="boss", description="Boss personal knowledge base and assistant kernel.")
    p.add_argument("--storage", default=os.environ.get("BOSS_STORAGE_PATH", ""), help="Storage directory (default ~/.boss).")
    p.add_argument(
        "--model",
        default=os.environ.get("BOSS_ASSISTANT_MODEL", ""),
        help="provider:model, e.g. claude:claude-sonnet-4-6, openai:gpt-4o-mini, ollama:llama3.2, or 'stub'.",
    )
    p.add_argument("--planner", choices=["llm", "rule"], default=None)
    p.add_argument("--log-level", default=os.environ.get("BOSS_LOG_LEVEL", "WARNING"))
    p.add_argument("--json-logs", action="store_true")
    p.add_argument("--no-color", action="store_true", help="Disable ANSI colors.")
    sub = p.add_subparsers(dest="group", required=True)

    # assistant
    assistant = sub.add_parser("assistant", help="Run the assistant kernel.")
    asub = assistant.add_subparsers(dest="cmd", required=True)
    ask = asub.add_parser("ask", help="Plan and execute a natural-language request.")
    ask.add_argument("request", nargs="+")
    ask.add_argument("--source", default="runtime")
    ask.add_argument("--json", action="store_true")
    ask.set_defaults(func=cmd_assistant_ask)
    confirm = asub.add_parser("confirm", help="Redeem a confirmation token.")
    confirm.add_argument("token")
    confirm.add_argument("--source", default="runtime")
    confirm.add_argument("--json", action="store_true")
    confirm.set_defaults(func=cmd_assistant_confirm)

    # record
    record = sub.add_parser("record", help="Manage records.")
    rsub = record.add_subparsers(dest="cmd", required=True)
    r_list = rsub.add_parser("list")
    r_list.add_argument("--all", action="store_true", help="Include archived records.")
    r_list.add_argument("--limit", type=int, default=50)
    r_list.set_defaults(func=cmd_record_list)
    r_search = rsub.add_parser("search")
    r_search.add_argument("query")
    r_search.add_argument("--limit", type=int, default=10)
    r_search.add_argument("--json", action="store_true")
    r_search.set_defaults(func=cmd_record_search)
    r_create = rsub.add_parser("create", help="Create a text record (text from stdin when omitted).")
    r_create.add_argument("filename")
    r_create.add_argument("text", nargs="?", default=None)
    r_create.set_defaults(func=cmd_record_create)
    for name, func in (("append", cmd_record_append), ("replace", cmd_record_replace)):
        r_edit = rsub.add_parser(name, help="Reference may be an ID, TODAY, TOMORROW or YYYY-MM-DD.")
        r_edit.add_argument("ref")
        r_edit.add_argument("text")
        r_edit.add_argument("--json", action="store_true")
        r_edit.set_defaults(func=func)
    r_show = rsub.add_parser("show")
    r_show.add_argument("id")
    r_show.set_defaults(func=cmd_record_show)
    r_delete = rsub.add_parser("delete")
    r_delete.add_argument("id")
    r_delete.set_defaults(func=cmd_record_delete)
    r_import = rsub.add_parser("import")
    r_import.add_argument("path")
    r_import.set_defaults(func=cmd_record_import)

    # task
    task = sub.add_parser("task", help="Manage tasks.")
    tsub = task.add_subparsers(dest="cmd", required=True)
    tsub.add_parser("list").set_defaults(func=cmd_task_list)
    t_add = tsub.add_parser("add")
    t_add.add_argument("--name", required=True)
    t_add.add_argument("--action-json", required=True)
    t_add.add_argument("--trigger-json", default="")
    t_add.add_argument("--description", default="")
    t_add.set_defaults(func=cmd_task_add)
    t_run = tsub.add_parser("run")
    t_run.add_argument("ref")
    t_run.set_defaults(func=cmd_task_run)
    t_logs = tsub.add_parser("logs")
    t_logs.add_argument("id")
    t_logs.add_argument("--limit", type=int, default=30)
    t_logs.set_defaults(func=cmd_task_logs)

    # skills
    skills = sub.add_parser("skills", help="Manage assistant skills.")
    ssub = skills.add_subparsers(dest="cmd", required=True)
    ssub.add_parser("list").set_defaults(func=cmd_skills_list)
    s_catalog = ssub.add_parser("catalog")
    s_catalog.add_argument("--json", action="store_true")
    s_catalog.set_defaults(func=cmd_skills_catalog)
    ssub.add_parser("refresh-manifest").set_defaults(func=cmd_skills_refresh)
    s_add = ssub.add_parser("add")
    s_add.add_argument("--name", required=True)
    s_add.add_argument("--action-json", required=True)
    s_add.add_argument("--description", default="")
    s_add.add_argument("--trigger-hint", default="")
    s_add.add_argument("--disabled", action="store_true")
    s_add.set_defaults(func=cmd_skills_add)
    s_enable = ssub.add_parser("enable")
    s_enable.add_argument("ref")
    s_enable.set_defaults(func=cmd_skills_enable)
    s_disable = ssub.add_parser("disable")
    s_disable.add_argument("ref")
    s_disable.set_defaults(func=cmd_skills_disable)

    skill = sub.add_parser("skill", help="Run a single skill.")
    sksub = skill.add_subparsers(dest="cmd", required=True)
    sk_run = sksub.add_parser("run")
    sk_run.add_argument("ref")
    sk_run.add_argument("input", nargs="*")
    sk_run.add_argument("--source", default="runtime")
    sk_run.add_argument("--json", action="store_true")
    sk_run.set_defaults(func=cmd_skill_run)

    selftest = sub.add_parser("selftest", help="Run quick internal sanity tests.")
    selftest.set_defaults(func=cmd_selftest)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except BossError as e:
        sys.stderr.write(f"error: {e}\n")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
