"""
Task and skill execution, record reference resolution, and the skill manifest.

Task actions and skill actions are closed unions (see `boss.ir`); each has one
dispatch function here that is exhaustive over the union.
"""

from __future__ import annotations

import datetime as dt
import subprocess
from typing import Any, Dict, List, Optional, Tuple, Union, assert_never

from .errors import InvalidData, NotFound, ShellCommandError, StorageError
from .extract import (
    date_for_record_reference,
    default_filename,
    extract_record_id,
    extract_record_reference,
    is_placeholder_reference,
    normalize_filename,
    resolve_date_reference,
    sanitize_filename,
)
from .ir import (
    ExecutionOutcome,
    SkillAppendToRecord,
    SkillCreateRecord,
    SkillLLMPrompt,
    SkillShellCommand,
    TaskAppendToRecord,
    TaskCreateRecord,
    TaskModelPrompt,
    TaskShellCommand,
    parse_skill_action,
    parse_task_action,
)
from .llm import ModelProvider
from .logging_utils import log
from .storage import Storage
from .util import date_stamp, iso, short, timestamp_stamp


SHELL_TIMEOUT_S = 120.0
SKILL_MANIFEST_FILENAME = "assistant-skill-manifest.md"
BASE_INTERFACES = (
    "assistant.help",
    "core.summarize",
    "assistant.answer",
    "record.search",
    "record.create",
    "record.append",
    "record.replace",
    "record.delete",
    "task.run",
    "skill.run",
    "skills.catalog",
)

SkillActionT = Union[SkillLLMPrompt, SkillShellCommand, SkillCreateRecord, SkillAppendToRecord]
TaskActionT = Union[TaskCreateRecord, TaskAppendToRecord, TaskShellCommand, TaskModelPrompt]


def render_template(template: str, *, input: str, request: str, now: Optional[dt.datetime] = None) -> str:
    now = now or dt.datetime.now()
    return (
        (template or "")
        .replace("{{input}}", input)
        .replace("{{request}}", request)
        .replace("{{date}}", date_stamp(now.date()))
        .replace("{{timestamp}}", timestamp_stamp(now))
    )


def run_shell(command: str, *, timeout: float = SHELL_TIMEOUT_S) -> str:
    """Run via /bin/sh -c; stdout and stderr are merged. Non-zero exit raises ShellCommandError."""
    log.info("running shell command", extra={"extra": {"command": short(command, 200)}})
    try:
        proc = subprocess.run(
            ["/bin/sh", "-c", command],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        out = e.output.decode("utf-8", errors="replace") if isinstance(e.output, bytes) else ""
        raise ShellCommandError(-1, f"timed out after {timeout:g}s\n{out}") from e
    output = proc.stdout.decode("utf-8", errors="replace")
    if proc.returncode != 0:
        raise ShellCommandError(proc.returncode, output)
    return output


# ---- reference resolution ----


def resolve_record_reference(
    storage: Storage,
    raw: str,
    *,
    request: str = "",
    create_content: Optional[str] = None,
    today: Optional[dt.date] = None,
) -> Tuple[str, bool]:
    """
    Resolve a literal ID, a UUID inside text, or a date token to a record ID.

    Returns `(record_id, created)`. A missing date record is created only when
    `create_content` is non-empty (append semantics); the new record already holds
    that content.
    """
    ref = (raw or "").strip()
    if not ref:
        raise InvalidData("Record reference is empty.")
    if is_placeholder_reference(ref):
        extracted = extract_record_reference(request, today=today)
        if extracted and extracted.upper() != ref.upper() and not is_placeholder_reference(extracted):
            return resolve_record_reference(storage, extracted, request=request, create_content=create_content, today=today)
        raise InvalidData("Missing target record; give a record ID or TODAY/TOMORROW.")

    rid = extract_record_id(ref)
    if rid:
        return rid, False

    day = date_for_record_reference(ref, today=today) or resolve_date_reference(ref, today=today)
    if day is not None:
        existing = storage.find_text_record_for_date(day)
        if existing:
            return existing, False
        content = (create_content or "").strip()
        if content:
            filename = default_filename(request, date=day)
            new_id = storage.create_text_record(filename, content)
            log.info("created dated record for append", extra={"extra": {"record_id": new_id, "date": date_stamp(day)}})
            return new_id, True
        raise NotFound(f"No record found for {date_stamp(day)}")

    return ref.upper(), False


def _resolve_named(rows: List[Dict[str, Any]], ref: str, kind: str) -> Dict[str, Any]:
    reference = (ref or "").strip()
    if not reference:
        raise InvalidData(f"{kind} reference is empty.")
    if not rows:
        raise NotFound(f"There are no {kind.lower()}s to run.")
    low = reference.lower()
    for pred in (
        lambda r: str(r["id"]).lower() == low,
        lambda r: str(r["name"]).lower() == low,
        lambda r: low in str(r["name"]).lower(),
    ):
        for r in rows:
            if pred(r):
                return r
    raise NotFound(f"{kind} not found: {reference}")


def resolve_task(storage: Storage, ref: str) -> Dict[str, Any]:
    """ID (case-insensitive), then exact name, then name substring."""
    return _resolve_named(storage.list_tasks(), ref, "Task")


def resolve_skill(storage: Storage, ref: str) -> Dict[str, Any]:
    """Same resolution order as tasks; the returned dict carries a parsed `skill_action`."""
    skill = dict(_resolve_named(storage.list_skills(), ref, "Skill"))
    skill["skill_action"] = parse_skill_action(skill["action_json"])
    return skill


# ---- tasks ----


def execute_task_action(storage: Storage, provider: ModelProvider, action: TaskActionT) -> str:
    if isinstance(action, TaskShellCommand):
        return run_shell(action.command)
    if isinstance(action, TaskCreateRecord):
        title = action.title.strip()
        filename = sanitize_filename(f"{title}.txt") if title else "task-log.txt"
        content = render_template(action.content_template, input="", request="")
        rid = storage.create_text_record(filename, content)
        return f"Created record: {rid}"
    if isinstance(action, TaskAppendToRecord):
        content = render_template(action.content_template, input="", request="")
        return storage.append_text(action.record_id.strip().upper(), content)
    if isinstance(action, TaskModelPrompt):
        prompt = render_template(action.user_prompt_template, input="", request="")
        return provider.complete(action.system_prompt, prompt, action.model.strip() or None)
    assert_never(action)


def run_task_now(storage: Storage, provider: ModelProvider, task_id: str) -> str:
    """Run a stored task once and record the attempt in task_run_logs. Failures are re-raised."""
    task = storage.get_task(task_id)
    if task is None:
        raise NotFound(f"Task not found: {task_id}")
    log_id = storage.start_task_run(task_id)
    try:
        output = execute_task_action(storage, provider, parse_task_action(task["action_json"]))
    except Exception as e:
        storage.finish_task_run(log_id, task_id, status="failed", error=str(e))
        log.warning("task run failed", extra={"extra": {"task_id": task_id, "error": str(e)}})
        raise
    storage.finish_task_run(log_id, task_id, status="success", output=output)
    log.info("task run finished", extra={"extra": {"task_id": task_id, "output_chars": len(output)}})
    return output


# ---- skills ----


def execute_skill(
    storage: Storage,
    provider: ModelProvider,
    skill: Dict[str, Any],
    *,
    input: str,
    request: str,
    today: Optional[dt.date] = None,
) -> ExecutionOutcome:
    sid = skill["id"]
    name = skill["name"]
    action: SkillActionT = skill.get("skill_action") or parse_skill_action(skill["action_json"])

    def render(t: str) -> str:
        return render_template(t, input=input, request=request)

    if isinstance(action, SkillLLMPrompt):
        output = provider.complete(render(action.system_prompt), render(action.user_prompt_template), action.model.strip() or None)
        return ExecutionOutcome(reply=f"Skill {name} finished.\n{output}", actions=[f"skill.run:{sid}:llm"])

    if isinstance(action, SkillShellCommand):
        output = run_shell(render(action.command))
        return ExecutionOutcome(reply=f"Skill {name} finished.\n{short(output, 800)}", actions=[f"skill.run:{sid}:shell"])

    if isinstance(action, SkillCreateRecord):
        filename = normalize_filename(render(action.filename_template.strip() or "skill-note-{{date}}.txt"))
        content = render(action.content_template).strip()
        if not content:
            raise InvalidData("Skill produced empty content; cannot create a record.")
        rid = storage.create_text_record(filename, content)
        return ExecutionOutcome(
            reply=f"Skill {name} created record: {filename} ({rid})",
            actions=[f"skill.run:{sid}:create:{rid}"],
            related_record_ids=[rid],
        )

    if isinstance(action, SkillAppendToRecord):
        ref = render(action.record_ref.strip() or "TODAY")
        content = render(action.content_template).strip()
        if not content:
            raise InvalidData("Skill produced empty content to append.")
        rid, created = resolve_record_reference(storage, ref, request=request, create_content=content, today=today)
        output = f"Created record with text: {rid}" if created else storage.append_text(rid, content)
        return ExecutionOutcome(
            reply=f"Skill {name} finished.\n{output}",
            actions=[f"skill.run:{sid}:append:{rid}"],
            related_record_ids=[rid],
        )

    assert_never(action)


def describe_skill_action(action: SkillActionT) -> str:
    if isinstance(action, SkillLLMPrompt):
        return f"llm_prompt(model={action.model or '-'})"
    if isinstance(action, SkillShellCommand):
        return f"shell_command({action.command[:48]})"
    if isinstance(action, SkillCreateRecord):
        return f"create_record(filename_template={action.filename_template or '-'})"
    if isinstance(action, SkillAppendToRecord):
        return f"append_to_record(record_ref={action.record_ref})"
    assert_never(action)


def describe_task_action(action: TaskActionT) -> str:
    if isinstance(action, TaskShellCommand):
        return f"shell: {action.command[:40]}"
    if isinstance(action, TaskCreateRecord):
        return f"create_record: {action.title}"
    if isinstance(action, TaskAppendToRecord):
        return f"append_to_record: {action.record_id}"
    if isinstance(action, TaskModelPrompt):
        return f"model_prompt: {action.model or '-'}"
    assert_never(action)


# ---- manifest ----


def ensure_skillpack_tag(storage: Storage) -> str:
    return storage.ensure_tag(
        "SkillPack", aliases=("技能包", "skill package", "skills"), color="#34C759", icon="sparkles.rectangle.stack"
    )


def build_skill_manifest(skills: List[Dict[str, Any]], *, now: Optional[float] = None) -> str:
    blocks: List[str] = []
    for s in skills:
        try:
            action_text = describe_skill_action(parse_skill_action(s["action_json"]))
        except InvalidData:
            action_text = "unknown"
        blocks.append(
            "\n".join(
                [
                    f"## {s['name']}",
                    f"- id: {s['id']}",
                    f"- enabled: {'yes' if s['is_enabled'] else 'no'}",
                    f"- trigger_hint: {s['trigger_hint'] or '-'}",
                    f"- description: {short(s['description'], 180) if s['description'] else '-'}",
                    f"- action: {action_text}",
                    f"- updated_at: {iso(s['updated_at']) if s.get('updated_at') else '-'}",
                ]
            )
        )
    generated = iso(now) if now is not None else iso(dt.datetime.now(dt.timezone.utc).timestamp())
    lines = [
        "# Assistant Skill Manifest",
        f"generated_at: {generated}",
        f"skills_total: {len(skills)}",
        "",
        "## Base Interfaces",
        *[f"- {name}" for name in BASE_INTERFACES],
        "",
        "## Skills",
        "\n\n".join(blocks) if blocks else "- (empty)",
    ]
    return "\n".join(lines)


def refresh_skill_manifest(storage: Storage) -> str:
    """Rewrite (or create) the manifest record; returns its record ID."""
    tag_id = ensure_skillpack_tag(storage)
    manifest = build_skill_manifest(storage.list_skills())
    existing = storage.find_tagged_record_by_filename(tag_id, SKILL_MANIFEST_FILENAME)
    if existing:
        storage.replace_text(existing, manifest)
        return existing
    return storage.create_text_record(SKILL_MANIFEST_FILENAME, manifest, tag_ids=[tag_id])


def load_skill_manifest(storage: Storage, *, refresh_if_missing: bool = True) -> str:
    tag_id = ensure_skillpack_tag(storage)
    rid = storage.find_tagged_record_by_filename(tag_id, SKILL_MANIFEST_FILENAME)
    if rid is None and refresh_if_missing:
        rid = refresh_skill_manifest(storage)
    if rid is None:
        return build_skill_manifest([])
    try:
        return storage.load_text(rid, max_bytes=1_000_000)
    except NotFound as e:
        raise StorageError(f"Skill manifest record vanished: {rid}") from e
