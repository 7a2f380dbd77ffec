from __future__ import annotations

import datetime as dt
from typing import Callable, List, Optional, Tuple, assert_never, cast

from .actions import (
    execute_skill,
    load_skill_manifest,
    resolve_record_reference,
    resolve_skill,
    resolve_task,
    run_task_now,
)
from .errors import BossError, InvalidArguments, StorageError, UpstreamError
from .extract import is_today_activity_question, resolve_date_reference
from .ir import ContextItem, ExecutionOutcome, ToolCall
from .llm import ModelProvider
from .logging_utils import log
from .storage import Storage
from .tags import ensure_audit_tag
from .tools import ToolName, ToolRegistry
from .util import date_stamp, dedupe, short, tail


HELP_TEXT = """I can do these things:
1. Search records: e.g. "search swift concurrency"
2. Create a text record: e.g. "create a plan for tomorrow: <content>"
3. Run a task: e.g. "run task <task-id>"
4. Run a skill: e.g. "run skill:<skill-name>, input: <content>"
5. Answer questions: e.g. "what did I do today?"
6. Show the skill manifest: e.g. "skills catalog" or "skill list"
7. Delete a record: e.g. "delete record <record-id>"
8. Append text: e.g. "append to <record-id> or TODAY: <content>"
9. Rewrite text: e.g. "replace <record-id> with: <content>"
10. Summarize Core memory: e.g. "summarize core memory\""""

_ANSWER_SYSTEM = """You are the Boss assistant. Answer from the provided Core memory, audit logs and skill catalog first; never make things up.
For "what did I do today" questions, summarize today's audit entries factually.
When the evidence is insufficient, say you are not sure and name what is missing.
Be short and direct."""

AUDIT_CANDIDATES = 120
AUDIT_SNIPPETS = 6
AUDIT_SNIPPET_CHARS = 1800


class ToolExecutor:
    """
    Runs validated tool calls sequentially and folds their outputs into one
    ExecutionOutcome. Handler-level BossErrors become notices; StorageError and
    raw sqlite/OS errors propagate.
    """

    def __init__(
        self,
        storage: Storage,
        provider: ModelProvider,
        registry: ToolRegistry,
        *,
        model: Optional[str] = None,
        today: Callable[[], dt.date] = dt.date.today,
    ):
        self.storage = storage
        self.provider = provider
        self.registry = registry
        self.model = model
        self.today = today

    def execute(self, calls: List[ToolCall], request: str, context: List[ContextItem]) -> ExecutionOutcome:
        if not calls:
            return ExecutionOutcome(
                reply="I need more information to continue. Tell me the action (search/create/delete/append/replace) and the target record.",
                actions=["tool.execute:empty"],
            )
        replies: List[str] = []
        actions: List[str] = []
        related: List[str] = []
        for call in calls:
            actions.append(f"tool.execute:{call.name}")
            try:
                self.registry.validate(call)
            except InvalidArguments as e:
                actions.append(f"tool.invalid:{call.name}")
                replies.append(f"Skipped {call.name}: {e}")
                continue
            try:
                out = self._dispatch(call, request, context)
            except StorageError:
                raise
            except BossError as e:
                log.warning("tool failed", extra={"extra": {"tool": call.name, "error": str(e)}})
                actions.append(f"tool.failed:{call.name}")
                replies.append(f"{call.name} failed: {e}")
                continue
            if out.reply.strip():
                replies.append(out.reply)
            actions.extend(out.actions)
            related.extend(out.related_record_ids)
        reply = "\n\n".join(replies)
        return ExecutionOutcome(
            reply=reply or "No tool call produced output; please retry with a clear target.",
            actions=actions,
            related_record_ids=dedupe(related),
        )

    def _dispatch(self, call: ToolCall, request: str, context: List[ContextItem]) -> ExecutionOutcome:
        name = cast(ToolName, call.name)
        if name == "assistant.help":
            return ExecutionOutcome(reply=HELP_TEXT, actions=["assistant.help"])
        elif name == "core.summarize":
            return self._summarize(context)
        elif name == "assistant.answer":
            return self._answer(call.arg("question") or request, context)
        elif name == "skills.catalog":
            return ExecutionOutcome(reply=load_skill_manifest(self.storage), actions=["skills.catalog:read"])
        elif name == "record.search":
            return self._search(call.arg("query"))
        elif name == "record.create":
            return self._create(call.arg("filename"), call.arg("content"), request)
        elif name == "task.run":
            task = resolve_task(self.storage, call.arg("task_ref"))
            output = run_task_now(self.storage, self.provider, task["id"])
            return ExecutionOutcome(
                reply=f"Ran task: {task['name']} ({task['id']})\n{short(output, 260)}",
                actions=[f"task.run:{task['id']}:ok"],
            )
        elif name == "skill.run":
            return self._skill(call.arg("skill_ref"), call.arg("input"), request)
        elif name == "record.delete":
            rid, _ = resolve_record_reference(self.storage, call.arg("record_id"), request=request, today=self.today())
            self.storage.delete_record(rid)
            return ExecutionOutcome(reply=f"Deleted record: {rid}", actions=[f"record.delete:{rid}:ok"], related_record_ids=[rid])
        elif name == "record.append":
            content = call.arg("content")
            rid, created = resolve_record_reference(
                self.storage, call.arg("record_id"), request=request, create_content=content, today=self.today()
            )
            reply = f"Created record with text: {rid}" if created else self.storage.append_text(rid, content)
            return ExecutionOutcome(reply=reply, actions=[f"record.append:{rid}:ok"], related_record_ids=[rid])
        elif name == "record.replace":
            rid, _ = resolve_record_reference(self.storage, call.arg("record_id"), request=request, today=self.today())
            reply = self.storage.replace_text(rid, call.arg("content"))
            return ExecutionOutcome(reply=reply, actions=[f"record.replace:{rid}:ok"], related_record_ids=[rid])
        else:
            assert_never(name)

    # ---- handlers ----

    def _summarize(self, context: List[ContextItem]) -> ExecutionOutcome:
        if not context:
            return ExecutionOutcome(reply="There is no Core memory to summarize yet.", actions=["core.summarize:empty"])
        rows = "\n".join(f"- [{it.id}] {it.filename}: {short(it.snippet, 120)}" for it in context[:8])
        return ExecutionOutcome(
            reply=f"Core memory review:\n{rows}",
            actions=[f"core.summarize:{len(context)}"],
            related_record_ids=[it.id for it in context],
        )

    def _search(self, query: str) -> ExecutionOutcome:
        hits = self.storage.search_records(query, limit=10)
        if not hits:
            return ExecutionOutcome(reply=f'No records matched "{query}".', actions=[f"record.search:{query}:0"])
        lines = "\n".join(f"- [{h['id']}] {h['filename']}: {short(h['preview'], 90)}" for h in hits)
        return ExecutionOutcome(
            reply=f'Search "{query}" matched {len(hits)} record(s):\n{lines}',
            actions=[f"record.search:{query}:{len(hits)}"],
            related_record_ids=[h["id"] for h in hits],
        )

    def _create(self, filename: str, content: str, request: str) -> ExecutionOutcome:
        rid = self.storage.create_text_record(filename, content)
        reply = f"Created text record: {filename} ({rid})"
        day = resolve_date_reference(request, today=self.today())
        if day is not None:
            reply += f"\nDate: {date_stamp(day)}"
        return ExecutionOutcome(reply=reply, actions=[f"record.create:{rid}:ok"], related_record_ids=[rid])

    def _skill(self, ref: str, input: str, request: str) -> ExecutionOutcome:
        skill = resolve_skill(self.storage, ref)
        if not skill["is_enabled"]:
            return ExecutionOutcome(
                reply=f"Skill is disabled: {skill['name']} ({skill['id']})",
                actions=[f"skill.run:{skill['id']}:disabled"],
            )
        return execute_skill(self.storage, self.provider, skill, input=input or request, request=request, today=self.today())

    # ---- question answering ----

    def audit_snippets(self, question: str, limit: int = AUDIT_SNIPPETS) -> List[Tuple[str, str, str]]:
        """Newest audit records as (id, filename, tail snippet); today's file first for today-activity questions."""
        rows = self.storage.records_with_tag(ensure_audit_tag(self.storage), limit=AUDIT_CANDIDATES)
        if is_today_activity_question(question):
            today_name = f"assistant-audit-{date_stamp(self.today())}.txt"
            rows.sort(key=lambda r: (r["filename"].lower() != today_name, -float(r["updated_at"])))
        out: List[Tuple[str, str, str]] = []
        for r in rows[:limit]:
            text = self.storage.load_text(r["id"], max_bytes=240_000)
            out.append((r["id"], r["filename"], tail(text, AUDIT_SNIPPET_CHARS)))
        return out

    def _answer(self, question: str, context: List[ContextItem]) -> ExecutionOutcome:
        core_rows = [f"[{it.id}] {it.filename}: {short(it.snippet, 180)}" for it in context[:8]]
        audit = self.audit_snippets(question)
        related = dedupe([it.id for it in context[:8]] + [a[0] for a in audit])
        audit_text = "\n".join(f"[{aid}] {fn}: {short(snip, 320)}" for aid, fn, snip in audit)
        prompt = (
            f"QUESTION:\n{question}\n\n"
            f"CORE_CONTEXT:\n{chr(10).join(core_rows) or '(none)'}\n\n"
            f"AUDIT_CONTEXT:\n{audit_text or '(none)'}\n\n"
            f"SKILL_CATALOG:\n{load_skill_manifest(self.storage)}"
        )
        try:
            answer = self.provider.complete(_ANSWER_SYSTEM, prompt, self.model).strip()
        except UpstreamError as e:
            log.info("answer model unavailable; using local fallback", extra={"extra": {"error": str(e)}})
            answer = ""
        if answer:
            return ExecutionOutcome(reply=answer, actions=["assistant.answer:context"], related_record_ids=related)

        if is_today_activity_question(question):
            stamp = date_stamp(self.today())
            todays = next((a for a in audit if stamp in a[1]), None)
            if todays is not None:
                return ExecutionOutcome(
                    reply=f"According to today's log, these activities were recorded:\n{short(todays[2], 520)}",
                    actions=["assistant.answer:fallback:today"],
                    related_record_ids=related,
                )
            return ExecutionOutcome(
                reply="There is no audit log for today yet, so I can't reliably say what you did today.",
                actions=["assistant.answer:fallback:today-empty"],
                related_record_ids=related,
            )
        if core_rows:
            lines = "\n".join(core_rows[:4])
            return ExecutionOutcome(
                reply=f"This is what I can confirm from Core memory:\n{lines}\n\nFor something more precise I can search records by keyword.",
                actions=["assistant.answer:fallback:core"],
                related_record_ids=related,
            )
        return ExecutionOutcome(
            reply='Not enough context to answer reliably. Try "search <keyword>" or "summarize core memory".',
            actions=["assistant.answer:fallback:empty"],
            related_record_ids=related,
        )

    # ---- dry run ----

    def resolve_record_id(self, ref: str, request: str) -> Optional[str]:
        """Existing record an ID or date reference points at; never creates one."""
        try:
            rid, _ = resolve_record_reference(self.storage, ref, request=request, today=self.today())
        except BossError:
            return None
        return rid

    def preview(self, calls: List[ToolCall], request: str) -> List[str]:
        """Describe what a high-risk plan would touch without changing anything."""
        lines: List[str] = []
        for call in calls:
            if call.name in ("record.delete", "record.replace"):
                requested = call.arg("record_id") or "-"
                rid = self.resolve_record_id(requested, request) or requested.upper()
                rec = self.storage.get_record(rid)
                if rec is None:
                    lines.append(f"- {call.name}: target record not found [{rid}]")
                elif call.name == "record.delete":
                    lines.append(f"- record.delete: will delete [{rec['id']}] {rec['filename']}")
                else:
                    lines.append(
                        f"- record.replace: will rewrite [{rec['id']}] {rec['filename']}, new content about {len(call.arg('content'))} chars"
                    )
            elif call.name in ("task.run", "skill.run"):
                key, kind = ("task_ref", "task") if call.name == "task.run" else ("skill_ref", "skill")
                ref = call.arg(key)
                if not ref:
                    lines.append(f"- {call.name}: missing {key}")
                    continue
                try:
                    found = resolve_task(self.storage, ref) if kind == "task" else resolve_skill(self.storage, ref)
                except BossError:
                    lines.append(f"- {call.name}: {kind} not found {ref}")
                    continue
                lines.append(f"- {call.name}: will run {kind} {found['name']} ({found['id']})")
        return lines
