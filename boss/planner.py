from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .errors import ModelError
from .extract import (
    APPEND_KEYWORDS,
    CATALOG_KEYWORDS,
    DELETE_KEYWORDS,
    HELP_KEYWORDS,
    REPLACE_KEYWORDS,
    SEARCH_KEYWORDS,
    SKILL_RUN_KEYWORDS,
    SUMMARIZE_KEYWORDS,
    TASK_RUN_KEYWORDS,
    clean_request,
    contains_any,
    default_filename,
    extract_create_content,
    extract_create_filename,
    extract_payload,
    extract_record_reference,
    extract_search_query,
    extract_skill_reference,
    extract_task_reference,
    is_placeholder_reference,
    looks_like_question,
    minimal_clarify_question,
    normalize_filename,
    should_create_record,
)
from .ir import ContextItem, PlannedCalls, ToolCall
from .llm import ModelProvider
from .logging_utils import log
from .tools import MUTATING_TOOLS, RESPONSE_TOOLS, ToolRegistry
from .util import extract_first_json_object, jdump, short


EMPTY_TOOL_PLAN = ["fallback-search", "request-disambiguation"]
CLARIFY_TOOL_PLAN = ["ask-minimal-clarify-question"]
WRITE_TOOLS = frozenset({"record.create", "record.delete", "record.append", "record.replace"})

_PLANNER_SYSTEM = """You are the planner of a personal knowledge-base assistant. You only plan tool calls; you never answer with business results yourself.
Output one JSON object with fields:
- calls: [{"name": string, "arguments": object}]
- clarify_question: string (only when nothing can be executed; calls must then be empty)
- tool_plan: string[] (short steps, may be empty)
- note: string
Only use the given tool names. Never invent record IDs or task references."""


class Planner(Protocol):
    def plan(self, request: str, context: List[ContextItem]) -> PlannedCalls:
        ...


def default_tool_plan(calls: Sequence[ToolCall]) -> List[str]:
    if not calls:
        return list(EMPTY_TOOL_PLAN)
    return [f"{i}. {c.name}" for i, c in enumerate(calls, start=1)]


def describe_calls(calls: Sequence[ToolCall], request: str) -> str:
    """Human-readable intent, e.g. `record.delete(ABC) -> record.search(swift)`."""
    if not calls:
        return f"unknown({request})"
    parts: List[str] = []
    for c in calls:
        label = c.name
        for key in ("record_id", "filename", "task_ref", "skill_ref", "query"):
            v = c.arg(key)
            if v:
                label = f"{c.name}({v.upper() if key == 'record_id' else v})"
                break
        parts.append(label)
    return " -> ".join(parts)


def _coerce_arg(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        s = value.strip()
    elif isinstance(value, (dict, list)):
        s = jdump(value)
    else:
        s = str(value).strip()
    return s or None


def normalize_arguments(raw: Any) -> Dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    out: Dict[str, str] = {}
    for k, v in raw.items():
        s = _coerce_arg(v)
        if s is not None:
            out[str(k)] = s
    return out


def materialize_call(name: str, arguments: Dict[str, str], request: str, registry: ToolRegistry) -> Optional[ToolCall]:
    """
    Back-fill missing required arguments from the request. Placeholder record IDs
    count as missing. Returns None for unknown tools or when a required argument
    still cannot be found.
    """
    spec = registry.get(name)
    if spec is None:
        return None
    args = {k: v.strip() for k, v in arguments.items() if v and v.strip()}

    def fill(key: str, producer: Callable[[], Optional[str]]) -> None:
        if not args.get(key):
            value = (producer() or "").strip()
            if value:
                args[key] = value

    if name == "assistant.answer":
        fill("question", lambda: request)
    elif name == "record.search":
        fill("query", lambda: extract_search_query(request))
    elif name == "record.create":
        if args.get("filename"):
            args["filename"] = normalize_filename(args["filename"])
        fill("filename", lambda: extract_create_filename(request) or default_filename(request))
        fill("content", lambda: extract_create_content(request))
    elif name == "task.run":
        fill("task_ref", lambda: extract_task_reference(request))
    elif name == "skill.run":
        fill("skill_ref", lambda: extract_skill_reference(request))
        fill("input", lambda: extract_payload(request))
    elif name in ("record.delete", "record.append", "record.replace"):
        if is_placeholder_reference(args.get("record_id", "")):
            args.pop("record_id", None)
        fill("record_id", lambda: extract_record_reference(request))
        if name != "record.delete":
            fill("content", lambda: extract_payload(request))

    call = ToolCall(name=name, arguments=args)
    if spec.missing_arguments(call):
        return None
    return call


# ---- rule planning ----


def _call(name: str, **arguments: str) -> ToolCall:
    return ToolCall(name=name, arguments={k: v for k, v in arguments.items() if v})


def _help(request: str, lower: str) -> Optional[List[ToolCall]]:
    return [_call("assistant.help")] if contains_any(lower, HELP_KEYWORDS) else None


def _summarize(request: str, lower: str) -> Optional[List[ToolCall]]:
    return [_call("core.summarize")] if contains_any(lower, SUMMARIZE_KEYWORDS) else None


def _catalog(request: str, lower: str) -> Optional[List[ToolCall]]:
    return [_call("skills.catalog")] if contains_any(lower, CATALOG_KEYWORDS) else None


def _task_run(request: str, lower: str) -> Optional[List[ToolCall]]:
    if not contains_any(lower, TASK_RUN_KEYWORDS):
        return None
    ref = extract_task_reference(request)
    return [_call("task.run", task_ref=ref)] if ref else None


def _skill_run(request: str, lower: str) -> Optional[List[ToolCall]]:
    if not contains_any(lower, SKILL_RUN_KEYWORDS):
        return None
    ref = extract_skill_reference(request)
    if not ref:
        return None
    return [_call("skill.run", skill_ref=ref, input=extract_payload(request) or request)]


def _create(request: str, lower: str) -> Optional[List[ToolCall]]:
    if not should_create_record(lower):
        return None
    content = extract_create_content(request)
    if not content:
        return None
    filename = extract_create_filename(request) or default_filename(request)
    return [_call("record.create", filename=filename, content=content)]


def _delete(request: str, lower: str) -> Optional[List[ToolCall]]:
    ref = extract_record_reference(request)
    return [_call("record.delete", record_id=ref)] if ref and contains_any(lower, DELETE_KEYWORDS) else None


def _edit(name: str, keywords: Tuple[str, ...]) -> Callable[[str, str], Optional[List[ToolCall]]]:
    def rule(request: str, lower: str) -> Optional[List[ToolCall]]:
        ref = extract_record_reference(request)
        payload = extract_payload(request)
        if ref and payload and contains_any(lower, keywords):
            return [_call(name, record_id=ref, content=payload)]
        return None

    return rule


def _search(request: str, lower: str) -> Optional[List[ToolCall]]:
    return [_call("record.search", query=extract_search_query(request))] if contains_any(lower, SEARCH_KEYWORDS) else None


def _answer(request: str, lower: str) -> Optional[List[ToolCall]]:
    return [_call("assistant.answer", question=request)] if looks_like_question(request) else None


def _unknown(request: str, lower: str) -> Optional[List[ToolCall]]:
    return [_call("record.search", query=extract_search_query(request))]


# Ordered and mutually exclusive: the first rule that yields calls wins.
RULES: Tuple[Tuple[str, Callable[[str, str], Optional[List[ToolCall]]]], ...] = (
    ("help", _help),
    ("summarize", _summarize),
    ("skills_catalog", _catalog),
    ("task_run", _task_run),
    ("skill_run", _skill_run),
    ("create", _create),
    ("delete", _delete),
    ("append", _edit("record.append", APPEND_KEYWORDS)),
    ("replace", _edit("record.replace", REPLACE_KEYWORDS)),
    ("search", _search),
    ("answer", _answer),
    ("unknown", _unknown),
)


def classify(request: str) -> Tuple[str, List[ToolCall]]:
    lower = request.lower()
    for intent, rule in RULES:
        calls = rule(request, lower)
        if calls:
            return intent, calls
    raise AssertionError("unknown rule always matches")


class RulePlanner:
    """Deterministic keyword planner; never fails."""

    def plan(self, request: str, context: List[ContextItem], *, note: Optional[str] = None) -> PlannedCalls:
        text = clean_request(request)
        clarify = minimal_clarify_question(text)
        if clarify:
            return PlannedCalls(planner_source="rule", planner_note=note, tool_plan=list(CLARIFY_TOOL_PLAN), clarify_question=clarify)
        intent, calls = classify(text)
        log.debug("rule intent", extra={"extra": {"intent": intent, "calls": [c.name for c in calls]}})
        return PlannedCalls(calls=calls, planner_source="rule", planner_note=note, tool_plan=default_tool_plan(calls))


# ---- model-assisted planning ----


def _override_calls(request: str, calls: List[ToolCall]) -> Optional[List[ToolCall]]:
    names = [c.name for c in calls]
    has_write = any(n in WRITE_TOOLS for n in names)
    search_only = bool(names) and all(n == "record.search" for n in names)
    only_mutating = bool(names) and all(n in MUTATING_TOOLS for n in names)
    has_response = any(n in RESPONSE_TOOLS for n in names)

    if not has_response and (not names or search_only or only_mutating) and looks_like_question(request):
        return [_call("assistant.answer", question=request)]
    if has_write or not (search_only or not names):
        return None

    lower = request.lower()
    payload = extract_payload(request)
    ref = extract_record_reference(request)
    if contains_any(lower, APPEND_KEYWORDS) and payload and ref:
        return [_call("record.append", record_id=ref, content=payload)]
    content = extract_create_content(request)
    if should_create_record(lower) and content:
        filename = extract_create_filename(request) or default_filename(request)
        return [_call("record.create", filename=filename, content=content)]
    return None


_LEGACY_INTENTS: Dict[str, str] = {
    "help": "assistant.help",
    "summarizecore": "core.summarize",
    "summarize_core": "core.summarize",
    "answer": "assistant.answer",
    "qa": "assistant.answer",
    "question": "assistant.answer",
    "skillscatalog": "skills.catalog",
    "skills_catalog": "skills.catalog",
    "skillcatalog": "skills.catalog",
    "skill_catalog": "skills.catalog",
    "search": "record.search",
    "create": "record.create",
    "create_record": "record.create",
    "record_create": "record.create",
    "taskrun": "task.run",
    "task_run": "task.run",
    "skillrun": "skill.run",
    "skill_run": "skill.run",
    "delete": "record.delete",
    "append": "record.append",
    "replace": "record.replace",
}


def legacy_intent_call(obj: Dict[str, Any], request: str, registry: ToolRegistry) -> Optional[ToolCall]:
    """Accept the older `{intent, query, record_id, content, filename}` reply shape."""
    name = _LEGACY_INTENTS.get(str(obj.get("intent") or "").strip().lower())
    if name is None:
        return None
    query = _coerce_arg(obj.get("query")) or ""
    content = _coerce_arg(obj.get("content")) or ""
    args: Dict[str, str] = {}
    if name == "assistant.answer":
        args["question"] = query
    elif name == "record.search":
        args["query"] = query
    elif name == "record.create":
        args["content"] = content
        args["filename"] = _coerce_arg(obj.get("filename")) or _coerce_arg(obj.get("title")) or ""
    elif name == "task.run":
        args["task_ref"] = query
    elif name == "skill.run":
        args["skill_ref"] = query
        args["input"] = content
    elif name in ("record.delete", "record.append", "record.replace"):
        args["record_id"] = _coerce_arg(obj.get("record_id")) or ""
        if name != "record.delete":
            args["content"] = content
    return materialize_call(name, {k: v for k, v in args.items() if v}, request, registry)


class LLMPlanner:
    def __init__(self, provider: ModelProvider, registry: ToolRegistry, *, model: Optional[str] = None):
        self.provider = provider
        self.registry = registry
        self.model = model

    @property
    def source(self) -> str:
        return f"llm:{self.provider.model_label(self.model)}"

    def build_prompt(self, request: str, context: List[ContextItem]) -> str:
        rows = "\n".join(f"[{it.id}] {it.filename}: {short(it.snippet, 220)}" for it in context[:6])
        tools = json.dumps(self.registry.prompt_catalog(), ensure_ascii=False, indent=2)
        return (
            f"REQUEST:\n{request}\n\n"
            f"CORE_CONTEXT:\n{rows or '(none)'}\n\n"
            f"TOOLS:\n{tools}\n\n"
            "Output JSON only, without Markdown code fences."
        )

    def plan(self, request: str, context: List[ContextItem]) -> Optional[PlannedCalls]:
        """Returns None when the model reply is unusable. Raises ModelError on provider failure."""
        raw = self.provider.complete(_PLANNER_SYSTEM, self.build_prompt(request, context), self.model)
        try:
            obj = extract_first_json_object(raw)
        except (ValueError, json.JSONDecodeError):
            log.warning("planner reply has no JSON object", extra={"extra": {"reply": short(raw, 300)}})
            return None
        return self.interpret(obj, request)

    def interpret(self, obj: Dict[str, Any], request: str) -> Optional[PlannedCalls]:
        source = self.source
        clarify = _coerce_arg(obj.get("clarify_question")) if isinstance(obj.get("clarify_question"), str) else None
        note = _coerce_arg(obj.get("note")) if isinstance(obj.get("note"), str) else None
        raw_plan = obj.get("tool_plan") if isinstance(obj.get("tool_plan"), list) else []
        tool_plan = [s.strip() for s in raw_plan if isinstance(s, str) and s.strip()]

        calls: List[ToolCall] = []
        raw_calls = obj.get("calls")
        if isinstance(raw_calls, list):
            for item in raw_calls:
                if not isinstance(item, dict):
                    continue
                name = str(item.get("name") or "").strip()
                if not name:
                    continue
                call = materialize_call(name, normalize_arguments(item.get("arguments")), request, self.registry)
                if call is not None:
                    calls.append(call)
        if not calls and "calls" not in obj:
            legacy = legacy_intent_call(obj, request, self.registry)
            if legacy is not None:
                calls = [legacy]

        override = _override_calls(request, calls)
        if override is not None:
            return PlannedCalls(
                calls=override,
                planner_source=source,
                planner_note=f"{note} (rule override applied)" if note else "rule override applied",
                tool_plan=default_tool_plan(override),
            )

        forced = minimal_clarify_question(request)
        if forced and not clarify and any(c.name in MUTATING_TOOLS for c in calls):
            return PlannedCalls(planner_source=source, planner_note=note, tool_plan=tool_plan or list(CLARIFY_TOOL_PLAN), clarify_question=forced)

        if not calls:
            question = clarify or forced
            if question:
                return PlannedCalls(planner_source=source, planner_note=note, tool_plan=tool_plan or list(CLARIFY_TOOL_PLAN), clarify_question=question)
            return None

        return PlannedCalls(calls=calls, planner_source=source, planner_note=note, tool_plan=tool_plan or default_tool_plan(calls))


class FallbackPlanner:
    """Model-assisted first, then rules. An empty request always gets a clarifying question."""

    def __init__(self, rule: RulePlanner, llm: Optional[LLMPlanner] = None):
        self.rule = rule
        self.llm = llm

    def plan(self, request: str, context: List[ContextItem]) -> PlannedCalls:
        text = clean_request(request)
        if not text:
            return self.rule.plan(text, context)
        note = "rule planner (LLM unavailable or no result)"
        if self.llm is not None:
            try:
                planned = self.llm.plan(text, context)
            except ModelError as e:
                note = f"rule planner (LLM planning failed: {e})"
                log.info("planner degraded to rules", extra={"extra": {"error": str(e), "provider": e.provider}})
            else:
                if planned is not None:
                    return planned
        return self.rule.plan(text, context, note=note)
