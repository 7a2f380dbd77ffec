"""Core memory and audit trail writer.

Every request leaves one audit entry; only high-signal requests leave a Core memory
entry. Both go to per-day text records that are only ever appended to.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Set, final

from .extract import contains_any
from .ir import ContextItem, TurnState
from .logging_utils import log
from .storage import Storage
from .util import date_stamp, iso, short, toks, utc_ts


CONFLICT_CANDIDATES = 12
CONFLICT_MAX_TOKENS = 64
MERGE_STRATEGIES = ("overwrite", "keep", "versioned")

MEMORY_KEYWORDS = (
    "记住", "记下来", "沉淀", "长期", "偏好", "习惯", "约定", "原则", "目标", "复盘", "结论",
    "remember", "preference", "habit", "rule", "goal", "decision", "key point",
)


@dataclass(frozen=True)
class CoreConflict:
    record_id: str
    score: float


def is_action_worth_persisting(action: str) -> bool:
    for prefix in ("record.create:", "record.append:", "record.replace:", "record.delete:"):
        if action.startswith(prefix) and action.endswith(":ok"):
            return True
    if action.startswith("task.run:") and action.endswith((":ok", ":success")):
        return True
    return action.startswith("skill.run:") and (":create:" in action or ":append:" in action)


def should_persist(
    *,
    request: str,
    reply: str,
    actions: Iterable[str],
    related_record_ids: List[str],
    confirmation_required: bool,
    succeeded: bool,
    explicit_merge: Optional[str],
) -> bool:
    if explicit_merge:
        return True
    if not succeeded or confirmation_required:
        return False
    if contains_any(request, MEMORY_KEYWORDS):
        return True
    if any(is_action_worth_persisting(a) for a in actions):
        return True
    head = short(reply, 240).lower()
    return ("结论" in head or "decision" in head) and bool(related_record_ids)


def markdown_section(title: str, text: str) -> Optional[str]:
    marker = f"## {title}"
    i = text.find(marker)
    if i < 0:
        return None
    body = text[i + len(marker) :].split("\n## ", 1)[0].strip()
    return body or None


def token_set(text: str, max_tokens: int = CONFLICT_MAX_TOKENS) -> Set[str]:
    return set(toks(text)[:max_tokens])


def jaccard(a: Set[str], b: Set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def resolve_merge_strategy(explicit: Optional[str], conflict: Optional[CoreConflict]) -> str:
    if explicit in MERGE_STRATEGIES:
        return explicit
    # Conflicting memories are kept side by side as versions.
    return "versioned"


def _bullets(items: Iterable[str], limit: int) -> str:
    rows = [f"- {x}" for x in list(items)[:limit]]
    return "\n".join(rows) if rows else "- (none)"


def _score(v: Optional[float]) -> str:
    return f"{v:.2f}" if v is not None else "-"


def build_memory_entry(turn: TurnState, *, now: Optional[float] = None) -> str:
    key_actions = [a for a in turn.actions if is_action_worth_persisting(a)]
    return "\n".join(
        [
            "# Core Memory Entry",
            f"at: {iso(now if now is not None else utc_ts())}",
            f"request_id: {turn.request_id}",
            f"source: {turn.source}",
            f"intent: {turn.intent}",
            f"planner_source: {turn.planner_source}",
            f"planner_note: {turn.planner_note or '-'}",
            f"merge_strategy: {turn.merge_strategy}",
            f"confirmation_required: {'yes' if turn.confirmation_required else 'no'}",
            f"conflict_ref: {turn.conflict_record_id or '-'}",
            f"conflict_score: {_score(turn.conflict_score)}",
            "",
            "## Request",
            short(turn.request, 180),
            "",
            "## Reply",
            short(turn.reply, 260),
            "",
            "## Tool Plan",
            _bullets(turn.tool_plan, 5),
            "",
            "## Key Actions",
            _bullets(key_actions, 6),
            "",
            "## Related Records",
            _bullets(turn.related_record_ids, 8),
            "",
            "## Context Size",
            str(len(turn.core_context_record_ids)),
        ]
    )


def build_audit_entry(turn: TurnState, *, finished_at: float) -> str:
    status = "failed" if any(a.startswith("error:") for a in turn.actions) else "ok"
    expires = iso(turn.confirmation_expires_at) if turn.confirmation_expires_at else "-"
    return "\n".join(
        [
            "# Assistant Audit Entry",
            f"request_id: {turn.request_id}",
            f"status: {status}",
            f"source: {turn.source}",
            f"started_at: {iso(turn.started_at)}",
            f"finished_at: {iso(finished_at)}",
            f"duration_ms: {int((finished_at - turn.started_at) * 1000)}",
            f"intent: {turn.intent}",
            f"planner_source: {turn.planner_source}",
            f"planner_note: {turn.planner_note or '-'}",
            f"confirmation_required: {'yes' if turn.confirmation_required else 'no'}",
            f"confirmation_token: {turn.confirmation_token or '-'}",
            f"confirmation_expires_at: {expires}",
            f"merge_strategy: {turn.merge_strategy}",
            f"conflict_record_id: {turn.conflict_record_id or '-'}",
            f"conflict_score: {_score(turn.conflict_score)}",
            f"core_memory_record_id: {turn.core_memory_record_id or '-'}",
            "",
            "## Request",
            short(turn.request, 280),
            "",
            "## Reply",
            short(turn.reply, 360),
            "",
            "## Tool Plan",
            _bullets(turn.tool_plan, 8),
            "",
            "## Actions",
            _bullets(turn.actions, 14),
            "",
            "## Related Records",
            _bullets(turn.related_record_ids, 10),
            "",
            "## Core Context Records",
            _bullets(turn.core_context_record_ids, 10),
        ]
    )


@final
class MemoryWriter:
    """
    Appends Core memory and audit entries to per-day records and detects when a new
    memory contradicts an older one (similar request, different reply).
    """

    def __init__(
        self,
        storage: Storage,
        *,
        request_min: float = 0.34,
        reply_max: float = 0.62,
        score_min: float = 0.22,
        today: Optional[Callable[[], dt.date]] = None,
    ):
        self.storage = storage
        self.request_min = float(request_min)
        self.reply_max = float(reply_max)
        self.score_min = float(score_min)
        self._today = today or dt.date.today

    def detect_conflict(self, request: str, reply: str, context: List[ContextItem]) -> Optional[CoreConflict]:
        req_tokens = token_set(request)
        reply_tokens = token_set(reply)
        if not req_tokens or not reply_tokens:
            return None
        best: Optional[CoreConflict] = None
        for item in context[:CONFLICT_CANDIDATES]:
            # A daily record holds many entries; each one is a separate candidate.
            for entry in item.snippet.split("\n---\n"):
                old_request = markdown_section("Request", entry) or item.filename
                old_reply = markdown_section("Decision / Reply", entry) or markdown_section("Reply", entry) or entry
                req_sim = jaccard(req_tokens, token_set(old_request))
                reply_sim = jaccard(reply_tokens, token_set(old_reply))
                score = req_sim * (1.0 - reply_sim)
                if req_sim < self.request_min or reply_sim > self.reply_max or score < self.score_min:
                    continue
                if best is None or score > best.score:
                    best = CoreConflict(record_id=item.id, score=score)
        if best is not None:
            log.info("core memory conflict", extra={"extra": {"record_id": best.record_id, "score": round(best.score, 3)}})
        return best

    def append_daily(self, tag_id: str, prefix: str, entry: str) -> str:
        filename = f"{prefix}-{date_stamp(self._today())}.txt"
        rid, _ = self.storage.append_to_tagged_record(tag_id, filename, entry.strip())
        return rid

    def write_memory(self, core_tag_id: str, turn: TurnState) -> str:
        return self.append_daily(core_tag_id, "assistant-core", build_memory_entry(turn))

    def write_audit(self, audit_tag_id: str, turn: TurnState, *, finished_at: float) -> str:
        return self.append_daily(audit_tag_id, "assistant-audit", build_audit_entry(turn, finished_at=finished_at))
