"""Heuristic slot extraction from free-text requests.

These helpers back both the rule planner and argument materialization for
model-produced plans. They only pull structured arguments (record references,
payloads, filenames, task/skill references, dates) out of the request; they
never invent identifiers.
"""

from __future__ import annotations

import datetime as dt
import re
from typing import Iterable, Optional

from .util import compact_date_stamp, date_stamp, timestamp_stamp


UUID_RE = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")
DATE_RE = re.compile(r"(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})")
CONFIRM_RE = re.compile(r"#confirm\s*[:：]\s*([A-Za-z0-9_-]{6,64})", re.IGNORECASE)
MERGE_RE = re.compile(r"#merge\s*[:：]\s*(overwrite|keep|versioned|version|覆盖|保留|版本)", re.IGNORECASE)
_QUOTE_RES = (re.compile(r'"([^"]+)"'), re.compile(r"“([^”]+)”"), re.compile(r"「([^」]+)」"))

RELATIVE_DAY_REFS = {"TODAY": 0, "TOMORROW": 1, "DAY_AFTER_TOMORROW": 2}

HELP_KEYWORDS = ("help", "帮助", "你能做什么")
SUMMARIZE_KEYWORDS = ("总结", "回顾", "core memory", "持久记忆")
CATALOG_KEYWORDS = ("skills.catalog", "skill manifest", "skill list", "skills list", "技能列表", "skill文档", "技能文档")
TASK_RUN_KEYWORDS = ("task.run", "run task", "运行任务", "执行任务")
SKILL_RUN_KEYWORDS = ("skill.run", "run skill", "运行skill", "执行skill", "运行技能", "执行技能", "调用skill", "使用skill")
DELETE_KEYWORDS = ("删除", "delete", "移除")
APPEND_KEYWORDS = ("追加", "append", "补充")
REPLACE_KEYWORDS = ("改写", "replace", "rewrite", "编辑", "更新")
SEARCH_KEYWORDS = ("搜索", "检索", "查找", "search", "find")
CREATE_KEYWORDS = ("新建", "创建", "新增", "记录一下", "写一条", "记一条", "写个", "create", "new note", "new record", "capture", "log")
PLAN_KEYWORDS = ("计划", "待办", "todo", "日程", "安排", "日志", "日记", "plan", "schedule")
CREATE_BLOCKERS = (
    DELETE_KEYWORDS
    + APPEND_KEYWORDS
    + ("改写", "replace", "rewrite")
    + SEARCH_KEYWORDS
    + TASK_RUN_KEYWORDS
    + ("skill.run", "run skill", "运行技能", "执行技能", "skill list", "技能列表")
)
QUESTION_BLOCKERS = (
    "创建", "新建", "新增", "删除", "追加", "补充", "改写", "编辑", "更新",
    "create", "new note", "delete", "append", "replace", "rewrite",
    "搜索", "检索", "查找", "search", "find", "task.run", "run task", "skill.run", "run skill",
)
QUESTION_KEYWORDS = (
    "今天我做了什么", "今天做了什么", "我做了什么", "回顾", "总结", "为什么", "怎么", "如何", "哪些", "什么",
    "what did i do", "what have i done", "why", "how", "what", "which", "when",
)
_PAYLOAD_SEPARATORS = ("内容:", "content:", "text:", "为:", "->", "=>")
_FILENAME_MARKERS = ("文件名:", "filename:", "标题:", "title:", "名为", "叫做")
_CREATE_REMOVABLE_CJK = (
    "请", "帮我", "帮忙", "新建", "创建", "新增", "记录一下", "写一条", "记一条", "写个",
    "今天", "明天", "后天", "的", "一个", "一条", "一下", "记录", "笔记",
)
_CREATE_REMOVABLE_WORDS = (
    "please", "create", "new note", "new record", "capture", "log",
    "day after tomorrow", "tomorrow", "today", "a", "an", "the", "new", "note", "record", "for",
)
_PLACEHOLDER_MARKERS = (
    "RESULT_OF_SEARCH", "SEARCH_RESULT", "RECORD_ID", "TARGET_RECORD", "ID_FROM_SEARCH", "FIRST_RESULT", "UNKNOWN",
)


def contains_any(text: str, keywords: Iterable[str]) -> bool:
    lower = (text or "").lower()
    return any(k.lower() in lower for k in keywords)


def _find_ci(text: str, needle: str) -> int:
    return text.lower().find(needle.lower())


def _remove_ci(text: str, needle: str) -> str:
    return re.sub(re.escape(needle), "", text, flags=re.IGNORECASE)


def clean_request(text: str) -> str:
    return (text or "").strip()


# ---- markers ----


def extract_confirmation_token(text: str) -> Optional[str]:
    m = CONFIRM_RE.search(text or "")
    return m.group(1).upper() if m else None


def extract_merge_directive(text: str) -> Optional[str]:
    """Return `overwrite`, `keep` or `versioned` for an explicit `#MERGE:` directive."""
    m = MERGE_RE.search(text or "")
    if not m:
        return None
    raw = m.group(1).strip().lower()
    if raw in ("overwrite", "覆盖"):
        return "overwrite"
    if raw in ("keep", "保留"):
        return "keep"
    return "versioned"


# ---- dates ----


def resolve_date_reference(text: str, *, today: Optional[dt.date] = None) -> Optional[dt.date]:
    lower = (text or "").lower()
    base = today or dt.date.today()
    if "后天" in lower or "day after tomorrow" in lower:
        return base + dt.timedelta(days=2)
    if "明天" in lower or "tomorrow" in lower:
        return base + dt.timedelta(days=1)
    if "今天" in lower or "today" in lower:
        return base
    m = DATE_RE.search(text or "")
    if not m:
        return None
    try:
        return dt.date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    except ValueError:
        return None


def date_for_record_reference(ref: str, *, today: Optional[dt.date] = None) -> Optional[dt.date]:
    """Map TODAY/TOMORROW/DAY_AFTER_TOMORROW or a literal date to a calendar date."""
    value = (ref or "").strip().upper()
    base = today or dt.date.today()
    if value in RELATIVE_DAY_REFS:
        return base + dt.timedelta(days=RELATIVE_DAY_REFS[value])
    m = DATE_RE.fullmatch(value)
    if m:
        try:
            return dt.date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        except ValueError:
            return None
    return None


def date_filename_stamps(d: dt.date) -> tuple[str, str]:
    return date_stamp(d), compact_date_stamp(d)


# ---- references ----


def extract_record_id(text: str) -> Optional[str]:
    m = UUID_RE.search(text or "")
    return m.group(0).upper() if m else None


def extract_record_reference(text: str, *, today: Optional[dt.date] = None) -> Optional[str]:
    rid = extract_record_id(text)
    if rid:
        return rid
    lower = (text or "").lower()
    if "后天" in lower or "day after tomorrow" in lower:
        return "DAY_AFTER_TOMORROW"
    if "明天" in lower or "tomorrow" in lower:
        return "TOMORROW"
    if "今天" in lower or "today" in lower:
        return "TODAY"
    d = resolve_date_reference(text, today=today)
    return date_stamp(d) if d else None


def is_placeholder_reference(raw: str) -> bool:
    value = (raw or "").strip().upper()
    if not value:
        return False
    if value.startswith("<") and value.endswith(">"):
        return True
    return any(marker in value for marker in _PLACEHOLDER_MARKERS)


def extract_quoted_text(text: str) -> Optional[str]:
    for rx in _QUOTE_RES:
        m = rx.search(text or "")
        if m and m.group(1).strip():
            return m.group(1).strip()
    return None


def extract_payload(text: str) -> str:
    quoted = extract_quoted_text(text)
    if quoted:
        return quoted
    text = text or ""
    for sep in _PAYLOAD_SEPARATORS:
        i = _find_ci(text, sep)
        if i >= 0:
            rhs = text[i + len(sep) :].strip()
            if rhs:
                return rhs
    colon = max(text.rfind("："), text.rfind(":"))
    if colon >= 0:
        rhs = text[colon + 1 :].strip()
        if rhs:
            return rhs
    return ""


def _extract_after_markers(text: str, markers: Iterable[str]) -> str:
    for marker in markers:
        i = _find_ci(text, marker)
        if i >= 0:
            rhs = text[i + len(marker) :].strip()
            if rhs:
                return rhs
    return ""


def extract_task_reference(text: str) -> str:
    rid = extract_record_id(text)
    if rid:
        return rid
    quoted = extract_quoted_text(text)
    if quoted:
        return quoted
    return _extract_after_markers(text or "", ("task:", "任务:", "任务：", "task ", "任务 "))


def extract_skill_reference(text: str) -> str:
    rid = extract_record_id(text)
    if rid:
        return rid
    quoted = extract_quoted_text(text)
    if quoted:
        return quoted
    rhs = _extract_after_markers(text or "", ("skill:", "技能:", "skill：", "技能：", "skill ", "技能 "))
    return re.split(r"[,，。;；:：]", rhs, maxsplit=1)[0].strip() if rhs else ""


def extract_search_query(text: str) -> str:
    quoted = extract_quoted_text(text)
    if quoted:
        return quoted
    query = text or ""
    for kw in SEARCH_KEYWORDS:
        query = _remove_ci(query, kw)
    query = query.replace("记录", "").strip()
    return query or (text or "").strip()


# ---- create ----


def should_create_record(text: str, *, today: Optional[dt.date] = None) -> bool:
    lower = (text or "").lower()
    if contains_any(lower, CREATE_BLOCKERS):
        return False
    if contains_any(lower, CREATE_KEYWORDS):
        return True
    return resolve_date_reference(lower, today=today) is not None and contains_any(lower, PLAN_KEYWORDS)


def extract_create_content(text: str) -> str:
    quoted = extract_quoted_text(text)
    if quoted:
        return quoted
    payload = extract_payload(text)
    if payload:
        return payload
    cleaned = text or ""
    for item in _CREATE_REMOVABLE_CJK:
        cleaned = cleaned.replace(item, "")
    for word in _CREATE_REMOVABLE_WORDS:
        cleaned = re.sub(rf"\b{re.escape(word)}\b", "", cleaned, flags=re.IGNORECASE)
    return cleaned.strip(" \t\r\n:：,，。.;；")


def sanitize_filename(name: str) -> str:
    return re.sub(r'[/\\:*?"<>|]', "_", name or "")


def normalize_filename(raw: str) -> str:
    cleaned = sanitize_filename(raw).strip()
    base = cleaned or "note"
    return base if "." in base else base + ".txt"


def extract_create_filename(text: str) -> Optional[str]:
    for marker in _FILENAME_MARKERS:
        i = _find_ci(text or "", marker)
        if i < 0:
            continue
        rhs = re.split(r"[，,。;]", text[i + len(marker) :], maxsplit=1)[0].strip()
        if rhs:
            return normalize_filename(rhs)
    return None


def default_filename(request: str, *, date: Optional[dt.date] = None, now: Optional[dt.datetime] = None) -> str:
    lower = (request or "").lower()
    if contains_any(lower, ("计划", "待办", "todo", "plan", "schedule", "日程")):
        prefix = "plan"
    elif contains_any(lower, ("日志", "日记", "log", "journal")):
        prefix = "journal"
    else:
        prefix = "note"
    d = date or resolve_date_reference(request, today=now.date() if now else None)
    if d:
        return f"{prefix}-{date_stamp(d)}.txt"
    return f"{prefix}-{timestamp_stamp(now)}.txt"


# ---- questions ----


def looks_like_question(text: str) -> bool:
    lower = (text or "").lower()
    if contains_any(lower, QUESTION_BLOCKERS):
        return False
    if "?" in lower or "？" in lower:
        return True
    return contains_any(lower, QUESTION_KEYWORDS)


def is_today_activity_question(text: str) -> bool:
    lower = (text or "").lower()
    return contains_any(lower, ("今天", "today")) and contains_any(
        lower, ("做了什么", "干了什么", "完成了什么", "what did i do", "what have i done")
    )


def minimal_clarify_question(request: str, *, today: Optional[dt.date] = None) -> Optional[str]:
    """
    Return a specific clarifying question when the request asks for a write/delete/run
    action but a required slot cannot be extracted. Returns None otherwise.
    """
    text = clean_request(request)
    if not text:
        return "What would you like me to do? Try 'help' to see what I can do."
    lower = text.lower()
    ref = extract_record_reference(text, today=today)
    payload = extract_payload(text)

    if should_create_record(lower, today=today) and not extract_create_content(text):
        return "What should the new record say? For example: 'create a plan for tomorrow: <content>'."

    if contains_any(lower, DELETE_KEYWORDS) and ref is None:
        return "Which record should be deleted? Give a record ID (UUID) or TODAY/TOMORROW, e.g. 'delete record <record-id>'."

    if contains_any(lower, APPEND_KEYWORDS):
        if ref is None and not payload:
            return "Which record should I append to, and what text? For example: 'append to TODAY: <content>'."
        if ref is None:
            return "Which record should I append to? Give a record ID (UUID) or TODAY/TOMORROW."
        if not payload:
            return f"What text should I append? For example: 'append to {ref}: <content>'."

    if contains_any(lower, REPLACE_KEYWORDS):
        if ref is None and not payload:
            return "Which record should I rewrite, and with what text? For example: 'replace TODAY with: <content>'."
        if ref is None:
            return "Which record should I rewrite? Give a record ID (UUID) or TODAY/TOMORROW."
        if not payload:
            return f"What should the new text be? For example: 'replace {ref} with: <content>'."

    if contains_any(lower, TASK_RUN_KEYWORDS) and not extract_task_reference(text):
        return "Which task should I run? Give a task ID or name, e.g. 'run task <task-id>'."

    if contains_any(lower, SKILL_RUN_KEYWORDS) and not extract_skill_reference(text):
        return "Which skill should I run? Give a skill ID or name, e.g. 'run skill:daily-standup'."

    return None
