from __future__ import annotations

import datetime as dt
import json
import re
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional


def utc_ts() -> float:
    return time.time()


def new_record_id() -> str:
    return str(uuid.uuid4()).upper()


def new_token() -> str:
    return uuid.uuid4().hex[:12].upper()


def jdump(x: Any) -> str:
    return json.dumps(x, ensure_ascii=False, sort_keys=True)


def jload(s: Optional[str]) -> Any:
    if not s:
        return None
    return json.loads(s)


def short(s: str, n: int = 200) -> str:
    s = (s or "").strip().replace("\n", " ")
    return s if len(s) <= n else (s[: n - 1] + "…")


def tail(s: str, n: int) -> str:
    s = (s or "").strip()
    return s if len(s) <= n else ("...\n" + s[-n:])


def collapse_ws(s: str) -> str:
    return " ".join((s or "").split())


def toks(s: str) -> List[str]:
    # Unicode-aware: CJK runs count as tokens too.
    return [t for t in re.split(r"[^\w]+", (s or "").lower()) if t]


def dedupe(items: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for it in items:
        if it and it not in seen:
            seen.add(it)
            out.append(it)
    return out


def iso(ts: float) -> str:
    return dt.datetime.fromtimestamp(ts, tz=dt.timezone.utc).isoformat(timespec="seconds")


def date_stamp(d: dt.date) -> str:
    return d.strftime("%Y-%m-%d")


def compact_date_stamp(d: dt.date) -> str:
    return d.strftime("%Y%m%d")


def timestamp_stamp(now: Optional[dt.datetime] = None) -> str:
    return (now or dt.datetime.now()).strftime("%Y%m%d-%H%M%S")


def extract_first_json_object(text: str) -> Dict[str, Any]:
    """
    Extract the first JSON object from arbitrary model output.

    Takes everything from the first `{` to the last `}` and parses it; when that
    fails, falls back to scanning balanced braces. Raises ValueError when no object
    can be recovered.
    """
    s = (text or "").strip()
    start = s.find("{")
    end = s.rfind("}")
    if start < 0 or end <= start:
        raise ValueError("No JSON object found.")
    try:
        obj = json.loads(s[start : end + 1])
        if isinstance(obj, dict):
            return obj
    except json.JSONDecodeError:
        pass

    depth = 0
    in_str = False
    esc = False
    for i in range(start, len(s)):
        ch = s[i]
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                obj = json.loads(s[start : i + 1])
                if not isinstance(obj, dict):
                    raise ValueError("JSON value is not an object.")
                return obj
    raise ValueError("Unbalanced JSON braces.")
