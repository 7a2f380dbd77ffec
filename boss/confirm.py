"""
Single-use, time-boxed confirmation tokens guarding high-risk plans.

A pending confirmation moves none -> pending -> consumed | expired. Redemption
always deletes the row, whatever happens next.
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from pydantic import ValidationError

from .errors import ConfirmationInvalid
from .extract import extract_record_id
from .ir import PendingConfirmation, ToolCall
from .logging_utils import log
from .storage import Storage
from .util import iso, new_token, utc_ts


class ConfirmationStore(Protocol):
    def put(self, token: str, payload: str, ttl_s: float, *, now: Optional[float] = None) -> float:
        """Store payload under token; returns expires_at."""
        ...

    def take(self, token: str, *, now: Optional[float] = None) -> Optional[str]:
        """Atomically remove the token; returns its payload unless absent or expired."""
        ...

    def sweep(self, now: Optional[float] = None) -> int:
        """Delete expired rows; returns how many were removed."""
        ...


class SQLiteConfirmationStore:
    """Durable store on the shared SQLite file; usable across processes."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def put(self, token: str, payload: str, ttl_s: float, *, now: Optional[float] = None) -> float:
        created = utc_ts() if now is None else now
        expires = created + float(ttl_s)
        self.storage.put_pending(token, payload, created_at=created, expires_at=expires)
        return expires

    def take(self, token: str, *, now: Optional[float] = None) -> Optional[str]:
        row = self.storage.take_pending(token)
        if row is None:
            return None
        payload, expires_at = row
        if expires_at <= (utc_ts() if now is None else now):
            return None
        return payload

    def sweep(self, now: Optional[float] = None) -> int:
        return self.storage.sweep_pending(utc_ts() if now is None else now)


class InMemoryConfirmationStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: Dict[str, Tuple[str, float]] = {}

    def put(self, token: str, payload: str, ttl_s: float, *, now: Optional[float] = None) -> float:
        expires = (utc_ts() if now is None else now) + float(ttl_s)
        with self._lock:
            self._rows[token] = (payload, expires)
        return expires

    def take(self, token: str, *, now: Optional[float] = None) -> Optional[str]:
        with self._lock:
            row = self._rows.pop(token, None)
        if row is None:
            return None
        payload, expires_at = row
        if expires_at <= (utc_ts() if now is None else now):
            return None
        return payload

    def sweep(self, now: Optional[float] = None) -> int:
        cutoff = utc_ts() if now is None else now
        with self._lock:
            dead = [t for t, (_, exp) in self._rows.items() if exp <= cutoff]
            for t in dead:
                del self._rows[t]
        return len(dead)

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)


class ConfirmationGate:
    def __init__(self, store: ConfirmationStore, *, ttl_s: float = 300.0, clock: Callable[[], float] = utc_ts):
        self.store = store
        self.ttl_s = float(ttl_s)
        self.clock = clock

    def create(
        self, calls: List[ToolCall], *, source: str, request: str, tool_plan: List[str]
    ) -> PendingConfirmation:
        now = self.clock()
        token = new_token()
        pending = PendingConfirmation(
            token=token,
            tool_calls=list(calls),
            source=source,
            request=request,
            tool_plan=list(tool_plan),
            created_at=now,
            expires_at=now + self.ttl_s,
        )
        self.store.put(token, pending.model_dump_json(), self.ttl_s, now=now)
        log.info("confirmation pending", extra={"extra": {"token": token, "source": source, "calls": len(calls)}})
        return pending

    def redeem(self, token: str, *, source: str) -> PendingConfirmation:
        """Consume a token or raise ConfirmationInvalid. The row is gone either way."""
        token = token.strip().upper()
        now = self.clock()
        swept = self.store.sweep(now)
        if swept:
            log.debug("swept expired confirmations", extra={"extra": {"count": swept}})
        payload = self.store.take(token, now=now)
        if payload is None:
            raise ConfirmationInvalid(token, "unknown, expired or already used")
        try:
            pending = PendingConfirmation.model_validate_json(payload)
        except ValidationError as e:
            raise ConfirmationInvalid(token, "undecodable") from e
        if pending.source and pending.source != source:
            raise ConfirmationInvalid(token, f"bound to source {pending.source!r}")
        log.info("confirmation consumed", extra={"extra": {"token": token, "source": source}})
        return pending


def related_record_ids(calls: List[ToolCall], resolve: Optional[Callable[[str], Optional[str]]] = None) -> List[str]:
    """
    Record IDs a plan touches. Date references such as TODAY go through `resolve`;
    without one only literal IDs count, and unresolved references are left out.
    """
    out: List[str] = []
    for c in calls:
        ref = c.arg("record_id")
        if not ref:
            continue
        rid = resolve(ref) if resolve is not None else extract_record_id(ref)
        if rid and rid not in out:
            out.append(rid)
    return out


def confirmation_reply(pending: PendingConfirmation, preview_lines: List[str]) -> str:
    delete = next((c for c in pending.tool_calls if c.name == "record.delete" and c.arg("record_id")), None)
    replace = next((c for c in pending.tool_calls if c.name == "record.replace" and c.arg("record_id")), None)
    if delete is not None:
        what = f"delete record {delete.arg('record_id').upper()}"
    elif replace is not None:
        what = f"rewrite record {replace.arg('record_id').upper()}"
    else:
        what = "run a high-risk action"
    preview = "\n".join(preview_lines) if preview_lines else "- nothing to preview"
    return (
        "Dry-run preview (affected scope):\n"
        f"{preview}\n\n"
        f"This action needs confirmation: {what}.\n"
        f"Before {iso(pending.expires_at)} send: #CONFIRM:{pending.token}\n"
        f"or run: boss assistant confirm {pending.token}"
    )


def invalid_confirmation_reply(err: ConfirmationInvalid) -> str:
    return (
        f"Confirmation token {err.token} is invalid or expired ({err.reason}). "
        "Nothing was executed; please submit the original request again to get a new token."
    )
