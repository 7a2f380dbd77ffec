from __future__ import annotations

from typing import List

from .ir import ContextItem
from .storage import TEXT_LIKE_TYPES, Storage
from .util import toks


SNIPPET_MAX_BYTES = 120_000
CANDIDATE_LIMIT = 200
REQUEST_TOKEN_LIMIT = 12


def request_tokens(request: str) -> List[str]:
    ts = toks(request)[:REQUEST_TOKEN_LIMIT]
    if ts:
        return ts
    whole = (request or "").strip().lower()
    return [whole] if whole else []


def lexical_score(tokens: List[str], haystack: str, *, token_cap: int = 8) -> int:
    """Sum of min(len(token), token_cap) over request tokens present in haystack's tokens."""
    words = set(toks(haystack))
    return sum(min(len(t), token_cap) for t in tokens if t in words)


class ContextLoader:
    """Tag-scoped long-term memory fetch with lexical ranking. Read-only."""

    def __init__(self, storage: Storage, *, token_cap: int = 8):
        self.storage = storage
        self.token_cap = int(token_cap)

    def _snippet(self, rec: dict) -> str:
        if rec["file_type"] in TEXT_LIKE_TYPES:
            return self.storage.load_text(rec["id"], max_bytes=SNIPPET_MAX_BYTES)
        return rec["preview"] or ""

    def load(self, tag_id: str, request: str, limit: int = 20) -> List[ContextItem]:
        tokens = request_tokens(request)
        items: List[ContextItem] = []
        for rec in self.storage.records_with_tag(tag_id, limit=CANDIDATE_LIMIT):
            snippet = self._snippet(rec)
            hay = f"{rec['filename']} {rec['preview']} {snippet}"
            items.append(
                ContextItem(
                    id=rec["id"],
                    filename=rec["filename"],
                    snippet=snippet,
                    updated_at=float(rec["updated_at"]),
                    score=lexical_score(tokens, hay, token_cap=self.token_cap),
                )
            )
        items.sort(key=lambda it: (-it.score, -it.updated_at))
        return items[: max(0, int(limit))]
