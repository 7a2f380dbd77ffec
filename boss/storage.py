from __future__ import annotations

import datetime as dt
import hashlib
import mimetypes
import shutil
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .errors import InvalidData, NotFound, StorageError
from .extract import date_filename_stamps, sanitize_filename
from .logging_utils import log
from .util import collapse_ws, jdump, jload, new_record_id, toks, utc_ts


TEXT_LIKE_TYPES = ("text", "web", "log")
PREVIEW_CHARS = 220
ASSISTANT_FILE_PREFIX = "assistant-"
TEXT_PREVIEW_CHARS = 2000
FTS_BODY_CHARS = 200_000

_EXT_TYPES = {
    "text": {"txt", "md", "markdown", "json", "csv", "tsv", "yaml", "yml", "toml", "xml", "rst", "py", "swift", "js", "ts", "sh"},
    "web": {"html", "htm", "webloc", "url"},
    "log": {"log"},
    "image": {"png", "jpg", "jpeg", "gif", "heic", "webp", "bmp", "tiff"},
    "pdf": {"pdf"},
    "audio": {"mp3", "m4a", "wav", "aac", "flac"},
    "video": {"mp4", "mov", "mkv", "avi"},
}


def detect_file_type(filename: str) -> str:
    ext = Path(filename).suffix.lower().lstrip(".")
    for kind, exts in _EXT_TYPES.items():
        if ext in exts:
            return kind
    return "file"


def _record_dict(r: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": r["id"],
        "filename": r["filename"],
        "file_path": r["file_path"],
        "file_type": r["file_type"],
        "content_type": r["content_type"],
        "preview": r["preview"],
        "size_bytes": r["size_bytes"],
        "sha256": r["sha256"],
        "created_at": r["created_at"],
        "updated_at": r["updated_at"],
        "is_pinned": bool(r["is_pinned"]),
        "is_archived": bool(r["is_archived"]),
    }


class Storage:
    """
    Record/tag store backed by one SQLite file plus a per-record file tree:
    - WAL mode with a busy timeout so CLI and GUI processes can share the file
    - one in-process lock plus BEGIN IMMEDIATE serializing writes across threads and processes
    - FTS5 over filename + text body for full-text search
    - tasks, task run logs, assistant skills, pending confirmations
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser()
        self.records_dir = self.root / "records"
        try:
            self.records_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create storage directory {self.root}: {e}") from e
        self.db_path = self.root / "boss.sqlite"
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=5.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout=5000;")
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._fts_ok = False
        self._init_schema()

    @property
    def fts_ok(self) -> bool:
        return bool(self._fts_ok)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _write_txn(self) -> Iterator[sqlite3.Connection]:
        """
        One read-modify-write unit. The lock serializes threads on the shared
        connection; BEGIN IMMEDIATE takes the database write lock up front so other
        processes on the same file wait (busy_timeout) instead of interleaving.
        """
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.rollback()
                raise
            self._conn.commit()

    # ---- schema ----

    def _init_schema(self) -> None:
        with self._lock:
            c = self._conn.cursor()
            c.execute(
                """
                CREATE TABLE IF NOT EXISTS records(
                    id TEXT PRIMARY KEY,
                    filename TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    kind TEXT NOT NULL DEFAULT 'file',
                    file_type TEXT NOT NULL,
                    content_type TEXT,
                    preview TEXT NOT NULL DEFAULT '',
                    text_preview TEXT,
                    size_bytes INTEGER NOT NULL DEFAULT 0,
                    sha256 TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    is_pinned INTEGER NOT NULL DEFAULT 0,
                    is_archived INTEGER NOT NULL DEFAULT 0
                );
            """
            )
            c.execute("CREATE INDEX IF NOT EXISTS idx_records_updated ON records(updated_at DESC);")
            c.execute(
                """
                CREATE TABLE IF NOT EXISTS tags(
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    parent_id TEXT,
                    color TEXT,
                    icon TEXT,
                    created_at REAL NOT NULL,
                    sort_order INTEGER NOT NULL DEFAULT 0
                );
            """
            )
            c.execute(
                """
                CREATE TABLE IF NOT EXISTS record_tags(
                    record_id TEXT NOT NULL REFERENCES records(id) ON DELETE CASCADE,
                    tag_id TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
                    PRIMARY KEY(record_id, tag_id)
                );
            """
            )
            c.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks(
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    template_id TEXT,
                    trigger_json TEXT NOT NULL,
                    action_json TEXT NOT NULL,
                    is_enabled INTEGER NOT NULL DEFAULT 1,
                    last_run_at REAL,
                    next_run_at REAL,
                    created_at REAL NOT NULL,
                    output_tag_id TEXT
                );
            """
            )
            c.execute(
                """
                CREATE TABLE IF NOT EXISTS task_run_logs(
                    id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    started_at REAL NOT NULL,
                    finished_at REAL,
                    status TEXT NOT NULL,             -- running|success|failed
                    output TEXT NOT NULL DEFAULT '',
                    error TEXT
                );
            """
            )
            c.execute(
                """
                CREATE TABLE IF NOT EXISTS assistant_skills(
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    trigger_hint TEXT NOT NULL DEFAULT '',
                    action_json TEXT NOT NULL,
                    is_enabled INTEGER NOT NULL DEFAULT 1,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                );
            """
            )
            c.execute(
                """
                CREATE TABLE IF NOT EXISTS assistant_pending_confirms(
                    token TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    expires_at REAL NOT NULL
                );
            """
            )
            self._fts_ok = self._try_init_fts(c)
            self._conn.commit()

    def _try_init_fts(self, c: sqlite3.Cursor) -> bool:
        try:
            c.execute("CREATE VIRTUAL TABLE IF NOT EXISTS records_fts USING fts5(id UNINDEXED, filename, body);")
            return True
        except sqlite3.OperationalError as e:
            log.warning("FTS5 unavailable; record search falls back to LIKE: %s", e, exc_info=True)
            return False

    def _fts_upsert(self, record_id: str, filename: str, body: str) -> None:
        if not self._fts_ok:
            return
        self._conn.execute("DELETE FROM records_fts WHERE id=?", (record_id,))
        self._conn.execute(
            "INSERT INTO records_fts(id, filename, body) VALUES (?, ?, ?)",
            (record_id, filename, body[:FTS_BODY_CHARS]),
        )

    # ---- files ----

    def _abs(self, rel_path: str) -> Path:
        return self.root / rel_path

    def _write_file(self, record_id: str, filename: str, data: bytes) -> str:
        rel = f"records/{record_id}/{filename}"
        p = self._abs(rel)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)
        return rel

    @staticmethod
    def _text_fields(text: str) -> Tuple[str, str]:
        return collapse_ws(text)[:PREVIEW_CHARS], text[:TEXT_PREVIEW_CHARS]

    # ---- records ----

    def create_text_record(self, filename: str, text: str, *, tag_ids: Sequence[str] = ()) -> str:
        with self._write_txn():
            return self._insert_text_record(filename, text, tag_ids)

    def _insert_text_record(self, filename: str, text: str, tag_ids: Sequence[str]) -> str:
        # caller holds _write_txn
        filename = sanitize_filename(filename).strip() or "note.txt"
        rid = new_record_id()
        data = text.encode("utf-8")
        now = utc_ts()
        file_type = detect_file_type(filename)
        if file_type not in TEXT_LIKE_TYPES:
            file_type = "text"
        preview, text_preview = self._text_fields(text)
        rel = self._write_file(rid, filename, data)
        self._conn.execute(
            "INSERT INTO records(id, filename, file_path, kind, file_type, content_type, preview, text_preview, size_bytes, sha256, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                rid,
                filename,
                rel,
                "file",
                file_type,
                "text/plain; charset=utf-8",
                preview,
                text_preview,
                len(data),
                hashlib.sha256(data).hexdigest(),
                now,
                now,
            ),
        )
        for tid in tag_ids:
            self._conn.execute("INSERT OR IGNORE INTO record_tags(record_id, tag_id) VALUES (?, ?)", (rid, tid))
        self._fts_upsert(rid, filename, text)
        log.debug("record created", extra={"extra": {"record_id": rid, "filename": filename, "bytes": len(data)}})
        return rid

    def import_file(self, path: str | Path, *, tag_ids: Sequence[str] = ()) -> str:
        src = Path(path).expanduser()
        if not src.is_file():
            raise NotFound(f"File not found: {src}")
        data = src.read_bytes()
        filename = sanitize_filename(src.name)
        file_type = detect_file_type(filename)
        text = data.decode("utf-8", errors="replace") if file_type in TEXT_LIKE_TYPES else ""
        preview, text_preview = self._text_fields(text) if text else (filename, "")
        rid = new_record_id()
        now = utc_ts()
        with self._lock:
            rel = self._write_file(rid, filename, data)
            self._conn.execute(
                "INSERT INTO records(id, filename, file_path, kind, file_type, content_type, preview, text_preview, size_bytes, sha256, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    rid,
                    filename,
                    rel,
                    "file",
                    file_type,
                    mimetypes.guess_type(filename)[0] or "application/octet-stream",
                    preview,
                    text_preview,
                    len(data),
                    hashlib.sha256(data).hexdigest(),
                    now,
                    now,
                ),
            )
            for tid in tag_ids:
                self._conn.execute("INSERT OR IGNORE INTO record_tags(record_id, tag_id) VALUES (?, ?)", (rid, tid))
            self._fts_upsert(rid, filename, text)
            self._conn.commit()
        return rid

    def get_record(self, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._fetch_record(record_id)

    def _fetch_record(self, record_id: str) -> Optional[Dict[str, Any]]:
        row = self._conn.execute("SELECT * FROM records WHERE id=?", (record_id,)).fetchone()
        return _record_dict(row) if row else None

    def list_records(
        self, *, include_archived: bool = False, only_archived: bool = False, limit: int = 50
    ) -> List[Dict[str, Any]]:
        where = "WHERE is_archived=1" if only_archived else ("" if include_archived else "WHERE is_archived=0")
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM records {where} ORDER BY updated_at DESC LIMIT ?", (int(limit),)
            ).fetchall()
        return [_record_dict(r) for r in rows]

    def records_with_tag(self, tag_id: str, *, limit: int = 200) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT r.* FROM records r JOIN record_tags rt ON rt.record_id = r.id "
                "WHERE rt.tag_id=? AND r.is_archived=0 ORDER BY r.updated_at DESC LIMIT ?",
                (tag_id, int(limit)),
            ).fetchall()
        return [_record_dict(r) for r in rows]

    def find_tagged_record_by_filename(self, tag_id: str, filename: str) -> Optional[str]:
        with self._lock:
            return self._find_tagged(tag_id, filename)

    def _find_tagged(self, tag_id: str, filename: str) -> Optional[str]:
        row = self._conn.execute(
            "SELECT r.id FROM records r JOIN record_tags rt ON rt.record_id = r.id "
            "WHERE rt.tag_id=? AND lower(r.filename)=lower(?) ORDER BY r.updated_at DESC LIMIT 1",
            (tag_id, filename),
        ).fetchone()
        return str(row["id"]) if row else None

    def find_text_record_for_date(self, day: dt.date) -> Optional[str]:
        """
        Newest text-like record whose filename carries `YYYY-MM-DD` or `YYYYMMDD`.
        The assistant's own daily memory and audit files never match.
        """
        dashed, compact = date_filename_stamps(day)
        with self._lock:
            row = self._conn.execute(
                "SELECT id FROM records WHERE file_type IN ('text','web','log') AND is_archived=0 "
                "AND (filename LIKE ? OR filename LIKE ?) AND lower(filename) NOT LIKE ? ORDER BY updated_at DESC LIMIT 1",
                (f"%{dashed}%", f"%{compact}%", f"{ASSISTANT_FILE_PREFIX}%"),
            ).fetchone()
        return str(row["id"]) if row else None

    def search_records(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        ts = toks(query)[:16]
        if not ts:
            return []
        rows: List[sqlite3.Row] = []
        if self._fts_ok:
            # Quote each token so user text never reaches the MATCH grammar.
            q = " ".join('"' + t.replace('"', '""') + '"*' for t in ts)
            with self._lock:
                rows = self._conn.execute(
                    "SELECT r.id, r.filename, r.preview, r.updated_at FROM records_fts f "
                    "JOIN records r ON r.id = f.id WHERE records_fts MATCH ? AND r.is_archived=0 "
                    "ORDER BY f.rank LIMIT ?",
                    (q, int(limit)),
                ).fetchall()
        if not rows:
            rows = self._like_search(ts, limit)
        return [
            {"id": r["id"], "filename": r["filename"], "preview": r["preview"], "updated_at": r["updated_at"]}
            for r in rows
        ]

    def _like_search(self, ts: Sequence[str], limit: int) -> List[sqlite3.Row]:
        # FTS tokenizes CJK runs as whole words; substring matching catches the rest.
        clauses = " AND ".join(["lower(filename || ' ' || coalesce(text_preview, '')) LIKE ?"] * len(ts))
        params: List[Any] = [f"%{t}%" for t in ts]
        with self._lock:
            return self._conn.execute(
                f"SELECT id, filename, preview, updated_at FROM records WHERE is_archived=0 AND {clauses} "
                "ORDER BY updated_at DESC LIMIT ?",
                (*params, int(limit)),
            ).fetchall()

    @staticmethod
    def _check_text_record(rec: Optional[Dict[str, Any]], record_id: str) -> Dict[str, Any]:
        if rec is None:
            raise NotFound(f"Record not found: {record_id}")
        if rec["file_type"] not in TEXT_LIKE_TYPES:
            raise InvalidData(f"Record is not text-like: {record_id}")
        return rec

    def _read_body(self, rec: Dict[str, Any], max_bytes: Optional[int] = None) -> str:
        p = self._abs(rec["file_path"])
        if not p.exists():
            return ""
        with p.open("rb") as f:
            data = f.read(max_bytes) if max_bytes else f.read()
        return data.decode("utf-8", errors="replace")

    def _reindex_text(self, rec: Dict[str, Any], text: str) -> None:
        data = text.encode("utf-8")
        preview, text_preview = self._text_fields(text)
        self._conn.execute(
            "UPDATE records SET preview=?, text_preview=?, size_bytes=?, sha256=?, updated_at=? WHERE id=?",
            (preview, text_preview, len(data), hashlib.sha256(data).hexdigest(), utc_ts(), rec["id"]),
        )
        self._fts_upsert(rec["id"], rec["filename"], text)

    def _append_body(self, rec: Dict[str, Any], text: str) -> None:
        # caller holds _write_txn; existing bytes are never rewritten
        current = self._read_body(rec)
        chunk = ("\n\n---\n\n" if current.strip() else "") + text
        p = self._abs(rec["file_path"])
        p.parent.mkdir(parents=True, exist_ok=True)
        with p.open("ab") as f:
            f.write(chunk.encode("utf-8"))
        self._reindex_text(rec, current + chunk)

    def load_text(self, record_id: str, *, max_bytes: Optional[int] = None) -> str:
        rec = self._check_text_record(self.get_record(record_id), record_id)
        return self._read_body(rec, max_bytes)

    def replace_text(self, record_id: str, text: str) -> str:
        with self._write_txn():
            rec = self._check_text_record(self._fetch_record(record_id), record_id)
            self._abs(rec["file_path"]).write_bytes(text.encode("utf-8"))
            self._reindex_text(rec, text)
        return f"Replaced content of record: {record_id}"

    def append_text(self, record_id: str, text: str) -> str:
        with self._write_txn():
            rec = self._check_text_record(self._fetch_record(record_id), record_id)
            self._append_body(rec, text)
        return f"Appended text to record: {record_id}"

    def append_to_tagged_record(self, tag_id: str, filename: str, text: str) -> Tuple[str, bool]:
        """
        Append `text` to the record tagged `tag_id` named `filename`, creating it when
        missing. Lookup and write share one transaction, so concurrent first writers
        still end up with a single record. Returns `(record_id, created)`.
        """
        with self._write_txn():
            existing = self._find_tagged(tag_id, filename)
            if existing is None:
                return self._insert_text_record(filename, text, [tag_id]), True
            rec = self._fetch_record(existing)
            if rec is None or rec["file_type"] not in TEXT_LIKE_TYPES:
                raise StorageError(f"Record {existing} ({filename}) is not text-like; cannot append")
            self._append_body(rec, text)
            return existing, False

    def set_archived(self, record_id: str, archived: bool) -> None:
        with self._lock:
            cur = self._conn.execute(
                "UPDATE records SET is_archived=?, updated_at=? WHERE id=?", (int(archived), utc_ts(), record_id)
            )
            self._conn.commit()
        if cur.rowcount == 0:
            raise NotFound(f"Record not found: {record_id}")

    def delete_record(self, record_id: str) -> None:
        rec = self.get_record(record_id)
        if rec is None:
            raise NotFound(f"Record not found: {record_id}")
        with self._lock:
            self._conn.execute("DELETE FROM record_tags WHERE record_id=?", (record_id,))
            self._conn.execute("DELETE FROM records WHERE id=?", (record_id,))
            if self._fts_ok:
                self._conn.execute("DELETE FROM records_fts WHERE id=?", (record_id,))
            self._conn.commit()
            shutil.rmtree(self.records_dir / record_id, ignore_errors=True)
        log.info("record deleted", extra={"extra": {"record_id": record_id}})

    # ---- tags ----

    def ensure_tag(
        self, name: str, *, aliases: Iterable[str] = (), color: Optional[str] = None, icon: Optional[str] = None
    ) -> str:
        names = {n.strip().lower() for n in [name, *aliases] if n.strip()}
        with self._write_txn() as conn:
            for r in conn.execute("SELECT id, name FROM tags").fetchall():
                if str(r["name"]).strip().lower() in names:
                    return str(r["id"])
            tid = new_record_id()
            conn.execute(
                "INSERT INTO tags(id, name, parent_id, color, icon, created_at, sort_order) VALUES (?, ?, NULL, ?, ?, ?, 0)",
                (tid, name, color, icon, utc_ts()),
            )
        log.info("tag created", extra={"extra": {"tag_id": tid, "name": name}})
        return tid

    def get_tag(self, tag_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM tags WHERE id=?", (tag_id,)).fetchone()
        return dict(row) if row else None

    def list_tags(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM tags ORDER BY sort_order, name").fetchall()
        return [dict(r) for r in rows]

    def tag_record(self, record_id: str, tag_id: str) -> None:
        with self._lock:
            self._conn.execute("INSERT OR IGNORE INTO record_tags(record_id, tag_id) VALUES (?, ?)", (record_id, tag_id))
            self._conn.commit()

    def record_tag_ids(self, record_id: str) -> List[str]:
        with self._lock:
            rows = self._conn.execute("SELECT tag_id FROM record_tags WHERE record_id=?", (record_id,)).fetchall()
        return [str(r["tag_id"]) for r in rows]

    # ---- tasks ----

    def add_task(
        self,
        name: str,
        action: Dict[str, Any],
        *,
        description: str = "",
        trigger: Optional[Dict[str, Any]] = None,
        enabled: bool = True,
    ) -> str:
        tid = new_record_id()
        with self._lock:
            self._conn.execute(
                "INSERT INTO tasks(id, name, description, trigger_json, action_json, is_enabled, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (tid, name, description, jdump(trigger or {"type": "manual"}), jdump(action), int(enabled), utc_ts()),
            )
            self._conn.commit()
        return tid

    @staticmethod
    def _task_dict(r: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": r["id"],
            "name": r["name"],
            "description": r["description"],
            "trigger": jload(r["trigger_json"]) or {},
            "action": jload(r["action_json"]) or {},
            "action_json": r["action_json"],
            "is_enabled": bool(r["is_enabled"]),
            "last_run_at": r["last_run_at"],
            "next_run_at": r["next_run_at"],
            "created_at": r["created_at"],
        }

    def list_tasks(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM tasks ORDER BY created_at DESC").fetchall()
        return [self._task_dict(r) for r in rows]

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM tasks WHERE id=?", (task_id,)).fetchone()
        return self._task_dict(row) if row else None

    def start_task_run(self, task_id: str) -> str:
        log_id = new_record_id()
        with self._lock:
            self._conn.execute(
                "INSERT INTO task_run_logs(id, task_id, started_at, finished_at, status, output, error) "
                "VALUES (?, ?, ?, NULL, 'running', '', NULL)",
                (log_id, task_id, utc_ts()),
            )
            self._conn.commit()
        return log_id

    def finish_task_run(self, log_id: str, task_id: str, *, status: str, output: str = "", error: Optional[str] = None) -> None:
        now = utc_ts()
        with self._lock:
            self._conn.execute(
                "UPDATE task_run_logs SET finished_at=?, status=?, output=?, error=? WHERE id=?",
                (now, status, output, error, log_id),
            )
            self._conn.execute("UPDATE tasks SET last_run_at=? WHERE id=?", (now, task_id))
            self._conn.commit()

    def task_run_logs(self, task_id: str, limit: int = 30) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM task_run_logs WHERE task_id=? ORDER BY started_at DESC LIMIT ?",
                (task_id, int(limit)),
            ).fetchall()
        return [dict(r) for r in rows]

    # ---- skills ----

    def add_skill(
        self,
        name: str,
        action: Dict[str, Any],
        *,
        description: str = "",
        trigger_hint: str = "",
        enabled: bool = True,
    ) -> str:
        sid = new_record_id()
        now = utc_ts()
        with self._lock:
            self._conn.execute(
                "INSERT INTO assistant_skills(id, name, description, trigger_hint, action_json, is_enabled, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (sid, name, description, trigger_hint, jdump(action), int(enabled), now, now),
            )
            self._conn.commit()
        return sid

    @staticmethod
    def _skill_dict(r: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": r["id"],
            "name": r["name"],
            "description": r["description"],
            "trigger_hint": r["trigger_hint"],
            "action": jload(r["action_json"]) or {},
            "action_json": r["action_json"],
            "is_enabled": bool(r["is_enabled"]),
            "created_at": r["created_at"],
            "updated_at": r["updated_at"],
        }

    def list_skills(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM assistant_skills ORDER BY name COLLATE NOCASE").fetchall()
        return [self._skill_dict(r) for r in rows]

    def get_skill(self, skill_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM assistant_skills WHERE id=?", (skill_id,)).fetchone()
        return self._skill_dict(row) if row else None

    def set_skill_enabled(self, skill_id: str, enabled: bool) -> None:
        with self._lock:
            cur = self._conn.execute(
                "UPDATE assistant_skills SET is_enabled=?, updated_at=? WHERE id=?", (int(enabled), utc_ts(), skill_id)
            )
            self._conn.commit()
        if cur.rowcount == 0:
            raise NotFound(f"Skill not found: {skill_id}")

    # ---- pending confirmations ----

    def put_pending(self, token: str, payload: str, *, created_at: float, expires_at: float) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO assistant_pending_confirms(token, payload, created_at, expires_at) VALUES (?, ?, ?, ?)",
                (token, payload, created_at, expires_at),
            )
            self._conn.commit()

    def take_pending(self, token: str) -> Optional[Tuple[str, float]]:
        """
        Atomically remove and return `(payload, expires_at)` for a token.

        The DELETE rowcount decides ownership: when another process consumed the
        row between SELECT and DELETE, this caller gets None.
        """
        with self._write_txn() as conn:
            row = conn.execute(
                "SELECT payload, expires_at FROM assistant_pending_confirms WHERE token=?", (token,)
            ).fetchone()
            if row is None:
                return None
            cur = conn.execute("DELETE FROM assistant_pending_confirms WHERE token=?", (token,))
        if cur.rowcount != 1:
            return None
        return str(row["payload"]), float(row["expires_at"])

    def sweep_pending(self, now: float) -> int:
        with self._lock:
            cur = self._conn.execute("DELETE FROM assistant_pending_confirms WHERE expires_at <= ?", (now,))
            self._conn.commit()
        return max(int(cur.rowcount or 0), 0)

    def count_pending(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(1) AS n FROM assistant_pending_confirms").fetchone()
        return int(row["n"]) if row else 0
