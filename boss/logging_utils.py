from __future__ import annotations

import datetime as dt
import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from typing import Optional, cast


LOG_FILENAME = "boss.log"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "ts": dt.datetime.fromtimestamp(record.created, tz=dt.timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        extra = record.__dict__.get("extra")
        if isinstance(extra, dict):
            payload.update(cast(dict[str, object], extra))
        return json.dumps(payload, ensure_ascii=False, default=str)


def default_log_file(storage_root: str | Path) -> Path:
    return Path(storage_root).expanduser() / LOG_FILENAME


def setup_logging(
    level: str = "WARNING",
    json_logs: bool = False,
    *,
    storage_root: Optional[str | Path] = None,
    log_file: str = "",
    log_file_level: str = "DEBUG",
    log_file_max_bytes: int = 5_000_000,
    log_file_backup_count: int = 3,
) -> None:
    """
    Configure the root logger for a CLI process.

    Console output stays quiet by default so `--json` output remains parseable on
    stdout. The rotating JSON file keeps the full trace; it defaults to
    `<storage_root>/boss.log` when only the storage directory is given.
    """
    if not log_file and storage_root is not None:
        log_file = str(default_log_file(storage_root))
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(getattr(logging, level.upper(), logging.WARNING))
    fmt = JsonFormatter() if json_logs else logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    handler.setFormatter(fmt)

    handlers: list[logging.Handler] = [handler]

    if log_file:
        try:
            p = Path(str(log_file)).expanduser()
            if str(p.parent) not in ("", "."):
                p.parent.mkdir(parents=True, exist_ok=True)
            fh = RotatingFileHandler(
                p,
                maxBytes=int(log_file_max_bytes),
                backupCount=int(log_file_backup_count),
                encoding="utf-8",
            )
            fh.setLevel(getattr(logging, str(log_file_level).upper(), logging.DEBUG))
            fh.setFormatter(JsonFormatter())
            handlers.append(fh)
        except OSError as e:
            sys.stderr.write(f"boss: WARNING: failed to open log file {log_file!r}: {e}\n")

    root.handlers[:] = handlers


log = logging.getLogger("boss")
