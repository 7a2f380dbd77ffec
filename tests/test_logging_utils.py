from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterator

import pytest

from boss.logging_utils import LOG_FILENAME, default_log_file, log, setup_logging


@pytest.fixture(autouse=True)
def _restore_root_handlers() -> Iterator[None]:
    root = logging.getLogger()
    saved = root.handlers[:]
    level = root.level
    yield
    for h in root.handlers:
        if h not in saved:
            h.close()
    root.handlers[:] = saved
    root.setLevel(level)


def test_file_log_defaults_to_storage_root(tmp_path: Path) -> None:
    setup_logging("ERROR", storage_root=tmp_path / "store")

    log.info("request start", extra={"extra": {"request_id": "REQ-1", "source": "cli"}})
    for h in logging.getLogger().handlers:
        h.flush()

    path = default_log_file(tmp_path / "store")
    assert path == tmp_path / "store" / LOG_FILENAME
    line = json.loads(path.read_text(encoding="utf-8").splitlines()[-1])
    assert line["msg"] == "request start"
    assert line["level"] == "INFO"
    assert line["name"] == "boss"
    assert (line["request_id"], line["source"]) == ("REQ-1", "cli")


def test_explicit_log_file_wins(tmp_path: Path) -> None:
    target = tmp_path / "logs" / "custom.log"
    setup_logging(storage_root=tmp_path / "store", log_file=str(target))

    log.warning("hello")
    for h in logging.getLogger().handlers:
        h.flush()

    assert "hello" in target.read_text(encoding="utf-8")
    assert not default_log_file(tmp_path / "store").exists()


def test_unopenable_log_file_keeps_console_logging(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")

    setup_logging(log_file=str(blocker / "boss.log"))

    assert "failed to open log file" in capsys.readouterr().err
    assert len(logging.getLogger().handlers) == 1
