"""Tests for logging utilities."""

from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from tether import logging_utils


@pytest.fixture(autouse=True)
def _reset_logger():
    logger = logging.getLogger("tether")
    yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


def test_setup_logging_creates_rotating_files(tmp_path: Path):
    log_path = logging_utils.setup_logging(tmp_path, level="INFO", console=False)
    logger = logging.getLogger("tether")

    assert log_path == tmp_path / "logs" / "tether.log"
    assert log_path.exists()

    file_handlers = [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]
    assert sorted(h.baseFilename for h in file_handlers) == sorted(
        [str(log_path), str(tmp_path / "logs" / "tether.jsonl")]
    )


def test_structured_log_lines_are_json(tmp_path: Path):
    logging_utils.setup_logging(tmp_path, level="DEBUG", console=False)
    logging.getLogger("tether.sync.queue").warning("delivery failed: %s", "HTTP 503")
    for handler in logging.getLogger("tether").handlers:
        handler.flush()

    lines = (tmp_path / "logs" / "tether.jsonl").read_text().splitlines()
    record = json.loads(lines[-1])
    assert record["level"] == "WARNING"
    assert record["logger"] == "tether.sync.queue"
    assert record["message"] == "delivery failed: HTTP 503"


def test_setup_logging_is_idempotent(tmp_path: Path):
    logging_utils.setup_logging(tmp_path, level="INFO")
    handler_count = len(logging.getLogger("tether").handlers)

    logging_utils.setup_logging(tmp_path, level="INFO")
    assert len(logging.getLogger("tether").handlers) == handler_count


def test_setup_logging_falls_back_when_permission_denied(tmp_path: Path, monkeypatch):
    home = tmp_path / "home"
    primary_parent = home / "logs"
    original_mkdir = Path.mkdir

    def fake_mkdir(self, *args, **kwargs):
        if str(self).startswith(str(primary_parent)):
            raise PermissionError
        return original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fake_mkdir)
    fallback_root = tmp_path / "fallback"
    monkeypatch.setattr(logging_utils, "FALLBACK_ROOT", fallback_root)

    log_path = logging_utils.setup_logging(home, level="INFO", structured=False, console=False)
    expected = fallback_root / "logs" / "tether.log"

    assert log_path == expected
    assert expected.exists()


def test_json_lines_carry_context_fields(tmp_path: Path):
    logging_utils.setup_logging(tmp_path, level="INFO", console=False)
    logging.getLogger("tether.sync.queue").warning(
        "retrying", extra={"attempt": 3, "delay": 4.0, "status": 503, "unrelated": "x"}
    )
    for handler in logging.getLogger("tether").handlers:
        handler.flush()

    record = json.loads((tmp_path / "logs" / "tether.jsonl").read_text().splitlines()[-1])
    assert (record["attempt"], record["delay"], record["status"]) == (3, 4.0, 503)
    assert "unrelated" not in record
