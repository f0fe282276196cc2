# tests/test_logging_setup.py
import logging
import logging.handlers

import pytest
import structlog
from rich.logging import RichHandler

import utils.logging as logging_utils


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def test_setup_logging_adds_file_and_stream_handlers(tmp_path, restore_root_logger):
    log_path = tmp_path / "logs" / "inkwell.log"
    logging_utils.setup_logging(log_file=str(log_path), enable_rich=False)

    kinds = {type(h) for h in restore_root_logger.handlers}
    assert logging.handlers.RotatingFileHandler in kinds
    assert logging.StreamHandler in kinds
    assert log_path.exists()
    assert logging.getLogger("httpx").level == logging.WARNING


def test_setup_logging_uses_rich_handler(restore_root_logger):
    logging_utils.setup_logging(log_file="", enable_rich=True)

    assert [type(h) for h in restore_root_logger.handlers] == [RichHandler]


def test_relative_log_file_lives_under_output_dir(monkeypatch, tmp_path):
    monkeypatch.setattr(logging_utils.settings, "BASE_OUTPUT_DIR", str(tmp_path))
    assert logging_utils._resolve_log_path("run.log") == str(tmp_path / "run.log")
    assert logging_utils._resolve_log_path("/var/log/run.log") == "/var/log/run.log"
