# tests/utils/test_logging_config.py
import json
import logging

import pytest

from chessmaster.utils.logging_config import NOISY_LOGGERS, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_file_log_receives_json_events(tmp_path, restore_root_logger):
    # Arrange
    log_file = tmp_path / "logs" / "server.jsonl"
    setup_logging("INFO", log_to_console=False, log_file=log_file)

    # Act
    logging.getLogger("chessmaster.lobby").info("Lobby created.")
    for handler in logging.getLogger().handlers:
        handler.flush()

    # Assert
    event = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
    assert event["event"] == "Lobby created."
    assert event["level"] == "info"
    assert event["logger"] == "chessmaster.lobby"


def test_noisy_third_party_loggers_are_capped(restore_root_logger):
    setup_logging("DEBUG", log_to_console=True)

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("uvicorn.access").level == NOISY_LOGGERS["uvicorn.access"]
