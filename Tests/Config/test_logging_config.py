# Tests/Config/test_logging_config.py
# Description: Handler setup and the loguru -> stdlib logging bridge.
#
# Imports
import logging
import logging.handlers
#
# Third-Party Imports
import pytest
from loguru import logger as loguru_logger
#
# Local Imports
from clinic_sync import config
from clinic_sync.Logging_Config import configure_logging
#
#######################################################################################################################
#
# --- Fixtures ---

@pytest.fixture
def restore_root_logger(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DEFAULT_CONFIG_PATH", tmp_path / "cfg" / "config.toml")
    monkeypatch.setattr(config, "_CONFIG_CACHE", None)
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)
    loguru_logger.remove()


# --- Tests ---

def test_console_and_file_handlers_are_installed(restore_root_logger, tmp_path):
    log_file = tmp_path / "logs" / "sync.log"

    root = configure_logging(log_level="warning", log_file=log_file)

    kinds = {type(h) for h in root.handlers}
    assert logging.StreamHandler in kinds
    assert logging.handlers.RotatingFileHandler in kinds
    assert log_file.exists()
    assert logging.getLogger("httpx").level == logging.WARNING


def test_repeated_setup_does_not_stack_handlers(restore_root_logger, tmp_path):
    configure_logging(log_file=tmp_path / "a.log")
    root = configure_logging(log_file=tmp_path / "a.log")
    assert len(root.handlers) == 2


def test_loguru_messages_reach_the_log_file(restore_root_logger, tmp_path):
    log_file = tmp_path / "sync.log"
    root = configure_logging(log_level="INFO", log_file=log_file, console=False)

    loguru_logger.warning("queue depth is high")
    for handler in root.handlers:
        handler.flush()

    assert "queue depth is high" in log_file.read_text(encoding="utf-8")

#
# End of test_logging_config.py
#######################################################################################################################
