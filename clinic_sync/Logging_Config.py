# Logging_Config.py
# Description: Configuration for logging
#
# Imports
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional
#
# 3rd-Party Imports
from loguru import logger as loguru_logger
#
# Local Imports
from clinic_sync.config import get_log_file_path, get_setting
#
########################################################################################################################
#
# Functions:

LOG_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)s:%(lineno)d - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LOGURU_LEVEL_MAPPING = {
    "TRACE": logging.DEBUG, "DEBUG": logging.DEBUG, "INFO": logging.INFO,
    "SUCCESS": logging.INFO, "METRIC": logging.INFO, "WARNING": logging.WARNING,
    "ERROR": logging.ERROR, "CRITICAL": logging.CRITICAL,
}


def _sink_to_standard_logging(message):
    record = message.record
    std_level = _LOGURU_LEVEL_MAPPING.get(record["level"].name, logging.INFO)
    std_logger = logging.getLogger(record["name"])
    if record["exception"]:
        std_logger.log(std_level, record["message"], exc_info=record["exception"])
    else:
        std_logger.log(std_level, record["message"])


def configure_logging(log_level: Optional[str] = None, log_file: Optional[Path] = None, console: bool = True) -> logging.Logger:
    """
    Sets up stdlib handlers and forwards loguru (config and metric messages) into them.

    Library modules log through `logging.getLogger(__name__)`; this is the one place
    handlers get attached. Safe to call more than once.
    """
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    loguru_logger.remove()
    loguru_logger.add(_sink_to_standard_logging, format="{message}", level="TRACE")

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    level_str = (log_level or get_setting("logging", "log_level", "INFO")).upper()
    level = getattr(logging, level_str, logging.INFO)
    root_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    try:
        log_file_path = Path(log_file) if log_file is not None else get_log_file_path()
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
        max_bytes = int(get_setting("logging", "log_max_bytes", 10485760))
        backup_count = int(get_setting("logging", "log_backup_count", 5))
        file_log_level_str = str(get_setting("logging", "file_log_level", "INFO")).upper()
        file_log_level = getattr(logging, file_log_level_str, logging.INFO)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file_path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
        )
        file_handler.setLevel(file_log_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        if file_log_level < root_logger.level:
            root_logger.setLevel(file_log_level)
        logging.info(f"Standard Logging: Added RotatingFileHandler (File: '{log_file_path}', Level: {logging.getLevelName(file_log_level)}).")
    except OSError as e:
        logging.warning(f"!!! ERROR setting up file logging: {e}", exc_info=True)

    logging.info(f"Logging setup complete. Root level: {logging.getLevelName(root_logger.level)}")
    return root_logger

#
# End of Logging_Config.py
########################################################################################################################
