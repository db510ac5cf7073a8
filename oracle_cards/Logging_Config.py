# Logging_Config.py
# Description: Configuration for logging
#
# Imports
import logging
import logging.handlers
import sys
from typing import Any, Dict, Optional
#
# 3rd-Party Imports
from loguru import logger as loguru_logger
#
# Local Imports
from oracle_cards.config import get_log_file_path, get_setting
#
########################################################################################################################
#
# Functions:

LOG_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)s:%(lineno)d - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LOGURU_LEVEL_MAPPING = {
    "TRACE": logging.DEBUG, "DEBUG": logging.DEBUG, "INFO": logging.INFO,
    "SUCCESS": logging.INFO, "WARNING": logging.WARNING, "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def sink_to_standard_logging(message):
    """Loguru sink forwarding each record to the stdlib logger of the same name."""
    record = message.record
    std_level = _LOGURU_LEVEL_MAPPING.get(record["level"].name, logging.INFO)
    std_logger = logging.getLogger(record["name"])
    if record["exception"]:
        std_logger.log(std_level, record["message"], exc_info=record["exception"])
    else:
        std_logger.log(std_level, record["message"])


def configure_logging(config: Dict[str, Any], log_to_file: bool = True,
                      console_stream=None) -> Optional[logging.Handler]:
    """
    Sets up application logging. Loguru output is routed into standard logging,
    so both end up in the same handlers: a console handler and, unless disabled,
    a rotating log file in the data directory.

    Returns the file handler, or None when file logging is disabled or failed.
    """
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    # --- Loguru -> standard logging ---
    loguru_logger.remove()
    loguru_logger.add(sink_to_standard_logging, format="{message}", level="TRACE")

    # --- Root logger ---
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        try:
            handler.close()
        except OSError:
            pass

    log_level_str = str(get_setting("general", "log_level", "INFO", config=config)).upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler(console_stream or sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    root_logger.addHandler(console_handler)

    file_handler = None
    if log_to_file:
        try:
            log_file_path = get_log_file_path(config)
            max_bytes = int(get_setting("logging", "log_max_bytes", 10485760, config=config))
            backup_count = int(get_setting("logging", "log_backup_count", 5, config=config))
            file_log_level_str = str(get_setting("logging", "file_log_level", "INFO", config=config)).upper()
            file_log_level = getattr(logging, file_log_level_str, logging.INFO)

            file_handler = logging.handlers.RotatingFileHandler(
                log_file_path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
            )
            file_handler.setLevel(file_log_level)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
            root_logger.addHandler(file_handler)
            # Root must let through whatever the most verbose handler wants.
            if root_logger.level > file_log_level:
                root_logger.setLevel(file_log_level)
            logging.info(f"Standard Logging: Added RotatingFileHandler (File: '{log_file_path}', "
                         f"Level: {logging.getLevelName(file_log_level)}).")
        except (OSError, ValueError) as e:
            logging.warning(f"!!! ERROR setting up file logging: {e}")
            file_handler = None

    logging.info(f"Logging setup complete. Root level: {logging.getLevelName(root_logger.level)}")
    return file_handler

#
# End of Logging_Config.py
########################################################################################################################
