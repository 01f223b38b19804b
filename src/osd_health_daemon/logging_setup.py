import os
import json
import logging
from logging.handlers import RotatingFileHandler

class StructuredFormatter(logging.Formatter):
    """
    Renders structured events as a single JSON line, everything else with the
    regular format string.
    """
    def format(self, record):
        if is_structured(record):
            return json.dumps(record.json_fields, separators=(',', ':'), default=str)
        return super().format(record)

def is_structured(record) -> bool:
    return (hasattr(record, 'json_fields') and
            isinstance(record.json_fields, dict) and
            record.json_fields.get('structured_event', False))

class StructuredFilter(logging.Filter):
    """
    Filter that only allows structured log events to pass through.
    """
    def filter(self, record):
        return is_structured(record)

class NonStructuredFilter(logging.Filter):
    """
    Filter that only allows non-structured log events to pass through.
    """
    def filter(self, record):
        return not is_structured(record)

def setup_logger(name: str, level: str, log_file: str | None, max_bytes: int, backup_count: int,
                enable_structured_console: bool = False, enable_structured_file: bool = False,
                structured_log_file: str | None = None):
    """
    Configure the daemon logger.

    Ordinary records go to the console and, when `log_file` is set, to a
    rotating file. Structured events go to the console as JSON only when
    `enable_structured_console` is set (replacing the human-readable console
    output), and to a rotating JSON-lines file when `enable_structured_file` is set.

    Calling this again replaces the handlers installed by the previous call.

    Args:
        enable_structured_console (bool): Output JSON to console for structured events
        enable_structured_file (bool): Output JSON lines to a separate structured log file
        structured_log_file (str): Path to structured JSON log file
    """
    logger_name = name or os.getenv("LOGGER_NAME", "OSD_HEALTH_MONITOR")
    logger = logging.getLogger(logger_name)
    log_level = getattr(logging, level, logging.INFO)
    logger.setLevel(log_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    regular_formatter = logging.Formatter('%(asctime)s %(levelname)s [%(name)s] %(message)s')
    structured_formatter = StructuredFormatter()

    ch = logging.StreamHandler()
    ch.setLevel(log_level)
    if enable_structured_console:
        ch.setFormatter(structured_formatter)
        ch.addFilter(StructuredFilter())
    else:
        ch.setFormatter(regular_formatter)
        ch.addFilter(NonStructuredFilter())
    logger.addHandler(ch)
    if enable_structured_console:
        logger.info("Console structured logging enabled (JSON output for structured events only)")

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            fh = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
            fh.setLevel(log_level)
            fh.setFormatter(regular_formatter)
            fh.addFilter(NonStructuredFilter())
            logger.addHandler(fh)
            logger.info(f"Regular file logging enabled: {log_file}")
        except Exception as e:
            logger.warning(f"Could not setup regular file logging at {log_file}: {e}")

    if enable_structured_file and structured_log_file:
        try:
            structured_dir = os.path.dirname(structured_log_file)
            if structured_dir:
                os.makedirs(structured_dir, exist_ok=True)
            sfh = RotatingFileHandler(structured_log_file, maxBytes=max_bytes, backupCount=backup_count)
            sfh.setLevel(log_level)
            sfh.setFormatter(structured_formatter)
            sfh.addFilter(StructuredFilter())
            logger.addHandler(sfh)
            logger.info(f"Structured JSON file logging enabled: {structured_log_file}")
        except Exception as e:
            logger.warning(f"Could not setup structured file logging at {structured_log_file}: {e}")

    return logger
