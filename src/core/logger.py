import logging
import json
import sys
from datetime import datetime

class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
        }
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record)

class ErrorFileHandler(logging.FileHandler):
    """Appends ERROR records as 'YYYY-mm-dd HH:MM:SS - message' lines."""

    def __init__(self, path: str):
        super().__init__(path, mode="a", encoding="utf-8", delay=True)
        self.setLevel(logging.ERROR)
        self.setFormatter(logging.Formatter("%(asctime)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"))

    def handleError(self, record):
        # If we can't log errors to file, at least print them
        sys.stderr.write(f"CRITICAL: Could not log error: {record.getMessage()}\n")

def setup_logger(name: str = "trade_monitor", level: str = "INFO", error_log_path: str = None):
    logger = logging.getLogger(name)
    logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    # Remove existing handlers to avoid duplicates
    for old in logger.handlers:
        old.close()
    logger.handlers = []
    logger.addHandler(handler)

    if error_log_path:
        logger.addHandler(ErrorFileHandler(error_log_path))

    return logger

logger = setup_logger()
