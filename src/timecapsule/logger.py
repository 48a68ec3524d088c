"""
Logging setup for TimeCapsule.

One "timecapsule" logger is configured on first import; modules import
`logger` from here and log through it. Message bodies and attachment
bytes are never logged.
"""

import logging
import sys
from pathlib import Path

LOGGER_NAME = "timecapsule"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class LoggerConfig:
    """Configuration for the timecapsule logger singleton"""

    def __init__(self) -> None:
        self.logger = logging.getLogger(LOGGER_NAME)
        self._file_handler: logging.FileHandler | None = None
        if not self.logger.handlers:
            self._setup_logging()

    def _setup_logging(self) -> None:
        formatter = logging.Formatter(LOG_FORMAT)

        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)

        self.logger.addHandler(console)
        self.logger.setLevel(logging.WARNING)

    def configure(self, level: str = "INFO", log_file: str | Path | None = None) -> logging.Logger:
        """Apply a level and, optionally, add a file handler."""
        self.logger.setLevel(level)

        if log_file is not None and self._file_handler is None:
            file_handler = logging.FileHandler(Path(log_file))
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            self.logger.addHandler(file_handler)
            self._file_handler = file_handler

        return self.logger

    def get_logger(self) -> logging.Logger:
        return self.logger


logger_config = LoggerConfig()
logger = logger_config.get_logger()
