import json
import logging
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "medshare"


class JsonFormatter(logging.Formatter):
    """
    Formatter that renders each record as one JSON object per line.

    fmt_dict maps output keys to LogRecord attribute names.
    """

    def __init__(self, fmt_dict: Optional[dict] = None, time_format: str = "%Y-%m-%dT%H:%M:%S"):
        super().__init__(datefmt=time_format)
        self.fmt_dict = fmt_dict if fmt_dict is not None else {"message": "message"}

    def usesTime(self) -> bool:
        return "asctime" in self.fmt_dict.values()

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        if self.usesTime():
            record.asctime = self.formatTime(record, self.datefmt)

        message_dict = {key: record.__dict__.get(attr) for key, attr in self.fmt_dict.items()}

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            message_dict["exc_info"] = record.exc_text

        return json.dumps(message_dict, default=str)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    Attach JSON console (and optionally file) handlers to the medshare loggers.

    Modules obtain their logger with ``get_logger(__name__)``, which nests it
    under ``medshare``.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()
    logger.propagate = False

    formatter = JsonFormatter({
        "timestamp": "asctime",
        "level": "levelname",
        "logger": "name",
        "function": "funcName",
        "line": "lineno",
        "message": "message",
    })

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
