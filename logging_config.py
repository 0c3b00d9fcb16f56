import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that are too chatty below WARNING
NOISY_LOGGERS = ("uvicorn.access", "websockets", "asyncio")


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """Configure the root logger. Safe to call more than once."""
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    # Replace handlers we installed on a previous call
    for handler in list(root.handlers):
        if getattr(handler, "_signal_relay", False):
            root.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    stream_handler._signal_relay = True
    root.addHandler(stream_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler._signal_relay = True
        root.addHandler(file_handler)

    if level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
