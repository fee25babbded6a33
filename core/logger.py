import logging
from typing import Callable

from config.settings import DEBUG, LOG_FILE

logger = logging.getLogger("vm-provisioner")

if not logger.handlers:
    _handler = logging.FileHandler(str(LOG_FILE), encoding="utf-8")
    _handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    logger.addHandler(_handler)
    logger.setLevel(logging.DEBUG if DEBUG else logging.INFO)

# Anything accepting (message, level) can stand in for log_event.
EventSink = Callable[..., None]


def log_event(message: str, level: int = logging.INFO) -> None:
    """
    Write a single line event to the main vm-provisioner.log file.
    """
    logger.log(level, message)
