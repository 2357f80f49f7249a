"""Run log handling: size based reset, per-run header and line formatting.

Every line in the log looks like ``[ Info     ]: message``. The bracketed
category comes from the record's level unless the caller passes one with
``extra={'category': ...}`` (the rollout loop uses ``Checking``).
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

MAX_LOG_BYTES = 30000
SEPARATOR = "------------------------"

_LEVEL_CATEGORIES = {
    logging.DEBUG: 'Debug',
    logging.INFO: 'Info',
    logging.WARNING: 'Warning',
    logging.ERROR: 'Error',
    logging.CRITICAL: 'Error',
}


class CategoryFormatter(logging.Formatter):
    """Formats records as ``[ <category padded to 8> ]: <message>``."""

    def format(self, record: logging.LogRecord) -> str:
        category = getattr(record, 'category', None) or _LEVEL_CATEGORIES.get(record.levelno, 'Info')
        line = f"[ {category:<8} ]: {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def prepare_log(path: Union[str, Path], max_bytes: int = MAX_LOG_BYTES,
                now: Optional[datetime] = None) -> Path:
    """
    Make sure the log exists, reset it once it grows past ``max_bytes`` and
    append the header for a new run.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch(exist_ok=True)

    if path.stat().st_size > max_bytes:
        path.write_text("\n")

    stamp = (now or datetime.now()).strftime("%a %b %d %H:%M:%S %Y")
    with open(path, 'a') as f:
        f.write(f"\n{SEPARATOR}\n")
        f.write(f"[ Time     ]: {stamp}\n")
    return path


def setup_logging(path: Union[str, Path], level: str = "INFO",
                  name: str = "freshdock") -> logging.Logger:
    """Route freshdock's loggers to stdout and the run log."""
    formatter = CategoryFormatter()

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(formatter)
    file_handler = logging.FileHandler(str(path), mode='a')
    file_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.addHandler(stream)
    root.addHandler(file_handler)

    # urllib3 retry chatter is not useful in the run log
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    return logging.getLogger(name)
