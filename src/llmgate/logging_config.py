from __future__ import annotations
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "openai")


def init_logging(level: Union[str, int] = "WARNING", file: Optional[Path] = None,
                 max_bytes: int = 1_000_000, backups: int = 3) -> logging.Logger:
    """
    Console output through rich, plus an optional rotating file.
    Calling it again replaces the handlers instead of stacking them.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    root.setLevel(level if isinstance(level, int) else level.upper())
    root.addHandler(RichHandler(show_path=False, rich_tracebacks=False, markup=False))

    if file is not None:
        file.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(file, maxBytes=max_bytes, backupCount=backups, encoding="utf-8")
        fh.setFormatter(logging.Formatter(FILE_FORMAT))
        root.addHandler(fh)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root
