"""Logging setup for the command line tool."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"


def parse_level(level: str) -> int:
    """Translate a level name such as ``"debug"`` into its logging constant."""
    value = getattr(logging, str(level).upper(), None)
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure the root logger; optionally also log to ``log_file``."""
    logging.basicConfig(level=parse_level(level), format=LOG_FORMAT)
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)
    # onnxruntime and insightface are chatty at INFO.
    logging.getLogger("onnxruntime").setLevel(max(logging.WARNING, parse_level(level)))
