"""Run log file names and structured run records."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Union

import yaml

PathLike = Union[str, Path]


def get_timestamped_log_path(log_path: PathLike) -> Path:
    """Insert a timestamp before the suffix: run.log -> run_20260101_080530.log"""
    log_path = Path(log_path)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return log_path.parent / f"{log_path.stem}_{timestamp}{log_path.suffix or '.log'}"


def log_yaml(log_path: PathLike, record: dict[str, Any]) -> Path:
    """Append ``record`` to ``log_path`` as one YAML document.

    Each call adds a document terminated by ``---`` so a run summary file can
    accumulate several runs and be read back with ``yaml.safe_load_all``.
    """
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        yaml.safe_dump(record, handle, sort_keys=False)
        handle.write("---\n")
    return path
