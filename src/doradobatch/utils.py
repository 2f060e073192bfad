from __future__ import annotations

import datetime as _dt
import json
import logging
from pathlib import Path
from typing import Any, List

logger = logging.getLogger(__name__)


def ensure_outdir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def now_str() -> str:
    return _dt.datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def write_json(path: str | Path, obj: Any) -> None:
    with open(path, "wt", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True)


def read_lines(path: str | Path) -> List[str]:
    """Read a list file, one entry per line, keeping blank lines so indices stay 1:1 with line numbers."""
    with open(path, "rt", encoding="utf-8") as f:
        return [line.rstrip("\r\n").strip() for line in f]


def read_entries(path: str | Path) -> List[str]:
    """Read a list file, dropping blank lines and ``#`` comments."""
    return [line for line in read_lines(path) if line and not line.startswith("#")]
