"""Environment self-checks.

This module powers the ``doradobatch doctor`` CLI command.

Rationale
---------
doradobatch itself is pure Python, but every job shells out to Dorado, and
depending on the input also to ``aws``, ``tar``, and ``pod5``. A single
command that pinpoints what is missing on a tower or compute node saves a
failed array job.
"""

from __future__ import annotations

import logging
import platform
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from .config import is_executable, query_dorado_version
from .errors import BinaryNotFound

logger = logging.getLogger(__name__)

CHECK_ORDER = ["python", "dorado", "aws", "tar", "pod5"]


@dataclass(frozen=True)
class CheckResult:
    name: str
    ok: bool
    detail: str
    howto: Optional[str] = None


def _which(name: str) -> Optional[str]:
    return shutil.which(name)


def check_python() -> CheckResult:
    v = platform.python_version()
    return CheckResult(name="python", ok=True, detail=f"Python {v}")


def check_executable(exe: str, *, name: Optional[str] = None, howto: Optional[str] = None) -> CheckResult:
    name = name or exe
    p = _which(exe)
    if p is None:
        return CheckResult(name=name, ok=False, detail="not found in PATH", howto=howto)
    return CheckResult(name=name, ok=True, detail=p)


def check_dorado(binary: Path) -> CheckResult:
    howto = (
        "Download a Dorado release, unpack it under the Dorado base directory, and point the\n"
        "'current' symlink at it, e.g.:\n"
        f"  ln -sfn {binary.parent.parent.parent}/dorado-VERSION-linux-x64 {binary.parent.parent.parent}/current\n"
        "Or pass --dorado VERSION / --dorado-bin PATH."
    )
    if not is_executable(binary):
        return CheckResult(name="dorado", ok=False, detail=f"not executable: {binary}", howto=howto)
    try:
        version = query_dorado_version(binary)
    except BinaryNotFound as e:
        return CheckResult(name="dorado", ok=False, detail=f"present but not usable: {e}", howto=howto)
    return CheckResult(name="dorado", ok=True, detail=f"{binary} (v{version})")


def collect_checks(dorado: Path, *, aws_bin: str = "aws", tar_bin: str = "tar", pod5_bin: str = "pod5") -> Dict[str, CheckResult]:
    """Run all checks and return a mapping name->result."""
    checks: Dict[str, CheckResult] = {}

    checks["python"] = check_python()
    checks["dorado"] = check_dorado(Path(dorado))
    checks["aws"] = check_executable(
        aws_bin,
        name="aws",
        howto=(
            "Only needed for s3:// inputs.\n"
            "pip install awscli   or   conda install -c conda-forge awscli"
        ),
    )
    checks["tar"] = check_executable(
        tar_bin,
        name="tar",
        howto="Ubuntu: sudo apt-get install -y tar",
    )
    checks["pod5"] = check_executable(
        pod5_bin,
        name="pod5",
        howto=(
            "Only needed for fast5 inputs.\n"
            "pip install pod5"
        ),
    )
    return checks
