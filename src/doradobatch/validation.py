from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List

import pysam

from .errors import BasecallExecutionError, ConfigError

logger = logging.getLogger(__name__)


def inspect_bam_header(bam_path: str | Path) -> Dict[str, Any]:
    """Open a basecaller BAM and return a small description of its header.

    Dorado writes unaligned BAM (no @SQ lines), so ``check_sq`` is disabled.
    Raises BasecallExecutionError if the file is missing or not a readable BAM.
    """
    bam = Path(bam_path)
    if not bam.exists() or bam.stat().st_size == 0:
        raise BasecallExecutionError(f"Basecaller produced no output: {bam}")
    try:
        with pysam.AlignmentFile(str(bam), "rb", check_sq=False) as fh:
            header = fh.header.to_dict()
    except (ValueError, OSError) as e:
        raise BasecallExecutionError(f"Basecaller output is not a readable BAM: {bam} ({e})") from e

    programs: List[Dict[str, Any]] = header.get("PG", [])
    read_groups: List[Dict[str, Any]] = header.get("RG", [])
    info: Dict[str, Any] = {
        "programs": [p.get("ID") for p in programs],
        "read_groups": len(read_groups),
        "models": sorted({str(rg["DS"]) for rg in read_groups if "DS" in rg}),
    }
    dorado = [p for p in programs if str(p.get("PN", p.get("ID", ""))).startswith("dorado")]
    if dorado:
        info["dorado_version"] = dorado[-1].get("VN")
        info["dorado_command"] = dorado[-1].get("CL")
    return info


def check_list_file(path: str | Path, flag: str) -> Path:
    """Ensure an input list file exists; raise ConfigError with the flag name otherwise."""
    p = Path(path)
    if not p.is_file():
        raise ConfigError(f"{flag} file '{p}' not found")
    return p


def check_model_name(model: str) -> str:
    """Reject model arguments that would break output naming."""
    m = model.strip()
    if not m:
        raise ConfigError("--model is required")
    if "," in m:
        raise ConfigError(
            f"--model must be a single model, got '{m}'. Pass modification models with --mod."
        )
    return m
