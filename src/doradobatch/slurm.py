"""SLURM array script generation for ``doradobatch slurm``.

One array task per line of the input list; each task runs
``doradobatch slurm --task-index $SLURM_ARRAY_TASK_ID ...`` on its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from jinja2 import Template

from .errors import ConfigError
from .external import cmd_to_str
from .utils import read_lines

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlurmResources:
    partition: str = "gpu"
    mem: str = "128gb"
    gpus_per_node: int = 8
    cpus_per_task: int = 64
    time: str = "6-00:00:00"
    exclude: Optional[str] = None


_SBATCH_TEMPLATE = Template(
    """#!/bin/bash
#SBATCH --job-name={{ job_name }}
#SBATCH --partition={{ res.partition }}
#SBATCH --nodes=1
#SBATCH --mem={{ res.mem }}
{% if res.exclude %}#SBATCH --exclude={{ res.exclude }}
{% endif %}#SBATCH --gpus-per-node={{ res.gpus_per_node }}
#SBATCH --cpus-per-task={{ res.cpus_per_task }}
#SBATCH --output=%x_%j_%A_%a.log
#SBATCH --time={{ res.time }}
#SBATCH --array=1-{{ n_tasks }}{% if max_parallel %}%{{ max_parallel }}{% endif %}

set -euo pipefail

{{ command }} --task-index "${SLURM_ARRAY_TASK_ID}"
""",
    keep_trailing_newline=True,
)


def count_tasks(list_file: str | Path) -> int:
    """Number of array tasks for a list file (trailing blank lines ignored)."""
    lines = read_lines(list_file)
    while lines and not lines[-1]:
        lines.pop()
    if not lines:
        raise ConfigError(f"{list_file} contains no inputs")
    return len(lines)


def build_task_command(
    *,
    list_file: str | Path,
    model: str,
    mods: Optional[str] = None,
    duplex: bool = False,
    project: Optional[str | Path] = None,
    dorado_version: Optional[str] = None,
    extra: Sequence[str] = (),
    executable: str = "doradobatch",
) -> List[str]:
    cmd = [executable, "slurm", "--pod5list", str(Path(list_file).resolve()), "--model", model]
    if mods:
        cmd += ["--mod", mods]
    if duplex:
        cmd.append("--duplex")
    if project:
        cmd += ["--project", str(project)]
    if dorado_version:
        cmd += ["--dorado", dorado_version]
    cmd += [str(x) for x in extra]
    return cmd


def render_sbatch(
    *,
    job_name: str,
    list_file: str | Path,
    task_command: Sequence[str],
    max_parallel: Optional[int] = None,
    resources: Optional[SlurmResources] = None,
) -> str:
    n_tasks = count_tasks(list_file)
    return _SBATCH_TEMPLATE.render(
        job_name=job_name,
        res=resources or SlurmResources(),
        n_tasks=n_tasks,
        max_parallel=max_parallel,
        command=cmd_to_str(task_command),
    )


def write_sbatch(path: str | Path, script: str) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(script, encoding="utf-8")
    p.chmod(0o755)
    logger.info("Wrote %s", p)
    return p
