"""Run configuration, built once at process start and threaded through every job.

Defaults follow the cluster/tower layout the scripts were first written for;
every one of them can be overridden from the command line or the environment.
"""

from __future__ import annotations

import getpass
import logging
import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .errors import BinaryNotFound, ConfigError
from .external import ExternalCommandError, run_command
from .naming import parse_dorado_version

logger = logging.getLogger(__name__)

# Tower ("local dirs") layout.
LOCAL_TOOLS_DIR = Path("/data/user_scripts/tools")
LOCAL_DORADO_BASE = LOCAL_TOOLS_DIR / "dorado"

# Cluster (SLURM) layout.
CLUSTER_BASE_DIR = Path("/private/nanopore")
CLUSTER_DORADO_BASE = CLUSTER_BASE_DIR / "tools" / "dorado"
CLUSTER_OUTPUT_DIR = CLUSTER_BASE_DIR / "basecalled"

DEFAULT_DEVICES = "cuda:all"
DEFAULT_SLURM_DORADO_OPTS = ("--batchsize", "256")

ENV_DORADO_BASE = "DORADO_BASE"
ENV_SCRATCH = "DORADOBATCH_SCRATCH"
ENV_TASK_ID = "SLURM_ARRAY_TASK_ID"


def default_scratch_root(env: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if env is None else env
    if env.get(ENV_SCRATCH):
        return Path(env[ENV_SCRATCH])
    return Path("/data/scratch") / getpass.getuser() / "temp"


def dorado_base_from_env(default: Path, env: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if env is None else env
    return Path(env[ENV_DORADO_BASE]) if env.get(ENV_DORADO_BASE) else default


def task_index_from_env(env: Optional[Mapping[str, str]] = None) -> int:
    env = os.environ if env is None else env
    raw = env.get(ENV_TASK_ID)
    if not raw:
        raise ConfigError(f"No task index: pass --task-index or run inside a SLURM array job (${ENV_TASK_ID}).")
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"${ENV_TASK_ID} is not an integer: {raw!r}") from None


def split_dorado_opts(opts: Optional[str]) -> Tuple[str, ...]:
    if not opts:
        return ()
    return tuple(shlex.split(opts))


def dorado_binary_path(dorado_base: str | Path, version: Optional[str] = None) -> Path:
    """``<base>/dorado-<version>-linux-x64/bin/dorado`` or ``<base>/current/bin/dorado``."""
    base = Path(dorado_base)
    if version:
        return base / f"dorado-{version}-linux-x64" / "bin" / "dorado"
    return base / "current" / "bin" / "dorado"


def is_executable(path: str | Path) -> bool:
    p = Path(path)
    return p.is_file() and os.access(p, os.X_OK)


def resolve_dorado_binary(
    *,
    dorado_base: str | Path,
    version: Optional[str] = None,
    explicit: Optional[str | Path] = None,
    require: bool = True,
) -> Path:
    """Locate the Dorado binary; raise :class:`BinaryNotFound` if ``require`` and it is not executable."""
    path = Path(explicit) if explicit else dorado_binary_path(dorado_base, version)
    if require and not is_executable(path):
        msg = f"Dorado not found at {path}"
        if not explicit and not version:
            base = Path(dorado_base)
            msg += (
                "\nHint: create a symlink: "
                f"ln -sfn {base}/dorado-VERSION-linux-x64 {base}/current"
            )
        raise BinaryNotFound(msg)
    return path


def query_dorado_version(binary: str | Path, *, fallback: Optional[str] = None) -> str:
    """Return the short Dorado version (``1.3.0``), or ``fallback`` when the binary is unusable."""
    if not is_executable(binary):
        if fallback is not None:
            return fallback
        raise BinaryNotFound(f"Dorado not found at {binary}")
    try:
        cp = run_command([str(binary), "--version"], check=True, capture=True, text=True)
    except ExternalCommandError as e:
        if fallback is not None:
            logger.warning("dorado --version failed (exit %s); using '%s'", e.returncode, fallback)
            return fallback
        raise BinaryNotFound(f"Dorado at {binary} did not report a version:\n{e}") from e
    # dorado prints its version on stderr
    return parse_dorado_version((cp.stdout or "") + "\n" + (cp.stderr or ""))


@dataclass(frozen=True)
class RunConfig:
    """Everything a job needs besides its own input reference and model.

    Attributes
    ----------
    dorado:
        Path to the Dorado binary.
    scratch_root:
        Root under which archives are staged (``<root>/<sample>/<full_name>``).
    output_dir:
        Where BAM, summary, and per-job result files go.
    log_dir:
        Per-job log files; defaults to ``<output_dir>/logs``.
    devices:
        Value for Dorado's ``-x`` (e.g. ``cuda:0,1,2,3``).
    dorado_opts:
        Extra arguments appended after ``--recursive``.
    cleanup:
        Delete a job's scratch work dir after a successful run.
    sign_requests:
        Use signed (credentialed) object store requests instead of
        ``--no-sign-request``.
    """

    dorado: Path
    scratch_root: Path
    output_dir: Path
    log_dir: Optional[Path] = None
    devices: Optional[str] = DEFAULT_DEVICES
    dorado_opts: Tuple[str, ...] = ()
    dorado_version_label: Optional[str] = None
    cleanup: bool = False
    sign_requests: bool = False
    aws_bin: str = "aws"
    tar_bin: str = "tar"
    pod5_bin: str = "pod5"
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def logs(self) -> Path:
        return self.log_dir if self.log_dir is not None else self.output_dir / "logs"

    def with_overrides(self, **kw) -> "RunConfig":
        return replace(self, **kw)
