from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple


class InputKind(str, enum.Enum):
    """How a job's input reference has to be staged before basecalling."""

    LOCAL_DIR = "local_dir"
    LOCAL_TAR_GZ = "local_tar_gz"
    LOCAL_TAR = "local_tar"
    REMOTE_TAR_GZ = "remote_tar_gz"
    REMOTE_TAR = "remote_tar"

    @property
    def is_remote(self) -> bool:
        return self in (InputKind.REMOTE_TAR_GZ, InputKind.REMOTE_TAR)

    @property
    def is_archive(self) -> bool:
        return self is not InputKind.LOCAL_DIR

    @property
    def is_gzipped(self) -> bool:
        return self in (InputKind.REMOTE_TAR_GZ, InputKind.LOCAL_TAR_GZ)


@dataclass(frozen=True)
class Classification:
    kind: InputKind
    stripped_suffix: str  # '' for LOCAL_DIR


@dataclass(frozen=True)
class Identity:
    """Run identity parsed from an input reference's basename.

    Attributes
    ----------
    sample_id:
        Second-to-last ``_`` field of the stripped name.
    flowcell_id:
        Last ``_`` field of the stripped name.
    full_name:
        Basename with archive/format suffixes removed. Used as the job's
        unit name for every output file.
    """

    sample_id: str
    flowcell_id: str
    full_name: str


@dataclass(frozen=True)
class JobInput:
    reference: str
    kind: InputKind
    identity: Identity

    @classmethod
    def from_reference(cls, reference: str) -> "JobInput":
        from .naming import classify, derive_identity

        return cls(
            reference=reference,
            kind=classify(reference).kind,
            identity=derive_identity(reference),
        )


@dataclass(frozen=True)
class StagingState:
    """Snapshot of the idempotence predicates for one job's work dir."""

    work_dir: Optional[Path]
    is_downloaded: bool = False
    is_extracted: bool = False
    has_converted_pod5: bool = False


@dataclass(frozen=True)
class StagedInput:
    """Result of resolving a reference: a local path ready for the basecaller."""

    path: Path
    identity: Identity
    kind: InputKind
    work_dir: Optional[Path]
    state: StagingState

    def __iter__(self) -> Iterator[Any]:
        # Allows ``path, identity = resolve(...)``.
        return iter((self.path, self.identity))


class BasecallMode(str, enum.Enum):
    SIMPLEX = "simplex"
    DUPLEX = "duplex"

    @property
    def subcommand(self) -> str:
        return "duplex" if self is BasecallMode.DUPLEX else "basecaller"


@dataclass(frozen=True)
class ModelSpec:
    """Basecalling model configuration.

    ``base_model`` is passed to Dorado verbatim (a model name such as
    ``sup@v5.0.0`` or a path to a downloaded model directory).
    """

    base_model: str
    mod_models: Tuple[str, ...] = ()
    mode: BasecallMode = BasecallMode.SIMPLEX

    @classmethod
    def parse(cls, model: str, mods: Optional[str | Sequence[str]] = None, *, duplex: bool = False) -> "ModelSpec":
        if isinstance(mods, str):
            mod_list = [m.strip() for m in mods.split(",")]
        else:
            mod_list = [str(m).strip() for m in (mods or [])]
        return cls(
            base_model=str(model).strip(),
            mod_models=tuple(m for m in mod_list if m),
            mode=BasecallMode.DUPLEX if duplex else BasecallMode.SIMPLEX,
        )

    @property
    def model_argument(self) -> str:
        if self.mod_models:
            return ",".join((self.base_model,) + tuple(self.mod_models))
        return self.base_model


@dataclass(frozen=True)
class JobOutput:
    bam_path: Path
    summary_path: Path
    log_path: Path


class JobStatus(str, enum.Enum):
    OK = "ok"
    FAILED = "failed"
    DRY_RUN = "dry_run"
    CANCELLED = "cancelled"


@dataclass
class JobResult:
    """Structured per-job outcome, written as JSON next to the job's outputs."""

    reference: str
    unit_name: str
    status: JobStatus
    outputs: Optional[JobOutput] = None
    staged_path: Optional[str] = None
    error_type: Optional[str] = None
    message: Optional[str] = None
    returncode: Optional[int] = None
    command: Optional[List[str]] = None
    bam_header: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    runtime_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in (JobStatus.OK, JobStatus.DRY_RUN)

    def to_jsonable(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        if self.outputs is not None:
            d["outputs"] = {k: str(v) for k, v in asdict(self.outputs).items()}
        return d


@dataclass
class BatchSummary:
    version_string: str
    results: List[JobResult] = field(default_factory=list)

    @property
    def n_ok(self) -> int:
        return sum(1 for r in self.results if r.status is JobStatus.OK)

    @property
    def n_dry_run(self) -> int:
        return sum(1 for r in self.results if r.status is JobStatus.DRY_RUN)

    @property
    def n_failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    @property
    def exit_code(self) -> int:
        return 0 if self.n_failed == 0 else 1

    def to_jsonable(self) -> Dict[str, Any]:
        return {
            "version_string": self.version_string,
            "n_ok": self.n_ok,
            "n_failed": self.n_failed,
            "n_dry_run": self.n_dry_run,
            "results": [r.to_jsonable() for r in self.results],
        }
