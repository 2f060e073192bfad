"""Job input resolver: turn an input reference into a local path Dorado can read.

A reference is one of

- a local directory of pod5/fast5 files (used as-is),
- a local ``.tar`` / ``.tar.gz`` / ``.tgz`` archive (extracted into scratch),
- an ``s3://`` archive (downloaded into scratch, extracted, archive removed).

Every side-effecting step is gated by a named predicate over the job's work
dir so that re-running a job does strictly less work:

==================  =====================================================
predicate           skips
==================  =====================================================
is_downloaded       download + extraction of a remote archive
is_extracted        extraction of a local archive
has_converted_pod5  fast5 -> pod5 conversion
==================  =====================================================

Known limitation
----------------
``is_downloaded`` compares the apparent byte size of the work dir against the
remote object's size (the ``du -sb`` rule). It is not content-addressed: a
work dir that happens to be at least as large as the object is treated as
staged. Failed downloads/extractions clear the work dir so that they are not
mistaken for completed ones.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional

from .config import RunConfig
from .errors import InputNotFound, StagingIOError
from .external import CancelToken, ExternalCommandError, ensure_executable_in_path, run_command
from .models import Identity, InputKind, JobInput, StagedInput, StagingState
from .naming import reference_basename

logger = logging.getLogger(__name__)

FAST5_DIR_NAME = "fast5"
POD5_DIR_NAME = "pod5_dir"
CONVERTED_POD5_NAME = "output.pod5"
_CONVERTING_POD5_NAME = "output.converting.pod5"


# -----------------
# Predicates
# -----------------

def local_tree_size(path: str | Path) -> int:
    """Apparent size in bytes of ``path`` and everything below it (``du -sb``)."""
    root = Path(path)
    if not root.exists():
        return 0
    total = root.lstat().st_size
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            try:
                total += os.lstat(os.path.join(dirpath, name)).st_size
            except FileNotFoundError:
                continue
    return total


def is_downloaded(work_dir: str | Path, remote_size: int) -> bool:
    # An empty work dir is never staged, whatever its own directory entry weighs.
    return is_extracted(work_dir) and local_tree_size(work_dir) >= int(remote_size)


def is_extracted(work_dir: str | Path) -> bool:
    p = Path(work_dir)
    return p.is_dir() and any(p.iterdir())


def converted_pod5_path(staged_dir: str | Path) -> Path:
    return Path(staged_dir) / POD5_DIR_NAME / CONVERTED_POD5_NAME


def has_converted_pod5(staged_dir: str | Path) -> bool:
    return converted_pod5_path(staged_dir).is_file()


def find_fast5_dirs(staged_dir: str | Path) -> List[Path]:
    """All directories literally named ``fast5`` at or below ``staged_dir``."""
    root = Path(staged_dir)
    if not root.is_dir():
        return []
    found = [root] if root.name == FAST5_DIR_NAME else []
    for dirpath, dirnames, _ in os.walk(root):
        for d in dirnames:
            if d == FAST5_DIR_NAME:
                found.append(Path(dirpath) / d)
    return sorted(found)


def work_dir_for(identity: Identity, scratch_root: str | Path) -> Path:
    return Path(scratch_root) / identity.sample_id / identity.full_name


# -----------------
# External tools
# -----------------

def _require_tool(exe: str, hint: str) -> None:
    try:
        ensure_executable_in_path(exe, hint=hint)
    except FileNotFoundError as e:
        raise StagingIOError(str(e)) from e


class ObjectStore:
    """Thin wrapper around the ``aws s3`` CLI."""

    def __init__(self, *, aws_bin: str = "aws", sign_requests: bool = False, env=None) -> None:
        self.aws_bin = aws_bin
        self.sign_requests = sign_requests
        self.env = env or None

    def _flags(self) -> List[str]:
        return [] if self.sign_requests else ["--no-sign-request"]

    def object_size(self, uri: str, *, cancel: Optional[CancelToken] = None) -> int:
        """Size in bytes of one object, from the third column of ``aws s3 ls``."""
        _require_tool(self.aws_bin, "Install the AWS CLI (pip install awscli) or run: doradobatch doctor")
        cmd = [self.aws_bin, "s3", "ls", uri] + self._flags()
        try:
            cp = run_command(cmd, env=self.env, check=True, capture=True, text=True, cancel=cancel)
        except (ExternalCommandError, OSError) as e:
            raise StagingIOError(f"Could not query remote object size for {uri}:\n{e}") from e
        return parse_ls_size(cp.stdout or "", uri)

    def download(self, uri: str, dest_dir: str | Path, *, cancel: Optional[CancelToken] = None) -> Path:
        dest_dir = Path(dest_dir)
        cmd = [self.aws_bin] + self._flags() + ["s3", "cp", "--no-progress", uri, f"{dest_dir}/"]
        logger.info("Downloading %s -> %s", uri, dest_dir)
        try:
            run_command(cmd, env=self.env, check=True, capture=True, text=True, cancel=cancel)
        except (ExternalCommandError, OSError) as e:
            raise StagingIOError(f"Download failed for {uri}:\n{e}") from e
        target = dest_dir / reference_basename(uri)
        if not target.exists():
            raise StagingIOError(f"Download reported success but {target} is missing")
        return target


def parse_ls_size(listing: str, uri: str) -> int:
    """Parse ``2024-05-01 10:11:12   123456 run_FC1.tar.gz`` style listings."""
    wanted = reference_basename(uri)
    candidates = []
    for line in listing.splitlines():
        fields = line.split()
        if len(fields) < 4 or fields[0] == "PRE":
            continue
        candidates.append(fields)
    for fields in candidates:
        if fields[3] == wanted:
            return int(fields[2])
    if len(candidates) == 1 and candidates[0][2].isdigit():
        return int(candidates[0][2])
    raise StagingIOError(f"Remote object not found or listing not understood for {uri}:\n{listing.strip() or '(empty)'}")


def extract_archive(
    archive: str | Path,
    dest_dir: str | Path,
    *,
    gzipped: bool,
    tar_bin: str = "tar",
    env=None,
    cancel: Optional[CancelToken] = None,
) -> None:
    flags = "xzf" if gzipped else "xf"
    cmd = [tar_bin, flags, str(archive), "--directory", str(dest_dir)]
    logger.info("Extracting %s -> %s", archive, dest_dir)
    try:
        run_command(cmd, env=env or None, check=True, capture=True, text=True, cancel=cancel)
    except (ExternalCommandError, OSError) as e:
        raise StagingIOError(f"Extraction failed for {archive}:\n{e}") from e


def convert_fast5_to_pod5(
    fast5_files: List[Path],
    out_path: str | Path,
    *,
    pod5_bin: str = "pod5",
    env=None,
    cancel: Optional[CancelToken] = None,
) -> None:
    _require_tool(pod5_bin, "Install the pod5 tools (pip install pod5) or run: doradobatch doctor")
    cmd = [pod5_bin, "convert", "fast5"] + [str(f) for f in fast5_files] + ["-o", str(out_path)]
    logger.info("Converting %d fast5 files -> %s", len(fast5_files), out_path)
    try:
        run_command(cmd, env=env or None, check=True, capture=True, text=True, cancel=cancel)
    except (ExternalCommandError, OSError) as e:
        raise StagingIOError(f"fast5 -> pod5 conversion failed:\n{e}") from e


def _reset_work_dir(work_dir: Path) -> None:
    shutil.rmtree(work_dir, ignore_errors=True)
    work_dir.mkdir(parents=True, exist_ok=True)


# -----------------
# Resolver
# -----------------

class Resolver:
    """Stages job inputs under ``config.scratch_root``.

    The resolver holds no per-job state; one instance can serve many jobs, as
    long as no two concurrent jobs share a work dir.
    """

    def __init__(
        self,
        config: RunConfig,
        *,
        store: Optional[ObjectStore] = None,
        dry_run: bool = False,
    ) -> None:
        self.config = config
        self.dry_run = dry_run
        self.store = store or ObjectStore(
            aws_bin=config.aws_bin,
            sign_requests=config.sign_requests,
            env=config.env,
        )

    def resolve(self, reference: str, *, cancel: Optional[CancelToken] = None) -> StagedInput:
        job = JobInput.from_reference(reference)
        logger.info("Resolving %s (%s) as %s", reference, job.kind.value, job.identity.full_name)

        work_dir: Optional[Path] = None
        downloaded = False
        if job.kind is InputKind.LOCAL_DIR:
            staged = Path(reference)
        else:
            work_dir = work_dir_for(job.identity, self.config.scratch_root)
            if job.kind.is_remote:
                downloaded = self._stage_remote(job, work_dir, cancel)
            else:
                self._stage_local_archive(job, work_dir, cancel)
            staged = work_dir

        # In a dry run nothing was extracted, so only a plain directory can be checked.
        if (job.kind is InputKind.LOCAL_DIR or not self.dry_run) and not staged.exists():
            raise InputNotFound(f"Input not found after staging: {staged}")

        staged = self._convert_fast5(staged, cancel)

        state = StagingState(
            work_dir=work_dir,
            is_downloaded=downloaded,
            is_extracted=work_dir is not None and is_extracted(work_dir),
            has_converted_pod5=staged.name == CONVERTED_POD5_NAME and staged.is_file(),
        )
        logger.info("Staged input: %s", staged)
        return StagedInput(path=staged, identity=job.identity, kind=job.kind, work_dir=work_dir, state=state)

    def _stage_remote(self, job: JobInput, work_dir: Path, cancel: Optional[CancelToken]) -> bool:
        """Download and extract a remote archive; returns the size-check outcome afterwards."""
        if self.dry_run:
            logger.info("[DRYRUN] Would download %s into %s (unless already staged) and extract it", job.reference, work_dir)
            return False

        work_dir.mkdir(parents=True, exist_ok=True)
        remote_size = self.store.object_size(job.reference, cancel=cancel)

        if is_downloaded(work_dir, remote_size):
            logger.info(
                "Local copy of %s is the same size or larger than the remote object (%d bytes). Skipping download.",
                job.identity.full_name,
                remote_size,
            )
            return True

        logger.info("Downloading and extracting %s for: %s", job.kind.value, job.identity.full_name)
        try:
            archive = self.store.download(job.reference, work_dir, cancel=cancel)
            extract_archive(
                archive,
                work_dir,
                gzipped=job.kind.is_gzipped,
                tar_bin=self.config.tar_bin,
                env=self.config.env,
                cancel=cancel,
            )
            archive.unlink()
        except Exception:
            # A half-populated work dir could otherwise pass the size check next time.
            _reset_work_dir(work_dir)
            raise
        return is_downloaded(work_dir, remote_size)

    def _stage_local_archive(self, job: JobInput, work_dir: Path, cancel: Optional[CancelToken]) -> None:
        if is_extracted(work_dir):
            logger.info(
                "%s seems to have been already extracted to %s. Skipping extraction.",
                job.identity.full_name,
                work_dir,
            )
            return
        if not Path(job.reference).is_file():
            raise InputNotFound(f"Archive not found: {job.reference}")
        if self.dry_run:
            logger.info("[DRYRUN] Would extract %s into %s", job.reference, work_dir)
            return

        work_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Extracting %s for: %s", job.kind.value, job.identity.full_name)
        try:
            extract_archive(
                job.reference,
                work_dir,
                gzipped=job.kind.is_gzipped,
                tar_bin=self.config.tar_bin,
                env=self.config.env,
                cancel=cancel,
            )
        except Exception:
            _reset_work_dir(work_dir)
            raise

    def _convert_fast5(self, staged: Path, cancel: Optional[CancelToken]) -> Path:
        fast5_dirs = find_fast5_dirs(staged)
        if not fast5_dirs:
            return staged

        out_pod5 = converted_pod5_path(staged)
        if has_converted_pod5(staged):
            logger.info("%s already exists. Skipping conversion.", out_pod5)
            return out_pod5

        fast5_files = sorted(f for d in fast5_dirs for f in d.glob("*.fast5"))
        if self.dry_run:
            logger.info("[DRYRUN] Would convert %d fast5 files to %s", len(fast5_files), out_pod5)
            return out_pod5
        if not fast5_files:
            raise StagingIOError(
                "Found fast5 directories but no .fast5 files in: " + ", ".join(map(str, fast5_dirs))
            )

        out_pod5.parent.mkdir(parents=True, exist_ok=True)
        tmp = out_pod5.with_name(_CONVERTING_POD5_NAME)
        if tmp.exists():
            tmp.unlink()
        convert_fast5_to_pod5(
            fast5_files,
            tmp,
            pod5_bin=self.config.pod5_bin,
            env=self.config.env,
            cancel=cancel,
        )
        tmp.replace(out_pod5)
        return out_pod5


def resolve(
    reference: str,
    scratch_root: str | Path,
    *,
    config: RunConfig,
    cancel: Optional[CancelToken] = None,
    dry_run: bool = False,
    store: Optional[ObjectStore] = None,
) -> StagedInput:
    """Classify ``reference``, stage it under ``scratch_root``, and return the local path.

    Raises
    ------
    InputNotFound
        The staged path does not exist.
    StagingIOError
        Download, extraction, or conversion failed. Nothing is retried; the
        work dir is left in a state where calling ``resolve`` again retries
        the failed step.
    JobCancelled
        ``cancel`` fired while an external tool was running.
    """
    cfg = config.with_overrides(scratch_root=Path(scratch_root))
    return Resolver(cfg, store=store, dry_run=dry_run).resolve(reference, cancel=cancel)

