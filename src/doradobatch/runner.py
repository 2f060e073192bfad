"""Job runner: invoke Dorado on a staged input and write BAM, summary, and log."""

from __future__ import annotations

import logging
import shutil
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from .config import RunConfig, query_dorado_version
from .errors import BasecallExecutionError
from .external import CancelToken, ExternalCommandError, cmd_to_str, run_to_files, run_to_gzip
from .models import JobResult, JobStatus, ModelSpec, StagedInput
from .naming import job_outputs, version_string
from .utils import ensure_outdir, now_str
from .validation import inspect_bam_header

logger = logging.getLogger(__name__)


_LOG_FMT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_BANNER_START = "==================== JOB START ===================="
_BANNER_END = "==================== JOB END ======================="


_active_logs = threading.local()
_level_lock = threading.Lock()
_level_users = 0
_saved_level = logging.NOTSET


def _lower_package_level() -> None:
    # Shared by concurrent jobs: the first one in lowers the level, the last one out restores it.
    global _level_users, _saved_level
    pkg_logger = logging.getLogger(__package__)
    with _level_lock:
        if _level_users == 0:
            _saved_level = pkg_logger.level
            if pkg_logger.getEffectiveLevel() > logging.INFO:
                pkg_logger.setLevel(logging.INFO)
        _level_users += 1


def _restore_package_level() -> None:
    global _level_users
    with _level_lock:
        _level_users -= 1
        if _level_users == 0:
            logging.getLogger(__package__).setLevel(_saved_level)


@contextmanager
def job_log(path: Path) -> Iterator[None]:
    """Copy this thread's log records into ``path`` for the duration of one job.

    Nested use with the same path on the same thread is a no-op, so the batch
    driver can open the log before staging and the runner can open it again.
    """
    active = getattr(_active_logs, "paths", None)
    if active is None:
        active = _active_logs.paths = set()
    key = str(Path(path).resolve())
    if key in active:
        yield
        return

    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, mode="a")
    handler.setFormatter(logging.Formatter(_LOG_FMT))
    handler.setLevel(logging.INFO)
    tid = threading.get_ident()
    handler.addFilter(lambda record: record.thread == tid)

    _lower_package_level()

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    active.add(key)
    try:
        yield
    finally:
        active.discard(key)
        root_logger.removeHandler(handler)
        handler.close()
        _restore_package_level()


def resolve_version_string(config: RunConfig, model_spec: ModelSpec, *, dry_run: bool = False) -> str:
    """Query the basecaller version and combine it with the model spec.

    In a dry run a missing binary is tolerated and the configured version label
    (or ``unknown``) is used instead.
    """
    fallback = (config.dorado_version_label or "unknown") if dry_run else None
    return version_string(query_dorado_version(config.dorado, fallback=fallback), model_spec)


def build_basecall_command(
    dorado: str | Path,
    model_spec: ModelSpec,
    input_path: str | Path,
    *,
    extra_opts: Sequence[str] = (),
    devices: Optional[str] = None,
) -> List[str]:
    cmd = [
        str(dorado),
        model_spec.mode.subcommand,
        model_spec.model_argument,
        str(input_path),
        "--recursive",
    ] + [str(x) for x in extra_opts]
    if devices:
        cmd += ["-x", devices]
    return cmd


def _is_under(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True


def cleanup_staged(staged: StagedInput, scratch_root: str | Path) -> bool:
    """Remove the job's scratch work dir if its input was staged there.

    Returns True when something was deleted.
    """
    if staged.work_dir is None or not _is_under(staged.path, Path(scratch_root)):
        logger.info(
            "%s not deleted as it's not on scratch (%s). Please delete raw fast5 or pod5 data whenever possible.",
            staged.path,
            scratch_root,
        )
        return False
    logger.info("Removing staged work dir %s", staged.work_dir)
    shutil.rmtree(staged.work_dir)
    return True


def run(
    staged: StagedInput,
    model_spec: ModelSpec,
    output_dir: Optional[str | Path] = None,
    *,
    config: RunConfig,
    dry_run: bool = False,
    cancel: Optional[CancelToken] = None,
    version: Optional[str] = None,
) -> JobResult:
    """Basecall one staged input.

    Parameters
    ----------
    staged:
        Output of :func:`doradobatch.staging.resolve`.
    model_spec:
        Model, modification models, and simplex/duplex mode.
    output_dir:
        Overrides ``config.output_dir``.
    dry_run:
        Log the command and planned outputs; start no process and write no
        BAM or summary.
    version:
        Precomputed version string (batch drivers query Dorado once per run).

    Returns
    -------
    JobResult
        ``status`` is ``ok`` or ``dry_run``; failures raise instead.

    Raises
    ------
    BasecallExecutionError
        Dorado (basecaller or summary) exited non-zero or wrote an unreadable BAM.
    JobCancelled
        ``cancel`` fired while Dorado was running.
    """
    t0 = time.time()
    out_dir = Path(output_dir) if output_dir is not None else config.output_dir
    vs = version or resolve_version_string(config, model_spec, dry_run=dry_run)
    unit_name = staged.identity.full_name
    outputs = job_outputs(unit_name, vs, output_dir=out_dir, log_dir=config.logs)

    cmd = build_basecall_command(
        config.dorado,
        model_spec,
        staged.path,
        extra_opts=config.dorado_opts,
        devices=config.devices,
    )

    result = JobResult(
        reference=str(staged.path),
        unit_name=unit_name,
        status=JobStatus.DRY_RUN if dry_run else JobStatus.OK,
        outputs=outputs,
        staged_path=str(staged.path),
        command=cmd,
        started_at=now_str(),
    )

    ensure_outdir(out_dir)
    with job_log(outputs.log_path):
        logger.info(_BANNER_START)
        logger.info("Unit: %s", unit_name)
        logger.info("Input: %s", staged.path)
        logger.info("Start Time: %s", result.started_at)
        logger.info("Version String: %s", vs)
        logger.info("Mode: %s", model_spec.mode.value)
        logger.info("Command: %s", cmd_to_str(cmd))
        try:
            if dry_run:
                logger.info("[DRYRUN] Output BAM would be: %s", outputs.bam_path)
                logger.info("[DRYRUN] Summary would be: %s", outputs.summary_path)
            else:
                _basecall(cmd, outputs.bam_path, outputs.log_path, config=config, cancel=cancel)
                logger.info("Output BAM: %s", outputs.bam_path)
                result.bam_header = inspect_bam_header(outputs.bam_path)
                _summarize(config.dorado, outputs.bam_path, outputs.summary_path, config=config, cancel=cancel)
                logger.info("Summary: %s", outputs.summary_path)
        except Exception as e:
            logger.error("Job %s failed: %s", unit_name, e)
            raise
        finally:
            result.finished_at = now_str()
            result.runtime_seconds = float(time.time() - t0)
            logger.info("End Time: %s", result.finished_at)
            logger.info(_BANNER_END)

    return result


def _basecall(
    cmd: Sequence[str],
    bam_path: Path,
    log_path: Path,
    *,
    config: RunConfig,
    cancel: Optional[CancelToken],
) -> None:
    try:
        run_to_files(cmd, stdout_path=bam_path, stderr_path=log_path, env=config.env or None, cancel=cancel)
    except ExternalCommandError as e:
        raise BasecallExecutionError(
            f"Basecaller exited with code {e.returncode}; see {log_path}",
            returncode=e.returncode,
        ) from e
    except OSError as e:
        raise BasecallExecutionError(f"Could not start basecaller: {e}") from e


def _summarize(
    dorado: Path,
    bam_path: Path,
    summary_path: Path,
    *,
    config: RunConfig,
    cancel: Optional[CancelToken],
) -> None:
    try:
        run_to_gzip([str(dorado), "summary", str(bam_path)], out_path=summary_path, env=config.env or None, cancel=cancel)
    except ExternalCommandError as e:
        raise BasecallExecutionError(f"dorado summary failed:\n{e}", returncode=e.returncode) from e
