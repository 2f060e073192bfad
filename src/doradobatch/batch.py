"""Batch drivers: many inputs on one machine, or one input per scheduler task.

Every job runs the full resolve -> run pipeline in isolation. Per-job errors
become a failed :class:`JobResult`; they never abort the rest of the batch.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from tqdm import tqdm

from . import __version__
from .config import RunConfig
from .errors import ConfigError, JobCancelled, JobError
from .external import CancelToken
from .models import BatchSummary, InputKind, JobInput, JobResult, JobStatus, ModelSpec
from .naming import job_outputs
from .report import render_batch_report
from .runner import cleanup_staged, job_log, resolve_version_string
from .runner import run as run_basecaller
from .staging import Resolver, work_dir_for
from .utils import ensure_outdir, now_str, read_lines, write_json

logger = logging.getLogger(__name__)


def result_json_path(bam_path: Path) -> Path:
    return bam_path.with_name(bam_path.name[: -len(".bam")] + "_result.json")


def run_job(
    reference: str,
    model_spec: ModelSpec,
    *,
    config: RunConfig,
    version: str,
    dry_run: bool = False,
    cleanup: bool = False,
    cancel: Optional[CancelToken] = None,
) -> JobResult:
    """Resolve and basecall one reference, returning a structured result.

    Never raises for per-job failures; the error type and message are
    recorded on the returned result (and in the job's log file).
    """
    t0 = time.time()
    job = JobInput.from_reference(reference)
    outputs = job_outputs(job.identity.full_name, version, output_dir=config.output_dir, log_dir=config.logs)
    started_at = now_str()

    with job_log(outputs.log_path):
        logger.info("Reference: %s", reference)
        try:
            if cancel is not None:
                cancel.raise_if_cancelled(job.identity.full_name)
            staged = Resolver(config, dry_run=dry_run).resolve(reference, cancel=cancel)
            result = run_basecaller(
                staged,
                model_spec,
                config=config,
                dry_run=dry_run,
                cancel=cancel,
                version=version,
            )
            result.reference = reference
            if cleanup and not dry_run:
                try:
                    cleanup_staged(staged, config.scratch_root)
                except OSError as e:
                    logger.warning("Could not remove staged data for %s: %s", job.identity.full_name, e)
        except JobError as e:
            logger.error("%s: %s", type(e).__name__, e)
            result = JobResult(
                reference=reference,
                unit_name=job.identity.full_name,
                status=JobStatus.CANCELLED if isinstance(e, JobCancelled) else JobStatus.FAILED,
                outputs=outputs,
                error_type=type(e).__name__,
                message=str(e),
                returncode=getattr(e, "returncode", None),
                started_at=started_at,
                finished_at=now_str(),
                runtime_seconds=float(time.time() - t0),
            )
        except Exception as e:
            logger.exception("Unexpected error while processing %s", reference)
            result = JobResult(
                reference=reference,
                unit_name=job.identity.full_name,
                status=JobStatus.FAILED,
                outputs=outputs,
                error_type=type(e).__name__,
                message=str(e),
                started_at=started_at,
                finished_at=now_str(),
                runtime_seconds=float(time.time() - t0),
            )

    if not dry_run:
        ensure_outdir(config.output_dir)
        write_json(result_json_path(outputs.bam_path), result.to_jsonable())
    return result


def _work_key(reference: str, scratch_root: Path) -> str:
    job = JobInput.from_reference(reference)
    if job.kind is InputKind.LOCAL_DIR:
        return str(Path(reference).resolve())
    return str(work_dir_for(job.identity, scratch_root))


def group_by_work_dir(references: Sequence[str], scratch_root: Path) -> List[List[Tuple[int, str]]]:
    """Group (index, reference) pairs so references sharing a work dir land in one group."""
    groups: Dict[str, List[Tuple[int, str]]] = {}
    for i, ref in enumerate(references):
        groups.setdefault(_work_key(ref, scratch_root), []).append((i, ref))
    return list(groups.values())


def run_local_dirs(
    references: Sequence[str],
    model_spec: ModelSpec,
    *,
    config: RunConfig,
    dry_run: bool = False,
    cancel: Optional[CancelToken] = None,
    max_workers: int = 1,
    progress: bool = True,
    version: Optional[str] = None,
) -> BatchSummary:
    """Process a list of inputs, one job at a time by default.

    With ``max_workers > 1`` jobs run on a thread pool; references that map to
    the same work dir are always processed sequentially by one worker.
    """
    version = version or resolve_version_string(config, model_spec, dry_run=dry_run)
    total = len(references)
    logger.info("Found %d inputs to process.", total)
    logger.info("Using version string: %s", version)
    logger.info("Processing in dryrun mode: %s", dry_run)

    def _one(ref: str) -> JobResult:
        return run_job(
            ref,
            model_spec,
            config=config,
            version=version,
            dry_run=dry_run,
            cleanup=config.cleanup,
            cancel=cancel,
        )

    results: List[Optional[JobResult]] = [None] * total

    if max_workers <= 1:
        it = enumerate(references)
        if progress:
            it = tqdm(it, total=total, unit="input", desc="Basecalling")
        for i, ref in it:
            logger.info("Processing input %d/%d: %s", i + 1, total, ref)
            results[i] = _one(ref)
    else:
        groups = group_by_work_dir(references, config.scratch_root)

        def _group(items: List[Tuple[int, str]]) -> List[Tuple[int, JobResult]]:
            return [(i, _one(ref)) for i, ref in items]

        with ThreadPoolExecutor(max_workers=int(max_workers)) as pool:
            futures = [pool.submit(_group, g) for g in groups]
            done = as_completed(futures)
            if progress:
                done = tqdm(done, total=len(futures), unit="group", desc="Basecalling")
            for fut in done:
                for i, res in fut.result():
                    results[i] = res

    summary = BatchSummary(version_string=version, results=[r for r in results if r is not None])

    logger.info(
        "All inputs processed at %s: %d succeeded, %d failed%s.",
        now_str(),
        summary.n_ok,
        summary.n_failed,
        f", {summary.n_dry_run} dry-run" if summary.n_dry_run else "",
    )
    for r in summary.results:
        if not r.ok:
            logger.warning("FAILED %s (%s): %s", r.reference, r.error_type, r.message)

    if not dry_run:
        write_batch_outputs(summary, config.output_dir)
    return summary


def write_batch_outputs(summary: BatchSummary, output_dir: str | Path) -> Path:
    out = ensure_outdir(output_dir)
    write_json(out / "batch_summary.json", summary.to_jsonable())
    report = render_batch_report(outdir=out, version=__version__, summary=summary)
    logger.info("Batch report: %s", report)
    return report


def select_task_line(list_file: str | Path, task_index: int) -> str:
    """Return line ``task_index`` (1-based) of ``list_file``."""
    lines = read_lines(list_file)
    if task_index < 1 or task_index > len(lines):
        raise ConfigError(f"Task index {task_index} is out of range for {list_file} ({len(lines)} lines)")
    line = lines[task_index - 1]
    if not line:
        raise ConfigError(f"Line {task_index} of {list_file} is empty")
    return line


def run_array_task(
    list_file: str | Path,
    task_index: int,
    model_spec: ModelSpec,
    *,
    config: RunConfig,
    dry_run: bool = False,
    cancel: Optional[CancelToken] = None,
    version: Optional[str] = None,
) -> JobResult:
    """Run the single job selected by a scheduler array index."""
    reference = select_task_line(list_file, task_index)
    version = version or resolve_version_string(config, model_spec, dry_run=dry_run)
    logger.info("Task %d: %s", task_index, reference)
    logger.info("Using version string: %s", version)
    return run_job(
        reference,
        model_spec,
        config=config,
        version=version,
        dry_run=dry_run,
        cleanup=config.cleanup,
        cancel=cancel,
    )
