from __future__ import annotations

import argparse
import logging
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from . import __version__
from .batch import run_array_task, run_local_dirs
from .config import (
    CLUSTER_DORADO_BASE,
    CLUSTER_OUTPUT_DIR,
    DEFAULT_DEVICES,
    DEFAULT_SLURM_DORADO_OPTS,
    LOCAL_DORADO_BASE,
    RunConfig,
    default_scratch_root,
    dorado_base_from_env,
    resolve_dorado_binary,
    split_dorado_opts,
    task_index_from_env,
)
from .doctor import CHECK_ORDER, collect_checks
from .errors import BinaryNotFound, ConfigError, DoradoBatchError
from .external import CancelToken, ExternalCommandError, cmd_to_str
from .models import JobResult, JobStatus, ModelSpec
from .runner import resolve_version_string
from .slurm import SlurmResources, build_task_command, render_sbatch, write_sbatch
from .staging import Resolver
from .utils import read_entries
from .validation import check_list_file, check_model_name

_LOG_FMT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_run_log_handler: Optional[logging.Handler] = None


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    global _run_log_handler

    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    logging.basicConfig(level=level, format=_LOG_FMT, stream=sys.stderr)
    root = logging.getLogger()
    # The console follows -v; job logs always get INFO records.
    for h in root.handlers:
        if type(h) is logging.StreamHandler:
            h.setLevel(level)
    logging.getLogger("doradobatch").setLevel(min(level, logging.INFO))

    if _run_log_handler is not None:
        root.removeHandler(_run_log_handler)
        _run_log_handler.close()
        _run_log_handler = None

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(min(level, logging.INFO))
        fh.setFormatter(logging.Formatter(_LOG_FMT))
        root.addHandler(fh)
        _run_log_handler = fh


def _handle_error(err: Exception) -> int:
    if isinstance(err, (ExternalCommandError, DoradoBatchError)):
        msg = f"Error: {err}"
    else:
        msg = f"{err.__class__.__name__}: {err}"

    sys.stderr.write(msg + "\n")
    return 1


@contextmanager
def _cancel_on_signals() -> Iterator[CancelToken]:
    """Yield a cancel token that SIGTERM/SIGINT (e.g. ``scancel``) will fire."""
    token = CancelToken()

    def _handler(signum, frame) -> None:
        logging.getLogger("doradobatch").warning("Received signal %d; cancelling.", signum)
        token.cancel()

    previous = {}
    for sig in (signal.SIGTERM, signal.SIGINT):
        previous[sig] = signal.signal(sig, _handler)
    try:
        yield token
    finally:
        for sig, h in previous.items():
            signal.signal(sig, h)


def _add_common_job_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--model", help="Basecalling model (e.g. sup@v5.0.0). Required.")
    p.add_argument("--mod", default=None, help="Modification model(s), comma-separated (e.g. 5mCG_5hmCG,6mA).")
    p.add_argument("--dorado", default=None, metavar="VERSION", help="Dorado version (default: 'current' symlink).")
    p.add_argument("--dorado-base", default=None, help="Directory holding dorado-<version>-linux-x64 installs.")
    p.add_argument("--dorado-bin", default=None, help="Explicit path to a dorado binary (overrides --dorado).")
    p.add_argument("--devices", default=DEFAULT_DEVICES, help="Dorado -x device list (e.g. cuda:0,1,2,3).")
    p.add_argument("--log-dir", default=None, help="Per-job log directory (default: <output>/logs).")
    p.add_argument("--scratch", default=None, help="Scratch root for staged archives.")
    p.add_argument("--aws-signed", action="store_true", help="Use credentials for s3:// (default: --no-sign-request).")
    p.add_argument("--dryrun", "--dry-run", dest="dryrun", action="store_true", help="Print commands only; do not execute.")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="doradobatch",
        description=(
            "doradobatch: stage Oxford Nanopore inputs (directories, tar archives, s3:// archives, fast5) "
            "and basecall them with Dorado, locally or as a SLURM array job."
        ),
    )
    p.add_argument("--version", action="version", version=f"doradobatch {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # quickstart
    # -----------------
    sub.add_parser("quickstart", help="Print ready-to-run recipes for common scenarios.")

    # -----------------
    # local
    # -----------------
    lo = sub.add_parser(
        "local",
        help="Basecall a list of directories one after another on this machine.",
    )
    lo.add_argument("--dirlist", help="File containing input directories (one per line). Required.")
    lo.add_argument("--output", default=None, help="Output directory (default: .).")
    lo.add_argument("--drd-opts", "--drd_opts", dest="drd_opts", default=None, help="Extra options passed to dorado (quoted).")
    lo.add_argument("--jobs", type=int, default=1, help="Jobs to run at once (default 1; Dorado already uses all GPUs).")
    lo.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    _add_common_job_args(lo)

    # -----------------
    # slurm
    # -----------------
    sl = sub.add_parser(
        "slurm",
        help="Run the one input selected by the SLURM array task index.",
    )
    sl.add_argument("--pod5list", help="File with one input per line (dir, tar, or s3://). Required.")
    sl.add_argument("--project", default=None, help=f"Output base directory (default: {CLUSTER_OUTPUT_DIR}).")
    sl.add_argument("--duplex", action="store_true", help="Run duplex basecalling.")
    sl.add_argument("--task-index", type=int, default=None, help="1-based line to process (default: $SLURM_ARRAY_TASK_ID).")
    sl.add_argument("--keep-staged", action="store_true", help="Do not delete the staged scratch copy after success.")
    sl.add_argument(
        "--drd-opts",
        "--drd_opts",
        dest="drd_opts",
        default=" ".join(DEFAULT_SLURM_DORADO_OPTS),
        help="Extra options passed to dorado (default: '%(default)s').",
    )
    _add_common_job_args(sl)

    # -----------------
    # stage
    # -----------------
    st = sub.add_parser("stage", help="Download/extract/convert one input without basecalling; print the staged path.")
    st.add_argument("reference", help="Local directory, tar/tar.gz archive, or s3:// archive.")
    st.add_argument("--scratch", default=None, help="Scratch root for staged archives.")
    st.add_argument("--aws-signed", action="store_true", help="Use credentials for s3://.")
    st.add_argument("--dryrun", "--dry-run", dest="dryrun", action="store_true", help="Log planned actions only.")
    st.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    # -----------------
    # make-sbatch
    # -----------------
    mk = sub.add_parser("make-sbatch", help="Write a SLURM array script that runs 'doradobatch slurm' per input.")
    mk.add_argument("--pod5list", help="File with one input per line. Required.")
    mk.add_argument("--model", help="Basecalling model. Required.")
    mk.add_argument("--mod", default=None, help="Modification model(s), comma-separated.")
    mk.add_argument("--duplex", action="store_true", help="Run duplex basecalling.")
    mk.add_argument("--project", default=None, help="Output base directory.")
    mk.add_argument("--dorado", default=None, metavar="VERSION", help="Dorado version.")
    mk.add_argument("-J", "--job-name", default=None, help="SLURM job name (default: dorado_<list name>).")
    mk.add_argument("--max-parallel", type=int, default=2, help="Array throttle (the N in --array=1-M%%N).")
    mk.add_argument("--partition", default=SlurmResources.partition)
    mk.add_argument("--mem", default=SlurmResources.mem)
    mk.add_argument("--gpus-per-node", type=int, default=SlurmResources.gpus_per_node)
    mk.add_argument("--cpus-per-task", type=int, default=SlurmResources.cpus_per_task)
    mk.add_argument("--time", default=SlurmResources.time)
    mk.add_argument("--exclude", default=None, help="Nodes to exclude.")
    mk.add_argument("--out", default=None, help="Write the script here (default: print to stdout).")

    # -----------------
    # doctor
    # -----------------
    d = sub.add_parser("doctor", help="Check for dorado/aws/tar/pod5.")
    d.add_argument("--dorado", default=None, metavar="VERSION", help="Dorado version to check.")
    d.add_argument("--dorado-base", default=None, help="Directory holding dorado installs.")
    d.add_argument("--dorado-bin", default=None, help="Explicit path to a dorado binary.")
    d.add_argument("--cluster", action="store_true", help="Use the cluster Dorado base directory as default.")
    d.add_argument("--dry-run", action="store_true", help="Print checks without exiting nonzero.")
    d.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    return p


# -----------------
# Config assembly
# -----------------

def _require(value: Optional[str], flag: str) -> str:
    if value is None or str(value).strip() == "":
        raise ConfigError(f"Missing required argument {flag}")
    return str(value)


def _dorado_base(args: argparse.Namespace, default: Path) -> Path:
    if getattr(args, "dorado_base", None):
        return Path(args.dorado_base)
    return dorado_base_from_env(default)


def build_run_config(args: argparse.Namespace, *, cluster: bool) -> RunConfig:
    """Translate parsed CLI flags (plus environment defaults) into a RunConfig."""
    base = _dorado_base(args, CLUSTER_DORADO_BASE if cluster else LOCAL_DORADO_BASE)
    dorado = resolve_dorado_binary(
        dorado_base=base,
        version=args.dorado,
        explicit=args.dorado_bin,
        require=not args.dryrun,
    )
    if cluster:
        output_dir = Path(args.project) if args.project else CLUSTER_OUTPUT_DIR
        cleanup = not args.keep_staged
    else:
        output_dir = Path(args.output) if args.output else Path(".")
        cleanup = False

    return RunConfig(
        dorado=dorado,
        scratch_root=Path(args.scratch) if args.scratch else default_scratch_root(),
        output_dir=output_dir,
        log_dir=Path(args.log_dir) if args.log_dir else None,
        devices=args.devices or None,
        dorado_opts=split_dorado_opts(args.drd_opts),
        dorado_version_label=args.dorado,
        cleanup=cleanup,
        sign_requests=bool(args.aws_signed),
    )


def _print_result(r: JobResult) -> None:
    if r.status is JobStatus.DRY_RUN:
        print(f"[DRYRUN] {r.unit_name}: {cmd_to_str(r.command or [])}")
        if r.outputs is not None:
            print(f"[DRYRUN] Output BAM would be: {r.outputs.bam_path}")
    elif r.ok:
        print(f"OK      {r.unit_name}: {r.outputs.bam_path if r.outputs else ''}")
    else:
        print(f"FAILED  {r.unit_name}: {r.error_type}: {(r.message or '').splitlines()[0] if r.message else ''}")


# -----------------
# Command handlers
# -----------------

def cmd_quickstart() -> int:
    lines = [
        "doradobatch quickstart (copy/paste):",
        "",
        "1) Tower, several run directories, DNA with modified bases:",
        "   doradobatch local \\",
        "     --dirlist dna_dirs.txt \\",
        "     --model sup@v5.0.0 \\",
        "     --mod 5mCG_5hmCG,6mA \\",
        "     --devices cuda:0,1,2,3 \\",
        "     --output ./dna_output",
        "",
        "2) Tower, RNA with poly-A estimation:",
        "   doradobatch local \\",
        "     --dirlist rna_dirs.txt \\",
        "     --model rna004_130bps_sup@v5.1.0 \\",
        "     --drd-opts \"--estimate-poly-a\" \\",
        "     --output ./rna_output",
        "",
        "3) Cluster, one array task per line (local dirs, tar archives, or s3:// archives):",
        "   doradobatch make-sbatch \\",
        "     --pod5list FLYT2T_pod5.list \\",
        "     --model sup@v5.0.0 --mod 5mCG_5hmCG,6mA \\",
        "     --project /private/nanopore/basecalled/FlyT2T/ \\",
        "     --out dorado_FLYT2T.sbatch",
        "   sbatch dorado_FLYT2T.sbatch",
        "",
        "Outputs: <unit>_<version string>.bam, <unit>_<version string>_summary.txt.gz, logs/<unit>_<version string>.log",
        "Tip: use --dryrun to print the exact dorado commands without running them.",
    ]
    print("\n".join(lines))
    return 0


def cmd_local(args: argparse.Namespace) -> int:
    logger = logging.getLogger("doradobatch")
    _setup_logging(args.verbose)

    print(f"DRYRUN mode: {str(bool(args.dryrun)).lower()}")
    try:
        dirlist = check_list_file(_require(args.dirlist, "--dirlist"), "--dirlist")
        model = check_model_name(_require(args.model, "--model"))
        config = build_run_config(args, cluster=False)
        model_spec = ModelSpec.parse(model, args.mod)
        references = read_entries(dirlist)
        if not references:
            raise ConfigError(f"No directories listed in {dirlist}")
        version = resolve_version_string(config, model_spec, dry_run=bool(args.dryrun))
    except (ConfigError, BinaryNotFound) as e:
        return _handle_error(e)

    if not args.dryrun:
        _setup_logging(args.verbose, logfile=config.logs / "doradobatch_local.log")

    logger.info("doradobatch %s", __version__)
    with _cancel_on_signals() as token:
        summary = run_local_dirs(
            references,
            model_spec,
            config=config,
            dry_run=bool(args.dryrun),
            cancel=token,
            max_workers=max(1, int(args.jobs)),
            progress=not args.no_progress,
            version=version,
        )

    for r in summary.results:
        _print_result(r)
    print(f"Version string: {summary.version_string}")
    print(f"{summary.n_ok} succeeded, {summary.n_failed} failed, {summary.n_dry_run} dry-run")
    return summary.exit_code


def _exit_code(returncode: Optional[int]) -> int:
    """Shell-style exit status for a failed basecaller (signals map to 128+N)."""
    if not returncode:
        return 1
    if returncode < 0:
        return 128 + abs(returncode)
    return int(returncode)


def cmd_slurm(args: argparse.Namespace) -> int:
    logger = logging.getLogger("doradobatch")
    _setup_logging(max(1, args.verbose))

    try:
        pod5list = check_list_file(_require(args.pod5list, "--pod5list"), "--pod5list")
        model = check_model_name(_require(args.model, "--model"))
        task_index = args.task_index if args.task_index is not None else task_index_from_env()
        config = build_run_config(args, cluster=True)
        model_spec = ModelSpec.parse(model, args.mod, duplex=args.duplex)
        version = resolve_version_string(config, model_spec, dry_run=bool(args.dryrun))
    except (ConfigError, BinaryNotFound) as e:
        return _handle_error(e)

    logger.info("doradobatch %s", __version__)
    try:
        with _cancel_on_signals() as token:
            result = run_array_task(
                pod5list,
                task_index,
                model_spec,
                config=config,
                dry_run=bool(args.dryrun),
                cancel=token,
                version=version,
            )
    except ConfigError as e:
        return _handle_error(e)

    _print_result(result)
    if result.ok:
        return 0
    if result.outputs is not None:
        sys.stderr.write(f"See log: {result.outputs.log_path}\n")
    return _exit_code(result.returncode)


def cmd_stage(args: argparse.Namespace) -> int:
    _setup_logging(max(1, args.verbose))
    # Only the staging tools are needed; the dorado path is never used.
    config = RunConfig(
        dorado=Path("dorado"),
        scratch_root=Path(args.scratch) if args.scratch else default_scratch_root(),
        output_dir=Path("."),
        sign_requests=bool(args.aws_signed),
    )
    try:
        with _cancel_on_signals() as token:
            staged = Resolver(config, dry_run=bool(args.dryrun)).resolve(args.reference, cancel=token)
    except DoradoBatchError as e:
        return _handle_error(e)
    print(str(staged.path))
    return 0


def cmd_make_sbatch(args: argparse.Namespace) -> int:
    _setup_logging(0)
    try:
        pod5list = check_list_file(_require(args.pod5list, "--pod5list"), "--pod5list")
        model = check_model_name(_require(args.model, "--model"))
        task_cmd = build_task_command(
            list_file=pod5list,
            model=model,
            mods=args.mod,
            duplex=bool(args.duplex),
            project=args.project,
            dorado_version=args.dorado,
        )
        script = render_sbatch(
            job_name=args.job_name or f"dorado_{pod5list.stem}",
            list_file=pod5list,
            task_command=task_cmd,
            max_parallel=args.max_parallel,
            resources=SlurmResources(
                partition=args.partition,
                mem=args.mem,
                gpus_per_node=int(args.gpus_per_node),
                cpus_per_task=int(args.cpus_per_task),
                time=args.time,
                exclude=args.exclude,
            ),
        )
    except ConfigError as e:
        return _handle_error(e)

    if args.out:
        print(str(write_sbatch(args.out, script)))
    else:
        sys.stdout.write(script)
    return 0


def cmd_doctor(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose)

    base = _dorado_base(args, CLUSTER_DORADO_BASE if args.cluster else LOCAL_DORADO_BASE)
    dorado = resolve_dorado_binary(dorado_base=base, version=args.dorado, explicit=args.dorado_bin, require=False)
    checks = collect_checks(dorado)

    # Human-readable output
    lines = []
    ok_all = True
    for name in CHECK_ORDER:
        r = checks[name]
        status = "OK" if r.ok else "MISSING"
        lines.append(f"{name:7s} : {status:7s}  {r.detail}")
        if not r.ok and name in ("python", "dorado", "tar"):
            ok_all = False

    print("\n".join(lines))

    # Guidance
    for name in CHECK_ORDER:
        r = checks[name]
        if not r.ok and r.howto:
            print("\n---")
            print(f"How to install/fix '{name}':")
            print(r.howto)

    if args.dry_run:
        return 0
    return 0 if ok_all else 1


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "quickstart":
        return cmd_quickstart()
    if args.cmd == "local":
        return cmd_local(args)
    if args.cmd == "slurm":
        return cmd_slurm(args)
    if args.cmd == "stage":
        return cmd_stage(args)
    if args.cmd == "make-sbatch":
        return cmd_make_sbatch(args)
    if args.cmd == "doctor":
        return cmd_doctor(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
