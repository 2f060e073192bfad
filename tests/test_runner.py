import gzip
import logging
from pathlib import Path

import pytest

from conftest import read_calls
from doradobatch.errors import BasecallExecutionError
from doradobatch.models import JobStatus, ModelSpec
from doradobatch.runner import build_basecall_command, cleanup_staged, job_log, resolve_version_string, run
from doradobatch.staging import resolve


def _staged_dir(tmp_path: Path, name: str = "runA_FC1") -> Path:
    d = tmp_path / "data" / name
    d.mkdir(parents=True)
    (d / "reads.pod5").write_bytes(b"pod5")
    return d


def test_build_command_simplex_with_mods():
    spec = ModelSpec.parse("sup@v5.0.0", "5mCG_5hmCG,6mA")
    cmd = build_basecall_command("/opt/dorado", spec, "/data/runA", extra_opts=["--batchsize", "256"], devices="cuda:0,1")
    assert cmd == [
        "/opt/dorado",
        "basecaller",
        "sup@v5.0.0,5mCG_5hmCG,6mA",
        "/data/runA",
        "--recursive",
        "--batchsize",
        "256",
        "-x",
        "cuda:0,1",
    ]


def test_build_command_duplex_without_devices():
    cmd = build_basecall_command("dorado", ModelSpec.parse("sup@v5.0.0", duplex=True), "in", devices=None)
    assert cmd == ["dorado", "duplex", "sup@v5.0.0", "in", "--recursive"]


def test_version_string_from_binary(config):
    spec = ModelSpec.parse("sup@v5.0.0", ["5mCG_5hmCG", "6mA"])
    assert resolve_version_string(config, spec) == "dorado1.3.0_supv5.0.0_5mCG_5hmCG_6mA"


def test_version_string_dry_run_without_binary(tmp_path: Path, config):
    cfg = config.with_overrides(dorado=tmp_path / "missing" / "dorado", dorado_version_label="1.1.1")
    assert resolve_version_string(cfg, ModelSpec.parse("hac@v5.0.0"), dry_run=True) == "dorado1.1.1_hacv5.0.0"


def test_run_writes_bam_summary_and_log(tmp_path: Path, tools, config):
    staged = resolve(str(_staged_dir(tmp_path)), config.scratch_root, config=config)
    result = run(staged, ModelSpec.parse("sup@v5.0.0"), config=config)

    assert result.status is JobStatus.OK
    out = result.outputs
    assert out.bam_path == config.output_dir / "runA_FC1_dorado1.3.0_supv5.0.0.bam"
    assert out.bam_path.read_bytes() == tools["bam"].read_bytes()
    with gzip.open(out.summary_path, "rt") as fh:
        assert fh.readline().startswith("filename\tread_id")

    log = out.log_path.read_text()
    assert "JOB START" in log and "JOB END" in log
    assert "fake basecalling" in log
    assert "Version String: dorado1.3.0_supv5.0.0" in log

    assert result.bam_header["dorado_version"] == "1.3.0+abc1234"
    assert result.bam_header["read_groups"] == 1

    calls = read_calls(tools["dorado_calls"])
    assert calls[0].startswith("basecaller sup@v5.0.0 ")
    assert calls[0].endswith("--recursive -x cuda:0")
    assert calls[1].startswith("summary ")


def test_dry_run_writes_no_outputs(tmp_path: Path, tools, config):
    staged = resolve(str(_staged_dir(tmp_path)), config.scratch_root, config=config)
    result = run(staged, ModelSpec.parse("sup@v5.0.0", "6mA"), config=config, dry_run=True)

    assert result.status is JobStatus.DRY_RUN
    assert not result.outputs.bam_path.exists()
    assert not result.outputs.summary_path.exists()
    assert result.outputs.log_path.stat().st_size > 0
    assert "[DRYRUN]" in result.outputs.log_path.read_text()
    assert read_calls(tools["dorado_calls"]) == []
    assert result.command[1:3] == ["basecaller", "sup@v5.0.0,6mA"]


def test_basecaller_failure_raises_with_returncode(tmp_path: Path, config):
    cfg = config.with_overrides(env={**config.env, "FAKE_DORADO_FAIL": "3"})
    staged = resolve(str(_staged_dir(tmp_path)), cfg.scratch_root, config=cfg)
    with pytest.raises(BasecallExecutionError) as ei:
        run(staged, ModelSpec.parse("sup@v5.0.0"), config=cfg)
    assert ei.value.returncode == 3

    log = (cfg.logs / "runA_FC1_dorado1.3.0_supv5.0.0.log").read_text()
    assert "simulated failure" in log
    assert "JOB END" in log


def test_empty_bam_is_a_basecall_error(tmp_path: Path, config):
    empty = tmp_path / "empty.bam"
    empty.write_bytes(b"")
    cfg = config.with_overrides(env={**config.env, "FAKE_BAM": str(empty)})
    staged = resolve(str(_staged_dir(tmp_path)), cfg.scratch_root, config=cfg)
    with pytest.raises(BasecallExecutionError):
        run(staged, ModelSpec.parse("sup@v5.0.0"), config=cfg)


def test_cleanup_only_removes_scratch_copies(tmp_path: Path, config):
    from conftest import make_tarball

    archive = make_tarball(tmp_path / "S1_FC7.tar.gz", {"reads.pod5": b"x"})
    on_scratch = resolve(str(archive), config.scratch_root, config=config)
    assert cleanup_staged(on_scratch, config.scratch_root)
    assert not on_scratch.path.exists()

    local = resolve(str(_staged_dir(tmp_path)), config.scratch_root, config=config)
    assert not cleanup_staged(local, config.scratch_root)
    assert local.path.exists()


def test_job_log_only_captures_own_thread(tmp_path: Path):
    import threading

    log_path = tmp_path / "logs" / "job.log"
    logger = logging.getLogger("doradobatch.test")

    def other() -> None:
        logger.info("from another thread")

    with job_log(log_path):
        logger.info("from the job thread")
        t = threading.Thread(target=other)
        t.start()
        t.join()
        with job_log(log_path):
            logger.info("nested")

    text = log_path.read_text()
    assert "from the job thread" in text
    assert "nested" in text
    assert text.count("nested") == 1
    assert "from another thread" not in text
