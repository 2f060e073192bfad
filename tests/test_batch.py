import json
from pathlib import Path

import pytest

from conftest import read_calls
from doradobatch.batch import group_by_work_dir, run_array_task, run_local_dirs, select_task_line
from doradobatch.errors import ConfigError
from doradobatch.models import JobStatus, ModelSpec


def _run_dir(tmp_path: Path, name: str) -> Path:
    d = tmp_path / "data" / name
    d.mkdir(parents=True)
    (d / "reads.pod5").write_bytes(b"pod5")
    return d


def test_failed_job_does_not_stop_batch(tmp_path: Path, config):
    good = _run_dir(tmp_path, "runA_FC1")
    missing = tmp_path / "data" / "runB_FC2"
    also_good = _run_dir(tmp_path, "runC_FC3")

    summary = run_local_dirs(
        [str(good), str(missing), str(also_good)],
        ModelSpec.parse("sup@v5.0.0"),
        config=config,
        progress=False,
    )

    assert summary.version_string == "dorado1.3.0_supv5.0.0"
    assert [r.status for r in summary.results] == [JobStatus.OK, JobStatus.FAILED, JobStatus.OK]
    assert summary.n_ok == 2
    assert summary.n_failed == 1
    assert summary.exit_code == 1
    assert summary.results[1].error_type == "InputNotFound"

    data = json.loads((config.output_dir / "batch_summary.json").read_text())
    assert data["n_failed"] == 1
    assert (config.output_dir / "batch_report.html").exists()
    assert (config.output_dir / "runA_FC1_dorado1.3.0_supv5.0.0_result.json").exists()
    assert (config.output_dir / "logs" / "runB_FC2_dorado1.3.0_supv5.0.0.log").exists()


def test_thread_pool_keeps_input_order(tmp_path: Path, config):
    refs = [str(_run_dir(tmp_path, f"s{i}_FC{i}")) for i in range(4)]
    summary = run_local_dirs(refs, ModelSpec.parse("hac@v5.0.0"), config=config, max_workers=2, progress=False)
    assert [r.unit_name for r in summary.results] == [f"s{i}_FC{i}" for i in range(4)]
    assert summary.exit_code == 0


def test_dry_run_batch_writes_nothing(tmp_path: Path, tools, config):
    refs = [str(_run_dir(tmp_path, "runA_FC1"))]
    summary = run_local_dirs(refs, ModelSpec.parse("sup@v5.0.0"), config=config, dry_run=True, progress=False)
    assert summary.n_dry_run == 1
    assert summary.exit_code == 0
    assert not (config.output_dir / "batch_summary.json").exists()
    assert not list(config.output_dir.glob("*.bam"))
    assert read_calls(tools["dorado_calls"]) == []


def test_group_by_work_dir_merges_same_unit(tmp_path: Path):
    refs = ["s3://a/x_FC1.tar.gz", "/local/x_FC1.tar", "/data/y_FC2"]
    groups = group_by_work_dir(refs, tmp_path)
    assert sorted(len(g) for g in groups) == [1, 2]


def test_select_task_line(tmp_path: Path):
    lst = tmp_path / "inputs.list"
    lst.write_text("/data/a_FC1\n\ns3://b/c_FC3.tar\n")
    assert select_task_line(lst, 1) == "/data/a_FC1"
    assert select_task_line(lst, 3) == "s3://b/c_FC3.tar"
    with pytest.raises(ConfigError):
        select_task_line(lst, 2)
    with pytest.raises(ConfigError):
        select_task_line(lst, 0)
    with pytest.raises(ConfigError):
        select_task_line(lst, 4)


def test_array_task_runs_one_line(tmp_path: Path, tools, config):
    lst = tmp_path / "inputs.list"
    lst.write_text(f"{_run_dir(tmp_path, 'runA_FC1')}\n{_run_dir(tmp_path, 'runB_FC2')}\n")

    result = run_array_task(lst, 2, ModelSpec.parse("sup@v5.0.0"), config=config)
    assert result.ok
    assert result.unit_name == "runB_FC2"
    calls = [c for c in read_calls(tools["dorado_calls"]) if c.startswith("basecaller")]
    assert len(calls) == 1
    assert "runB_FC2" in calls[0]


def test_array_task_failure_carries_returncode(tmp_path: Path, config):
    lst = tmp_path / "inputs.list"
    lst.write_text(f"{_run_dir(tmp_path, 'runA_FC1')}\n")
    cfg = config.with_overrides(env={**config.env, "FAKE_DORADO_FAIL": "5"})

    result = run_array_task(lst, 1, ModelSpec.parse("sup@v5.0.0"), config=cfg)
    assert result.status is JobStatus.FAILED
    assert result.error_type == "BasecallExecutionError"
    assert result.returncode == 5


def test_array_task_cleans_up_scratch(tmp_path: Path, tools, config):
    from conftest import make_tarball

    make_tarball(tools["s3"] / "bucket" / "run_FLOW123.tar.gz", {"pod5/a.pod5": b"a" * 5000})
    lst = tmp_path / "inputs.list"
    lst.write_text("s3://bucket/run_FLOW123.tar.gz\n")
    cfg = config.with_overrides(cleanup=True)

    result = run_array_task(lst, 1, ModelSpec.parse("sup@v5.0.0"), config=cfg)
    assert result.ok
    assert not (cfg.scratch_root / "run" / "run_FLOW123").exists()
    assert result.outputs.bam_path.exists()
