from pathlib import Path

import pytest

from doradobatch.models import InputKind, ModelSpec
from doradobatch.naming import (
    classify,
    derive_identity,
    job_outputs,
    parse_dorado_version,
    split_model_name,
    strip_archive_suffixes,
    version_string,
)


@pytest.mark.parametrize(
    "reference, kind, suffix",
    [
        ("s3://bucket/run_FLOW123.tar.gz", InputKind.REMOTE_TAR_GZ, ".tar.gz"),
        ("s3://bucket/run_FLOW123.tgz", InputKind.REMOTE_TAR_GZ, ".tgz"),
        ("s3://bucket/run_FLOW123.tar", InputKind.REMOTE_TAR, ".tar"),
        ("/data/run_FLOW123.tar.gz", InputKind.LOCAL_TAR_GZ, ".tar.gz"),
        ("/data/run_FLOW123.tar", InputKind.LOCAL_TAR, ".tar"),
        ("/data/runA", InputKind.LOCAL_DIR, ""),
    ],
)
def test_classify(reference, kind, suffix):
    c = classify(reference)
    assert c.kind is kind
    assert c.stripped_suffix == suffix


def test_classify_checks_gzip_before_tar():
    # '.tar.gz' also contains '.tar'; it must not be treated as an uncompressed tar.
    assert classify("x_y.tar.gz").kind is InputKind.LOCAL_TAR_GZ
    assert not classify("x_y.tar.gz").kind.is_remote
    assert classify("x_y.tar.gz").kind.is_gzipped


def test_remote_identity():
    ident = derive_identity("s3://bucket/run_FLOW123.tar.gz")
    assert ident.sample_id == "run"
    assert ident.flowcell_id == "FLOW123"
    assert ident.full_name == "run_FLOW123"


def test_identity_strips_format_tag_only_after_archive_extension():
    assert strip_archive_suffixes("A_FC1_pod5.tar") == "A_FC1"
    assert strip_archive_suffixes("A_FC1.fast5.tar.gz") == "A_FC1"
    # plain directories keep their name verbatim
    assert strip_archive_suffixes("A_FC1_pod5") == "A_FC1_pod5"


def test_identity_of_directory_with_trailing_slash():
    ident = derive_identity("/data/PAW123_sampleX_FC9/")
    assert ident.full_name == "PAW123_sampleX_FC9"
    assert ident.sample_id == "sampleX"
    assert ident.flowcell_id == "FC9"


def test_identity_without_underscore():
    ident = derive_identity("/data/runA")
    assert ident.sample_id == "runA"
    assert ident.flowcell_id == "runA"
    assert ident.full_name == "runA"


def test_identity_is_stable():
    ref = "s3://bucket/sample_FC1.tar"
    assert derive_identity(ref) == derive_identity(ref)


@pytest.mark.parametrize(
    "ref",
    [
        "s3://bucket/run_FLOW123.tar.gz",
        "s3://b/S_FC1_pod5.tar",
        "/data/A_FC1.fast5.tar.gz",
        "/data/x_FC1.tar.tar",
        "/data/y_FC2_pod5.tar.tgz",
        "/data/runA",
        "/data/PAW_s_FC9/",
    ],
)
def test_full_name_is_a_fixed_point(ref):
    ident = derive_identity(ref)
    assert derive_identity(ident.full_name) == ident


def test_strip_archive_suffixes_repeats_until_clean():
    assert strip_archive_suffixes("x_FC1.tar.tar") == "x_FC1"
    assert strip_archive_suffixes("x_FC1") == "x_FC1"
    assert strip_archive_suffixes(".tar") == ".tar"


def test_parse_dorado_version():
    assert parse_dorado_version("1.3.0+abc\n") == "1.3.0"
    assert parse_dorado_version("\n0.9.6\n") == "0.9.6"
    assert parse_dorado_version("") == "unknown"


def test_split_model_name():
    assert split_model_name("sup@v5.0.0") == ("sup", "v5.0.0")
    assert split_model_name("/models/dna_r10.4.1_e8.2_400bps_hac@v5.0.0/") == ("dna_r10.4.1_e8.2_400bps_hac", "v5.0.0")


def test_version_string_with_mods():
    spec = ModelSpec.parse("sup@v5.0.0", ["5mCG_5hmCG", "6mA"])
    assert version_string("1.3.0+abc", spec) == "dorado1.3.0_supv5.0.0_5mCG_5hmCG_6mA"


def test_version_string_without_mods():
    spec = ModelSpec.parse("sup@v5.0.0")
    assert version_string("1.3.0+abc", spec) == "dorado1.3.0_supv5.0.0"


def test_model_argument_joins_mods():
    spec = ModelSpec.parse("sup@v5.0.0", "5mCG_5hmCG, 6mA")
    assert spec.model_argument == "sup@v5.0.0,5mCG_5hmCG,6mA"
    assert ModelSpec.parse("hac@v5.0.0").model_argument == "hac@v5.0.0"
    assert ModelSpec.parse("hac@v5.0.0", duplex=True).mode.subcommand == "duplex"


def test_job_outputs_layout(tmp_path: Path):
    o = job_outputs("run_FC1", "dorado1.3.0_supv5.0.0", output_dir=tmp_path, log_dir=tmp_path / "logs")
    assert o.bam_path == tmp_path / "run_FC1_dorado1.3.0_supv5.0.0.bam"
    assert o.summary_path == tmp_path / "run_FC1_dorado1.3.0_supv5.0.0_summary.txt.gz"
    assert o.log_path == tmp_path / "logs" / "run_FC1_dorado1.3.0_supv5.0.0.log"
