import io
import tarfile
from pathlib import Path
from typing import Dict

import pysam
import pytest

from doradobatch.config import RunConfig

FAKE_DORADO = """#!/bin/bash
if [ "$1" = "--version" ]; then
  echo "1.3.0+abc1234" >&2
  exit 0
fi
if [ -n "$FAKE_DORADO_CALLS" ]; then
  echo "$*" >> "$FAKE_DORADO_CALLS"
fi
case "$1" in
  basecaller|duplex)
    echo "[info] fake basecalling $3" >&2
    if [ -n "$FAKE_DORADO_FAIL" ]; then
      echo "[error] simulated failure" >&2
      exit "$FAKE_DORADO_FAIL"
    fi
    cat "$FAKE_BAM"
    ;;
  summary)
    printf 'filename\\tread_id\\n'
    printf 'reads.pod5\\tread1\\n'
    ;;
  *)
    exit 64
    ;;
esac
"""

FAKE_AWS = """#!/bin/bash
echo "$*" >> "$FAKE_AWS_CALLS"
args=()
for a in "$@"; do
  case "$a" in
    --no-sign-request|--no-progress) ;;
    *) args+=("$a") ;;
  esac
done
src="$FAKE_S3_ROOT/${args[2]#s3://}"
case "${args[1]}" in
  ls)
    [ -f "$src" ] || exit 1
    size=$(wc -c < "$src" | tr -d ' ')
    echo "2024-05-01 10:11:12 $size $(basename "$src")"
    ;;
  cp)
    cp "$src" "${args[3]}"
    ;;
esac
"""

FAKE_POD5 = """#!/bin/bash
echo "$*" >> "$FAKE_POD5_CALLS"
out=""
while [ $# -gt 0 ]; do
  if [ "$1" = "-o" ]; then out="$2"; shift; fi
  shift
done
printf 'pod5' > "$out"
"""


def write_script(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body)
    path.chmod(0o755)
    return path


def make_unaligned_bam(path: Path) -> Path:
    header = {
        "HD": {"VN": "1.6", "SO": "unknown"},
        "RG": [{"ID": "rg1", "DS": "basecall_model=sup@v5.0.0"}],
        "PG": [{"ID": "basecaller", "PN": "dorado", "VN": "1.3.0+abc1234", "CL": "dorado basecaller sup@v5.0.0 ."}],
    }
    with pysam.AlignmentFile(str(path), "wb", header=header) as out:
        a = pysam.AlignedSegment()
        a.query_name = "read1"
        a.query_sequence = "ACGTACGTAA"
        a.flag = 4
        a.query_qualities = pysam.qualitystring_to_array("I" * 10)
        a.set_tag("RG", "rg1")
        out.write(a)
    return path


def make_tarball(path: Path, files: Dict[str, bytes], *, gzipped: bool = True) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz" if gzipped else "w") as tf:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return path


@pytest.fixture()
def tools(tmp_path: Path) -> Dict[str, Path]:
    bindir = tmp_path / "bin"
    return {
        "dorado": write_script(bindir / "dorado", FAKE_DORADO),
        "aws": write_script(bindir / "aws", FAKE_AWS),
        "pod5": write_script(bindir / "pod5", FAKE_POD5),
        "bam": make_unaligned_bam(tmp_path / "fake.bam"),
        "dorado_calls": tmp_path / "dorado_calls.txt",
        "aws_calls": tmp_path / "aws_calls.txt",
        "pod5_calls": tmp_path / "pod5_calls.txt",
        "s3": tmp_path / "s3",
    }


@pytest.fixture()
def config(tmp_path: Path, tools: Dict[str, Path]) -> RunConfig:
    return RunConfig(
        dorado=tools["dorado"],
        scratch_root=tmp_path / "scratch",
        output_dir=tmp_path / "out",
        devices="cuda:0",
        aws_bin=str(tools["aws"]),
        pod5_bin=str(tools["pod5"]),
        env={
            "FAKE_BAM": str(tools["bam"]),
            "FAKE_DORADO_CALLS": str(tools["dorado_calls"]),
            "FAKE_AWS_CALLS": str(tools["aws_calls"]),
            "FAKE_POD5_CALLS": str(tools["pod5_calls"]),
            "FAKE_S3_ROOT": str(tools["s3"]),
        },
    )


def read_calls(path: Path):
    if not path.exists():
        return []
    return [line for line in path.read_text().splitlines() if line]
