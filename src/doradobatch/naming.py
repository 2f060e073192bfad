"""Pure naming rules: input classification, run identity, version strings.

Nothing here touches the filesystem. Every function is a function of its
arguments' text only, so the same reference always classifies and names the
same way regardless of what has already been staged.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple

from .models import Classification, Identity, InputKind, JobOutput, ModelSpec

REMOTE_SCHEMES: Tuple[str, ...] = ("s3://",)

_TAR_GZ_SUFFIXES = (".tar.gz", ".tgz")
_TAR_SUFFIX = ".tar"
_ARCHIVE_SUFFIXES = _TAR_GZ_SUFFIXES + (_TAR_SUFFIX,)
_FORMAT_TAGS = ("_fast5", "_pod5", ".fast5", ".pod5")


def is_remote(reference: str) -> bool:
    return reference.startswith(REMOTE_SCHEMES)


def _matching_suffix(text: str, suffixes: Tuple[str, ...]) -> Optional[str]:
    for s in suffixes:
        if text.endswith(s):
            return s
    return None


def classify(reference: str) -> Classification:
    """Classify a reference by prefix and suffix; first match wins.

    ``.tar.gz`` is tested before ``.tar`` and remote before local.
    """
    gz = _matching_suffix(reference, _TAR_GZ_SUFFIXES)
    tar = _TAR_SUFFIX if reference.endswith(_TAR_SUFFIX) else None
    remote = is_remote(reference)

    if remote and gz:
        return Classification(InputKind.REMOTE_TAR_GZ, gz)
    if remote and tar:
        return Classification(InputKind.REMOTE_TAR, tar)
    if gz:
        return Classification(InputKind.LOCAL_TAR_GZ, gz)
    if tar:
        return Classification(InputKind.LOCAL_TAR, tar)
    return Classification(InputKind.LOCAL_DIR, "")


def reference_basename(reference: str) -> str:
    # Works for s3:// URIs as well as local paths; trailing slashes ignored.
    return reference.rstrip("/").rsplit("/", 1)[-1]


def strip_archive_suffixes(name: str) -> str:
    """Remove archive extensions, each with the raw-format tag in front of it.

    ``A_FC1_pod5.tar`` -> ``A_FC1``; ``run_FC1.tar.gz`` -> ``run_FC1``;
    ``x_FC1.tar.tar`` -> ``x_FC1``. The result never ends in an archive
    extension, so stripping it again is a no-op. Names without an archive
    extension are returned unchanged.
    """
    stem = name
    while True:
        ext = _matching_suffix(stem, _ARCHIVE_SUFFIXES)
        if ext is None or len(ext) == len(stem):
            return stem
        stem = stem[: -len(ext)]
        tag = _matching_suffix(stem, _FORMAT_TAGS)
        if tag is not None and len(tag) < len(stem):
            stem = stem[: -len(tag)]


def derive_identity(reference: str) -> Identity:
    full_name = strip_archive_suffixes(reference_basename(reference))
    fields = full_name.split("_")
    flowcell_id = fields[-1]
    sample_id = fields[-2] if len(fields) > 1 else fields[0]
    return Identity(sample_id=sample_id, flowcell_id=flowcell_id, full_name=full_name)


def parse_dorado_version(text: str) -> str:
    """Extract ``1.3.0`` from ``dorado --version`` output such as ``1.3.0+abc1234``."""
    for line in str(text).splitlines():
        line = line.strip()
        if line:
            return line.split("+", 1)[0].strip()
    return "unknown"


def split_model_name(model: str) -> Tuple[str, str]:
    """Split ``sup@v5.0.0`` (or ``/models/sup@v5.0.0``) into ``('sup', 'v5.0.0')``."""
    base = Path(model.rstrip("/")).name
    name, _, version = base.partition("@")
    return name, version


def version_string(dorado_version: str, model_spec: ModelSpec) -> str:
    name, version = split_model_name(model_spec.base_model)
    vs = f"dorado{parse_dorado_version(dorado_version)}_{name}{version}"
    if model_spec.mod_models:
        vs += "_" + "_".join(model_spec.mod_models)
    return vs


def job_outputs(
    unit_name: str,
    version: str,
    *,
    output_dir: str | Path,
    log_dir: str | Path,
) -> JobOutput:
    stem = f"{unit_name}_{version}"
    output_dir = Path(output_dir)
    return JobOutput(
        bam_path=output_dir / f"{stem}.bam",
        summary_path=output_dir / f"{stem}_summary.txt.gz",
        log_path=Path(log_dir) / f"{stem}.log",
    )
