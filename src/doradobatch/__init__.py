"""doradobatch: stage Oxford Nanopore inputs and run Dorado over them in batches.

Public API is intentionally small; most users should use the CLI:

    doradobatch local --dirlist dirs.txt --model sup@v5.0.0
    doradobatch slurm --pod5list paths.list --model sup@v5.0.0

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.3.0"
