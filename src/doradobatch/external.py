"""Helpers for running external commands (dorado/aws/tar/pod5).

Design goals
------------
- Fail fast with actionable error messages.
- Capture stderr/stdout for debugging, or stream them to files for the
  long-running basecaller where output is far too large to hold in memory.
- Every blocking call accepts an optional :class:`CancelToken` so an
  orchestrating caller (or a SIGTERM from the scheduler) can abort it.

This package intentionally *does not* reimplement any of these tools.
"""

from __future__ import annotations

import gzip
import logging
import os
import shlex
import shutil
import subprocess
import tempfile
import textwrap
import threading
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence

from .errors import JobCancelled

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.5
_TERMINATE_GRACE_SECONDS = 10.0
_COPY_CHUNK = 1 << 20


class ExternalCommandError(RuntimeError):
    """Raised when an external command fails."""

    def __init__(
        self,
        message: str,
        *,
        cmd: Sequence[str],
        returncode: int,
        stdout: Optional[str] = None,
        stderr: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.cmd = list(cmd)
        self.returncode = int(returncode)
        self.stdout = stdout
        self.stderr = stderr


class CancelToken:
    """Thread-safe cancellation flag shared between a job and its orchestrator."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, what: str = "job") -> None:
        if self._event.is_set():
            raise JobCancelled(f"Cancelled before {what}")


def cmd_to_str(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(x)) for x in cmd)


def ensure_executable_in_path(exe: str, *, hint: Optional[str] = None) -> None:
    """Ensure an executable exists in PATH (or is an executable path).

    Parameters
    ----------
    exe:
        Name of, or path to, the executable.
    hint:
        Optional message shown if the executable is missing.
    """
    if shutil.which(exe) is None:
        msg = f"Required executable '{exe}' was not found in your PATH."
        if hint:
            msg += "\n\n" + hint
        raise FileNotFoundError(msg)


def _merged_env(env: Optional[Mapping[str, str]]) -> Optional[Dict[str, str]]:
    if env is None:
        return None
    merged = dict(os.environ)
    merged.update({str(k): str(v) for k, v in env.items()})
    return merged


def _terminate(proc: subprocess.Popen) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        logger.warning("Process %s ignored SIGTERM; killing it.", proc.pid)
        proc.kill()
        proc.wait()


def _wait(proc: subprocess.Popen, cmd: Sequence[str], cancel: Optional[CancelToken]) -> int:
    while True:
        try:
            return proc.wait(timeout=_POLL_SECONDS)
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.is_set():
                logger.warning("Cancelling: %s", cmd_to_str(cmd))
                _terminate(proc)
                raise JobCancelled(f"Cancelled while running: {cmd_to_str(cmd)}")


def _tail(s: Optional[str], n: int = 3000) -> str:
    if not s:
        return "(empty)"
    s = str(s)
    if len(s) <= n:
        return s
    return "..." + s[-n:]


def _tail_file(path: Optional[Path], n: int = 3000) -> str:
    if path is None or not path.exists():
        return "(not captured)"
    with open(path, "rb") as fh:
        size = fh.seek(0, os.SEEK_END)
        fh.seek(max(0, size - n))
        return _tail(fh.read().decode("utf-8", errors="replace"), n=n)


def _failure(cmd: Sequence[str], returncode: int, stderr_tail: str, **kw) -> ExternalCommandError:
    return ExternalCommandError(
        message=textwrap.dedent(
            f"""
            External command failed (exit code {returncode}).

            Command:
              {cmd_to_str(cmd)}

            STDERR (tail):
              {stderr_tail}
            """
        ).strip(),
        cmd=cmd,
        returncode=returncode,
        **kw,
    )


def run_command(
    cmd: Sequence[str],
    *,
    cwd: Optional[str | Path] = None,
    env: Optional[Mapping[str, str]] = None,
    check: bool = True,
    capture: bool = True,
    text: bool = True,
    cancel: Optional[CancelToken] = None,
) -> subprocess.CompletedProcess:
    """Run a command and return the CompletedProcess.

    If ``check`` is True, raise ``ExternalCommandError`` on non-zero exit.
    If ``cancel`` fires while the command runs, the child is terminated and
    ``JobCancelled`` is raised.

    Notes
    -----
    - We default to capturing stdout+stderr to improve error messages.
    - For the basecaller itself, whose stdout is a multi-GB BAM stream, use
      :func:`run_to_files` instead.
    """
    if cwd is not None:
        cwd = str(Path(cwd))
    if cancel is not None:
        cancel.raise_if_cancelled(cmd_to_str(cmd))

    logger.debug("Running command: %s", cmd_to_str(cmd))

    proc = subprocess.Popen(
        list(map(str, cmd)),
        cwd=cwd,
        env=_merged_env(env),
        stdout=subprocess.PIPE if capture else None,
        stderr=subprocess.PIPE if capture else None,
        text=text,
    )
    while True:
        try:
            out, err = proc.communicate(timeout=_POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.is_set():
                logger.warning("Cancelling: %s", cmd_to_str(cmd))
                _terminate(proc)
                raise JobCancelled(f"Cancelled while running: {cmd_to_str(cmd)}")

    cp = subprocess.CompletedProcess(args=list(cmd), returncode=proc.returncode, stdout=out, stderr=err)

    if check and cp.returncode != 0:
        raise _failure(
            cmd,
            cp.returncode,
            _tail(cp.stderr) if isinstance(cp.stderr, str) else str(cp.stderr),
            stdout=cp.stdout if isinstance(cp.stdout, str) else None,
            stderr=cp.stderr if isinstance(cp.stderr, str) else None,
        )

    return cp


def run_to_files(
    cmd: Sequence[str],
    *,
    stdout_path: str | Path,
    stderr_path: str | Path,
    cwd: Optional[str | Path] = None,
    env: Optional[Mapping[str, str]] = None,
    check: bool = True,
    cancel: Optional[CancelToken] = None,
) -> int:
    """Run a command with stdout written to ``stdout_path`` and stderr appended to ``stderr_path``.

    Returns
    -------
    int
        The exit code (only non-zero when ``check`` is False).
    """
    stdout_path = Path(stdout_path)
    stderr_path = Path(stderr_path)
    if cancel is not None:
        cancel.raise_if_cancelled(cmd_to_str(cmd))

    logger.debug("Running command: %s > %s 2>> %s", cmd_to_str(cmd), stdout_path, stderr_path)

    with open(stdout_path, "wb") as out, open(stderr_path, "ab") as err:
        proc = subprocess.Popen(
            list(map(str, cmd)),
            cwd=None if cwd is None else str(cwd),
            env=_merged_env(env),
            stdout=out,
            stderr=err,
        )
        rc = _wait(proc, cmd, cancel)

    if check and rc != 0:
        raise _failure(cmd, rc, _tail_file(stderr_path))
    return rc


def run_to_gzip(
    cmd: Sequence[str],
    *,
    out_path: str | Path,
    env: Optional[Mapping[str, str]] = None,
    check: bool = True,
    cancel: Optional[CancelToken] = None,
) -> int:
    """Run ``cmd | gzip > out_path``, compressing in-process."""
    out_path = Path(out_path)
    if cancel is not None:
        cancel.raise_if_cancelled(cmd_to_str(cmd))

    logger.debug("Running command: %s | gzip > %s", cmd_to_str(cmd), out_path)

    with tempfile.TemporaryFile() as errfh:
        proc = subprocess.Popen(
            list(map(str, cmd)),
            env=_merged_env(env),
            stdout=subprocess.PIPE,
            stderr=errfh,
        )
        assert proc.stdout is not None
        with gzip.open(out_path, "wb") as gz:
            for chunk in iter(lambda: proc.stdout.read(_COPY_CHUNK), b""):
                if cancel is not None and cancel.is_set():
                    _terminate(proc)
                    raise JobCancelled(f"Cancelled while running: {cmd_to_str(cmd)}")
                gz.write(chunk)
        proc.stdout.close()
        rc = _wait(proc, cmd, cancel)
        errfh.seek(0)
        err = errfh.read()

    if check and rc != 0:
        raise _failure(cmd, rc, _tail(err.decode("utf-8", errors="replace")))
    return rc
