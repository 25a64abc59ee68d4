"""
Cancellable wrapper around ``subprocess`` execution.

External commands (git, 7-Zip) are run without a shell. Their exit status
and stderr are surfaced through CommandError; a cancellation token is polled
while the command runs and kills it when fired.
"""

import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Mapping, Optional, Sequence

from firmkit.core.cancellation import CancellationToken, ensure_token
from firmkit.core.exceptions import CommandError, OperationCancelled

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


def run_command(
    args: Sequence[str],
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
    cancel: Optional[CancellationToken] = None,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """
    Run a command, capturing text output.

    Args:
        args: Program and arguments
        cwd: Working directory
        env: Extra environment variables layered over ``os.environ``
        timeout: Kill the command after this many seconds
        cancel: Token polled while the command runs
        check: Raise CommandError on a non-zero exit status

    Returns:
        The completed process with ``stdout``/``stderr`` as text

    Raises:
        CommandError: If the command cannot start, times out, or fails
        OperationCancelled: If the token fires while the command runs
    """
    cancel = ensure_token(cancel)
    cancel.raise_if_cancelled()

    args = [str(arg) for arg in args]
    full_env = None
    if env is not None:
        full_env = dict(os.environ)
        full_env.update(env)

    logger.debug(f"Running: {' '.join(args)} (cwd={cwd})")
    try:
        process = subprocess.Popen(
            args,
            cwd=cwd,
            env=full_env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as e:
        raise CommandError(args, message=f"Could not run {args[0]!r}: {e}") from e

    deadline = time.monotonic() + timeout if timeout is not None else None
    stdout, stderr = "", ""
    while True:
        try:
            stdout, stderr = process.communicate(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            pass

        if cancel.is_cancelled:
            _kill(process)
            raise OperationCancelled(f"Cancelled: {' '.join(args)}")
        if deadline is not None and time.monotonic() > deadline:
            _kill(process)
            raise CommandError(
                args,
                message=f"Command {' '.join(args)!r} timed out after {timeout}s",
            )

    completed = subprocess.CompletedProcess(args, process.returncode, stdout, stderr)
    if check and completed.returncode != 0:
        raise CommandError(args, completed.returncode, stderr)
    return completed


def _kill(process: subprocess.Popen) -> None:
    process.kill()
    try:
        process.communicate(timeout=5)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {process.pid} did not exit after kill")


__all__ = ["run_command"]
