"""Subprocess capability used by the analysis runner.

The runner only talks to the `ProcessRunner` protocol, so tests substitute a
fake and never spawn real processes. `SubprocessRunner` is the production
implementation on top of asyncio.
"""

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Protocol, Sequence, runtime_checkable

from worker.core.errors import SubprocessExitError, SubprocessLaunchError, SubprocessTimeoutError
from worker.sandbox.limits import ResourceLimits

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def check_returncode(self) -> None:
        """Raise SubprocessExitError if the process exited non-zero."""
        if self.exit_code != 0:
            raise SubprocessExitError(self.command, self.exit_code, self.stdout, self.stderr)


@runtime_checkable
class ProcessRunner(Protocol):
    """Run one external command to completion and capture its output."""

    async def run(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path,
        timeout: float,
        env: Optional[Mapping[str, str]] = None,
    ) -> ProcessResult:
        """Run ``command`` with ``args`` in ``cwd``.

        ``env`` entries are layered over the worker's own environment.

        Raises:
            SubprocessLaunchError: the binary is missing or not executable.
            SubprocessTimeoutError: ``timeout`` seconds elapsed; the process
                was killed.
        """
        ...


def _decode(data: Optional[bytes]) -> str:
    return (data or b"").decode("utf-8", errors="replace")


class SubprocessRunner:
    """asyncio-based ProcessRunner.

    Children start in their own session so a timeout can kill the whole
    process tree (the Dart tool spawns helper processes), and run under
    the sandbox resource limits.
    """

    def __init__(self, limits: Optional[ResourceLimits] = None) -> None:
        self._limits = limits or ResourceLimits.from_env()

    async def run(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path,
        timeout: float,
        env: Optional[Mapping[str, str]] = None,
    ) -> ProcessResult:
        merged_env = {**os.environ, **(env or {})}
        posix = sys.platform != "win32"
        label = " ".join([command, *args])

        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=str(cwd),
                env=merged_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=posix,
                preexec_fn=self._limits.apply if posix else None,
            )
        except OSError as exc:
            raise SubprocessLaunchError(command, exc) from exc

        # Shielded so output read before a timeout is still collected after the kill.
        communicate = asyncio.ensure_future(proc.communicate())
        try:
            stdout, stderr = await asyncio.wait_for(asyncio.shield(communicate), timeout=timeout)
        except asyncio.TimeoutError:
            _kill_tree(proc, posix)
            stdout, stderr = await communicate
            logger.warning("'%s' timed out after %ss; killed", label, timeout)
            raise SubprocessTimeoutError(label, timeout, _decode(stdout), _decode(stderr))

        return ProcessResult(
            command=label,
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=_decode(stdout),
            stderr=_decode(stderr),
        )


def _kill_tree(proc: asyncio.subprocess.Process, posix: bool) -> None:
    try:
        if posix:
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass
