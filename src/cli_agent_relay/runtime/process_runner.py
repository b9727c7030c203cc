"""Launching and stopping the agent CLI in its own process group.

The agent is started with stdout/stderr piped back to the caller and stdin
closed immediately, so it can never block waiting for interactive input.
It is placed in a fresh session (POSIX) or process group (Windows) so
that stopping it also reaches any helpers it spawned.

Stopping escalates in two steps. A polite signal is sent first and the
runner waits ``term_timeout`` seconds; whatever survives gets a hard kill
and another ``kill_timeout`` seconds. The whole sequence runs under
``asyncio.shield`` so a cancelled caller cannot leave an orphan behind.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

__all__ = [
    "ProcessRunner",
    "ProcessSpec",
    "build_environment",
    "IS_WINDOWS",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

DEFAULT_TERM_TIMEOUT = 2.0
DEFAULT_KILL_TIMEOUT = 1.0

FALLBACK_PATH = "/opt/homebrew/bin:/usr/local/bin:/usr/bin:/bin"
TERMINAL_HINT = "xterm-256color"


def build_environment(base: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a copy of ``base`` (or os.environ) fit for running the agent.

    Missing PATH and HOME are filled in; TERM is always overridden.
    """
    env = dict(os.environ if base is None else base)
    env["PATH"] = env.get("PATH") or FALLBACK_PATH
    env["HOME"] = env.get("HOME") or str(Path.home())
    env["TERM"] = TERMINAL_HINT
    return env


@dataclass(frozen=True)
class ProcessSpec:
    """What to launch: argv (executable first), cwd and an optional env."""

    argv: list[str]
    cwd: Path
    env: Mapping[str, str] | None = None


@dataclass
class ProcessRunner:
    """Starts agent processes and tears them down reliably.

    The runner never touches stdout/stderr of the process it returns; the
    caller reads them and is responsible for calling ``terminate`` when the
    process is abandoned.
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT

    async def start(self, spec: ProcessSpec) -> asyncio.subprocess.Process:
        """Launch ``spec`` detached from our process group.

        Raises:
            OSError: The executable could not be started.
        """
        pipe = asyncio.subprocess.PIPE
        process = await asyncio.create_subprocess_exec(
            *spec.argv,
            stdin=pipe,
            stdout=pipe,
            stderr=pipe,
            cwd=spec.cwd,
            **self._isolation_kwargs(spec),
        )
        if process.stdin is not None:
            process.stdin.close()

        logger.debug(f"Launched {spec.argv[0]} pid={process.pid} cwd={spec.cwd}")
        return process

    @staticmethod
    def _isolation_kwargs(spec: ProcessSpec) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if spec.env is not None:
            kwargs["env"] = dict(spec.env)
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True
        return kwargs

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        """Stop ``process`` and its group. Idempotent; no-op once it exited."""
        if process.returncode is not None:
            return

        stopping = asyncio.ensure_future(self._escalate(process))
        try:
            await asyncio.shield(stopping)
        except asyncio.CancelledError:
            # let the kill step finish, then re-raise the caller's cancel
            try:
                await asyncio.shield(stopping)
            except asyncio.CancelledError:
                logger.debug(f"Cancelled twice while stopping pid={process.pid}")
            raise

    async def _escalate(self, process: asyncio.subprocess.Process) -> None:
        steps = ((False, self.term_timeout), (True, self.kill_timeout))
        for force, grace in steps:
            try:
                self._send_stop(process, force)
            except ProcessLookupError:
                logger.debug(f"pid={process.pid} already gone")
                return
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.debug(f"pid={process.pid} still alive {grace}s after {'kill' if force else 'stop'}")
                continue
            logger.debug(f"pid={process.pid} exited with {process.returncode}")
            return

        logger.warning(f"Agent process pid={process.pid} survived SIGKILL")

    def _send_stop(self, process: asyncio.subprocess.Process, force: bool) -> None:
        if IS_WINDOWS:
            if force:
                process.kill()
                return
            try:
                os.kill(process.pid, signal.CTRL_BREAK_EVENT)
            except OSError as e:
                logger.debug(f"CTRL_BREAK_EVENT not delivered ({e}), using terminate()")
                process.terminate()
            return

        sig = signal.SIGKILL if force else signal.SIGTERM
        try:
            # start_new_session makes the child its own group leader
            os.killpg(os.getpgid(process.pid), sig)
        except ProcessLookupError:
            raise
        except OSError as e:
            logger.debug(f"killpg({process.pid}) failed ({e}), signalling the child only")
            process.send_signal(sig)
