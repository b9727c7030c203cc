"""ProcessRunner unit tests.

Test coverage:
- Basic process launch (stdout/stderr pipes, working directory)
- stdin closed immediately after launch
- Process isolation (new session/process group)
- Termination escalation (SIGTERM -> SIGKILL) and idempotence
- Environment construction
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import pytest

from cli_agent_relay.runtime.process_runner import (
    FALLBACK_PATH,
    IS_WINDOWS,
    ProcessRunner,
    ProcessSpec,
    build_environment,
)

pytestmark = pytest.mark.skipif(IS_WINDOWS, reason="POSIX-specific tests")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Create temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def runner() -> ProcessRunner:
    """Create ProcessRunner instance with short timeouts for testing."""
    return ProcessRunner(term_timeout=0.5, kill_timeout=0.5)


async def _read_all(process: asyncio.subprocess.Process) -> tuple[str, str]:
    stdout, stderr = await asyncio.gather(process.stdout.read(), process.stderr.read())
    await process.wait()
    return stdout.decode().strip(), stderr.decode().strip()


def _alive(pid: int) -> bool:
    """Zombies (exited but not yet reaped) count as dead."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    stat = Path(f"/proc/{pid}/stat")
    try:
        # Field 3 is the state; the command name in field 2 may contain spaces
        return stat.read_text().rsplit(")", 1)[1].split()[0] != "Z"
    except (OSError, IndexError):
        return True


# =============================================================================
# Basic Execution Tests
# =============================================================================


class TestBasicExecution:
    """Test basic process launch."""

    @pytest.mark.asyncio
    async def test_simple_command(self, temp_workspace: Path, runner: ProcessRunner):
        process = await runner.start(ProcessSpec(argv=["echo", "hello"], cwd=temp_workspace))
        stdout, _ = await _read_all(process)
        assert stdout == "hello"
        assert process.returncode == 0

    @pytest.mark.asyncio
    async def test_working_directory(self, temp_workspace: Path, runner: ProcessRunner):
        process = await runner.start(ProcessSpec(argv=["pwd"], cwd=temp_workspace))
        stdout, _ = await _read_all(process)
        assert Path(stdout).resolve() == temp_workspace.resolve()

    @pytest.mark.asyncio
    async def test_stderr_is_separate(self, temp_workspace: Path, runner: ProcessRunner):
        process = await runner.start(ProcessSpec(
            argv=["sh", "-c", "echo out; echo err >&2"],
            cwd=temp_workspace,
        ))
        stdout, stderr = await _read_all(process)
        assert stdout == "out"
        assert stderr == "err"

    @pytest.mark.asyncio
    async def test_stdin_closed_immediately(self, temp_workspace: Path, runner: ProcessRunner):
        """A process reading stdin sees EOF instead of blocking."""
        process = await runner.start(ProcessSpec(
            argv=["sh", "-c", "cat; echo eof"],
            cwd=temp_workspace,
        ))
        stdout, _ = await asyncio.wait_for(_read_all(process), timeout=5)
        assert stdout == "eof"

    @pytest.mark.asyncio
    async def test_missing_executable_raises(self, temp_workspace: Path, runner: ProcessRunner):
        with pytest.raises(OSError):
            await runner.start(ProcessSpec(
                argv=[str(temp_workspace / "does-not-exist")],
                cwd=temp_workspace,
            ))

    @pytest.mark.asyncio
    async def test_non_executable_raises(self, temp_workspace: Path, runner: ProcessRunner):
        script = temp_workspace / "script.sh"
        script.write_text("#!/bin/sh\necho hi\n")
        script.chmod(0o644)
        with pytest.raises(PermissionError):
            await runner.start(ProcessSpec(argv=[str(script)], cwd=temp_workspace))


# =============================================================================
# Process Isolation Tests
# =============================================================================


class TestProcessIsolation:
    """Test process isolation (new session/process group)."""

    @pytest.mark.asyncio
    async def test_new_session(self, temp_workspace: Path, runner: ProcessRunner):
        process = await runner.start(ProcessSpec(argv=["sleep", "5"], cwd=temp_workspace))
        try:
            assert os.getsid(process.pid) != os.getsid(os.getpid())
            assert os.getpgid(process.pid) == process.pid
        finally:
            await runner.terminate(process)


# =============================================================================
# Termination Tests
# =============================================================================


class TestTermination:
    """Test process termination."""

    @pytest.mark.asyncio
    async def test_terminate_long_running(self, temp_workspace: Path, runner: ProcessRunner):
        process = await runner.start(ProcessSpec(argv=["sleep", "100"], cwd=temp_workspace))
        await runner.terminate(process)
        assert process.returncode is not None
        assert process.returncode < 0

    @pytest.mark.asyncio
    async def test_terminate_kills_whole_group(self, temp_workspace: Path, runner: ProcessRunner):
        """Grandchildren in the same process group are terminated too."""
        pid_file = temp_workspace / "child.pid"
        process = await runner.start(ProcessSpec(
            argv=["sh", "-c", f"sleep 100 & echo $! > {pid_file}; wait"],
            cwd=temp_workspace,
        ))
        for _ in range(50):
            if pid_file.exists() and pid_file.read_text().strip():
                break
            await asyncio.sleep(0.05)
        child_pid = int(pid_file.read_text().strip())

        await runner.terminate(process)

        for _ in range(50):
            if not _alive(child_pid):
                break
            await asyncio.sleep(0.05)
        else:
            pytest.fail("grandchild still alive after group termination")

    @pytest.mark.asyncio
    async def test_escalates_to_sigkill(self, temp_workspace: Path, runner: ProcessRunner):
        process = await runner.start(ProcessSpec(
            argv=[sys.executable, "-c", (
                "import signal, sys, time\n"
                "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
                "print('ready', flush=True)\n"
                "time.sleep(100)\n"
            )],
            cwd=temp_workspace,
        ))
        assert (await process.stdout.readline()).strip() == b"ready"
        await runner.terminate(process)
        assert process.returncode == -9

    @pytest.mark.asyncio
    async def test_terminate_is_idempotent(self, temp_workspace: Path, runner: ProcessRunner):
        process = await runner.start(ProcessSpec(argv=["echo", "done"], cwd=temp_workspace))
        await _read_all(process)
        await runner.terminate(process)
        await runner.terminate(process)
        assert process.returncode == 0

    @pytest.mark.asyncio
    async def test_terminate_survives_caller_cancellation(
        self, temp_workspace: Path, runner: ProcessRunner
    ):
        """Cancelling the caller still completes termination."""
        process = await runner.start(ProcessSpec(argv=["sleep", "100"], cwd=temp_workspace))
        task = asyncio.create_task(runner.terminate(process))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert process.returncode is not None


# =============================================================================
# Environment Tests
# =============================================================================


class TestEnvironment:
    """Test environment construction."""

    def test_inherits_base(self):
        env = build_environment({"PATH": "/bin", "HOME": "/home/u", "CUSTOM": "1"})
        assert env["CUSTOM"] == "1"
        assert env["PATH"] == "/bin"
        assert env["HOME"] == "/home/u"
        assert env["TERM"] == "xterm-256color"

    def test_fallbacks(self):
        env = build_environment({"TERM": "dumb"})
        assert env["PATH"] == FALLBACK_PATH
        assert env["HOME"] == str(Path.home())
        assert env["TERM"] == "xterm-256color"

    def test_does_not_mutate_base(self):
        base = {"PATH": ""}
        build_environment(base)
        assert base == {"PATH": ""}

    @pytest.mark.asyncio
    async def test_custom_environment(self, temp_workspace: Path, runner: ProcessRunner):
        env = build_environment()
        env["TEST_VAR"] = "test_value_123"
        process = await runner.start(ProcessSpec(
            argv=["sh", "-c", "echo $TEST_VAR $TERM"],
            cwd=temp_workspace,
            env=env,
        ))
        stdout, _ = await _read_all(process)
        assert stdout == "test_value_123 xterm-256color"
