# Copyright (c) Syntropy Systems
"""Process runner with orphan prevention."""
from __future__ import annotations

import contextlib
import ctypes
import logging
import os
import shlex
import signal
import subprocess
import sys
import threading
import time
from typing import IO, TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

# Runners whose process is alive, so an interrupt can take them all down
_active: set[ProcessRunner] = set()
_active_lock = threading.Lock()


def setup_pdeathsig() -> None:
    """Set PDEATHSIG so child dies when parent dies.

    This prevents orphan learner processes when birdrun crashes.
    Only works on Linux.
    """
    if sys.platform != "linux":
        return
    try:
        libc = ctypes.CDLL("libc.so.6", use_errno=True)
        pr_set_pdeathsig = 1
        libc.prctl(pr_set_pdeathsig, signal.SIGKILL)
    except (AttributeError, OSError):
        # Can't set PDEATHSIG, continue without it
        return


class ProcessRunner:
    """Runs one external command with proper process management.

    Features:
    - Uses start_new_session=True for reliable process group
    - Sets PDEATHSIG on Linux to prevent orphans
    - Captures stderr (and stdout unless redirected) to a log file
    - Provides graceful and forceful termination
    """

    command_argv: list[str]
    log_path: Path
    stdout_path: Path | None
    workdir: Path | None
    env: dict[str, str]
    _process: subprocess.Popen[bytes] | None
    _exit_code: int | None
    _files: list[IO[bytes]]

    def __init__(
        self,
        command_argv: list[str],
        log_path: Path,
        stdout_path: Path | None = None,
        workdir: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        """Initialize a process runner.

        Args:
            command_argv: Command as list of argv tokens (no shell)
            log_path: File receiving the command's output
            stdout_path: If given, stdout goes here instead of the log
            workdir: Working directory to run the command in
            env: Additional environment variables

        """
        self.command_argv = command_argv
        self.log_path = log_path
        self.stdout_path = stdout_path
        self.workdir = workdir

        # Merge environment
        self.env = os.environ.copy()
        if env:
            self.env.update(env)

        self._process = None
        self._exit_code = None
        self._files = []

    def start(self) -> None:
        """Start the process."""
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        log_file = self.log_path.open("wb")
        self._files.append(log_file)
        stdout_file = log_file
        if self.stdout_path is not None:
            stdout_file = self.stdout_path.open("wb")
            self._files.append(stdout_file)

        logger.debug("Starting: %s", shlex.join(self.command_argv))
        try:
            self._process = subprocess.Popen(  # noqa: S603
                self.command_argv,
                stdout=stdout_file,
                stderr=log_file,
                env=self.env,
                cwd=str(self.workdir) if self.workdir is not None else None,
                start_new_session=True,  # Creates new process group
                preexec_fn=setup_pdeathsig if sys.platform == "linux" else None,  # noqa: PLW1509
            )
        except OSError:
            self._cleanup()
            raise
        with _active_lock:
            _active.add(self)

    def wait(self) -> int:
        """Wait for the process to finish and return exit code."""
        if self._process is None:
            return self._exit_code or 0

        code = self._process.wait()
        self._exit_code = code
        self._cleanup()
        return code

    def run(self, grace_period: float = 10.0) -> int:
        """Start, wait, and return the exit code.

        On KeyboardInterrupt the process group is killed before the
        interrupt propagates. A command that cannot be started reports
        status 127, as a shell would.
        """
        try:
            self.start()
        except OSError as e:
            logger.error("Cannot start %s: %s", self.command_argv[0], e)
            with self.log_path.open("a") as f:
                _ = f.write(f"birdrun: cannot start {self.command_argv[0]}: {e}\n")
            return 127
        try:
            return self.wait()
        except KeyboardInterrupt:
            _ = self.kill(grace_period=grace_period)
            raise

    def kill(self, grace_period: float = 10.0) -> int:
        """Kill the process.

        First sends SIGTERM to the process group, waits for grace_period,
        then sends SIGKILL if still alive.

        Args:
            grace_period: Seconds to wait after SIGTERM before SIGKILL

        Returns:
            Exit code (negative signal number if killed)

        """
        if self._process is None:
            return self._exit_code or 0

        # Already finished?
        if self._process.poll() is not None:
            exit_code = self._process.returncode or 0
            self._exit_code = exit_code
            self._cleanup()
            return exit_code

        # Get the process group ID (same as session ID with start_new_session)
        try:
            pgid = os.getpgid(self._process.pid)
        except (OSError, ProcessLookupError):
            # Process already gone
            self._cleanup()
            return self._exit_code or -signal.SIGKILL

        # Send SIGTERM to process group
        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGTERM)

        # Wait for grace period
        deadline = time.time() + grace_period
        while time.time() < deadline:
            if self._process.poll() is not None:
                exit_code = self._process.returncode or 0
                self._exit_code = exit_code
                self._cleanup()
                return exit_code
            time.sleep(0.1)

        # Still alive - SIGKILL
        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGKILL)

        # Wait for process to die
        with contextlib.suppress(subprocess.TimeoutExpired):
            _ = self._process.wait(timeout=5.0)

        exit_code = self._process.returncode or -signal.SIGKILL
        self._exit_code = exit_code
        self._cleanup()
        return exit_code

    def _cleanup(self) -> None:
        """Close captured output files."""
        with _active_lock:
            _active.discard(self)
        for f in self._files:
            with contextlib.suppress(Exception):
                f.close()
        self._files = []

    @property
    def pid(self) -> int | None:
        """Get the process ID."""
        if self._process is None:
            return None
        return self._process.pid

    @property
    def exit_code(self) -> int | None:
        """Get the exit code if finished."""
        return self._exit_code


def kill_active(grace_period: float = 10.0) -> int:
    """Kill every process started by a runner that is still alive.

    Returns the number of runners that were signalled.
    """
    with _active_lock:
        runners = list(_active)
    for runner in runners:
        _ = runner.kill(grace_period=grace_period)
    return len(runners)
