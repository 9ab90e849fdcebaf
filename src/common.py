"""Common utilities and types shared by providers."""

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Longest command output quoted in a failure message
MAX_DETAIL = 300


@dataclass
class ProviderResult:
    """Result returned by a provider create/destroy call.

    already_exists marks a create that found the object in place; the
    scheduler treats it as success.
    """
    success: bool
    message: str = ''
    duration: float = 0.0
    already_exists: bool = False


@dataclass
class CommandResult:
    """Outcome of one local command.

    returncode is -1 when the command could not be started or timed out.
    """
    returncode: int
    stdout: str = ''
    stderr: str = ''
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def detail(self, limit: int = MAX_DETAIL) -> str:
        """Most useful output for an error message, truncated."""
        text = self.stderr.strip() or self.stdout.strip() or 'unknown error'
        if len(text) > limit:
            text = text[:limit] + '...'
        return text


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: float = 600,
    env: Optional[dict] = None,
    label: str = 'exec',
) -> CommandResult:
    """Run a command to completion, capturing its output.

    Args:
        cmd: Executable and arguments
        cwd: Working directory (default: current directory)
        timeout: Seconds before the command is killed
        env: Full environment for the child (default: inherit)
        label: Resource name used in log lines
    """
    logger.debug(f"[{label}] running: {' '.join(cmd)}")
    start = time.time()
    try:
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            check=False,
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"[{label}] timed out after {timeout}s")
        return CommandResult(-1, stderr=f'Command timed out after {timeout}s',
                             duration=time.time() - start)
    except OSError as e:
        return CommandResult(-1, stderr=str(e), duration=time.time() - start)

    result = CommandResult(proc.returncode, proc.stdout, proc.stderr, time.time() - start)
    logger.debug(f"[{label}] exited with {result.returncode} in {result.duration:.1f}s")
    return result


def process_alive(pid: int) -> bool:
    """Check if process with given PID exists."""
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # exists, owned by someone else


class PidFile:
    """PID file of a detached process started for one resource.

    Args:
        path: Location of the PID file
        label: Resource name used in log lines
    """

    def __init__(self, path: Path, label: str = 'exec'):
        self.path = Path(path)
        self.label = label

    def read(self) -> Optional[int]:
        """Recorded PID, or None if the file is missing or garbled."""
        try:
            return int(self.path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def write(self, pid: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f'{pid}\n')

    def remove(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def running_pid(self) -> Optional[int]:
        """Recorded PID if that process is still alive."""
        pid = self.read()
        if pid is not None and process_alive(pid):
            return pid
        return None

    def stop(self, timeout: float = 5.0) -> bool:
        """Stop the recorded process: SIGTERM, then SIGKILL after timeout.

        The PID file is removed once the process is gone.

        Returns:
            True if no process is left running
        """
        pid = self.running_pid()
        if pid is None:
            self.remove()
            return True

        logger.debug(f"[{self.label}] sending SIGTERM to {pid}")
        if not self._signal(pid, signal.SIGTERM) or self._wait_exit(pid, timeout):
            self.remove()
            return True

        logger.warning(f"[{self.label}] PID {pid} ignored SIGTERM for {timeout}s, sending SIGKILL")
        if not self._signal(pid, signal.SIGKILL) or self._wait_exit(pid, 0.5):
            self.remove()
            return True
        return False

    @staticmethod
    def _signal(pid: int, sig: int) -> bool:
        """Send a signal; False if the process is already gone."""
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return False
        return True

    @staticmethod
    def _wait_exit(pid: int, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not process_alive(pid):
                return True
            time.sleep(0.1)
        return not process_alive(pid)
