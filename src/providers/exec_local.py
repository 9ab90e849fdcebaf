"""Provider for exec_local resources: commands run on the local machine.

Attributes understood:
    cmd: Executable to run (required)
    args: List of arguments
    working_directory: Directory to run in (default: current directory)
    env: Extra environment variables
    daemon: Run detached in the background; destroy stops it
    timeout: Seconds a non-daemon command may run (default: config.exec_timeout)

Daemon processes are tracked by PID files under <home>/exec/, their output
goes to <home>/exec/<name>.log.
"""

import logging
import os
import subprocess
import threading
import time
from pathlib import Path

from blueprint import Resource, Status
from common import PidFile, ProviderResult, run_command
from config import DriverConfig

logger = logging.getLogger(__name__)


class ExecLocalProvider:
    """Runs exec_local resources as local processes."""

    def __init__(self, config: DriverConfig):
        self.config = config

    def _pid_file(self, resource: Resource) -> PidFile:
        return PidFile(self.config.exec_dir / f'{resource.name}.pid', label=resource.name)

    def _log_file(self, resource: Resource) -> Path:
        return self.config.exec_dir / f'{resource.name}.log'

    def _command(self, resource: Resource) -> list[str]:
        attrs = resource.attributes
        cmd = attrs.get('cmd')
        if not cmd:
            raise ValueError("exec_local requires a 'cmd' attribute")
        return [str(cmd)] + [str(a) for a in attrs.get('args') or []]

    def _env(self, resource: Resource) -> dict:
        extra = resource.attributes.get('env') or {}
        return {**os.environ, **{str(k): str(v) for k, v in extra.items()}}

    def _cwd(self, resource: Resource):
        wd = resource.attributes.get('working_directory')
        return Path(wd) if wd else None

    def create(self, resource: Resource) -> ProviderResult:
        """Run the command, or start it detached for daemon resources."""
        start = time.time()
        try:
            cmd = self._command(resource)
        except ValueError as e:
            return ProviderResult(success=False, message=str(e))

        if resource.attributes.get('daemon'):
            return self._start_daemon(resource, cmd, start)

        timeout = resource.attributes.get('timeout') or self.config.exec_timeout
        logger.info(f"[exec_local] {resource.name}: running {' '.join(cmd)}")
        result = run_command(
            cmd, cwd=self._cwd(resource), timeout=timeout, env=self._env(resource),
            label=resource.name)
        if not result.ok:
            return ProviderResult(
                success=False,
                message=f"Command exited with {result.returncode}: {result.detail()}",
                duration=result.duration,
            )
        return ProviderResult(
            success=True,
            message=f"Command completed for {resource.name}",
            duration=result.duration,
        )

    def _start_daemon(self, resource: Resource, cmd: list[str], start: float) -> ProviderResult:
        pid_file = self._pid_file(resource)
        pid = pid_file.running_pid()
        if pid is not None:
            return ProviderResult(
                success=True,
                message=f"Daemon already running (PID {pid})",
                already_exists=True,
            )

        self.config.exec_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"[exec_local] {resource.name}: starting daemon {' '.join(cmd)}")
        try:
            with open(self._log_file(resource), 'a', encoding='utf-8') as log:
                proc = subprocess.Popen(
                    cmd,
                    cwd=self._cwd(resource),
                    env=self._env(resource),
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            return ProviderResult(
                success=False,
                message=f"Failed to start daemon: {e}",
                duration=time.time() - start,
            )

        # reap on exit so process_alive() does not see a zombie
        threading.Thread(target=proc.wait, daemon=True).start()
        pid_file.write(proc.pid)
        return ProviderResult(
            success=True,
            message=f"Daemon started (PID {proc.pid})",
            duration=time.time() - start,
        )

    def destroy(self, resource: Resource) -> ProviderResult:
        """Stop a daemon resource. One-shot commands have nothing to remove."""
        if not resource.attributes.get('daemon'):
            return ProviderResult(success=True, message="Nothing to destroy")

        start = time.time()
        pid_file = self._pid_file(resource)
        pid = pid_file.running_pid()
        if pid is None:
            pid_file.remove()
            return ProviderResult(success=True, message="Daemon not running")

        logger.info(f"[exec_local] {resource.name}: stopping daemon (PID {pid})")
        if not pid_file.stop():
            return ProviderResult(
                success=False,
                message=f"Daemon PID {pid} did not exit",
                duration=time.time() - start,
            )
        return ProviderResult(
            success=True,
            message=f"Daemon stopped (PID {pid})",
            duration=time.time() - start,
        )

    def probe(self, resource: Resource) -> Status:
        if not resource.attributes.get('daemon'):
            return Status.CREATED
        if self._pid_file(resource).running_pid() is not None:
            return Status.CREATED
        return Status.DESTROYED
