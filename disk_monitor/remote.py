from __future__ import annotations

from dataclasses import dataclass
import logging
import socket
import subprocess

from disk_monitor.logging_utils import TRACE_LEVEL

LOCAL_HOST_NAMES = {"localhost", "127.0.0.1", "::1"}

# Exit status used when the command never produced one (timeout, no binary)
NO_EXIT_STATUS = 255


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    exit_status: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_status == 0 and not self.timed_out


def is_local_host(name: str) -> bool:
    if name in LOCAL_HOST_NAMES:
        return True
    hostname = socket.gethostname()
    return name == hostname or name == hostname.split(".")[0]


class SshExecutor:
    """Runs shell commands on monitored hosts.

    Remote hosts are reached with ``ssh`` in batch mode; the controller itself
    is served through the local shell.
    """

    def __init__(self, connect_timeout_s: int = 10) -> None:
        self.connect_timeout_s = connect_timeout_s
        self.logger = logging.getLogger(self.__class__.__name__)

    def build_command(self, host: str, principal: str | None, command: str) -> list[str]:
        if is_local_host(host):
            return ["sh", "-c", command]
        cmd = [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout_s}",
        ]
        if principal:
            cmd.extend(["-l", principal])
        cmd.extend([host, command])
        return cmd

    def run(
        self, host: str, principal: str | None, command: str, timeout: float
    ) -> CommandResult:
        cmd = self.build_command(host, principal, command)
        self.logger.debug("Running on %s: %s", host, command)
        try:
            result = subprocess.run(
                cmd,
                check=False,
                text=True,
                capture_output=True,
                timeout=timeout,
            )
        except FileNotFoundError:
            self.logger.error("Command not found: %s", cmd[0])
            return CommandResult(stdout="", exit_status=NO_EXIT_STATUS)
        except subprocess.TimeoutExpired:
            self.logger.warning("Command on %s timed out after %ss: %s", host, timeout, command)
            return CommandResult(stdout="", exit_status=NO_EXIT_STATUS, timed_out=True)

        if result.returncode != 0:
            self.logger.debug("Command failed on %s (%s): %s", host, result.returncode, command)
            if result.stderr:
                self.logger.log(TRACE_LEVEL, "stderr: %s", result.stderr.strip())
        if result.stdout:
            self.logger.log(TRACE_LEVEL, "stdout: %s", result.stdout.strip())
        return CommandResult(stdout=result.stdout or "", exit_status=result.returncode)

    def check_access(self, host: str, principal: str | None, timeout: float) -> bool:
        """True when a trivial command runs on ``host`` without prompting."""
        result = self.run(host, principal, "echo test", timeout)
        return result.ok and result.stdout.strip() == "test"


class PingProbe:
    def __init__(self, attempts: int = 2, timeout_s: int = 3) -> None:
        self.attempts = attempts
        self.timeout_s = timeout_s
        self.logger = logging.getLogger(self.__class__.__name__)

    def is_reachable(
        self, host: str, attempts: int | None = None, timeout: int | None = None
    ) -> bool:
        attempts = attempts or self.attempts
        timeout = timeout or self.timeout_s
        self.logger.debug("Checking that %s answers ping", host)
        try:
            result = subprocess.run(
                ["ping", "-c", str(attempts), "-W", str(timeout), host],
                check=False,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=attempts * timeout + 2,
            )
        except FileNotFoundError:
            self.logger.error("Command not found: ping")
            return False
        except subprocess.TimeoutExpired:
            self.logger.warning("Ping of %s did not finish in time", host)
            return False
        if result.returncode != 0:
            self.logger.warning("%s does not answer ping", host)
            return False
        return True
