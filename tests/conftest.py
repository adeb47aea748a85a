"""Pytest configuration and shared fixtures."""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime

import pytest

from disk_monitor.config import default_config
from disk_monitor.remote import CommandResult, NO_EXIT_STATUS

NOW = datetime(2026, 10, 18, 3, 0, 0)


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "linux: mark test as Linux-specific"
    )
    config.addinivalue_line(
        "markers", "darwin: mark test as Darwin-specific"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )


class FakeExecutor:
    """Answers remote commands from a table of ``(host, command prefix)``."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def add(self, host, prefix, stdout, exit_status=0, timed_out=False):
        self.responses[(host, prefix)] = CommandResult(stdout, exit_status, timed_out)

    def run(self, host, principal, command, timeout):
        self.calls.append((host, principal, command, timeout))
        # Longest prefix wins, so "df -kP /var" beats "df -kP /"
        matches = [
            (len(prefix), result)
            for (known_host, prefix), result in self.responses.items()
            if known_host == host and command.startswith(prefix)
        ]
        if matches:
            return max(matches, key=lambda match: match[0])[1]
        return CommandResult("", NO_EXIT_STATUS)

    def check_access(self, host, principal, timeout):
        result = self.run(host, principal, "echo test", timeout)
        return result.ok and result.stdout.strip() == "test"

    def commands_for(self, host):
        return [command for known_host, _, command, _ in self.calls if known_host == host]


class FakeProbe:
    def __init__(self, unreachable=()):
        self.unreachable = set(unreachable)
        self.calls = []

    def is_reachable(self, host, attempts=None, timeout=None):
        self.calls.append(host)
        return host not in self.unreachable


def df_output(filesystem, size_kb, used_kb, avail_kb, percent, mount):
    return (
        "Filesystem     1024-blocks      Used Available Capacity Mounted on\n"
        f"{filesystem} {size_kb} {used_kb} {avail_kb} {percent}% {mount}\n"
    )


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def app_config(tmp_path):
    """Defaults with every file under a temporary directory."""
    config = default_config()
    monitor = replace(
        config.monitor,
        log_dir=str(tmp_path / "log"),
        lock_file=str(tmp_path / "run.lock"),
        server_list=str(tmp_path / "servers.conf"),
        server_list_test=str(tmp_path / "servers-test.conf"),
        name_validation="off",
    )
    return replace(config, monitor=monitor)
