from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import math
import os
import shlex

import psutil

from disk_monitor.cache import ScanKind
from disk_monitor.errors import SampleUnavailable
from disk_monitor.hostspec import HostDescriptor
from disk_monitor.remote import SshExecutor, is_local_host

SIMULATED_PERCENT = 95

OS_POSIX = "posix"
OS_DARWIN = "darwin"
OS_LOCAL = "local"

# Header lines of df output, including the French "Sys. de fichiers"
_DF_HEADERS = ("Filesystem", "Sys.")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageSample:
    host: str
    partition: str
    filesystem: str
    size_bytes: int | None
    used_bytes: int | None
    avail_bytes: int | None
    used_percent: int | None
    mount_point: str
    os_kind: str


@dataclass(frozen=True)
class InodeSample:
    host: str
    partition: str
    filesystem: str
    inodes: int | None
    iused: int | None
    ifree: int | None
    used_percent: int | None
    mount_point: str


def parse_percent(text: str | None) -> int | None:
    """Parse a df capacity column such as ``42%``; anything else is unknown."""
    if text is None:
        return None
    value = text.strip()
    if value.endswith("%"):
        value = value[:-1]
    if value.isascii() and value.isdigit():
        return int(value)
    return None


def _parse_int(text: str) -> int | None:
    return int(text) if text.isascii() and text.isdigit() else None


def _kib_to_bytes(text: str) -> int | None:
    value = _parse_int(text)
    return value * 1024 if value is not None else None


def format_bytes(value: int | None) -> str:
    """Human readable size in the style of ``df -h``."""
    if value is None:
        return "N/A"
    size = float(value)
    for unit in ("B", "K", "M", "G", "T"):
        if abs(size) < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}P"


def _first_data_line(output: str) -> list[str] | None:
    for line in output.splitlines():
        if not line.strip() or line.startswith(_DF_HEADERS):
            continue
        return line.split()
    return None


class DiskUsageQuerier:
    """Queries disk usage on one host in that host's ``df`` dialect."""

    os_kind = OS_POSIX

    def __init__(
        self,
        executor: SshExecutor,
        host: HostDescriptor,
        timeout_s: float = 30,
        simulate: bool = False,
    ) -> None:
        self.executor = executor
        self.host = host
        self.timeout_s = timeout_s
        self.simulate = simulate
        self.logger = logging.getLogger(self.__class__.__name__)

    def usage_command(self, partition: str) -> str:
        raise NotImplementedError

    def mount_point(self, fields: list[str], partition: str) -> str:
        raise NotImplementedError

    def big_items_command(self, partition: str, kind: ScanKind, limit: int) -> str:
        raise NotImplementedError

    def inodes(self, partition: str) -> InodeSample | None:
        return None

    def _run(self, command: str, timeout: float | None = None):
        return self.executor.run(
            self.host.name, self.host.principal, command, timeout or self.timeout_s
        )

    def sample(self, partition: str) -> UsageSample:
        result = self._run(self.usage_command(partition))
        if not result.ok and not result.stdout.strip():
            reason = "timed out" if result.timed_out else f"exit status {result.exit_status}"
            raise SampleUnavailable(self.host.name, partition, reason)
        sample = self.parse_usage(result.stdout, partition)
        return self._simulated(sample)

    def parse_usage(self, output: str, partition: str) -> UsageSample:
        fields = _first_data_line(output)
        if fields is None or len(fields) < 5:
            raise SampleUnavailable(self.host.name, partition, "no data received")
        return UsageSample(
            host=self.host.name,
            partition=partition,
            filesystem=fields[0],
            size_bytes=_kib_to_bytes(fields[1]),
            used_bytes=_kib_to_bytes(fields[2]),
            avail_bytes=_kib_to_bytes(fields[3]),
            used_percent=parse_percent(fields[4]),
            mount_point=self.mount_point(fields, partition),
            os_kind=self.os_kind,
        )

    def _simulated(self, sample: UsageSample) -> UsageSample:
        if not self.simulate or sample.used_percent is None:
            return sample
        self.logger.info(
            "SIMULATION: %s:%s reported at %s%% (measured %s%%)",
            sample.host,
            sample.partition,
            SIMULATED_PERCENT,
            sample.used_percent,
        )
        return replace(sample, used_percent=SIMULATED_PERCENT)


class PosixDiskUsageQuerier(DiskUsageQuerier):
    """GNU/Linux and other POSIX ``df`` output, forced to the C locale."""

    os_kind = OS_POSIX

    def usage_command(self, partition: str) -> str:
        return f"LC_ALL=C df -kP {shlex.quote(partition)}"

    def mount_point(self, fields: list[str], partition: str) -> str:
        # Mount points may contain spaces
        return " ".join(fields[5:]) or partition

    def big_items_command(self, partition: str, kind: ScanKind, limit: int) -> str:
        return (
            f"find {shlex.quote(partition)} -type {kind.find_type} "
            f"-exec du -sh {{}} \\; 2>/dev/null | sort -rh | head -{int(limit)}"
        )

    def inodes(self, partition: str) -> InodeSample | None:
        result = self._run(f"LC_ALL=C df -iP {shlex.quote(partition)}")
        fields = _first_data_line(result.stdout)
        if fields is None or len(fields) < 5:
            self.logger.warning("No inode data for %s:%s", self.host.name, partition)
            return None
        return InodeSample(
            host=self.host.name,
            partition=partition,
            filesystem=fields[0],
            inodes=_parse_int(fields[1]),
            iused=_parse_int(fields[2]),
            ifree=_parse_int(fields[3]),
            used_percent=parse_percent(fields[4]),
            mount_point=" ".join(fields[5:]) or partition,
        )


class BsdDiskUsageQuerier(DiskUsageQuerier):
    """Darwin ``df``: inode columns sit between capacity and the mount point."""

    os_kind = OS_DARWIN

    def usage_command(self, partition: str) -> str:
        return f"df -k {shlex.quote(partition)}"

    def mount_point(self, fields: list[str], partition: str) -> str:
        if len(fields) >= 9:
            return " ".join(fields[8:])
        return " ".join(fields[5:]) or partition

    def big_items_command(self, partition: str, kind: ScanKind, limit: int) -> str:
        return (
            f"find {shlex.quote(partition)} -type {kind.find_type} -not -path '*/.*' "
            f"-exec du -sh {{}} \\; 2>/dev/null | sort -hr | head -{int(limit)}"
        )


class LocalDiskUsageQuerier(PosixDiskUsageQuerier):
    """The controller itself, sampled through psutil instead of a shell."""

    os_kind = OS_LOCAL

    def _partition_for(self, path: str):
        best = None
        for part in psutil.disk_partitions(all=True):
            mount = part.mountpoint
            if path == mount or path.startswith(mount.rstrip("/") + "/"):
                if best is None or len(mount) > len(best.mountpoint):
                    best = part
        return best

    def sample(self, partition: str) -> UsageSample:
        try:
            usage = psutil.disk_usage(partition)
        except OSError as exc:
            raise SampleUnavailable(self.host.name, partition, str(exc)) from exc
        part = self._partition_for(partition)
        # Round up like df does
        percent = int(math.ceil(usage.percent))
        sample = UsageSample(
            host=self.host.name,
            partition=partition,
            filesystem=part.device if part else "",
            size_bytes=int(usage.total),
            used_bytes=int(usage.used),
            avail_bytes=int(usage.free),
            used_percent=percent,
            mount_point=part.mountpoint if part else partition,
            os_kind=self.os_kind,
        )
        return self._simulated(sample)

    def inodes(self, partition: str) -> InodeSample | None:
        try:
            stats = os.statvfs(partition)
        except OSError:
            self.logger.warning("No inode data for %s:%s", self.host.name, partition)
            return None
        if not stats.f_files:
            return None
        iused = stats.f_files - stats.f_ffree
        part = self._partition_for(partition)
        return InodeSample(
            host=self.host.name,
            partition=partition,
            filesystem=part.device if part else "",
            inodes=stats.f_files,
            iused=iused,
            ifree=stats.f_ffree,
            used_percent=int(math.ceil(iused * 100 / stats.f_files)),
            mount_point=part.mountpoint if part else partition,
        )


def detect_os(executor: SshExecutor, host: HostDescriptor, timeout_s: float = 30) -> str:
    result = executor.run(host.name, host.principal, "uname", timeout_s)
    return result.stdout.strip()


def select_querier(
    executor: SshExecutor,
    host: HostDescriptor,
    timeout_s: float = 30,
    simulate: bool = False,
) -> DiskUsageQuerier:
    """Pick the usage dialect for ``host`` once, before sampling it."""
    if is_local_host(host.name):
        logger.debug("%s is the controller; sampling locally", host.name)
        return LocalDiskUsageQuerier(executor, host, timeout_s, simulate)
    os_name = detect_os(executor, host, timeout_s)
    logger.debug("Detected operating system for %s: %s", host.name, os_name or "unknown")
    if os_name == "Darwin":
        return BsdDiskUsageQuerier(executor, host, timeout_s, simulate)
    return PosixDiskUsageQuerier(executor, host, timeout_s, simulate)
