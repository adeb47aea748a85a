from __future__ import annotations


class DiskMonitorError(Exception):
    """Base class for errors raised by disk-monitor."""


class ConfigError(DiskMonitorError):
    """A configuration value or host list line could not be used."""


class SampleUnavailable(DiskMonitorError):
    """The remote usage query failed or returned nothing parsable."""

    def __init__(self, host: str, partition: str, reason: str) -> None:
        super().__init__(f"{host}:{partition}: {reason}")
        self.host = host
        self.partition = partition
        self.reason = reason


class ScanFailure(DiskMonitorError):
    """An expensive largest-directories/files scan produced no result."""

    def __init__(self, host: str, partition: str, kind: str, reason: str) -> None:
        super().__init__(f"{kind} scan of {host}:{partition} failed: {reason}")
        self.host = host
        self.partition = partition
        self.kind = kind
        self.reason = reason


class LockContention(DiskMonitorError):
    """Another run already holds the process lock."""


class UnknownSizeUnit(DiskMonitorError):
    """A size label carries a unit suffix that cannot be normalized."""
