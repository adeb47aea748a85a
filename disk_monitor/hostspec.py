"""Host list parsing.

Each non-comment line of the host list describes one monitored host::

    [principal@]host[:partitions][:warning][:critical]

``partitions`` is a comma separated list of mount points (``/`` when empty),
``warning`` and ``critical`` are optional per-host usage thresholds.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import re
import socket
from typing import Callable

from disk_monitor.errors import ConfigError

DEFAULT_PARTITIONS = ("/",)

_NAME_CHARS = re.compile(r"^[A-Za-z0-9._-]+$")
_NAME_DOMAIN = re.compile(r"^[A-Za-z0-9._-]+\.[A-Za-z0-9._-]+$")
_MAX_NAME_LENGTH = 253

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HostDescriptor:
    name: str
    principal: str | None = None
    partitions: tuple[str, ...] = DEFAULT_PARTITIONS
    warning: int | None = None
    critical: int | None = None

    @property
    def target(self) -> str:
        """The ``[principal@]name`` form used to reach the host over ssh."""
        if self.principal:
            return f"{self.principal}@{self.name}"
        return self.name


@dataclass
class HostList:
    hosts: list[HostDescriptor] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _parse_threshold(value: str | None) -> int | None:
    if value is None:
        return None
    value = value.strip()
    if value.isascii() and value.isdigit():
        return int(value)
    return None


def parse_host_line(line: str) -> HostDescriptor:
    principal: str | None = None
    rest = line.strip()
    if "@" in rest:
        principal_part, rest = rest.split("@", 1)
        principal = principal_part.strip() or None

    fields = rest.split(":")
    name = fields[0].strip()
    if not name:
        raise ConfigError(f"Host line without a host name: {line.strip()!r}")

    partitions: tuple[str, ...] = DEFAULT_PARTITIONS
    if len(fields) > 1:
        parsed = tuple(p.strip() for p in fields[1].split(",") if p.strip())
        if parsed:
            partitions = parsed

    warning = _parse_threshold(fields[2] if len(fields) > 2 else None)
    critical = _parse_threshold(fields[3] if len(fields) > 3 else None)

    return HostDescriptor(
        name=name,
        principal=principal,
        partitions=partitions,
        warning=warning,
        critical=critical,
    )


def check_thresholds(host: HostDescriptor) -> list[str]:
    issues: list[str] = []
    for label, value in (("warning", host.warning), ("critical", host.critical)):
        if value is not None and not 0 <= value <= 100:
            issues.append(f"{host.name}: {label} threshold {value}% is outside 0-100")
    if (
        host.warning is not None
        and host.critical is not None
        and host.warning >= host.critical
    ):
        issues.append(
            f"{host.name}: warning threshold {host.warning}% is not below "
            f"critical threshold {host.critical}%"
        )
    return issues


def validate_host_name(
    name: str,
    mode: str,
    resolver: Callable[[str], object] = socket.gethostbyname,
) -> list[str]:
    """Return the naming problems found for ``name``.

    ``off`` never reports anything. ``warn`` and ``strict`` check the allowed
    characters, the dotted domain form and the length; ``strict`` also requires
    the name to resolve.
    """
    if mode == "off":
        return []

    issues: list[str] = []
    if not name or not _NAME_CHARS.match(name):
        issues.append(f"{name!r} contains characters that are not allowed")
    elif not _NAME_DOMAIN.match(name):
        issues.append(f"{name!r} is not a dotted domain name")
    if len(name) > _MAX_NAME_LENGTH:
        issues.append(f"{name!r} is longer than {_MAX_NAME_LENGTH} characters")

    if mode == "strict" and not issues:
        try:
            resolver(name)
        except OSError:
            issues.append(f"{name!r} does not resolve")
    return issues


def iter_host_lines(text: str):
    """Yield ``(line_number, line)`` for every meaningful host list line."""
    for number, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        yield number, line


def load_host_list(
    path: str | Path,
    validation: str = "off",
    resolver: Callable[[str], object] = socket.gethostbyname,
) -> HostList:
    result = HostList()
    host_path = Path(path)
    try:
        text = host_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        message = f"Host list file not found: {host_path}"
        logger.error(message)
        result.warnings.append(message)
        return result

    for number, line in iter_host_lines(text):
        try:
            host = parse_host_line(line)
        except ConfigError as exc:
            message = f"{host_path}:{number}: {exc}"
            logger.warning(message)
            result.warnings.append(message)
            continue

        name_issues = validate_host_name(host.name, validation, resolver)
        if name_issues:
            for issue in name_issues:
                result.warnings.append(f"{host_path}:{number}: {issue}")
            if validation == "strict":
                logger.error("Ignoring invalid host %s: %s", host.name, "; ".join(name_issues))
                continue
            logger.warning("Suspicious host name %s: %s", host.name, "; ".join(name_issues))

        for issue in check_thresholds(host):
            logger.warning(issue)
            result.warnings.append(f"{host_path}:{number}: {issue}")

        result.hosts.append(host)

    result.hosts.sort(key=lambda h: h.name)
    logger.debug("Loaded %s hosts from %s", len(result.hosts), host_path)
    return result
