from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import configparser

from disk_monitor.errors import ConfigError

NAME_VALIDATION_MODES = ("strict", "warn", "off")
DEDUPE_POLICIES = ("first", "largest")


@dataclass(frozen=True)
class MonitorConfig:
    server_list: str
    server_list_test: str
    warning_threshold: int
    critical_threshold: int
    name_validation: str
    inode_display_threshold: int
    ssh_timeout_s: int
    ping_count: int
    ping_timeout_s: int
    workers: int
    log_dir: str
    lock_file: str
    simulate: bool = False
    test_mode: bool = False


@dataclass(frozen=True)
class ScanConfig:
    big_dirs: bool
    big_files: bool
    num_big_dirs: int
    num_big_files: int
    calc_days: int
    scan_timeout_s: int
    excluded_servers: list[str]
    consolidated_limit: int
    dedupe_policy: str


@dataclass(frozen=True)
class ReportConfig:
    skip_normal: bool
    timing: bool


@dataclass(frozen=True)
class MqttConfig:
    host: str
    port: int
    base_topic: str
    client_id: str
    username: str | None
    password: str | None
    qos: int
    retain: bool
    tls_enabled: bool
    ca_cert: str | None
    keepalive: int


@dataclass(frozen=True)
class AppConfig:
    monitor: MonitorConfig
    scan: ScanConfig
    report: ReportConfig
    mqtt: MqttConfig | None

    @property
    def active_server_list(self) -> str:
        if self.monitor.test_mode:
            return self.monitor.server_list_test
        return self.monitor.server_list


def _get_optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value if value else None


def _get_list(value: str | None) -> list[str]:
    if value is None:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _get_threshold(parser: configparser.ConfigParser, option: str, fallback: int) -> int:
    value = parser.getint("monitor", option, fallback=fallback)
    if not 0 <= value <= 100:
        raise ConfigError(f"{option} must be between 0 and 100, got {value}")
    return value


def _get_choice(
    parser: configparser.ConfigParser,
    section: str,
    option: str,
    choices: tuple[str, ...],
    fallback: str,
) -> str:
    value = parser.get(section, option, fallback=fallback).strip().lower()
    if value not in choices:
        raise ConfigError(
            f"[{section}] {option} must be one of {', '.join(choices)}, got {value!r}"
        )
    return value


def default_config() -> AppConfig:
    """Configuration used when every section is left at its defaults."""
    return _build_config(configparser.ConfigParser())


def load_config(path: str | Path) -> AppConfig:
    parser = configparser.ConfigParser()
    read_files = parser.read(path)
    if not read_files:
        raise FileNotFoundError(f"Config file not found: {path}")
    try:
        return _build_config(parser)
    except ValueError as exc:
        # getint/getboolean on malformed values
        raise ConfigError(f"Invalid value in {path}: {exc}") from exc


def _build_config(parser: configparser.ConfigParser) -> AppConfig:
    # Use parser.get/getint with fallback so every section is optional
    monitor = MonitorConfig(
        server_list=parser.get(
            "monitor", "server_list", fallback="/usr/local/etc/server-disk-space.conf"
        ),
        server_list_test=parser.get(
            "monitor",
            "server_list_test",
            fallback="/usr/local/etc/server-disk-space-test.conf",
        ),
        warning_threshold=_get_threshold(parser, "warning_threshold", 75),
        critical_threshold=_get_threshold(parser, "critical_threshold", 90),
        name_validation=_get_choice(
            parser, "monitor", "name_validation", NAME_VALIDATION_MODES, "warn"
        ),
        inode_display_threshold=parser.getint(
            "monitor", "inode_display_threshold", fallback=50
        ),
        ssh_timeout_s=parser.getint("monitor", "ssh_timeout_s", fallback=30),
        ping_count=parser.getint("monitor", "ping_count", fallback=2),
        ping_timeout_s=parser.getint("monitor", "ping_timeout_s", fallback=3),
        workers=max(1, parser.getint("monitor", "workers", fallback=1)),
        log_dir=parser.get("monitor", "log_dir", fallback="/var/log/monitor-disk-space"),
        lock_file=parser.get(
            "monitor", "lock_file", fallback="/var/lock/monitor-disk-space.lock"
        ),
    )

    scan = ScanConfig(
        big_dirs=parser.getboolean("scan", "big_dirs", fallback=False),
        big_files=parser.getboolean("scan", "big_files", fallback=False),
        num_big_dirs=parser.getint("scan", "num_big_dirs", fallback=3),
        num_big_files=parser.getint("scan", "num_big_files", fallback=3),
        calc_days=parser.getint("scan", "calc_days", fallback=7),
        scan_timeout_s=parser.getint("scan", "scan_timeout_s", fallback=3600),
        excluded_servers=_get_list(parser.get("scan", "excluded_servers", fallback=None)),
        consolidated_limit=parser.getint("scan", "consolidated_limit", fallback=20),
        dedupe_policy=_get_choice(parser, "scan", "dedupe_policy", DEDUPE_POLICIES, "first"),
    )

    report = ReportConfig(
        skip_normal=parser.getboolean("report", "skip_normal", fallback=False),
        timing=parser.getboolean("report", "timing", fallback=False),
    )

    mqtt: MqttConfig | None = None
    if parser.has_section("mqtt"):
        mqtt_section = parser["mqtt"]
        mqtt = MqttConfig(
            host=mqtt_section.get("host", "localhost"),
            port=mqtt_section.getint("port", 1883),
            base_topic=mqtt_section.get("base_topic", "disk-monitor"),
            client_id=mqtt_section.get("client_id", "disk-monitor"),
            username=_get_optional(mqtt_section.get("username")),
            password=_get_optional(mqtt_section.get("password")),
            qos=mqtt_section.getint("qos", 1),
            retain=mqtt_section.getboolean("retain", False),
            tls_enabled=mqtt_section.getboolean("tls", False),
            ca_cert=_get_optional(mqtt_section.get("ca_cert")),
            keepalive=mqtt_section.getint("keepalive", 60),
        )

    return AppConfig(monitor=monitor, scan=scan, report=report, mqtt=mqtt)
