from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import socket
from typing import Any

from disk_monitor import __version__
from disk_monitor.logging_utils import TRACE_LEVEL

SCHEMA_NAME = "disk-report"
SCHEMA_VERSION = 1
PROGRAM = "disk-monitor"

SECTION_KINDS = (
    "config_warning",
    "host",
    "unreachable",
    "partition",
    "partition_error",
    "inodes",
    "excluded",
    "big_items",
    "scan_error",
    "timing",
    "sorted_usage",
    "consolidated",
)

LEVEL_INFO = "info"
LEVEL_WARNING = "warning"
LEVEL_CRITICAL = "critical"

STANDARD_SUBJECT = "Disk, directory and file report"


def alert_level(any_warning: bool, any_critical: bool) -> str:
    if any_critical:
        return LEVEL_CRITICAL
    if any_warning:
        return LEVEL_WARNING
    return LEVEL_INFO


def route_levels(any_warning: bool, any_critical: bool, skip_normal: bool) -> list[str]:
    """Which report topics receive the standard report."""
    levels: list[str] = []
    if any_critical:
        levels.append(LEVEL_CRITICAL)
    if any_warning:
        levels.append(LEVEL_WARNING)
    if not levels and not skip_normal:
        levels.append(LEVEL_INFO)
    return levels


def build_subject(base: str, level: str, test_mode: bool) -> str:
    subject = base
    if level == LEVEL_CRITICAL:
        subject = f"[CRITICAL] {subject}"
    elif level == LEVEL_WARNING:
        subject = f"[WARNING] {subject}"
    if test_mode:
        subject = f"[TEST] {subject}"
    return subject


class ReportBuilder:
    """Collects the structured findings of one run, in emission order."""

    def __init__(
        self,
        report: str = "standard",
        test_mode: bool = False,
        command_line: str | None = None,
    ) -> None:
        self.report = report
        self.test_mode = test_mode
        self.command_line = command_line
        self.sections: list[dict[str, Any]] = []
        self.logger = logging.getLogger(self.__class__.__name__)

    def emit(self, kind: str, payload: dict[str, Any]) -> None:
        if kind not in SECTION_KINDS:
            raise ValueError(f"Unknown report section kind: {kind}")
        self.logger.log(TRACE_LEVEL, "Report section %s: %s", kind, payload)
        self.sections.append({"kind": kind, **payload})

    def sections_of(self, kind: str) -> list[dict[str, Any]]:
        return [section for section in self.sections if section["kind"] == kind]

    def build(
        self,
        level: str = LEVEL_INFO,
        subject: str = STANDARD_SUBJECT,
        duration_s: float | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "schema": {"name": SCHEMA_NAME, "version": SCHEMA_VERSION},
            "ts": datetime.now(timezone.utc).isoformat(),
            "report": self.report,
            "subject": build_subject(subject, level, self.test_mode),
            "alert_level": level,
            "test_mode": self.test_mode,
            "generated_by": {
                "program": PROGRAM,
                "version": __version__,
                "controller": socket.gethostname(),
                "command": self.command_line,
            },
            "sections": list(self.sections),
        }
        if duration_s is not None:
            payload["duration_s"] = round(duration_s, 3)
        return payload


def save_report(payload: dict[str, Any], log_dir: str | Path, suffix: str | None = None) -> Path:
    date = datetime.now().strftime("%Y-%m-%d")
    name = f"report-{date}-{suffix}.json" if suffix else f"report-{date}.json"
    path = Path(log_dir) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return path
