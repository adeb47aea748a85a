from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from disk_monitor.hostspec import HostDescriptor
from disk_monitor.sampler import UsageSample


class Classification(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Thresholds:
    warning: int
    critical: int


def resolve_thresholds(host: HostDescriptor, defaults: Thresholds) -> Thresholds:
    """Host values override the global defaults, each one independently."""
    return Thresholds(
        warning=host.warning if host.warning is not None else defaults.warning,
        critical=host.critical if host.critical is not None else defaults.critical,
    )


def classify(percent: int, warning: int, critical: int) -> Classification:
    # Critical is checked first, so it wins when warning >= critical
    if percent >= critical:
        return Classification.CRITICAL
    if percent >= warning:
        return Classification.WARNING
    return Classification.NORMAL


def classify_sample(sample: UsageSample, thresholds: Thresholds) -> Classification | None:
    """Classify a sample; ``None`` when its usage percent is unknown."""
    if sample.used_percent is None:
        return None
    return classify(sample.used_percent, thresholds.warning, thresholds.critical)
