from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import posixpath
import re
from typing import Iterable, Mapping, Sequence

from disk_monitor.cache import BigItemCache, CacheEntry, ScanKind
from disk_monitor.errors import UnknownSizeUnit
from disk_monitor.exclusion import ExclusionSet
from disk_monitor.logging_utils import TRACE_LEVEL

DEFAULT_LIMIT = 20

# Multipliers to kilobytes, the common ordering unit
_UNIT_TO_KB = {
    "": 1 / 1024,
    "B": 1 / 1024,
    "K": 1,
    "M": 1024,
    "G": 1024**2,
    "T": 1024**3,
    "P": 1024**4,
}
_SIZE = re.compile(r"^(?P<number>[0-9][0-9.,]*)(?P<unit>[A-Za-z]*)$")

logger = logging.getLogger(__name__)


class DedupePolicy(str, Enum):
    FIRST = "first"
    LARGEST = "largest"


@dataclass(frozen=True)
class ConsolidatedRow:
    sort_key: float
    display_size: str
    path: str
    host: str


def normalize_size(label: str) -> float:
    """Convert a ``du -h`` size label such as ``1.5G`` to kilobytes.

    Bare numbers and a ``B`` suffix are bytes. Decimal commas are accepted.
    """
    match = _SIZE.match(label.strip())
    if match is None:
        raise UnknownSizeUnit(f"Unrecognized size label {label!r}")
    unit = match["unit"].upper()
    if unit not in _UNIT_TO_KB:
        raise UnknownSizeUnit(f"Unrecognized size unit {match['unit']!r} in {label!r}")
    try:
        number = float(match["number"].replace(",", "."))
    except ValueError as exc:
        raise UnknownSizeUnit(f"Unrecognized size label {label!r}") from exc
    return number * _UNIT_TO_KB[unit]


def consolidate(
    hosts: Iterable[str],
    entries_by_host: Mapping[str, Sequence[CacheEntry]],
    exclusions: ExclusionSet = ExclusionSet(),
    limit: int = DEFAULT_LIMIT,
    policy: DedupePolicy = DedupePolicy.FIRST,
) -> list[ConsolidatedRow]:
    """Rank the cached big items of ``hosts`` into one fleet-wide top list."""
    rows: dict[tuple[str, str], ConsolidatedRow] = {}

    for host in hosts:
        if host in exclusions:
            logger.debug("Skipping cached data of excluded host %s", host)
            continue
        entries = [entry for entry in entries_by_host.get(host, ()) if entry.host == host]
        if not entries:
            logger.debug("No cached data for %s", host)
            continue

        for entry in entries:
            for item in entry.items:
                try:
                    sort_key = normalize_size(item.size_label)
                except UnknownSizeUnit as exc:
                    logger.warning("Ignoring %s on %s: %s", item.path, host, exc)
                    continue
                key = (host, posixpath.normpath(item.path))
                row = ConsolidatedRow(
                    sort_key=sort_key,
                    display_size=item.size_label,
                    path=item.path,
                    host=host,
                )
                current = rows.get(key)
                if current is None:
                    rows[key] = row
                elif policy is DedupePolicy.LARGEST and row.sort_key > current.sort_key:
                    rows[key] = row
                else:
                    logger.log(TRACE_LEVEL, "Ignoring duplicate %s on %s", item.path, host)

    ranked = sorted(rows.values(), key=lambda r: r.sort_key, reverse=True)
    return ranked[:limit]


def consolidate_from_cache(
    hosts: Iterable[str],
    cache: BigItemCache,
    kind: ScanKind,
    exclusions: ExclusionSet = ExclusionSet(),
    limit: int = DEFAULT_LIMIT,
    policy: DedupePolicy = DedupePolicy.FIRST,
) -> list[ConsolidatedRow]:
    hosts = list(hosts)
    entries_by_host = {host: cache.entries_for_host(host, kind) for host in hosts}
    return consolidate(hosts, entries_by_host, exclusions, limit, policy)
