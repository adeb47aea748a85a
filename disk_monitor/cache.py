"""Persistent cache of the expensive largest-directories/files scans.

Each ``(host, partition, kind)`` moves through three states::

    MISSING --scan--> FRESH --calc_days elapse--> STALE --scan--> FRESH

Entries are stored one file per scan kind as text blocks::

    Host: web01.example.com, Partition: /var, Date: 2026-10-11 03:12:44 (Directories)
    12G	/var
    9.5G	/var/lib
    ----------------------------------------

Only ``parse_blocks`` and ``render_blocks`` know about this layout; the rest of
the code works on ``CacheEntry`` values keyed by ``(host, partition, kind)``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
import logging
import os
from pathlib import Path
import re
from typing import Callable, Iterable

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DELIMITER = "-" * 40

_HEADER = re.compile(
    r"^Host: (?P<host>.+?), Partition: (?P<partition>.+?), "
    r"Date: (?P<date>\d{4}-\d{2}-\d{2}(?: \d{2}:\d{2}:\d{2})?) "
    r"\((?P<label>Directories|Files)\)$"
)
_DELIMITER = re.compile(r"^-{5,}$")

logger = logging.getLogger(__name__)


class ScanKind(str, Enum):
    DIRECTORIES = "directories"
    FILES = "files"

    @property
    def label(self) -> str:
        return "Directories" if self is ScanKind.DIRECTORIES else "Files"

    @property
    def find_type(self) -> str:
        return "d" if self is ScanKind.DIRECTORIES else "f"

    @classmethod
    def from_label(cls, label: str) -> "ScanKind":
        return cls.DIRECTORIES if label == "Directories" else cls.FILES


class CacheState(str, Enum):
    MISSING = "missing"
    FRESH = "fresh"
    STALE = "stale"


class CacheAction(str, Enum):
    SCAN = "scan"
    SERVE = "serve"
    SKIP = "skip"


@dataclass(frozen=True)
class BigItem:
    size_label: str
    path: str


@dataclass(frozen=True)
class CacheEntry:
    host: str
    partition: str
    kind: ScanKind
    captured_at: datetime
    items: tuple[BigItem, ...] = ()

    @property
    def key(self) -> tuple[str, str, ScanKind]:
        return (self.host, self.partition, self.kind)


@dataclass(frozen=True)
class CacheDecision:
    action: CacheAction
    state: CacheState
    entry: CacheEntry | None = None


def parse_item_line(line: str) -> BigItem | None:
    parts = line.strip().split(None, 1)
    if len(parts) != 2:
        return None
    return BigItem(size_label=parts[0], path=parts[1].strip())


def parse_blocks(text: str, kind: ScanKind | None = None) -> list[CacheEntry]:
    entries: list[CacheEntry] = []
    header: re.Match[str] | None = None
    items: list[BigItem] = []

    def close() -> None:
        if header is None:
            return
        entry_kind = ScanKind.from_label(header["label"])
        if kind is not None and entry_kind is not kind:
            return
        entries.append(
            CacheEntry(
                host=header["host"],
                partition=header["partition"],
                kind=entry_kind,
                captured_at=datetime.fromisoformat(header["date"]),
                items=tuple(items),
            )
        )

    for raw in text.splitlines():
        line = raw.rstrip("\n")
        match = _HEADER.match(line.strip())
        if match:
            close()
            header, items = match, []
            continue
        if _DELIMITER.match(line.strip()):
            close()
            header, items = None, []
            continue
        if header is None or not line.strip():
            continue
        item = parse_item_line(line)
        if item is not None:
            items.append(item)
    close()
    return entries


def render_block(entry: CacheEntry) -> str:
    lines = [
        f"Host: {entry.host}, Partition: {entry.partition}, "
        f"Date: {entry.captured_at.strftime(DATE_FORMAT)} ({entry.kind.label})"
    ]
    lines.extend(f"{item.size_label}\t{item.path}" for item in entry.items)
    lines.append(DELIMITER)
    return "\n".join(lines) + "\n"


def render_blocks(entries: Iterable[CacheEntry]) -> str:
    return "".join(render_block(entry) for entry in entries)


def merge_entries(
    existing: Iterable[CacheEntry], new_entries: Iterable[CacheEntry]
) -> list[CacheEntry]:
    """Combine a stored entry list with freshly captured entries.

    Entries whose key is not touched keep their order and content. For touched
    keys only the newest capture survives (ties go to the new entry), placed
    after the untouched ones.
    """
    incoming: dict[tuple[str, str, ScanKind], CacheEntry] = {}
    for entry in new_entries:
        current = incoming.get(entry.key)
        if current is None or entry.captured_at >= current.captured_at:
            incoming[entry.key] = entry

    merged: list[CacheEntry] = []
    previous: dict[tuple[str, str, ScanKind], CacheEntry] = {}
    for entry in existing:
        if entry.key in incoming:
            kept = previous.get(entry.key)
            if kept is None or entry.captured_at > kept.captured_at:
                previous[entry.key] = entry
            continue
        merged.append(entry)

    for key, entry in incoming.items():
        old = previous.get(key)
        if old is not None and old.captured_at > entry.captured_at:
            merged.append(old)
        else:
            merged.append(entry)
    return merged


class BigItemCache:
    def __init__(
        self,
        store_paths: dict[ScanKind, Path],
        calc_days: int = 7,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store_paths = {kind: Path(path) for kind, path in store_paths.items()}
        self.staleness = timedelta(days=calc_days)
        self.clock = clock
        self.logger = logging.getLogger(self.__class__.__name__)
        self._loaded: dict[ScanKind, list[CacheEntry]] = {}

    @classmethod
    def in_directory(
        cls,
        directory: str | Path,
        calc_days: int = 7,
        clock: Callable[[], datetime] = datetime.now,
    ) -> "BigItemCache":
        base = Path(directory)
        return cls(
            {
                ScanKind.DIRECTORIES: base / "big_directories.log",
                ScanKind.FILES: base / "big_files.log",
            },
            calc_days=calc_days,
            clock=clock,
        )

    def _read(self, kind: ScanKind) -> list[CacheEntry]:
        path = self.store_paths[kind]
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        return parse_blocks(text, kind)

    def all_entries(self, kind: ScanKind) -> list[CacheEntry]:
        if kind not in self._loaded:
            self._loaded[kind] = self._read(kind)
        return list(self._loaded[kind])

    def entry(self, host: str, partition: str, kind: ScanKind) -> CacheEntry | None:
        found = None
        for entry in self.all_entries(kind):
            if entry.host == host and entry.partition == partition:
                if found is None or entry.captured_at > found.captured_at:
                    found = entry
        return found

    def entries_for_host(self, host: str, kind: ScanKind) -> list[CacheEntry]:
        return [entry for entry in self.all_entries(kind) if entry.host == host]

    def state_of(self, entry: CacheEntry | None) -> CacheState:
        if entry is None:
            return CacheState.MISSING
        if self.clock() - entry.captured_at > self.staleness:
            return CacheState.STALE
        return CacheState.FRESH

    def state(self, host: str, partition: str, kind: ScanKind) -> CacheState:
        return self.state_of(self.entry(host, partition, kind))

    def decide(
        self,
        host: str,
        partition: str,
        kind: ScanKind,
        scanning_enabled: bool,
        excluded: bool = False,
    ) -> CacheDecision:
        entry = self.entry(host, partition, kind)
        state = self.state_of(entry)
        if excluded:
            return CacheDecision(CacheAction.SKIP, state, entry)
        if not scanning_enabled or state is CacheState.FRESH:
            return CacheDecision(CacheAction.SERVE, state, entry)
        self.logger.debug(
            "%s scan needed for %s:%s (%s)", kind.label, host, partition, state.value
        )
        return CacheDecision(CacheAction.SCAN, state, entry)

    def merge(self, kind: ScanKind, new_entries: Iterable[CacheEntry]) -> list[CacheEntry]:
        """Read the store, merge ``new_entries`` into it and write it back."""
        new_entries = [entry for entry in new_entries if entry.kind is kind]
        if not new_entries:
            return self.all_entries(kind)

        merged = merge_entries(self._read(kind), new_entries)
        path = self.store_paths[kind]
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(render_blocks(merged), encoding="utf-8")
        tmp.replace(path)
        self._loaded[kind] = merged
        self.logger.info(
            "Merged %s %s entries into %s (%s total)",
            len(new_entries),
            kind.value,
            path,
            len(merged),
        )
        return list(merged)

    def reset(self) -> list[Path]:
        removed: list[Path] = []
        for path in self.store_paths.values():
            if path.exists():
                os.remove(path)
                removed.append(path)
                self.logger.info("Removed big-item cache %s", path)
        self._loaded.clear()
        return removed
