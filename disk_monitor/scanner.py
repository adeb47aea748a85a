from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable

from disk_monitor.cache import BigItem, CacheEntry, ScanKind, parse_item_line
from disk_monitor.errors import ScanFailure
from disk_monitor.sampler import DiskUsageQuerier


class BigItemScanner:
    """Runs the expensive ``find | du`` scan for one host partition."""

    def __init__(
        self,
        timeout_s: float = 3600,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.timeout_s = timeout_s
        self.clock = clock
        self.logger = logging.getLogger(self.__class__.__name__)

    def scan(
        self,
        querier: DiskUsageQuerier,
        partition: str,
        kind: ScanKind,
        limit: int,
    ) -> CacheEntry:
        host = querier.host
        command = querier.big_items_command(partition, kind, limit)
        self.logger.info("Scanning largest %s of %s:%s", kind.value, host.name, partition)
        result = querier.executor.run(host.name, host.principal, command, self.timeout_s)

        if result.timed_out:
            raise ScanFailure(host.name, partition, kind.value, f"timed out after {self.timeout_s}s")
        items: list[BigItem] = []
        for line in result.stdout.splitlines():
            item = parse_item_line(line)
            if item is not None:
                items.append(item)
        if not items:
            reason = "no output" if result.ok else f"exit status {result.exit_status}"
            raise ScanFailure(host.name, partition, kind.value, reason)

        return CacheEntry(
            host=host.name,
            partition=partition,
            kind=kind,
            captured_at=self.clock().replace(microsecond=0),
            items=tuple(items[:limit]),
        )
