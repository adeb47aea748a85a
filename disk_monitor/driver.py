from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
import time
from typing import Any, Callable, Iterable

from disk_monitor.aggregator import (
    ConsolidatedRow,
    DedupePolicy,
    consolidate_from_cache,
)
from disk_monitor.cache import (
    BigItemCache,
    CacheAction,
    CacheEntry,
    CacheState,
    ScanKind,
)
from disk_monitor.config import AppConfig
from disk_monitor.errors import SampleUnavailable, ScanFailure
from disk_monitor.exclusion import ExclusionSet
from disk_monitor.hostspec import HostDescriptor
from disk_monitor.remote import PingProbe, SshExecutor
from disk_monitor.report import ReportBuilder, alert_level
from disk_monitor.sampler import (
    DiskUsageQuerier,
    InodeSample,
    UsageSample,
    format_bytes,
    select_querier,
)
from disk_monitor.scanner import BigItemScanner
from disk_monitor.thresholds import (
    Classification,
    Thresholds,
    classify,
    classify_sample,
    resolve_thresholds,
)

SORT_ASC = "asc"
SORT_DESC = "desc"

QuerierFactory = Callable[[SshExecutor, HostDescriptor, float, bool], DiskUsageQuerier]


@dataclass(frozen=True)
class PartitionUsage:
    sample: UsageSample
    classification: Classification | None


@dataclass(frozen=True)
class BigItemOutcome:
    partition: str
    kind: ScanKind
    state: CacheState
    entry: CacheEntry
    scanned: bool = False


@dataclass
class HostResult:
    host: HostDescriptor
    thresholds: Thresholds
    reachable: bool = True
    os_kind: str | None = None
    excluded: bool = False
    partitions: list[PartitionUsage] = field(default_factory=list)
    inodes: list[InodeSample] = field(default_factory=list)
    errors: list[SampleUnavailable] = field(default_factory=list)
    big_items: list[BigItemOutcome] = field(default_factory=list)
    scan_errors: list[ScanFailure] = field(default_factory=list)
    new_entries: list[CacheEntry] = field(default_factory=list)
    elapsed_s: float = 0.0

    @property
    def any_warning(self) -> bool:
        return any(p.classification is Classification.WARNING for p in self.partitions)

    @property
    def any_critical(self) -> bool:
        return any(p.classification is Classification.CRITICAL for p in self.partitions)


@dataclass
class RunResult:
    hosts: list[HostResult] = field(default_factory=list)
    config_warnings: list[str] = field(default_factory=list)
    any_warning: bool = False
    any_critical: bool = False
    duration_s: float = 0.0

    @property
    def level(self) -> str:
        return alert_level(self.any_warning, self.any_critical)


@dataclass
class AccessCheck:
    host: str
    reachable: bool = False
    ssh_ok: bool = False
    partition_errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.ssh_ok and not self.partition_errors


@dataclass(frozen=True)
class SortedUsageRow:
    host: str
    mount_point: str
    filesystem: str
    size: str
    used: str
    avail: str
    used_percent: int | None
    classification: Classification | None


class FleetMonitor:
    """Walks the host list and turns what it finds into report sections.

    Per-host work (ping, usage, inodes, scans) can run on a thread pool, but
    sections are always emitted in host order and the cache stores are
    written once, after every host is done.
    """

    def __init__(
        self,
        config: AppConfig,
        executor: SshExecutor,
        probe: PingProbe,
        cache: BigItemCache,
        scanner: BigItemScanner,
        report: ReportBuilder,
        querier_factory: QuerierFactory = select_querier,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.executor = executor
        self.probe = probe
        self.cache = cache
        self.scanner = scanner
        self.report = report
        self.querier_factory = querier_factory
        self.timer = timer
        self.exclusions = ExclusionSet.from_names(config.scan.excluded_servers)
        self.defaults = Thresholds(
            warning=config.monitor.warning_threshold,
            critical=config.monitor.critical_threshold,
        )
        self.logger = logging.getLogger(self.__class__.__name__)

    def _scan_settings(self) -> list[tuple[ScanKind, bool, int]]:
        scan = self.config.scan
        return [
            (ScanKind.DIRECTORIES, scan.big_dirs, scan.num_big_dirs),
            (ScanKind.FILES, scan.big_files, scan.num_big_files),
        ]

    def _map_hosts(
        self, work: Callable[[HostDescriptor], Any], hosts: list[HostDescriptor]
    ) -> list[Any]:
        workers = self.config.monitor.workers
        if workers <= 1 or len(hosts) <= 1:
            return [work(host) for host in hosts]
        self.logger.debug("Collecting %s hosts with %s workers", len(hosts), workers)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            # map() keeps the input order
            return list(pool.map(work, hosts))

    def _global_warnings(self) -> list[str]:
        if self.defaults.warning >= self.defaults.critical:
            return [
                f"Global warning threshold {self.defaults.warning}% is not below "
                f"critical threshold {self.defaults.critical}%; critical takes precedence"
            ]
        return []

    # Collection

    def _sample_host(self, host: HostDescriptor, result: HostResult) -> DiskUsageQuerier | None:
        monitor = self.config.monitor
        if not self.probe.is_reachable(host.name, monitor.ping_count, monitor.ping_timeout_s):
            self.logger.warning("%s is unreachable, skipping", host.name)
            result.reachable = False
            return None

        querier = self.querier_factory(
            self.executor, host, monitor.ssh_timeout_s, monitor.simulate
        )
        result.os_kind = querier.os_kind

        for partition in host.partitions:
            try:
                sample = querier.sample(partition)
            except SampleUnavailable as exc:
                self.logger.error("Unable to sample %s", exc)
                result.errors.append(exc)
                continue
            classification = classify_sample(sample, result.thresholds)
            if classification is None:
                self.logger.warning(
                    "Unknown usage percent for %s:%s", host.name, partition
                )
            else:
                self.logger.info(
                    "%s:%s at %s%% (%s)",
                    host.name,
                    partition,
                    sample.used_percent,
                    classification.value,
                )
            result.partitions.append(PartitionUsage(sample, classification))
        return querier

    def _collect(self, host: HostDescriptor) -> HostResult:
        started = self.timer()
        result = HostResult(host=host, thresholds=resolve_thresholds(host, self.defaults))
        querier = self._sample_host(host, result)

        if querier is not None:
            for partition in host.partitions:
                inode = querier.inodes(partition)
                if inode is not None:
                    result.inodes.append(inode)

            result.excluded = self.exclusions.is_excluded(host.name)
            if result.excluded:
                self.logger.info("%s is excluded from big item scans", host.name)
            else:
                self._collect_big_items(querier, result)

        result.elapsed_s = self.timer() - started
        return result

    def _collect_big_items(self, querier: DiskUsageQuerier, result: HostResult) -> None:
        host = result.host
        for kind, enabled, limit in self._scan_settings():
            for partition in host.partitions:
                decision = self.cache.decide(host.name, partition, kind, enabled)
                if decision.action is CacheAction.SCAN:
                    try:
                        entry = self.scanner.scan(querier, partition, kind, limit)
                    except ScanFailure as exc:
                        self.logger.error("%s", exc)
                        result.scan_errors.append(exc)
                        # The previous capture, if any, is still worth showing
                        if decision.entry is not None:
                            result.big_items.append(
                                BigItemOutcome(partition, kind, decision.state, decision.entry)
                            )
                        continue
                    result.new_entries.append(entry)
                    result.big_items.append(
                        BigItemOutcome(partition, kind, CacheState.FRESH, entry, scanned=True)
                    )
                elif decision.action is CacheAction.SERVE and decision.entry is not None:
                    result.big_items.append(
                        BigItemOutcome(partition, kind, decision.state, decision.entry)
                    )

    # Emission

    def _emit_host(self, result: HostResult) -> None:
        host = result.host
        if not result.reachable:
            self.report.emit(
                "unreachable",
                {"host": host.name, "message": f"Server {host.name} is unreachable"},
            )
            return

        self.report.emit(
            "host",
            {
                "host": host.name,
                "principal": host.principal,
                "os_kind": result.os_kind,
                "warning": result.thresholds.warning,
                "critical": result.thresholds.critical,
            },
        )
        for usage in result.partitions:
            sample = usage.sample
            self.report.emit(
                "partition",
                {
                    "host": sample.host,
                    "partition": sample.partition,
                    "mount_point": sample.mount_point,
                    "filesystem": sample.filesystem,
                    "size": format_bytes(sample.size_bytes),
                    "used": format_bytes(sample.used_bytes),
                    "avail": format_bytes(sample.avail_bytes),
                    "used_percent": sample.used_percent,
                    "classification": (
                        usage.classification.value if usage.classification else None
                    ),
                },
            )
        for error in result.errors:
            self.report.emit(
                "partition_error",
                {"host": error.host, "partition": error.partition, "error": error.reason},
            )

        self._emit_inodes(result)

        if result.excluded:
            self.report.emit("excluded", {"host": host.name})
        for outcome in result.big_items:
            self.report.emit(
                "big_items",
                {
                    "host": host.name,
                    "partition": outcome.partition,
                    "scan_kind": outcome.kind.value,
                    "state": outcome.state.value,
                    "scanned": outcome.scanned,
                    "captured_at": outcome.entry.captured_at.isoformat(),
                    "items": [
                        {"size": item.size_label, "path": item.path}
                        for item in outcome.entry.items
                    ],
                },
            )
        for failure in result.scan_errors:
            self.report.emit(
                "scan_error",
                {
                    "host": failure.host,
                    "partition": failure.partition,
                    "scan_kind": failure.kind,
                    "error": failure.reason,
                },
            )

    def _emit_inodes(self, result: HostResult) -> None:
        # Inodes are only worth showing once one partition is half full
        threshold = self.config.monitor.inode_display_threshold
        high = [
            inode
            for inode in result.inodes
            if inode.used_percent is not None and inode.used_percent >= threshold
        ]
        if not high:
            if result.inodes:
                self.logger.debug(
                    "Inode usage of %s below %s%%, not reported", result.host.name, threshold
                )
            return
        for inode in result.inodes:
            classification = None
            if inode.used_percent is not None:
                classification = classify(
                    inode.used_percent,
                    result.thresholds.warning,
                    result.thresholds.critical,
                ).value
            self.report.emit(
                "inodes",
                {
                    "host": inode.host,
                    "partition": inode.partition,
                    "mount_point": inode.mount_point,
                    "filesystem": inode.filesystem,
                    "inodes": inode.inodes,
                    "iused": inode.iused,
                    "ifree": inode.ifree,
                    "used_percent": inode.used_percent,
                    "classification": classification,
                },
            )

    def _emit_timing(self, results: list[HostResult]) -> None:
        ordered = sorted(results, key=lambda r: r.elapsed_s, reverse=True)
        self.report.emit(
            "timing",
            {
                "timings": [
                    {"host": r.host.name, "elapsed_s": round(r.elapsed_s, 3)}
                    for r in ordered
                ]
            },
        )

    # Operations

    def run(
        self, hosts: Iterable[HostDescriptor], config_warnings: Iterable[str] = ()
    ) -> RunResult:
        """Collect, classify and scan every host, then merge the cache stores."""
        started = self.timer()
        hosts = sorted(hosts, key=lambda h: h.name)
        run = RunResult(config_warnings=list(config_warnings) + self._global_warnings())
        for message in run.config_warnings:
            self.report.emit("config_warning", {"message": message})

        # Load the stores before any worker thread reads them
        for kind, _, _ in self._scan_settings():
            self.cache.all_entries(kind)

        self.logger.info("Checking %s hosts", len(hosts))
        run.hosts = self._map_hosts(self._collect, hosts)

        for result in run.hosts:
            self._emit_host(result)
            run.any_warning = run.any_warning or result.any_warning
            run.any_critical = run.any_critical or result.any_critical

        for kind, _, _ in self._scan_settings():
            new_entries = [
                entry
                for result in run.hosts
                for entry in result.new_entries
                if entry.kind is kind
            ]
            if new_entries:
                self.cache.merge(kind, new_entries)

        if self.config.report.timing:
            self._emit_timing(run.hosts)

        run.duration_s = self.timer() - started
        self.logger.info(
            "Run finished in %.1fs (warning=%s, critical=%s)",
            run.duration_s,
            run.any_warning,
            run.any_critical,
        )
        return run

    def _collect_usage(self, host: HostDescriptor) -> HostResult:
        started = self.timer()
        result = HostResult(host=host, thresholds=resolve_thresholds(host, self.defaults))
        self._sample_host(host, result)
        result.elapsed_s = self.timer() - started
        return result

    def sorted_usage(
        self, hosts: Iterable[HostDescriptor], order: str = SORT_DESC
    ) -> list[SortedUsageRow]:
        """Rank every host partition by usage, without scans or cache access."""
        if order not in (SORT_ASC, SORT_DESC):
            raise ValueError(f"Unknown sort order: {order}")
        hosts = sorted(hosts, key=lambda h: h.name)
        results = self._map_hosts(self._collect_usage, hosts)

        rows: list[SortedUsageRow] = []
        for result in results:
            if not result.reachable:
                self.report.emit("unreachable", {"host": result.host.name})
                continue
            for error in result.errors:
                self.report.emit(
                    "partition_error",
                    {"host": error.host, "partition": error.partition, "error": error.reason},
                )
            for usage in result.partitions:
                sample = usage.sample
                rows.append(
                    SortedUsageRow(
                        host=sample.host,
                        mount_point=sample.mount_point,
                        filesystem=sample.filesystem,
                        size=format_bytes(sample.size_bytes),
                        used=format_bytes(sample.used_bytes),
                        avail=format_bytes(sample.avail_bytes),
                        used_percent=sample.used_percent,
                        classification=usage.classification,
                    )
                )

        known = [row for row in rows if row.used_percent is not None]
        unknown = [row for row in rows if row.used_percent is None]
        known.sort(key=lambda row: row.used_percent, reverse=order == SORT_DESC)
        # Unknown percents always sort last
        ranked = known + unknown

        self.report.emit(
            "sorted_usage",
            {
                "order": order,
                "rows": [
                    {
                        "host": row.host,
                        "mount_point": row.mount_point,
                        "filesystem": row.filesystem,
                        "size": row.size,
                        "used": row.used,
                        "avail": row.avail,
                        "used_percent": row.used_percent,
                        "classification": (
                            row.classification.value if row.classification else None
                        ),
                    }
                    for row in ranked
                ],
            },
        )
        return ranked

    def _check_host(self, host: HostDescriptor) -> AccessCheck:
        monitor = self.config.monitor
        check = AccessCheck(host=host.name)
        # A host that drops ping may still accept ssh
        check.reachable = self.probe.is_reachable(
            host.name, monitor.ping_count, monitor.ping_timeout_s
        )
        check.ssh_ok = self.executor.check_access(
            host.name, host.principal, monitor.ssh_timeout_s
        )
        if not check.ssh_ok:
            self.logger.error("Unable to run commands on %s over ssh", host.target)
            return check
        querier = self.querier_factory(self.executor, host, monitor.ssh_timeout_s, False)
        for partition in host.partitions:
            try:
                querier.sample(partition)
            except SampleUnavailable as exc:
                self.logger.error("Partition check failed: %s", exc)
                check.partition_errors.append(f"{partition}: {exc.reason}")
        return check

    def check_access(self, hosts: Iterable[HostDescriptor]) -> list[AccessCheck]:
        """Check ping, ssh access and every partition of each host."""
        hosts = sorted(hosts, key=lambda h: h.name)
        return self._map_hosts(self._check_host, hosts)

    def consolidated(
        self, hosts: Iterable[HostDescriptor], kind: ScanKind
    ) -> list[ConsolidatedRow]:
        """Fleet-wide top list of cached big items of one kind."""
        names = sorted(host.name for host in hosts)
        scan = self.config.scan
        rows = consolidate_from_cache(
            names,
            self.cache,
            kind,
            exclusions=self.exclusions,
            limit=scan.consolidated_limit,
            policy=DedupePolicy(scan.dedupe_policy),
        )
        self.logger.info("Consolidated %s %s rows", len(rows), kind.value)
        self.report.emit(
            "consolidated",
            {
                "scan_kind": kind.value,
                "limit": scan.consolidated_limit,
                "excluded": sorted(self.exclusions.names),
                "rows": [
                    {
                        "size": row.display_size,
                        "size_kb": row.sort_key,
                        "path": row.path,
                        "host": row.host,
                    }
                    for row in rows
                ],
            },
        )
        return rows
