"""Tests for the fleet driver: collection, scans, cache use and emission."""
from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
import itertools

import pytest

from conftest import NOW, FakeProbe, df_output
from disk_monitor.cache import BigItem, BigItemCache, CacheEntry, ScanKind
from disk_monitor.driver import SORT_ASC, SORT_DESC, FleetMonitor
from disk_monitor.hostspec import parse_host_line
from disk_monitor.report import LEVEL_CRITICAL, ReportBuilder
from disk_monitor.sampler import PosixDiskUsageQuerier
from disk_monitor.scanner import BigItemScanner
from disk_monitor.schema import validate_payload
from disk_monitor.thresholds import Classification

WEB01 = parse_host_line("web01.example.com")
WEB02 = parse_host_line("web02.example.com:/,/var")
DB = parse_host_line("dbserver-prod01:/var,/data:65:90")


def posix_factory(executor, host, timeout_s, simulate):
    return PosixDiskUsageQuerier(executor, host, timeout_s, simulate)


def add_df(executor, host, partition, percent, mount=None):
    executor.add(
        host,
        f"LC_ALL=C df -kP {partition}",
        df_output("/dev/sda1", 1000, percent * 10, 1000 - percent * 10, percent, mount or partition),
    )


def add_inodes(executor, host, partition, percent):
    executor.add(
        host,
        f"LC_ALL=C df -iP {partition}",
        "Filesystem Inodes IUsed IFree IUse% Mounted on\n"
        f"/dev/sda1 1000 {percent * 10} {1000 - percent * 10} {percent}% {partition}\n",
    )


def find_commands(executor):
    return [call for call in executor.calls if call[2].startswith("find ")]


@pytest.fixture
def fleet(executor):
    add_df(executor, WEB01.name, "/", 80)
    add_df(executor, WEB02.name, "/", 40)
    add_df(executor, WEB02.name, "/var", 60)
    add_df(executor, DB.name, "/var", 91)
    add_df(executor, DB.name, "/data", 50)
    return executor


@pytest.fixture
def make_monitor(app_config, probe, clock, tmp_path):
    def factory(executor, config=None, probe=probe, report=None):
        config = config or app_config
        cache = BigItemCache.in_directory(config.monitor.log_dir, config.scan.calc_days, clock)
        scanner = BigItemScanner(config.scan.scan_timeout_s, clock)
        return FleetMonitor(
            config,
            executor,
            probe,
            cache,
            scanner,
            report or ReportBuilder(),
            querier_factory=posix_factory,
            timer=itertools.count().__next__,
        )

    return factory


def with_scan(config, **changes):
    return replace(config, scan=replace(config.scan, **changes))


class TestRun:
    def test_classification_and_flags(self, fleet, make_monitor):
        monitor = make_monitor(fleet)
        run = monitor.run([WEB02, DB, WEB01])

        assert [result.host.name for result in run.hosts] == [
            "dbserver-prod01",
            "web01.example.com",
            "web02.example.com",
        ]
        db = run.hosts[0]
        assert [p.classification for p in db.partitions] == [
            Classification.CRITICAL,
            Classification.NORMAL,
        ]
        assert run.hosts[1].partitions[0].classification is Classification.WARNING
        assert run.any_warning is True
        assert run.any_critical is True
        assert run.level == LEVEL_CRITICAL

    def test_sections_follow_host_order(self, fleet, make_monitor):
        monitor = make_monitor(fleet)
        monitor.run([WEB01, DB])
        hosts = [s["host"] for s in monitor.report.sections_of("host")]
        assert hosts == ["dbserver-prod01", "web01.example.com"]
        partition = monitor.report.sections_of("partition")[0]
        assert partition["used_percent"] == 91
        assert partition["classification"] == "critical"

    def test_normal_fleet_raises_nothing(self, executor, make_monitor):
        add_df(executor, WEB01.name, "/", 10)
        run = make_monitor(executor).run([WEB01])
        assert not run.any_warning
        assert not run.any_critical

    def test_unreachable_host(self, fleet, make_monitor):
        monitor = make_monitor(fleet, probe=FakeProbe(unreachable=[DB.name]))
        run = monitor.run([DB])
        assert run.hosts[0].reachable is False
        assert not run.any_critical
        assert fleet.commands_for(DB.name) == []
        assert [s["host"] for s in monitor.report.sections_of("unreachable")] == [DB.name]
        assert monitor.report.sections_of("host") == []

    def test_partition_error_does_not_stop_host(self, executor, make_monitor):
        executor.add(WEB02.name, "LC_ALL=C df -kP /var", "", exit_status=1)
        add_df(executor, WEB02.name, "/", 30)
        monitor = make_monitor(executor)
        run = monitor.run([WEB02])
        assert [p.sample.partition for p in run.hosts[0].partitions] == ["/"]
        errors = monitor.report.sections_of("partition_error")
        assert errors == [
            {
                "kind": "partition_error",
                "host": WEB02.name,
                "partition": "/var",
                "error": "exit status 1",
            }
        ]

    def test_unknown_percent_is_not_an_alert(self, executor, make_monitor):
        executor.add(WEB01.name, "LC_ALL=C df -kP /", "Filesystem\nnone 0 0 0 - /\n")
        monitor = make_monitor(executor)
        run = monitor.run([WEB01])
        assert run.hosts[0].partitions[0].classification is None
        assert monitor.report.sections_of("partition")[0]["classification"] is None
        assert not run.any_warning

    def test_simulation(self, executor, make_monitor, app_config):
        add_df(executor, WEB01.name, "/", 10)
        config = replace(app_config, monitor=replace(app_config.monitor, simulate=True))
        run = make_monitor(executor, config).run([WEB01])
        assert run.hosts[0].partitions[0].sample.used_percent == 95
        assert run.any_critical

    def test_inodes_shown_from_display_threshold(self, fleet, make_monitor):
        add_inodes(fleet, WEB02.name, "/", 20)
        add_inodes(fleet, WEB02.name, "/var", 55)
        add_inodes(fleet, WEB01.name, "/", 49)
        monitor = make_monitor(fleet)
        monitor.run([WEB01, WEB02])
        inodes = monitor.report.sections_of("inodes")
        assert [(s["host"], s["partition"]) for s in inodes] == [
            (WEB02.name, "/"),
            (WEB02.name, "/var"),
        ]
        assert inodes[1]["used_percent"] == 55

    def test_config_warnings_are_emitted_first(self, fleet, make_monitor, app_config):
        config = replace(
            app_config,
            monitor=replace(app_config.monitor, warning_threshold=95, critical_threshold=90),
        )
        monitor = make_monitor(fleet, config)
        run = monitor.run([WEB01], config_warnings=["servers.conf:3: bad line"])
        kinds = [s["kind"] for s in monitor.report.sections]
        assert kinds[:2] == ["config_warning", "config_warning"]
        assert len(run.config_warnings) == 2
        # 80% with warning 95 and critical 90 is still below critical
        assert run.hosts[0].partitions[0].classification is Classification.NORMAL

    def test_timing_sorted_descending(self, fleet, make_monitor, app_config):
        config = replace(app_config, report=replace(app_config.report, timing=True))
        monitor = make_monitor(fleet, config)
        run = monitor.run([WEB01, WEB02, DB])
        timings = monitor.report.sections_of("timing")[0]["timings"]
        elapsed = [t["elapsed_s"] for t in timings]
        assert elapsed == sorted(elapsed, reverse=True)
        assert len(timings) == len(run.hosts)

    def test_parallel_workers_keep_host_order(self, fleet, make_monitor, app_config):
        config = replace(app_config, monitor=replace(app_config.monitor, workers=3))
        monitor = make_monitor(fleet, config)
        run = monitor.run([WEB02, WEB01, DB])
        assert [r.host.name for r in run.hosts] == sorted([WEB02.name, WEB01.name, DB.name])
        assert [s["host"] for s in monitor.report.sections_of("host")] == [
            r.host.name for r in run.hosts
        ]

    def test_payload_is_schema_valid(self, fleet, make_monitor, app_config):
        fleet.add(WEB01.name, "find / -type d", "1.0G\t/usr\n")
        config = with_scan(app_config, big_dirs=True)
        monitor = make_monitor(fleet, config)
        run = monitor.run([WEB01, DB], config_warnings=["warning"])
        payload = monitor.report.build(run.level, "Report", run.duration_s)
        assert validate_payload(payload) == []


class TestCacheGatedScans:
    def test_scanning_disabled_never_scans(self, fleet, make_monitor):
        make_monitor(fleet).run([WEB01])
        assert find_commands(fleet) == []

    def test_missing_cache_is_scanned_and_merged(self, fleet, make_monitor, app_config, tmp_path):
        fleet.add(WEB01.name, "find / -type d", "8G\t/\n3G\t/usr\n")
        config = with_scan(app_config, big_dirs=True)
        monitor = make_monitor(fleet, config)

        run = monitor.run([WEB01])

        assert len(find_commands(fleet)) == 1
        assert run.hosts[0].new_entries[0].items[1] == BigItem("3G", "/usr")
        section = monitor.report.sections_of("big_items")[0]
        assert section["state"] == "fresh"
        assert section["scanned"] is True
        stored = monitor.cache.all_entries(ScanKind.DIRECTORIES)
        assert [e.host for e in stored] == [WEB01.name]
        assert (tmp_path / "log" / "big_directories.log").exists()

    def test_fresh_cache_is_served(self, fleet, make_monitor, app_config):
        config = with_scan(app_config, big_dirs=True)
        monitor = make_monitor(fleet, config)
        monitor.cache.merge(
            ScanKind.DIRECTORIES,
            [
                CacheEntry(
                    WEB01.name,
                    "/",
                    ScanKind.DIRECTORIES,
                    NOW - timedelta(days=6),
                    (BigItem("5G", "/srv"),),
                )
            ],
        )

        monitor.run([WEB01])

        assert find_commands(fleet) == []
        section = monitor.report.sections_of("big_items")[0]
        assert section["state"] == "fresh"
        assert section["scanned"] is False
        assert section["items"] == [{"size": "5G", "path": "/srv"}]

    def test_stale_cache_is_rescanned(self, fleet, make_monitor, app_config):
        fleet.add(WEB01.name, "find / -type f", "2G\t/big.iso\n")
        config = with_scan(app_config, big_files=True)
        monitor = make_monitor(fleet, config)
        old = CacheEntry(
            WEB01.name, "/", ScanKind.FILES, NOW - timedelta(days=8), (BigItem("1G", "/old"),)
        )
        monitor.cache.merge(ScanKind.FILES, [old])

        monitor.run([WEB01])

        stored = monitor.cache.all_entries(ScanKind.FILES)
        assert len(stored) == 1
        assert stored[0].items == (BigItem("2G", "/big.iso"),)
        assert stored[0].captured_at == NOW

    def test_failed_scan_keeps_old_entry(self, fleet, make_monitor, app_config):
        fleet.add(WEB01.name, "find / -type f", "", exit_status=255, timed_out=True)
        config = with_scan(app_config, big_files=True)
        monitor = make_monitor(fleet, config)
        old = CacheEntry(
            WEB01.name, "/", ScanKind.FILES, NOW - timedelta(days=8), (BigItem("1G", "/old"),)
        )
        monitor.cache.merge(ScanKind.FILES, [old])

        run = monitor.run([WEB01])

        assert run.hosts[0].new_entries == []
        assert monitor.cache.all_entries(ScanKind.FILES) == [old]
        assert monitor.report.sections_of("scan_error")[0]["scan_kind"] == "files"
        served = monitor.report.sections_of("big_items")[0]
        assert served["state"] == "stale"

    def test_excluded_host_is_never_scanned(self, fleet, make_monitor, app_config):
        config = with_scan(
            app_config, big_dirs=True, big_files=True, excluded_servers=[DB.name]
        )
        monitor = make_monitor(fleet, config)
        run = monitor.run([DB])
        assert find_commands(fleet) == []
        assert run.hosts[0].excluded is True
        assert monitor.report.sections_of("excluded") == [{"kind": "excluded", "host": DB.name}]

    def test_one_merge_per_kind(self, fleet, make_monitor, app_config, monkeypatch):
        fleet.add(WEB01.name, "find / -type d", "1G\t/a\n")
        fleet.add(WEB02.name, "find / -type d", "1G\t/b\n")
        fleet.add(WEB02.name, "find /var -type d", "1G\t/var\n")
        config = with_scan(app_config, big_dirs=True)
        monitor = make_monitor(fleet, config)
        merges = []
        original = monitor.cache.merge

        def spy(kind, entries):
            entries = list(entries)
            merges.append((kind, len(entries)))
            return original(kind, entries)

        monkeypatch.setattr(monitor.cache, "merge", spy)
        monitor.run([WEB01, WEB02])
        assert merges == [(ScanKind.DIRECTORIES, 3)]


class TestSortedUsage:
    def test_descending(self, fleet, make_monitor, tmp_path):
        monitor = make_monitor(fleet)
        rows = monitor.sorted_usage([WEB01, WEB02, DB], SORT_DESC)
        assert [row.used_percent for row in rows] == [91, 80, 60, 50, 40]
        assert rows[0].classification is Classification.CRITICAL
        assert find_commands(fleet) == []
        assert not (tmp_path / "log" / "big_directories.log").exists()
        section = monitor.report.sections_of("sorted_usage")[0]
        assert section["order"] == "desc"
        assert len(section["rows"]) == 5

    def test_ascending_with_unreachable(self, fleet, make_monitor):
        monitor = make_monitor(fleet, probe=FakeProbe(unreachable=[DB.name]))
        rows = monitor.sorted_usage([WEB01, WEB02, DB], SORT_ASC)
        assert [row.used_percent for row in rows] == [40, 60, 80]
        assert monitor.report.sections_of("unreachable") == [
            {"kind": "unreachable", "host": DB.name}
        ]

    def test_bad_order(self, fleet, make_monitor):
        with pytest.raises(ValueError):
            make_monitor(fleet).sorted_usage([WEB01], "sideways")


class TestConsolidated:
    def test_rows_from_cache_without_excluded(self, fleet, make_monitor, app_config):
        config = with_scan(app_config, excluded_servers=[DB.name])
        monitor = make_monitor(fleet, config)
        monitor.cache.merge(
            ScanKind.FILES,
            [
                CacheEntry(WEB01.name, "/", ScanKind.FILES, NOW, (BigItem("1.5G", "/a.iso"),)),
                CacheEntry(DB.name, "/var", ScanKind.FILES, NOW, (BigItem("90G", "/var/db"),)),
                CacheEntry(WEB02.name, "/", ScanKind.FILES, NOW, (BigItem("1536M", "/b.iso"),)),
            ],
        )

        rows = monitor.consolidated([WEB01, WEB02, DB], ScanKind.FILES)

        assert {row.host for row in rows} == {WEB01.name, WEB02.name}
        section = monitor.report.sections_of("consolidated")[0]
        assert section["scan_kind"] == "files"
        assert section["excluded"] == [DB.name]
        assert len(section["rows"]) == 2
        assert find_commands(fleet) == []

    def test_unknown_host_in_cache_is_ignored(self, fleet, make_monitor):
        monitor = make_monitor(fleet)
        monitor.cache.merge(
            ScanKind.DIRECTORIES,
            [CacheEntry("retired.example.com", "/", ScanKind.DIRECTORIES, NOW, (BigItem("9G", "/"),))],
        )
        assert monitor.consolidated([WEB01], ScanKind.DIRECTORIES) == []


class TestCheckAccess:
    def test_all_hosts_usable(self, fleet, make_monitor):
        fleet.add(WEB01.name, "echo test", "test\n")
        fleet.add(DB.name, "echo test", "test\n")
        checks = make_monitor(fleet).check_access([WEB01, DB])
        assert [check.host for check in checks] == [DB.name, WEB01.name]
        assert all(check.ok for check in checks)
        assert find_commands(fleet) == []

    def test_ssh_failure_skips_partitions(self, fleet, make_monitor):
        checks = make_monitor(fleet).check_access([WEB01])
        assert checks[0].ssh_ok is False
        assert checks[0].ok is False
        assert fleet.commands_for(WEB01.name) == ["echo test"]

    def test_ping_loss_alone_is_not_a_failure(self, fleet, make_monitor):
        fleet.add(DB.name, "echo test", "test\n")
        monitor = make_monitor(fleet, probe=FakeProbe(unreachable=[DB.name]))
        check = monitor.check_access([DB])[0]
        assert check.reachable is False
        assert check.ok is True

    def test_partition_error(self, executor, make_monitor):
        executor.add(WEB02.name, "echo test", "test\n")
        add_df(executor, WEB02.name, "/", 30)
        executor.add(WEB02.name, "LC_ALL=C df -kP /var", "", exit_status=1)
        check = make_monitor(executor).check_access([WEB02])[0]
        assert check.ssh_ok is True
        assert check.partition_errors == ["/var: exit status 1"]
        assert check.ok is False
