from __future__ import annotations

import argparse
from dataclasses import replace
from datetime import datetime
import json
import logging
from pathlib import Path
import shlex
import sys
from typing import Any

from disk_monitor import __version__
from disk_monitor.cache import BigItemCache, ScanKind
from disk_monitor.config import (
    NAME_VALIDATION_MODES,
    AppConfig,
    default_config,
    load_config,
)
from disk_monitor.driver import SORT_ASC, SORT_DESC, FleetMonitor
from disk_monitor.errors import ConfigError, LockContention
from disk_monitor.hostspec import load_host_list
from disk_monitor.lock import RunLock
from disk_monitor.logging_utils import configure_logging, resolve_log_level
from disk_monitor.mqtt_client import MqttPublisher
from disk_monitor.remote import PingProbe, SshExecutor
from disk_monitor.report import (
    LEVEL_INFO,
    STANDARD_SUBJECT,
    ReportBuilder,
    route_levels,
    save_report,
)
from disk_monitor.scanner import BigItemScanner
from disk_monitor.schema import validate_payload

logger = logging.getLogger("disk_monitor")


def percent(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"{value!r} is not an integer") from exc
    if not 0 <= number <= 100:
        raise argparse.ArgumentTypeError(f"{number} is not between 0 and 100")
    return number


def positive(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"{value!r} is not an integer") from exc
    if number < 1:
        raise argparse.ArgumentTypeError(f"{number} must be at least 1")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="disk-monitor",
        description="Disk usage monitor for a fleet of hosts",
    )
    parser.add_argument(
        "--config",
        help="Path to CFG configuration file (defaults apply when omitted)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable debug logging (-v) or trace logging (-vv)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log reports without publishing to MQTT",
    )
    parser.add_argument(
        "--dump-json",
        help="Write the JSON report to a file (overwritten by each report)",
    )
    parser.add_argument(
        "-t",
        "--test",
        action="store_true",
        help="Use the test host list and prefix subjects with [TEST]",
    )
    parser.add_argument(
        "-s",
        "--simulate",
        action="store_true",
        help="Report every measured partition at 95%% usage",
    )
    parser.add_argument("-w", "--warning", type=percent, help="Global warning threshold")
    parser.add_argument("-c", "--critical", type=percent, help="Global critical threshold")
    parser.add_argument(
        "-d", "--dirs", action="store_true", help="Scan the largest directories"
    )
    parser.add_argument(
        "-f", "--files", action="store_true", help="Scan the largest files"
    )
    parser.add_argument(
        "--days", type=positive, help="Days before a cached scan is recomputed"
    )
    parser.add_argument(
        "-n", "--num-big-dirs", type=positive, help="Directories kept per partition"
    )
    parser.add_argument(
        "-F", "--num-big-files", type=positive, help="Files kept per partition"
    )
    parser.add_argument(
        "-E",
        "--exclude-servers",
        metavar="HOSTS",
        help="Comma separated hosts kept out of scans and consolidated reports",
    )
    parser.add_argument(
        "-S",
        "--skip-normal",
        action="store_true",
        help="Do not publish the report when no threshold is reached",
    )
    parser.add_argument(
        "-T", "--timing", action="store_true", help="Add per-host timing to the report"
    )
    sort_group = parser.add_mutually_exclusive_group()
    sort_group.add_argument(
        "-u",
        "--usage-sort-asc",
        dest="usage_sort",
        action="store_const",
        const=SORT_ASC,
        help="Only report partitions sorted by ascending usage",
    )
    sort_group.add_argument(
        "-U",
        "--usage-sort-desc",
        dest="usage_sort",
        action="store_const",
        const=SORT_DESC,
        help="Only report partitions sorted by descending usage",
    )
    parser.add_argument(
        "-M",
        "--consolidate-files",
        action="store_true",
        help="Publish the fleet-wide largest files instead of the standard report",
    )
    parser.add_argument(
        "-P",
        "--consolidate-dirs",
        action="store_true",
        help="Publish the fleet-wide largest directories instead of the standard report",
    )
    parser.add_argument(
        "-N",
        "--validate-names",
        choices=NAME_VALIDATION_MODES,
        help="Host name validation mode",
    )
    parser.add_argument("--workers", type=positive, help="Hosts collected in parallel")
    parser.add_argument(
        "-l",
        "--list-servers",
        action="store_true",
        help="List the configured hosts and exit",
    )
    parser.add_argument(
        "-Z",
        "--validate-config",
        action="store_true",
        help="Check ping, ssh access and partitions of every host and exit",
    )
    parser.add_argument(
        "-z",
        "--zero-calc",
        action="store_true",
        help="Delete the cached directory and file scans and exit",
    )
    parser.add_argument(
        "-V", "--version", action="version", version=f"%(prog)s {__version__}"
    )
    return parser


def apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    """Return ``config`` with the command line options applied."""
    monitor = config.monitor
    scan = config.scan
    report = config.report

    monitor = replace(
        monitor,
        test_mode=monitor.test_mode or args.test,
        simulate=monitor.simulate or args.simulate,
        warning_threshold=(
            args.warning if args.warning is not None else monitor.warning_threshold
        ),
        critical_threshold=(
            args.critical if args.critical is not None else monitor.critical_threshold
        ),
        name_validation=args.validate_names or monitor.name_validation,
        workers=args.workers or monitor.workers,
    )
    scan = replace(
        scan,
        big_dirs=scan.big_dirs or args.dirs,
        big_files=scan.big_files or args.files,
        calc_days=args.days or scan.calc_days,
        num_big_dirs=args.num_big_dirs or scan.num_big_dirs,
        num_big_files=args.num_big_files or scan.num_big_files,
        excluded_servers=(
            [name.strip() for name in args.exclude_servers.split(",") if name.strip()]
            if args.exclude_servers is not None
            else scan.excluded_servers
        ),
    )
    report = replace(
        report,
        skip_normal=report.skip_normal or args.skip_normal,
        timing=report.timing or args.timing,
    )
    return replace(config, monitor=monitor, scan=scan, report=report)


def log_file_for(config: AppConfig) -> Path:
    date = datetime.now().strftime("%Y-%m-%d")
    return Path(config.monitor.log_dir) / f"disk-space-check-{date}.log"


class Delivery:
    """Validates, saves, dumps and publishes report payloads."""

    def __init__(
        self,
        config: AppConfig,
        publisher: MqttPublisher | None,
        dump_json: str | None = None,
        pretty_print: bool = False,
    ) -> None:
        self.config = config
        self.publisher = publisher
        self.dump_json = dump_json
        self.pretty_print = pretty_print

    def deliver(
        self,
        payload: dict[str, Any],
        levels: list[str],
        suffix: str | None = None,
    ) -> None:
        schema_errors = validate_payload(payload)
        if schema_errors:
            logger.warning("Schema validation failed with %s errors.", len(schema_errors))
            logger.debug("Schema errors: %s", schema_errors)
        else:
            logger.info("Schema validation passed.")

        payload_json = (
            json.dumps(payload, indent=2) if self.pretty_print else json.dumps(payload)
        )
        if self.dump_json:
            with open(self.dump_json, "w", encoding="utf-8") as handle:
                handle.write(payload_json)

        try:
            path = save_report(payload, self.config.monitor.log_dir, suffix)
            logger.info("Saved report to %s", path)
        except OSError as exc:
            logger.error("Unable to save report: %s", exc)

        if not levels:
            logger.info("Nothing to publish for '%s'", payload["subject"])
            return
        if self.publisher is None:
            logger.info("Publishing disabled; '%s' not sent", payload["subject"])
            logger.debug("Payload: %s", payload_json)
            return
        for level in levels:
            self.publisher.publish_report(level, payload)


def run_reports(
    config: AppConfig,
    args: argparse.Namespace,
    delivery: Delivery,
    command_line: str,
) -> int:
    host_list = load_host_list(config.active_server_list, config.monitor.name_validation)
    executor = SshExecutor(connect_timeout_s=config.monitor.ssh_timeout_s)
    probe = PingProbe(config.monitor.ping_count, config.monitor.ping_timeout_s)
    cache = BigItemCache.in_directory(config.monitor.log_dir, config.scan.calc_days)
    scanner = BigItemScanner(timeout_s=config.scan.scan_timeout_s)
    test_mode = config.monitor.test_mode

    def monitor_for(report: ReportBuilder) -> FleetMonitor:
        return FleetMonitor(config, executor, probe, cache, scanner, report)

    if args.usage_sort:
        logger.info("Sorted usage report only (%s)", args.usage_sort)
        report = ReportBuilder("sorted_usage", test_mode, command_line)
        for message in host_list.warnings:
            report.emit("config_warning", {"message": message})
        monitor_for(report).sorted_usage(host_list.hosts, args.usage_sort)
        order = "ascending" if args.usage_sort == SORT_ASC else "descending"
        payload = report.build(LEVEL_INFO, f"Disk usage sorted by {order} usage")
        delivery.deliver(payload, [LEVEL_INFO], suffix="sorted")
        return 0

    report = ReportBuilder("standard", test_mode, command_line)
    run = monitor_for(report).run(host_list.hosts, host_list.warnings)
    payload = report.build(run.level, STANDARD_SUBJECT, run.duration_s)

    consolidated_kinds = []
    if args.consolidate_files:
        consolidated_kinds.append(ScanKind.FILES)
    if args.consolidate_dirs:
        consolidated_kinds.append(ScanKind.DIRECTORIES)

    if consolidated_kinds:
        logger.info("Standard report not published (consolidated reports requested)")
        delivery.deliver(payload, [])
    else:
        levels = route_levels(run.any_warning, run.any_critical, config.report.skip_normal)
        delivery.deliver(payload, levels)

    for kind in consolidated_kinds:
        consolidated = ReportBuilder(f"consolidated_{kind.value}", test_mode, command_line)
        monitor_for(consolidated).consolidated(host_list.hosts, kind)
        consolidated_payload = consolidated.build(
            LEVEL_INFO, f"Consolidated report: largest {kind.value} of the fleet"
        )
        delivery.deliver(consolidated_payload, [LEVEL_INFO], suffix=f"consolidated-{kind.value}")
    return 0


def validate_configuration(config: AppConfig) -> int:
    """Print a connectivity check of every configured host.

    Returns 1 when the host list is empty or any host cannot be queried.
    """
    host_list = load_host_list(config.active_server_list, config.monitor.name_validation)
    for message in host_list.warnings:
        print(f"WARNING: {message}")
    if not host_list.hosts:
        print(f"ERROR: no host configured in {config.active_server_list}")
        return 1

    monitor = FleetMonitor(
        config,
        SshExecutor(connect_timeout_s=config.monitor.ssh_timeout_s),
        PingProbe(config.monitor.ping_count, config.monitor.ping_timeout_s),
        BigItemCache.in_directory(config.monitor.log_dir, config.scan.calc_days),
        BigItemScanner(timeout_s=config.scan.scan_timeout_s),
        ReportBuilder(),
    )
    checks = monitor.check_access(host_list.hosts)
    for check in checks:
        status = "OK" if check.ok else "ERROR"
        ping = "ping ok" if check.reachable else "no ping"
        ssh = "ssh ok" if check.ssh_ok else "ssh failed"
        print(f"{status:5} {check.host}: {ping}, {ssh}")
        for error in check.partition_errors:
            print(f"      partition {error}")

    failed = [check for check in checks if not check.ok]
    print(f"{len(checks) - len(failed)}/{len(checks)} hosts usable")
    return 1 if failed else 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = resolve_log_level(args.verbose, args.log_level)
    configure_logging(level)
    pretty_print = level <= logging.DEBUG

    try:
        config = load_config(args.config) if args.config else default_config()
    except (FileNotFoundError, ConfigError) as exc:
        logger.error("Unable to load configuration: %s", exc)
        return 1
    config = apply_overrides(config, args)

    try:
        configure_logging(level, log_file_for(config))
    except OSError as exc:
        configure_logging(level)
        logger.warning("Logging to the console only: %s", exc)

    if args.list_servers:
        host_list = load_host_list(config.active_server_list, config.monitor.name_validation)
        print(f"Hosts from {config.active_server_list}:")
        for host in host_list.hosts:
            print(
                f"  {host.target}  partitions={','.join(host.partitions)}"
                f"  warning={host.warning if host.warning is not None else '-'}"
                f"  critical={host.critical if host.critical is not None else '-'}"
            )
        for message in host_list.warnings:
            print(f"  ! {message}")
        return 0

    if args.validate_config:
        return validate_configuration(config)

    lock = RunLock(config.monitor.lock_file)
    try:
        lock.acquire()
    except LockContention as exc:
        logger.error("%s", exc)
        return 1
    except OSError as exc:
        logger.error("Unable to take run lock %s: %s", config.monitor.lock_file, exc)
        return 1

    publisher: MqttPublisher | None = None
    try:
        if args.zero_calc:
            cache = BigItemCache.in_directory(config.monitor.log_dir, config.scan.calc_days)
            removed = cache.reset()
            logger.info(
                "Reset %s cache files; scans will be recomputed on the next run",
                len(removed),
            )
            return 0

        logger.info(
            "Starting disk-monitor %s with %s%s",
            __version__,
            config.active_server_list,
            " (TEST mode)" if config.monitor.test_mode else "",
        )
        if args.dry_run:
            logger.info("Dry run enabled; skipping MQTT publish.")
        elif config.mqtt is None:
            logger.info("No [mqtt] section configured; reports are only saved.")
        else:
            publisher = MqttPublisher(config.mqtt)
            try:
                publisher.connect()
            except OSError as exc:
                logger.error("Unable to reach MQTT broker, reports are only saved: %s", exc)
                publisher = None
            else:
                if not publisher.wait_connected():
                    logger.warning("MQTT broker not connected yet; reports will be queued")

        delivery = Delivery(config, publisher, args.dump_json, pretty_print)
        command_line = " ".join(shlex.quote(arg) for arg in sys.argv)
        return run_reports(config, args, delivery, command_line)
    finally:
        if publisher is not None:
            publisher.disconnect()
        lock.release()


if __name__ == "__main__":
    sys.exit(main())
