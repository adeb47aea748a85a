"""Disk usage monitor for a fleet of hosts."""

__version__ = "1.0.0"

from disk_monitor.cache import BigItemCache, ScanKind
from disk_monitor.config import AppConfig, load_config
from disk_monitor.driver import FleetMonitor
from disk_monitor.hostspec import load_host_list, parse_host_line
from disk_monitor.mqtt_client import MqttPublisher
from disk_monitor.schema import validate_payload

__all__ = [
    "AppConfig",
    "BigItemCache",
    "FleetMonitor",
    "MqttPublisher",
    "ScanKind",
    "load_config",
    "load_host_list",
    "parse_host_line",
    "validate_payload",
]
