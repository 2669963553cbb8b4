#!/usr/bin/env python3
"""bt-dns-manager - Dynamic DNS with VPN leak detection

Keeps Cloudflare A records pointed at the public IP of the primary host and
watches a second, VPN-connected host that pushes its own public IP over HTTP.
When both hosts show the same public IP the VPN is leaking: the service sends a
warning and leaves DNS alone until the paths diverge again.

Modes:
    server (default)  Run the HTTP API (report endpoint, status, status page)
                      plus the reconciliation and primary-IP poll schedules.
    client            Run on the VPN host: report its public IP to a server.

Config file (CONFIG_PATH, YAML; a JSON config.json works too):
    records:
      - home.example.com
      - nas.example.org
    server:
      port: 3000
      check_interval_seconds: 900     # reconciliation interval
      poll_interval_seconds: 300      # primary IP refresh for the status surface
    client:
      server_url: "http://dns-manager.lan:3000"
      check_interval_seconds: 600
      run_continuously: true

Environment variables:

    Runtime:
        APP_MODE               "server" or "client" (default: server)
        SYNC_MODE              "watch" (serve + schedule) or "once" (single
                               reconciliation, then exit) (default: watch)
        CONFIG_PATH            Path to the config file (default: ./config.yaml)
        STATE_DIR              Directory holding last-ip.txt and vpn-ip.txt (default: .)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
        REQUEST_TIMEOUT_SECONDS  Timeout for every outbound call (default: 5)

    Server:
        HOST                   Listen address (default: 0.0.0.0)
        PORT                   Listen port, overrides server.port
        CHECK_INTERVAL_SECONDS Overrides server.check_interval_seconds
        POLL_INTERVAL_SECONDS  Overrides server.poll_interval_seconds
        IP_LOOKUP_URL          Public IP service returning {"ip": "..."}
                               (default: https://api.ipify.org?format=json)

    DNS Provider:
        DNS_PROVIDER           DNS provider type: "cloudflare" (default: cloudflare)
        CLOUDFLARE_API_TOKEN   API token with Zone:Read and DNS:Edit
        CLOUDFLARE_API_URL     API base URL (default: https://api.cloudflare.com/client/v4)
        RECORD_TTL             TTL sent with updates, 1 means automatic (default: 1)

    Notifications:
        DISCORD_WEBHOOK_URL    Discord webhook for change and leak messages (optional)

    Client:
        CLIENT_SERVER_URL              Overrides client.server_url
        CLIENT_CHECK_INTERVAL_SECONDS  Overrides client.check_interval_seconds
        CLIENT_CONTINUOUS              Overrides client.run_continuously

A .env file in the working directory is loaded before the variables are read.
"""

from __future__ import annotations

import logging
import os
import sys
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import uvicorn
import yaml
from dotenv import load_dotenv

from bt_dns_manager.client import VPNReporter
from bt_dns_manager.core import (
    CycleStatus,
    DeviceIdentity,
    DeviceIPRegistry,
    IPObserver,
    IPStore,
    ObservationFailure,
    ReconciliationEngine,
    ReconciliationOutcome,
    RecordTarget,
    ZoneDirectory,
)
from bt_dns_manager.providers import (
    DEFAULT_CLOUDFLARE_API_URL,
    DEFAULT_IP_LOOKUP_URL,
    CloudflareZoneDirectory,
    PublicIPObserver,
    create_notifier,
)
from bt_dns_manager.web import create_app

load_dotenv()

# =============================================================================
# Configuration
# =============================================================================

# Runtime configuration
APP_MODE = os.getenv("APP_MODE", "server").lower().strip()
SYNC_MODE = os.getenv("SYNC_MODE", "watch").lower().strip()
CONFIG_PATH = os.getenv("CONFIG_PATH", "./config.yaml")
STATE_DIR = os.getenv("STATE_DIR", ".")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "5"))

# Server configuration
HOST = os.getenv("HOST", "0.0.0.0")
PORT = os.getenv("PORT", "")
CHECK_INTERVAL_SECONDS = os.getenv("CHECK_INTERVAL_SECONDS", "")
POLL_INTERVAL_SECONDS = os.getenv("POLL_INTERVAL_SECONDS", "")
IP_LOOKUP_URL = os.getenv("IP_LOOKUP_URL", DEFAULT_IP_LOOKUP_URL)

# DNS provider configuration
DNS_PROVIDER = os.getenv("DNS_PROVIDER", "cloudflare").lower().strip()
CLOUDFLARE_API_TOKEN = os.getenv("CLOUDFLARE_API_TOKEN", "")
CLOUDFLARE_API_URL = os.getenv("CLOUDFLARE_API_URL", DEFAULT_CLOUDFLARE_API_URL)
RECORD_TTL = int(os.getenv("RECORD_TTL", "1"))

# Notifications
DISCORD_WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL", "")

# Client configuration
CLIENT_SERVER_URL = os.getenv("CLIENT_SERVER_URL", "")
CLIENT_CHECK_INTERVAL_SECONDS = os.getenv("CLIENT_CHECK_INTERVAL_SECONDS", "")
CLIENT_CONTINUOUS = os.getenv("CLIENT_CONTINUOUS", "")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Config File
# =============================================================================


class ConfigError(Exception):
    """Raised when the config file cannot be used."""


@dataclass(frozen=True)
class AppConfig:
    records: Tuple[str, ...] = ()
    port: int = 3000
    check_interval_seconds: int = 15 * 60
    poll_interval_seconds: int = 5 * 60
    client_server_url: str = "http://localhost:3000"
    client_check_interval_seconds: int = 10 * 60
    client_run_continuously: bool = False

    @property
    def targets(self) -> List[RecordTarget]:
        return [RecordTarget(fqdn=r) for r in self.records]


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_seconds(section: Dict[str, Any], key: str, legacy_ms_key: str, default: int) -> int:
    """Read an interval in seconds, accepting the older millisecond keys."""
    if section.get(key) is not None:
        return int(section[key])
    if section.get(legacy_ms_key) is not None:
        return int(section[legacy_ms_key]) // 1000
    return default


def _parse_records(raw: Any) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError("'records' must be a list of fully-qualified names")

    records: List[str] = []
    for item in raw:
        if not isinstance(item, str) or not item.strip():
            logger.warning(f"Skipping invalid record entry: {item!r}")
            continue
        name = item.strip()
        if RecordTarget(name).zone_name is None:
            logger.warning(f"Record '{name}' has fewer than two labels; it will never match a zone")
        records.append(name)
    return tuple(records)


def load_app_config(config_path: str) -> AppConfig:
    """Load the YAML (or JSON) config file. A missing file yields defaults."""
    path = Path(config_path)
    if not path.is_file():
        logger.warning(f"Config file {config_path} not found; using defaults")
        return AppConfig()

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config from {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    server = data.get("server") or {}
    client = data.get("client") or {}
    if not isinstance(server, dict) or not isinstance(client, dict):
        raise ConfigError("'server' and 'client' sections must be mappings")

    defaults = AppConfig()
    try:
        return AppConfig(
            records=_parse_records(data.get("records")),
            port=int(server.get("port") or defaults.port),
            check_interval_seconds=_parse_seconds(
                server, "check_interval_seconds", "checkInterval", defaults.check_interval_seconds
            ),
            poll_interval_seconds=_parse_seconds(
                server, "poll_interval_seconds", "pollInterval", defaults.poll_interval_seconds
            ),
            client_server_url=str(
                client.get("server_url") or client.get("serverUrl") or defaults.client_server_url
            ),
            client_check_interval_seconds=_parse_seconds(
                client,
                "check_interval_seconds",
                "checkInterval",
                defaults.client_check_interval_seconds,
            ),
            client_run_continuously=_parse_bool(
                client.get("run_continuously", client.get("runContinuously")), default=False
            ),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value in {config_path}: {e}") from e


def apply_env_overrides(config: AppConfig) -> AppConfig:
    """Environment variables win over the config file."""
    overrides: Dict[str, Any] = {}
    if PORT:
        overrides["port"] = int(PORT)
    if CHECK_INTERVAL_SECONDS:
        overrides["check_interval_seconds"] = int(CHECK_INTERVAL_SECONDS)
    if POLL_INTERVAL_SECONDS:
        overrides["poll_interval_seconds"] = int(POLL_INTERVAL_SECONDS)
    if CLIENT_SERVER_URL:
        overrides["client_server_url"] = CLIENT_SERVER_URL
    if CLIENT_CHECK_INTERVAL_SECONDS:
        overrides["client_check_interval_seconds"] = int(CLIENT_CHECK_INTERVAL_SECONDS)
    if CLIENT_CONTINUOUS:
        overrides["client_run_continuously"] = _parse_bool(CLIENT_CONTINUOUS, default=False)
    return replace(config, **overrides)


# =============================================================================
# Scheduler
# =============================================================================


class Scheduler:
    """Runs reconciliation and primary-IP polling on fixed intervals.

    Each job has its own daemon thread, so a job never overlaps itself. The
    engine additionally drops any cycle requested while one is in flight.
    """

    def __init__(
        self,
        *,
        engine: ReconciliationEngine,
        observer: IPObserver,
        registry: DeviceIPRegistry,
        check_interval: int,
        poll_interval: int,
    ):
        self.engine = engine
        self.observer = observer
        self.registry = registry
        self.check_interval = check_interval
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def run_reconcile_once(self) -> Optional[ReconciliationOutcome]:
        try:
            return self.engine.reconcile()
        except Exception as e:
            logger.error(f"Reconciliation failed unexpectedly: {e}", exc_info=True)
            return None

    def run_poll_once(self) -> Optional[str]:
        try:
            observed = self.observer.observe(DeviceIdentity.PRIMARY)
        except ObservationFailure as e:
            logger.warning(f"Primary IP poll failed: {e}")
            return None
        self.registry.record_observation(DeviceIdentity.PRIMARY, observed.address)
        logger.debug(f"Main IP: {observed.address}")
        return observed.address

    def _loop(self, job: Callable[[], Any], interval: int) -> None:
        job()
        while not self._stop.wait(max(5, interval)):
            job()

    def start(self) -> None:
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._loop,
                args=(self.run_reconcile_once, self.check_interval),
                name="reconcile",
                daemon=True,
            ),
            threading.Thread(
                target=self._loop,
                args=(self.run_poll_once, self.poll_interval),
                name="poll-primary",
                daemon=True,
            ),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            f"Will check DNS every {self.check_interval}s and poll the main IP every {self.poll_interval}s"
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []


# =============================================================================
# Provider Registry
# =============================================================================


def create_zone_directory() -> ZoneDirectory:
    """Factory function to create the configured DNS provider."""
    if DNS_PROVIDER == "cloudflare":
        return CloudflareZoneDirectory(
            CLOUDFLARE_API_TOKEN, base_url=CLOUDFLARE_API_URL, timeout=REQUEST_TIMEOUT_SECONDS
        )
    else:
        raise ValueError(
            f"Unsupported DNS provider: '{DNS_PROVIDER}'. Supported providers: cloudflare"
        )


def build_engine(
    config: AppConfig, registry: DeviceIPRegistry, observer: IPObserver
) -> ReconciliationEngine:
    return ReconciliationEngine(
        observer=observer,
        registry=registry,
        zone_directory=create_zone_directory(),
        notifier=create_notifier(DISCORD_WEBHOOK_URL, timeout=REQUEST_TIMEOUT_SECONDS),
        targets=config.targets,
        ttl=RECORD_TTL,
    )


# =============================================================================
# Main
# =============================================================================


def validate_config(config: AppConfig) -> bool:
    """Validate configuration."""
    errors = []

    if APP_MODE not in ("server", "client"):
        errors.append(f"Invalid APP_MODE: {APP_MODE}. Use 'server' or 'client'")

    if APP_MODE == "server":
        if SYNC_MODE not in ("once", "watch"):
            errors.append(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")
        if DNS_PROVIDER == "cloudflare":
            if not CLOUDFLARE_API_TOKEN:
                errors.append("CLOUDFLARE_API_TOKEN is required when DNS_PROVIDER=cloudflare")
        else:
            errors.append(f"Unsupported DNS_PROVIDER: {DNS_PROVIDER}. Supported: cloudflare")
        if not config.records:
            errors.append(f"No records configured (add a 'records' list to {CONFIG_PATH})")
        if not DISCORD_WEBHOOK_URL:
            logger.warning("⚠️  DISCORD_WEBHOOK_URL not set. Notifications are disabled.")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def run_server(config: AppConfig) -> int:
    registry = DeviceIPRegistry(IPStore(STATE_DIR))
    registry.load_at_startup()
    observer = PublicIPObserver(IP_LOOKUP_URL, timeout=REQUEST_TIMEOUT_SECONDS)
    engine = build_engine(config, registry, observer)

    logger.info(f"DNS Provider: {engine.zone_directory.name}")
    logger.info(f"Records: {', '.join(config.records)}")

    if SYNC_MODE == "once":
        outcome = engine.reconcile()
        return 1 if outcome.status == CycleStatus.OBSERVATION_FAILED else 0

    if not engine.zone_directory.test_connection():
        logger.warning(f"Cannot reach {engine.zone_directory.name}; will retry on schedule")

    scheduler = Scheduler(
        engine=engine,
        observer=observer,
        registry=registry,
        check_interval=config.check_interval_seconds,
        poll_interval=config.poll_interval_seconds,
    )
    scheduler.start()
    try:
        logger.info(f"Server running on {HOST}:{config.port}")
        uvicorn.run(create_app(registry), host=HOST, port=config.port, log_level=LOG_LEVEL.lower())
    finally:
        scheduler.stop(timeout=REQUEST_TIMEOUT_SECONDS)
        registry.flush()
    return 0


def run_client(config: AppConfig) -> int:
    reporter = VPNReporter(
        config.client_server_url,
        PublicIPObserver(IP_LOOKUP_URL, timeout=REQUEST_TIMEOUT_SECONDS),
        timeout=REQUEST_TIMEOUT_SECONDS,
    )
    if config.client_run_continuously:
        reporter.run_forever(config.client_check_interval_seconds)
        return 0
    reported = reporter.run_once()
    logger.info("One-time check complete. Exiting.")
    return 0 if reported else 1


def main():
    """Main entry point."""
    logger.info(f"bt-dns-manager starting in {APP_MODE} mode")

    try:
        config = apply_env_overrides(load_app_config(CONFIG_PATH))
    except (ConfigError, ValueError) as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    if not validate_config(config):
        logger.error("Configuration validation failed")
        sys.exit(1)

    try:
        if APP_MODE == "client":
            sys.exit(run_client(config))
        sys.exit(run_server(config))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
