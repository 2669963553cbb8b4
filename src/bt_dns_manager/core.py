"""Reconciliation core for bt-dns-manager.

Holds the data model, the error taxonomy, the device IP registry with its
on-disk store, the VPN leak guard and the reconciliation engine. Network
collaborators (IP observer, zone directory, notifier) live in
``bt_dns_manager.providers`` and are injected.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class DNSManagerError(Exception):
    """Base class for all classified failures."""


class ObservationFailure(DNSManagerError):
    """The public IP of a device could not be determined."""


class ZoneLookupFailure(DNSManagerError):
    """The zone list could not be fetched or the zone is missing."""


class RecordLookupFailure(DNSManagerError):
    """The record list of a zone could not be fetched or the record is missing."""


class UpdateFailure(DNSManagerError):
    """The provider rejected or errored on a record update."""


class NotificationFailure(DNSManagerError):
    """The notification channel was unreachable."""


class PersistenceFailure(DNSManagerError):
    """A last-known IP could not be written to disk."""


# =============================================================================
# Enums
# =============================================================================


class DeviceIdentity(Enum):
    """Network paths whose public IP is tracked."""

    PRIMARY = "primary"
    VPN = "vpn"


class VpnStatus(Enum):
    """Relationship between the primary and VPN public IPs."""

    DISTINCT = "vpn-distinct"
    LEAKED = "vpn-leaked"
    UNKNOWN = "vpn-unknown"


class RecordOutcome(Enum):
    UPDATED = "updated"
    SKIPPED_UNCHANGED = "skipped-unchanged"
    ZONE_NOT_FOUND = "zone-not-found"
    RECORD_NOT_FOUND = "record-not-found"
    UPDATE_FAILED = "update-failed"


class CycleStatus(Enum):
    """How a reconciliation cycle ended."""

    COMPLETED = "completed"
    UNCHANGED = "unchanged"
    LEAKED = "leaked"
    OBSERVATION_FAILED = "observation-failed"
    BUSY = "busy"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ObservedIP:
    """A public address seen for one device at a point in time."""

    device: DeviceIdentity
    address: str
    observed_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RecordTarget:
    """A fully-qualified record name kept in sync with the primary IP."""

    fqdn: str

    @property
    def zone_name(self) -> Optional[str]:
        """Last two labels of the name (``a.b.example.com`` -> ``example.com``).

        Multi-label public suffixes such as ``co.uk`` are not special-cased.
        """
        labels = self.fqdn.strip().rstrip(".").split(".")
        if len(labels) < 2 or not all(labels[-2:]):
            return None
        return ".".join(labels[-2:])


@dataclass(frozen=True)
class Zone:
    """A provider zone as returned by the zone list."""

    id: str
    name: str


@dataclass(frozen=True)
class ZoneRecord:
    """The provider's view of a single DNS record."""

    zone_id: str
    record_id: str
    name: str
    content: str
    proxied: bool = False
    type: str = "A"


@dataclass(frozen=True)
class RecordResult:
    record_name: str
    zone_name: str
    outcome: RecordOutcome
    error: str = ""


@dataclass
class ReconciliationOutcome:
    """Result of one engine run. Produced fresh every cycle, never persisted."""

    status: CycleStatus
    primary_ip: Optional[str] = None
    previous_ip: Optional[str] = None
    vpn_ip: Optional[str] = None
    vpn_status: VpnStatus = VpnStatus.UNKNOWN
    results: List[RecordResult] = field(default_factory=list)
    persisted: bool = False
    notified: bool = False
    error: str = ""

    @property
    def updated(self) -> List[RecordResult]:
        return [r for r in self.results if r.outcome == RecordOutcome.UPDATED]

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for result in self.results:
            counts[result.outcome.value] = counts.get(result.outcome.value, 0) + 1
        return counts


# =============================================================================
# Collaborator Interfaces
# =============================================================================


class IPObserver(ABC):
    """Obtains the current public IP of a network path."""

    @abstractmethod
    def observe(self, device: DeviceIdentity) -> ObservedIP:
        """Return the current address or raise ObservationFailure."""
        pass


class ZoneDirectory(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection to the DNS provider."""
        pass

    @abstractmethod
    def list_zones(self) -> List[Zone]:
        """Return every zone visible to the credentials or raise ZoneLookupFailure."""
        pass

    @abstractmethod
    def list_records(self, zone_id: str) -> List[ZoneRecord]:
        """Return the A records of a zone or raise RecordLookupFailure."""
        pass

    @abstractmethod
    def update_record(self, record: ZoneRecord, payload: Dict[str, Any]) -> None:
        """Write a record or raise UpdateFailure."""
        pass


class Notifier(ABC):
    """Best-effort channel for human-readable change summaries."""

    @abstractmethod
    def send(self, content: str) -> None:
        """Deliver a message or raise NotificationFailure."""
        pass

    def notify_update(
        self,
        ip: str,
        records: List[RecordResult],
        vpn_ip: Optional[str],
        vpn_status: VpnStatus,
    ) -> bool:
        if not records:
            return False
        return self._deliver(format_update_message(ip, records, vpn_ip, vpn_status))

    def notify_leak(self, ip: str, vpn_ip: str) -> bool:
        return self._deliver(format_leak_message(ip, vpn_ip))

    def _deliver(self, content: str) -> bool:
        try:
            self.send(content)
            return True
        except NotificationFailure as e:
            logger.error(f"Failed to send notification: {e}")
            return False


def format_update_message(
    ip: str,
    records: List[RecordResult],
    vpn_ip: Optional[str],
    vpn_status: VpnStatus,
) -> str:
    lines = [f"🔧 IP updated to `{ip}`", "🎯 DNS Records:"]
    lines.extend(f"• `{r.record_name}`" for r in records)
    content = "\n".join(lines)

    if vpn_ip and vpn_status != VpnStatus.UNKNOWN:
        content += f"\n\n🔒 VPN IP: `{vpn_ip}`"
        if vpn_status == VpnStatus.LEAKED:
            content += "\n⚠️ WARNING: VPN IP matches main IP!"
        else:
            content += "\n✅ VPN IP differs from main IP (good)"
    return content


def format_leak_message(ip: str, vpn_ip: str) -> str:
    return (
        f"⚠️ WARNING: VPN IP (`{vpn_ip}`) matches main IP (`{ip}`)\n"
        "The VPN tunnel is not isolating traffic. DNS records were left untouched."
    )


# =============================================================================
# State Management
# =============================================================================


class IPStore:
    """One plain-text file per device holding its last-known IP."""

    FILENAMES = {
        DeviceIdentity.PRIMARY: "last-ip.txt",
        DeviceIdentity.VPN: "vpn-ip.txt",
    }

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def path_for(self, device: DeviceIdentity) -> Path:
        return self.directory / self.FILENAMES[device]

    def load(self, device: DeviceIdentity) -> Optional[str]:
        path = self.path_for(device)
        if not path.exists():
            return None
        try:
            value = path.read_text("utf-8").strip()
        except OSError as e:
            logger.warning(f"Failed to read {path}: {e}")
            return None
        return value or None

    def save(self, device: DeviceIdentity, address: str) -> None:
        path = self.path_for(device)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            tmp_path.write_text(address, "utf-8")
            tmp_path.replace(path)
        except OSError as e:
            raise PersistenceFailure(f"Failed to write {path}: {e}") from e


class DeviceIPRegistry:
    """Live and committed IPs per device.

    ``get`` returns the freshest value seen. ``committed`` returns the last
    value written to disk, which for the primary device is the baseline the
    engine compares new observations against.
    """

    def __init__(self, store: IPStore):
        self.store = store
        self._lock = threading.Lock()
        self._live: Dict[DeviceIdentity, Optional[str]] = {d: None for d in DeviceIdentity}
        self._committed: Dict[DeviceIdentity, Optional[str]] = {d: None for d in DeviceIdentity}

    def load_at_startup(self) -> None:
        vpn_ip = self.store.load(DeviceIdentity.VPN)
        primary_ip = self.store.load(DeviceIdentity.PRIMARY)
        with self._lock:
            self._live[DeviceIdentity.VPN] = vpn_ip
            self._committed[DeviceIdentity.VPN] = vpn_ip
            self._committed[DeviceIdentity.PRIMARY] = primary_ip
        if vpn_ip:
            logger.info(f"Last known VPN IP: {vpn_ip}")
        if primary_ip:
            logger.info(f"Last committed primary IP: {primary_ip}")

    def get(self, device: DeviceIdentity) -> Optional[str]:
        with self._lock:
            return self._live[device]

    def committed(self, device: DeviceIdentity) -> Optional[str]:
        with self._lock:
            return self._committed[device]

    def record_observation(self, device: DeviceIdentity, address: str) -> None:
        with self._lock:
            self._live[device] = address

    def set(self, device: DeviceIdentity, address: str) -> bool:
        """Overwrite a slot and persist it. Returns False if the disk write failed."""
        with self._lock:
            self._live[device] = address
        try:
            self.store.save(device, address)
        except PersistenceFailure as e:
            logger.error(str(e))
            return False
        with self._lock:
            self._committed[device] = address
        return True

    def snapshot(self) -> Dict[str, Optional[str]]:
        with self._lock:
            return {d.value: ip for d, ip in self._live.items()}

    def flush(self) -> None:
        """Persist the live VPN value if it never reached disk.

        The primary slot is excluded: its committed value only moves after a
        cycle that actually updated DNS.
        """
        with self._lock:
            vpn_ip = self._live[DeviceIdentity.VPN]
            pending = bool(vpn_ip) and vpn_ip != self._committed[DeviceIdentity.VPN]
        if pending:
            self.set(DeviceIdentity.VPN, vpn_ip)


# =============================================================================
# VPN Leak Guard
# =============================================================================


def classify(primary: Optional[str], vpn: Optional[str]) -> VpnStatus:
    if not vpn or not primary:
        return VpnStatus.UNKNOWN
    if primary == vpn:
        return VpnStatus.LEAKED
    return VpnStatus.DISTINCT


# =============================================================================
# Reconciliation Engine
# =============================================================================


class ReconciliationEngine:
    def __init__(
        self,
        *,
        observer: IPObserver,
        registry: DeviceIPRegistry,
        zone_directory: ZoneDirectory,
        notifier: Notifier,
        targets: List[RecordTarget],
        ttl: int = 1,
    ):
        self.observer = observer
        self.registry = registry
        self.zone_directory = zone_directory
        self.notifier = notifier
        self.targets = targets
        self.ttl = ttl
        self._in_flight = threading.Lock()
        self._last_leak: Optional[Tuple[str, str]] = None

    def reconcile(self) -> ReconciliationOutcome:
        """Run one cycle. Returns immediately with BUSY if a cycle is already running."""
        if not self._in_flight.acquire(blocking=False):
            logger.warning("Reconciliation already in progress; dropping this tick")
            return ReconciliationOutcome(status=CycleStatus.BUSY)
        try:
            outcome = self._reconcile()
        finally:
            self._in_flight.release()

        if outcome.results:
            summary = ", ".join(f"{v} {k}" for k, v in sorted(outcome.counts().items()))
            logger.info(f"Reconciliation finished: {summary}")
        return outcome

    def _reconcile(self) -> ReconciliationOutcome:
        try:
            observed = self.observer.observe(DeviceIdentity.PRIMARY)
        except ObservationFailure as e:
            logger.error(f"Failed to get public IP: {e}")
            return ReconciliationOutcome(status=CycleStatus.OBSERVATION_FAILED, error=str(e))

        current_ip = observed.address
        self.registry.record_observation(DeviceIdentity.PRIMARY, current_ip)
        previous_ip = self.registry.committed(DeviceIdentity.PRIMARY)
        vpn_ip = self.registry.get(DeviceIdentity.VPN)
        vpn_status = classify(current_ip, vpn_ip)

        logger.info(f"Main IP: {current_ip}")
        logger.info(f"VPN IP: {vpn_ip or 'unknown'}")

        outcome = ReconciliationOutcome(
            status=CycleStatus.COMPLETED,
            primary_ip=current_ip,
            previous_ip=previous_ip,
            vpn_ip=vpn_ip,
            vpn_status=vpn_status,
        )

        if vpn_status == VpnStatus.LEAKED:
            logger.warning(f"⚠️ VPN IP ({vpn_ip}) matches main IP ({current_ip}); skipping DNS")
            outcome.status = CycleStatus.LEAKED
            if self._last_leak != (current_ip, vpn_ip):
                outcome.notified = self.notifier.notify_leak(current_ip, vpn_ip)
                # Only a delivered warning silences later ticks for this pair.
                if outcome.notified:
                    self._last_leak = (current_ip, vpn_ip)
            return outcome
        self._last_leak = None

        if current_ip == previous_ip:
            logger.info(f"IP hasn't changed ({current_ip})")
            outcome.status = CycleStatus.UNCHANGED
            return outcome

        outcome.results = self._apply(current_ip)

        updated = outcome.updated
        if not updated:
            logger.warning("No records updated")
            return outcome

        outcome.persisted = self.registry.set(DeviceIdentity.PRIMARY, current_ip)
        outcome.notified = self.notifier.notify_update(current_ip, updated, vpn_ip, vpn_status)
        return outcome

    def _apply(self, current_ip: str) -> List[RecordResult]:
        try:
            zones: Optional[List[Zone]] = self.zone_directory.list_zones()
            zone_error = ""
        except ZoneLookupFailure as e:
            logger.error(f"Failed to list zones from {self.zone_directory.name}: {e}")
            zones = None
            zone_error = str(e)

        results: List[RecordResult] = []
        for target in self.targets:
            results.append(self._sync_target(target, zones, zone_error, current_ip))
        return results

    def _sync_target(
        self,
        target: RecordTarget,
        zones: Optional[List[Zone]],
        zone_error: str,
        current_ip: str,
    ) -> RecordResult:
        record_name = target.fqdn
        zone_name = target.zone_name or ""

        if zones is None:
            return RecordResult(record_name, zone_name, RecordOutcome.ZONE_NOT_FOUND, zone_error)

        zone = next((z for z in zones if z.name == zone_name), None) if zone_name else None
        if zone is None:
            logger.warning(f"Zone not found for {record_name}")
            return RecordResult(record_name, zone_name, RecordOutcome.ZONE_NOT_FOUND)

        try:
            records = self.zone_directory.list_records(zone.id)
        except RecordLookupFailure as e:
            logger.error(f"Failed to list records of {zone.name}: {e}")
            return RecordResult(record_name, zone_name, RecordOutcome.RECORD_NOT_FOUND, str(e))

        record = next((r for r in records if r.type == "A" and r.name == record_name), None)
        if record is None:
            logger.warning(f"A record not found: {record_name}")
            return RecordResult(record_name, zone_name, RecordOutcome.RECORD_NOT_FOUND)

        if record.content == current_ip:
            logger.info(f"{record_name} already set to {current_ip}")
            return RecordResult(record_name, zone_name, RecordOutcome.SKIPPED_UNCHANGED)

        payload = {
            "type": "A",
            "name": record.name,
            "content": current_ip,
            "ttl": self.ttl,
            "proxied": record.proxied,
        }
        try:
            self.zone_directory.update_record(record, payload)
        except UpdateFailure as e:
            logger.error(f"Failed to update {record_name}: {e}")
            return RecordResult(record_name, zone_name, RecordOutcome.UPDATE_FAILED, str(e))

        logger.info(f"Updated {record_name} in {zone.name} to {current_ip}")
        return RecordResult(record_name, zone_name, RecordOutcome.UPDATED)
