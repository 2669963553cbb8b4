"""Network collaborators: public IP lookup, Cloudflare zones and Discord webhooks."""

from __future__ import annotations

import ipaddress
import json
import logging
from typing import Any, Dict, List, Optional

import requests

from bt_dns_manager.core import (
    DeviceIdentity,
    IPObserver,
    NotificationFailure,
    Notifier,
    ObservationFailure,
    ObservedIP,
    RecordLookupFailure,
    UpdateFailure,
    Zone,
    ZoneDirectory,
    ZoneLookupFailure,
    ZoneRecord,
)

logger = logging.getLogger(__name__)

DEFAULT_IP_LOOKUP_URL = "https://api.ipify.org?format=json"
DEFAULT_CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"

# =============================================================================
# IP Observer
# =============================================================================


class PublicIPObserver(IPObserver):
    """Asks a "what is my IP" service that answers ``{"ip": "..."}``."""

    def __init__(self, url: str = DEFAULT_IP_LOOKUP_URL, timeout: float = 5.0):
        self._url = url
        self._timeout = timeout
        self._session = requests.Session()

    def observe(self, device: DeviceIdentity) -> ObservedIP:
        try:
            response = self._session.get(self._url, timeout=self._timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError, ValueError) as e:
            raise ObservationFailure(f"IP lookup via {self._url} failed: {e}") from e

        address = data.get("ip") if isinstance(data, dict) else None
        if not isinstance(address, str):
            raise ObservationFailure(f"Unexpected response from {self._url}: {data!r}")
        try:
            ipaddress.IPv4Address(address.strip())
        except ValueError as e:
            raise ObservationFailure(f"Not an IPv4 address: {address!r}") from e
        return ObservedIP(device=device, address=address.strip())


# =============================================================================
# Zone Directory
# =============================================================================


class CloudflareZoneDirectory(ZoneDirectory):
    """Cloudflare API v4 zone and DNS record access."""

    PER_PAGE = 50

    def __init__(self, api_token: str, base_url: str = DEFAULT_CLOUDFLARE_API_URL, timeout: float = 10.0):
        self._url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            }
        )

    @property
    def name(self) -> str:
        return "Cloudflare"

    def test_connection(self) -> bool:
        try:
            self._request("GET", "/user/tokens/verify")
            logger.info(f"{self.name} connection successful")
            return True
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def list_zones(self) -> List[Zone]:
        try:
            items = self._paginate("/zones", {})
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ZoneLookupFailure(f"Failed to list zones: {e}") from e

        zones = []
        for item in items:
            if not isinstance(item, dict) or "id" not in item or "name" not in item:
                logger.warning(f"Skipping malformed zone: {item}")
                continue
            zones.append(Zone(id=str(item["id"]), name=str(item["name"])))
        return zones

    def list_records(self, zone_id: str) -> List[ZoneRecord]:
        try:
            items = self._paginate(f"/zones/{zone_id}/dns_records", {"type": "A"})
        except (requests.exceptions.RequestException, ValueError) as e:
            raise RecordLookupFailure(f"Failed to list records for zone {zone_id}: {e}") from e

        records = []
        for item in items:
            if not isinstance(item, dict) or not isinstance(item.get("name"), str):
                logger.warning(f"Skipping malformed record: {item}")
                continue
            records.append(
                ZoneRecord(
                    zone_id=zone_id,
                    record_id=str(item.get("id", "")),
                    name=item["name"],
                    content=str(item.get("content", "")),
                    proxied=bool(item.get("proxied", False)),
                    type=str(item.get("type", "")),
                )
            )
        return records

    def update_record(self, record: ZoneRecord, payload: Dict[str, Any]) -> None:
        path = f"/zones/{record.zone_id}/dns_records/{record.record_id}"
        try:
            self._request("PUT", path, json=payload)
        except (requests.exceptions.RequestException, ValueError) as e:
            raise UpdateFailure(f"Failed to update {record.name}: {e}") from e

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        """Send a request and return the envelope. ValueError when ``success`` is false."""
        response = self._session.request(method, f"{self._url}{path}", timeout=self._timeout, **kwargs)
        response.raise_for_status()
        envelope = response.json()
        if not isinstance(envelope, dict) or not envelope.get("success"):
            errors = envelope.get("errors") if isinstance(envelope, dict) else envelope
            raise ValueError(f"{self.name} API error: {errors}")
        return envelope

    def _paginate(self, path: str, params: Dict[str, Any]) -> List[Any]:
        results: List[Any] = []
        page = 1
        while True:
            envelope = self._request(
                "GET", path, params={**params, "page": page, "per_page": self.PER_PAGE}
            )
            result = envelope.get("result") or []
            if not isinstance(result, list):
                raise ValueError(f"Unexpected result for {path}: expected list")
            results.extend(result)

            total_pages = (envelope.get("result_info") or {}).get("total_pages") or 1
            if page >= int(total_pages):
                return results
            page += 1


# =============================================================================
# Notifiers
# =============================================================================


class DiscordNotifier(Notifier):
    """Posts plain-text messages to a Discord webhook."""

    def __init__(self, webhook_url: str, timeout: float = 5.0):
        self._url = webhook_url
        self._timeout = timeout
        self._session = requests.Session()

    def send(self, content: str) -> None:
        try:
            response = self._session.post(self._url, json={"content": content}, timeout=self._timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise NotificationFailure(f"Webhook delivery failed: {e}") from e
        logger.info("Webhook sent to Discord.")


class NullNotifier(Notifier):
    """Used when no webhook is configured."""

    def send(self, content: str) -> None:
        logger.debug(f"No notification channel configured; dropping message: {content!r}")


def create_notifier(webhook_url: Optional[str], timeout: float = 5.0) -> Notifier:
    if webhook_url:
        return DiscordNotifier(webhook_url, timeout=timeout)
    return NullNotifier()
