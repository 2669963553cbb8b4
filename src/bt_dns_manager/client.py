"""Reporter that runs on the VPN host and pushes its public IP to the server."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import requests

from bt_dns_manager.core import DeviceIdentity, IPObserver, ObservationFailure

logger = logging.getLogger(__name__)


class VPNReporter:
    def __init__(self, server_url: str, observer: IPObserver, timeout: float = 5.0):
        self._url = server_url.rstrip("/")
        self._observer = observer
        self._timeout = timeout
        self._session = requests.Session()

    def check_server_status(self) -> Optional[Dict[str, Any]]:
        try:
            response = self._session.get(f"{self._url}/api/status", timeout=self._timeout)
            response.raise_for_status()
            status = response.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to check server status: {e}")
            return None
        logger.info(f"Server status: {status}")
        return status if isinstance(status, dict) else None

    def report_ip(self, ip: str) -> bool:
        try:
            response = self._session.post(
                f"{self._url}/api/report-ip",
                json={"deviceType": DeviceIdentity.VPN.value, "ip": ip},
                timeout=self._timeout,
            )
            data = response.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to report IP to server: {e}")
            return False

        if isinstance(data, dict) and data.get("success"):
            logger.info(f"Successfully reported IP {ip} to server")
            return True
        error = data.get("error") if isinstance(data, dict) else None
        logger.error(f"Failed to report IP: {error or 'Unknown error'}")
        return False

    def run_once(self) -> bool:
        """Report the current IP once. Returns True if the server accepted it."""
        status = self.check_server_status()
        if status is None:
            logger.error(f"Server {self._url} is not reachable")
            return False

        try:
            ip = self._observer.observe(DeviceIdentity.VPN).address
        except ObservationFailure as e:
            logger.error(f"Failed to get public IP: {e}")
            return False

        reported = self.report_ip(ip)

        devices = status.get("devices")
        main_ip = devices.get("main") if isinstance(devices, dict) else None
        if not isinstance(main_ip, str):
            main_ip = None
        if main_ip == ip:
            logger.warning(f"⚠️ VPN IP ({ip}) matches main IP ({main_ip})")
            logger.warning("This means your VPN might not be working correctly!")
        else:
            logger.info(f"VPN IP ({ip}) differs from main IP ({main_ip or 'unknown'})")
        return reported

    def run_forever(self, interval_seconds: int) -> None:
        logger.info(f"Will check IP every {interval_seconds}s")
        while True:
            self.run_once()
            time.sleep(max(5, interval_seconds))
