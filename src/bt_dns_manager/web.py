"""HTTP surface: VPN IP reporting, JSON status and the status page."""

from __future__ import annotations

import html
import logging
import time
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, ValidationError

from bt_dns_manager.core import DeviceIdentity, DeviceIPRegistry, VpnStatus, classify

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


class IPReport(BaseModel):
    deviceType: Optional[str] = None
    ip: Optional[str] = None


STATUS_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <meta http-equiv="refresh" content="60">
  <title>BT DNS Manager Status</title>
  <style>
    body {{ font-family: Arial, sans-serif; max-width: 800px; margin: 0 auto; padding: 20px; line-height: 1.6; }}
    .container {{ background-color: #f5f5f5; border-radius: 8px; padding: 20px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); }}
    h1 {{ color: #333; border-bottom: 1px solid #ddd; padding-bottom: 10px; }}
    .ip-display {{ margin: 20px 0; padding: 15px; border-radius: 4px; }}
    .ip-label {{ font-weight: bold; display: inline-block; width: 140px; }}
    .status {{ margin-top: 20px; padding: 10px; border-radius: 4px; font-weight: bold; }}
    .good {{ background-color: #d4edda; color: #155724; }}
    .warning {{ background-color: #fff3cd; color: #856404; }}
    .error {{ background-color: #f8d7da; color: #721c24; }}
    .refresh {{ margin-top: 20px; text-align: center; color: #666; font-size: 0.9em; }}
  </style>
</head>
<body>
  <div class="container">
    <h1>BT DNS Manager Status</h1>
    <div class="ip-display">
      <div><span class="ip-label">Main Device IP:</span> {main_ip}</div>
      <div><span class="ip-label">VPN Device IP:</span> {vpn_ip}</div>
    </div>
    <div class="status {css_class}">{banner}</div>
    <div class="refresh">
      Last updated: {now}
      <br>
      <small>This page auto-refreshes every 60 seconds</small>
    </div>
  </div>
</body>
</html>
"""

BANNERS = {
    VpnStatus.LEAKED: ("error", "⚠️ WARNING: VPN IP matches main IP!"),
    VpnStatus.UNKNOWN: ("warning", "⚠️ Waiting for VPN device to report its IP..."),
    VpnStatus.DISTINCT: ("good", "✅ VPN IP differs from main IP (good)"),
}


def render_status_page(main_ip: Optional[str], vpn_ip: Optional[str]) -> str:
    css_class, banner = BANNERS[classify(main_ip, vpn_ip)]
    return STATUS_PAGE.format(
        main_ip=html.escape(main_ip or UNKNOWN),
        vpn_ip=html.escape(vpn_ip or UNKNOWN),
        css_class=css_class,
        banner=banner,
        now=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
    )


def create_app(registry: DeviceIPRegistry) -> FastAPI:
    """Build the FastAPI application bound to a registry instance."""
    app = FastAPI(title="bt-dns-manager")
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        response = await call_next(request)
        duration_ms = (time.time() - start_time) * 1000
        logger.debug(
            f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.1f}ms)"
        )
        return response

    @app.get("/api/status")
    def status() -> dict:
        main_ip = registry.get(DeviceIdentity.PRIMARY)
        vpn_ip = registry.get(DeviceIdentity.VPN)
        return {
            "status": "ok",
            "devices": {
                "main": main_ip or UNKNOWN,
                "vpn": vpn_ip or UNKNOWN,
            },
            "vpn_status": classify(main_ip, vpn_ip).value,
        }

    @app.post("/api/report-ip")
    async def report_ip(request: Request):
        # An absent, non-JSON or mistyped body is treated like a missing field.
        try:
            report = IPReport.model_validate(await request.json())
        except (ValueError, ValidationError):
            report = IPReport()

        device_type = (report.deviceType or "").strip()
        ip = (report.ip or "").strip()
        if not device_type or not ip:
            return JSONResponse(status_code=400, content={"error": "Missing deviceType or ip"})

        if device_type == DeviceIdentity.VPN.value:
            registry.set(DeviceIdentity.VPN, ip)
            logger.info(f"VPN IP updated: {ip}")

            main_ip = registry.get(DeviceIdentity.PRIMARY)
            if classify(main_ip, ip) == VpnStatus.LEAKED:
                logger.warning(f"⚠️ VPN IP ({ip}) matches main IP ({main_ip})")
        else:
            logger.debug(f"Ignoring IP report for device type '{device_type}'")

        return {"success": True}

    @app.get("/", response_class=HTMLResponse)
    def dashboard() -> str:
        return render_status_page(
            registry.get(DeviceIdentity.PRIMARY), registry.get(DeviceIdentity.VPN)
        )

    return app
