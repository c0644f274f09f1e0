"""
HTTP client for the per-inverter DTU gateway.

    GET  {url}/live     -> live reading JSON
    POST {url}/control  {"action": ...}
    POST {url}/limit    {"kind": ..., "persistent": ..., "value": ...}

Timeouts, connection errors, non-2xx responses, ``{"success": false}`` and
payloads that do not parse all surface as DeviceUnreachable. The client
never retries; callers decide when to try again.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp
import pydantic

from solarview.errors import DeviceUnreachable, ValidationError
from solarview.models import LiveReading

log = logging.getLogger(__name__)

CONTROL_ACTIONS = ("restart", "enable", "disable")
LIMIT_KINDS = ("watts", "percent")


def validate_power_limit(kind: str, value: float, max_power_w: Optional[float] = None) -> None:
    if kind not in LIMIT_KINDS:
        raise ValidationError(f"Unknown limit kind: {kind!r} (expected watts or percent)")
    if value is None or value != value or value <= 0:
        raise ValidationError("Limit value must be greater than 0")
    if kind == "percent" and value > 100:
        raise ValidationError(f"Percent limit must not exceed 100, got {value}")
    if kind == "watts" and max_power_w is not None and value > max_power_w:
        raise ValidationError(f"Watt limit {value} exceeds the inverter maximum of {max_power_w} W")


class GatewayClient:
    def __init__(self, timeout_ms: int = 5000):
        self.timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000.0)

    @staticmethod
    def _endpoint(url: str, path: str) -> str:
        return f"{url.rstrip('/')}/{path}"

    async def _request(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, json=payload) as response:
                    if response.status < 200 or response.status >= 300:
                        body = await response.text()
                        raise DeviceUnreachable(f"Gateway returned HTTP {response.status}: {body[:200]}", url=url)
                    text = await response.text()
        except asyncio.TimeoutError:
            raise DeviceUnreachable(f"Gateway request timed out: {url}", url=url)
        except aiohttp.ClientError as e:
            raise DeviceUnreachable(f"Gateway connection failed: {e}", url=url)

        if not text.strip():
            return {}
        try:
            data = json.loads(text)
        except ValueError:
            raise DeviceUnreachable(f"Gateway sent a malformed response from {url}", url=url)
        if isinstance(data, dict) and data.get("success") is False:
            reason = data.get("error") or data.get("message") or "request rejected"
            raise DeviceUnreachable(f"Gateway rejected the request: {reason}", url=url)
        return data

    async def fetch_live(self, url: str) -> LiveReading:
        endpoint = self._endpoint(url, "live")
        data = await self._request("GET", endpoint)
        if not isinstance(data, dict):
            raise DeviceUnreachable(f"Gateway live payload is not an object: {endpoint}", url=endpoint)
        try:
            reading = LiveReading.model_validate(data)
        except pydantic.ValidationError as e:
            raise DeviceUnreachable(f"Gateway live payload is malformed: {e.error_count()} field error(s)", url=endpoint)
        log.debug(f"Live reading from {endpoint}: {reading.ac_power} W")
        return reading

    async def send_control(self, url: str, action: str) -> Dict[str, Any]:
        if action not in CONTROL_ACTIONS:
            raise ValidationError(f"Unknown control action: {action!r} (expected one of {', '.join(CONTROL_ACTIONS)})")
        endpoint = self._endpoint(url, "control")
        log.info(f"Sending control '{action}' to {endpoint}")
        data = await self._request("POST", endpoint, {"action": action})
        return data if isinstance(data, dict) else {"success": True}

    async def set_power_limit(self, url: str, kind: str, persistent: bool, value: float,
                              max_power_w: Optional[float] = None) -> Dict[str, Any]:
        validate_power_limit(kind, value, max_power_w)
        endpoint = self._endpoint(url, "limit")
        log.info(f"Setting {'persistent ' if persistent else ''}power limit {value} {kind} on {endpoint}")
        data = await self._request("POST", endpoint, {"kind": kind, "persistent": persistent, "value": value})
        return data if isinstance(data, dict) else {"success": True}
