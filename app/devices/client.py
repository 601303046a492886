from __future__ import annotations

from typing import Any
from urllib.parse import urljoin

import requests


class DeviceActuatorClient:
    """Relays gate commands to an entry device that exposes an HTTP endpoint."""

    def __init__(self, base_url: str, token: str = "", timeout: float = 5):
        self.base_url = base_url.rstrip("/") + "/"
        self.token = token
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"X-DEVICE-TOKEN": self.token}

    def _post(self, path: str, payload: dict[str, Any], timeout: float | None = None) -> dict[str, Any]:
        url = urljoin(self.base_url, path.lstrip("/"))
        response = requests.post(
            url,
            json=payload,
            headers=self._headers(),
            timeout=timeout or self.timeout,
        )
        response.raise_for_status()
        return response.json() if response.content else {}

    def open_gate(self, device_id: str, duration_ms: int, message: str = "") -> dict[str, Any]:
        return self._post(
            "/gate/open",
            payload={
                "deviceId": device_id,
                "action": "GRANT_ACCESS",
                "duration": duration_ms,
                "welcomeMessage": message,
            },
        )

    def ping(self, timeout: float | None = None) -> dict[str, Any]:
        return self._post("/health", payload={}, timeout=timeout)
