"""Control-plane client used by the device agent."""

from __future__ import annotations

from typing import Any

import httpx

from fleetctl.devices.auth import SignatureAuthenticator
from fleetctl.errors import DeviceAuthError
from fleetctl.queue.instruction import Instruction


class DeviceControlPlaneClient:
    """Signs and sends device requests.

    Uses a persistent httpx.AsyncClient; heartbeats are long-polls, so each
    one gets a request timeout a little longer than the poll window.
    """

    def __init__(self, base_url: str, device_code: str, certificate: str | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.device_code = device_code
        self.certificate = certificate
        self._signer = SignatureAuthenticator()
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=10.0)
        return self._client

    async def close(self) -> None:
        """Close the underlying connection pool."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _signed(self, body: dict[str, Any], signed_fields: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.certificate:
            raise DeviceAuthError(f"Device {self.device_code} has no certificate; register first")
        return {
            "device_code": self.device_code,
            **body,
            **self._signer.sign(self.device_code, self.certificate, signed_fields),
        }

    async def register(self, device_name: str, certificate_request: str, descriptors: dict | None = None) -> dict:
        client = await self._get_client()
        response = await client.post(
            "/api/devices/register",
            json={
                "device_code": self.device_code,
                "device_name": device_name,
                "certificate_request": certificate_request,
                **(descriptors or {}),
            },
        )
        response.raise_for_status()
        payload = response.json()
        self.certificate = payload["certificate"]
        return payload

    async def heartbeat(
        self,
        metrics: dict | None = None,
        poll_timeout: float = 30.0,
        app_version: str | None = None,
    ) -> list[Instruction]:
        client = await self._get_client()
        response = await client.post(
            "/api/devices/heartbeat",
            json=self._signed({"metrics": metrics or {}, "poll_timeout": poll_timeout, "app_version": app_version}),
            timeout=poll_timeout + 10.0,
        )
        response.raise_for_status()
        return [Instruction.model_validate(item) for item in response.json().get("instructions", [])]

    async def report_result(self, report: dict) -> dict:
        """Send one execution report. Signed at send time so replayed reports stay fresh."""
        client = await self._get_client()
        response = await client.post(
            "/api/devices/results",
            json=self._signed(report, {"instruction_id": report["instruction_id"], "status": report["status"]}),
        )
        response.raise_for_status()
        return response.json()
