"""Timestamped HMAC signatures for device requests.

A device signs ``code:timestamp:certificate[:key=value...]`` with its
certificate as the HMAC-SHA256 key. Additional fields are sorted by key;
lists and dicts are JSON encoded before joining.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Callable, Mapping

from fleetctl.errors import DeviceAuthError

logger = logging.getLogger(__name__)

DEFAULT_MAX_SKEW_SECONDS = 300


def _encode_value(value: Any) -> str:
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


class SignatureAuthenticator:
    """Issues device certificates and verifies request signatures."""

    def __init__(
        self,
        max_skew_seconds: int = DEFAULT_MAX_SKEW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.max_skew_seconds = max_skew_seconds
        self._clock = clock

    @staticmethod
    def generate_certificate(device_code: str, certificate_request: str) -> str:
        """Deterministic certificate: SHA-256 of code followed by the request string."""
        return hashlib.sha256(f"{device_code}{certificate_request}".encode("utf-8")).hexdigest()

    @staticmethod
    def canonical_string(
        device_code: str,
        timestamp: int,
        certificate: str,
        additional: Mapping[str, Any] | None = None,
    ) -> str:
        parts = [device_code, str(timestamp), certificate]
        for key in sorted(additional or {}):
            parts.append(f"{key}={_encode_value(additional[key])}")
        return ":".join(parts)

    @classmethod
    def compute_signature(
        cls,
        device_code: str,
        timestamp: int,
        certificate: str,
        additional: Mapping[str, Any] | None = None,
    ) -> str:
        message = cls.canonical_string(device_code, timestamp, certificate, additional)
        return hmac.new(certificate.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign(
        self,
        device_code: str,
        certificate: str,
        additional: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Produce the ``signature``/``timestamp`` pair a device sends with a request."""
        timestamp = int(self._clock())
        return {
            "signature": self.compute_signature(device_code, timestamp, certificate, additional),
            "timestamp": timestamp,
        }

    def verify(
        self,
        device_code: str,
        signature: str | None,
        timestamp: int | None,
        certificate: str | None,
        additional: Mapping[str, Any] | None = None,
    ) -> None:
        """Raise DeviceAuthError unless the signature is fresh and valid."""
        if not certificate:
            raise DeviceAuthError("Device certificate missing; register the device first")
        if not signature or timestamp is None:
            raise DeviceAuthError("Request signature and timestamp are required")

        skew = abs(self._clock() - timestamp)
        if skew > self.max_skew_seconds:
            logger.warning(
                "device_signature_stale",
                extra={"device_code": device_code, "timestamp": timestamp, "skew_seconds": int(skew)},
            )
            raise DeviceAuthError("Timestamp expired")

        expected = self.compute_signature(device_code, timestamp, certificate, additional)
        if not hmac.compare_digest(expected, signature):
            logger.warning(
                "device_signature_rejected",
                extra={"device_code": device_code, "provided_prefix": signature[:10]},
            )
            raise DeviceAuthError("Invalid signature")
