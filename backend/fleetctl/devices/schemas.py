"""Device-facing request/response schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from fleetctl.queue.instruction import Instruction


class SignedRequest(BaseModel):
    device_code: str = Field(min_length=1, max_length=64)
    signature: str
    timestamp: int


class DeviceRegisterRequest(BaseModel):
    device_code: str = Field(min_length=1, max_length=64)
    device_name: str = Field(min_length=1, max_length=100)
    certificate_request: str = Field(min_length=1)
    model: str | None = None
    brand: str | None = None
    os_version: str | None = None
    app_version: str | None = None
    fingerprint: str | None = None
    hardware_info: dict[str, Any] = Field(default_factory=dict)

    def descriptors(self) -> dict[str, Any]:
        values = {
            "model": self.model,
            "brand": self.brand,
            "os_version": self.os_version,
            "app_version": self.app_version,
            "fingerprint": self.fingerprint,
        }
        descriptors = {key: value for key, value in values.items() if value is not None}
        if self.hardware_info:
            descriptors["hardware_info"] = self.hardware_info
        return descriptors


class DeviceRegisterResponse(BaseModel):
    status: str = "ok"
    device_id: str
    certificate: str
    created: bool
    server_time: datetime
    config: dict[str, Any] = Field(default_factory=dict)


class DeviceHeartbeatRequest(SignedRequest):
    app_version: str | None = None
    device_info: dict[str, Any] = Field(default_factory=dict)
    metrics: dict[str, Any] = Field(default_factory=dict)
    poll_timeout: float | None = None


class DeviceHeartbeatResponse(BaseModel):
    status: str = "ok"
    instructions: list[Instruction] = Field(default_factory=list)
    server_time: datetime


class ReportResultRequest(SignedRequest):
    instruction_id: str
    status: str
    task_id: str | None = None
    output: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    execution_metrics: dict[str, Any] = Field(default_factory=dict)

    def signed_fields(self) -> dict[str, Any]:
        return {"instruction_id": self.instruction_id, "status": self.status}


class ReportResultResponse(BaseModel):
    status: str = "ok"
    instruction_id: str
    counted: bool
    server_time: datetime
