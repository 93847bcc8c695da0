"""Context variables carried through a request for log enrichment."""

from __future__ import annotations

from contextvars import ContextVar, Token
from uuid import uuid4

REQUEST_ID_HEADER = "X-Request-ID"

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)
_device_code: ContextVar[str | None] = ContextVar("device_code", default=None)


def ensure_request_id(request_id: str | None = None) -> str:
    """Keep a caller-supplied id, otherwise mint one."""
    return request_id or uuid4().hex


def get_request_id() -> str | None:
    return _request_id.get()


def set_request_id(request_id: str | None) -> Token:
    return _request_id.set(request_id)


def reset_request_id(token: Token) -> None:
    _request_id.reset(token)


def get_device_code() -> str | None:
    return _device_code.get()


def set_device_code(device_code: str | None) -> Token:
    """Bind the device a request acts for, so its log lines carry the code."""
    return _device_code.set(device_code)


def reset_device_code(token: Token) -> None:
    _device_code.reset(token)
