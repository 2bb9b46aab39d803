"""Vendor-call envelope transport.

Connectors express every vendor call as ``{action, config, ...fields}`` and
get back a VendorResponse. ``success: False`` is authoritative even when the
transport itself did not fail. Every call is bounded by a timeout; a hung
call fails the attempt with TransientError.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from app.utils import SensitiveDataFilter

from .errors import (
    AuthError,
    LockoutError,
    MonitoringError,
    TransientError,
    UnsupportedOperation,
    ValidationError,
)

_LOGGER = logging.getLogger(__name__)
_LOGGER.addFilter(SensitiveDataFilter())

_ERROR_CLASSES = {
    cls.__name__: cls
    for cls in (AuthError, LockoutError, TransientError, UnsupportedOperation, ValidationError, MonitoringError)
}


@dataclass
class VendorResponse:
    """Reply to one vendor-call envelope."""
    success: bool
    data: Any = None
    error: str | None = None
    message: str | None = None
    code: str | None = None
    error_class: str | None = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Any) -> "VendorResponse":
        if not isinstance(payload, dict):
            return cls(success=False, error="Connector returned a malformed reply", error_class="MonitoringError")
        known = {"success", "data", "error", "message", "code", "error_class"}
        return cls(
            success=payload.get("success") is True,
            data=payload.get("data"),
            error=payload.get("error"),
            message=payload.get("message"),
            code=str(payload["code"]) if payload.get("code") is not None else None,
            error_class=payload.get("error_class"),
            extra={k: v for k, v in payload.items() if k not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        result = {"success": self.success, "data": self.data}
        for key in ("error", "message", "code", "error_class"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        result.update(self.extra)
        return result

    def to_error(self) -> MonitoringError:
        """Typed error for a failed reply."""
        message = self.error or self.message or "Vendor call failed"
        error_cls = _ERROR_CLASSES.get(self.error_class or "", MonitoringError)
        if error_cls is ValidationError:
            return ValidationError(message, missing_fields=self.extra.get("missing_fields"), code=self.code)
        return error_cls(message, code=self.code)

    def unwrap(self) -> Any:
        """Return data, or raise the typed error when success is False."""
        if not self.success:
            raise self.to_error()
        return self.data


class VendorGateway(ABC):
    """Sends envelopes to vendor-specific connector endpoints."""

    def __init__(self, timeout: float = 30) -> None:
        self.timeout = timeout

    async def call(self, vendor: str, action: str, config: dict[str, Any], **fields: Any) -> VendorResponse:
        envelope = {"action": action, "config": config, **fields}
        try:
            response = await asyncio.wait_for(self._send(vendor, envelope), timeout=self.timeout)
        except asyncio.TimeoutError as err:
            _LOGGER.warning("%s %s timed out after %ss", vendor, action, self.timeout)
            raise TransientError(f"{vendor} {action} timed out", code="timeout") from err
        if not response.success:
            _LOGGER.info("%s %s unsuccessful: %s (%s)", vendor, action, response.error, response.code)
        return response

    @abstractmethod
    async def _send(self, vendor: str, envelope: dict[str, Any]) -> VendorResponse:
        """Deliver one envelope."""

    async def close(self) -> None:
        """Release transport resources."""


class LocalGateway(VendorGateway):
    """Runs connector endpoints in-process on a shared aiohttp session."""

    def __init__(self, timeout: float = 30, endpoints: dict | None = None) -> None:
        super().__init__(timeout)
        self._endpoint_classes = endpoints
        self._endpoints: dict[str, Any] = {}
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _send(self, vendor: str, envelope: dict[str, Any]) -> VendorResponse:
        endpoint = self._endpoints.get(vendor)
        if endpoint is None:
            from app.vendors.endpoints import CONNECTOR_ENDPOINTS

            classes = self._endpoint_classes or CONNECTOR_ENDPOINTS
            endpoint_cls = classes.get(vendor)
            if endpoint_cls is None:
                return VendorResponse(
                    success=False,
                    error=f"No connector endpoint for vendor: {vendor}",
                    error_class="UnsupportedOperation",
                )
            endpoint = endpoint_cls(await self._get_session(), timeout=self.timeout)
            self._endpoints[vendor] = endpoint
        return VendorResponse.from_dict(await endpoint.handle(envelope))

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        self._endpoints.clear()


class HttpGateway(VendorGateway):
    """Posts envelopes to remote connector endpoints (``{base_url}/{vendor}``)."""

    def __init__(self, base_url: str, timeout: float = 30, headers: dict[str, str] | None = None) -> None:
        super().__init__(timeout)
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self.headers)
        return self._session

    async def _send(self, vendor: str, envelope: dict[str, Any]) -> VendorResponse:
        session = await self._get_session()
        url = f"{self.base_url}/{vendor}"
        try:
            async with session.post(
                url,
                json=envelope,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status == 429 or response.status >= 500:
                    body = await response.json(content_type=None) if response.content_type == "application/json" else None
                    if isinstance(body, dict) and "success" in body:
                        return VendorResponse.from_dict(body)
                    raise TransientError(f"Connector endpoint HTTP {response.status}", code=str(response.status))
                return VendorResponse.from_dict(await response.json(content_type=None))
        except aiohttp.ClientError as err:
            raise TransientError(f"Connector endpoint unreachable: {err}") from err
        except ValueError as err:
            raise MonitoringError(f"Connector endpoint returned an unreadable reply: {err}") from err

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
