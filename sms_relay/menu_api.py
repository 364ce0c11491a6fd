"""Client for the downstream business system that owns event menus."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

MENU_UPDATE_PATH = "/api/sms/menu-update"
INBOUND_MIRROR_PATH = "/api/sms/inbound"


@dataclass
class MenuApiResult:
    ok: bool
    status: Optional[int] = None
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class MenuApiClient:
    """
    Thin JSON client for the menu endpoints.

    Every call returns a MenuApiResult; transport errors, timeouts and
    non-2xx responses are reported through ok=False rather than raised.
    """

    def __init__(
        self,
        *,
        base_url: str,
        secret: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._secret = secret
        self._timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._base_url and self._secret)

    async def _post(self, path: str, payload: dict[str, Any]) -> MenuApiResult:
        if not self.configured:
            return MenuApiResult(ok=False, error="Menu API not configured")

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                res = await client.post(
                    f"{self._base_url}{path}",
                    json=payload,
                    headers={"x-app-source": self._secret},
                )
        except httpx.HTTPError as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error(f"Menu API request failed: path={path}, error={message}")
            return MenuApiResult(ok=False, error=message)

        data: dict[str, Any] = {}
        if res.content:
            try:
                parsed = res.json()
                data = parsed if isinstance(parsed, dict) else {}
            except ValueError:
                data = {"error": "Invalid JSON response"}

        if res.status_code >= 400:
            return MenuApiResult(
                ok=False,
                status=res.status_code,
                data=data,
                error=data.get("error") or "Menu API error",
            )
        return MenuApiResult(ok=True, status=res.status_code, data=data)

    async def evaluate_menu_change(
        self,
        phone: str,
        message: str,
        event_identifier: Optional[str] = None,
    ) -> MenuApiResult:
        """Dry-run a free-text menu change request against the client's events."""
        return await self._post(
            MENU_UPDATE_PATH,
            {"phone": phone, "message": message, "eventIdentifier": event_identifier, "dryRun": True},
        )

    async def apply_menu_change(self, payload: dict[str, Any]) -> MenuApiResult:
        return await self._post(MENU_UPDATE_PATH, {**payload, "apply": True})

    async def mirror_inbound(self, payload: dict[str, Any]) -> MenuApiResult:
        return await self._post(INBOUND_MIRROR_PATH, payload)
