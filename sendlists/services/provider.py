"""Delivery provider client: bounce events and list statistics over the provider's tool endpoint."""

import logging
import time
from datetime import datetime
from typing import Any, Optional

import httpx

from sendlists.config import get_settings
from sendlists.schemas import BounceEvent, ProviderListStatistics
from sendlists.services.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class DeliveryProviderClient:
    """
    Calls ``POST {provider_url}/mcp`` with ``{"tool": ..., "params": ...}``.

    The provider answers ``{"result": ...}`` or ``{"error": {"message": ...}}``.
    4xx responses are not retryable; 5xx and transport errors are.
    """

    name = "delivery_provider"

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.provider_url).rstrip("/")
        self.api_key = settings.provider_api_key if api_key is None else api_key
        self.timeout = timeout or settings.external_call_timeout_seconds
        self.transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def call_tool(self, tool: str, params: Optional[dict] = None) -> Any:
        start = time.monotonic()
        logger.info(f"Calling provider tool {tool}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(
                    f"{self.base_url}/mcp",
                    json={"tool": tool, "params": params or {}},
                    headers=self._headers(),
                )
        except httpx.HTTPError as e:
            raise ExternalServiceError(self.name, f"{tool} request failed: {e}", original=e) from e

        if resp.status_code >= 400:
            raise ExternalServiceError(
                self.name,
                f"{tool} returned HTTP {resp.status_code}: {resp.text[:200]}",
                retryable=resp.status_code >= 500,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise ExternalServiceError(self.name, f"{tool} returned invalid JSON", retryable=False) from e

        if data.get("error"):
            message = data["error"].get("message", "unknown error") if isinstance(data["error"], dict) else data["error"]
            raise ExternalServiceError(self.name, f"{tool} failed: {message}", retryable=False)

        logger.info(f"Provider tool {tool} completed in {int((time.monotonic() - start) * 1000)}ms")
        return data.get("result")

    async def get_list_bounces(self, external_list_id: str, since: datetime) -> list[BounceEvent]:
        result = await self.call_tool(
            "get_list_bounces",
            {"list_id": external_list_id, "since": since.isoformat()},
        )
        raw_events = result.get("bounces", []) if isinstance(result, dict) else (result or [])

        events = []
        for raw in raw_events:
            try:
                events.append(
                    BounceEvent(
                        email=raw["email"],
                        contact_external_id=_str_or_none(raw.get("contactId", raw.get("contact_id"))),
                        bounce_type=_bounce_type(raw),
                        bounced_at=raw.get("bouncedAt") or raw.get("bounced_at") or raw.get("date"),
                    )
                )
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed bounce event from provider: {e}")
        return events

    async def get_list_statistics(self, external_list_id: str) -> ProviderListStatistics:
        result = await self.call_tool("get_list_statistics", {"list_id": external_list_id}) or {}
        return ProviderListStatistics(
            total_contacts=result.get("totalContacts", result.get("total_contacts", 0)) or 0,
            recent_bounces=result.get("recentBounces", result.get("recent_bounces", 0)) or 0,
            delivered=result.get("delivered"),
            sent=result.get("sent"),
            list_health=result.get("listHealth", result.get("list_health")),
        )


def _str_or_none(value) -> Optional[str]:
    return None if value is None else str(value)


def _bounce_type(raw: dict) -> str:
    if raw.get("spam") or raw.get("type") == "spam":
        return "spam"
    if "hardBounce" in raw:
        return "hard" if raw["hardBounce"] else "soft"
    bounce_type = (raw.get("type") or raw.get("bounce_type") or "").lower()
    if bounce_type not in ("hard", "soft"):
        raise ValueError(f"unknown bounce type {bounce_type!r}")
    return bounce_type
