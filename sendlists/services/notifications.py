"""Maintenance summaries posted to an incoming-webhook chat channel."""

import json
import logging
from typing import Optional

import httpx

from sendlists.config import get_settings
from sendlists.schemas import MaintenanceLogOut
from sendlists.services.errors import ExternalServiceError
from sendlists.services.resilience import call_with_retry

logger = logging.getLogger(__name__)


def format_maintenance_summary(log: MaintenanceLogOut, list_name: str = "", campaign_name: str = "") -> str:
    status_icon = {"completed": ":white_check_mark:", "failed": ":x:"}.get(log.status, ":hourglass:")
    title = f"{status_icon} List maintenance {log.status}"
    if campaign_name:
        title += f" for {campaign_name}"

    lines = [
        title,
        f"List: {list_name or log.list_id}",
        f"Suppressed: {log.contacts_suppressed} (skipped {log.contacts_skipped})",
        f"Rebalanced: {log.contacts_rebalanced}",
        f"Duration: {log.duration_ms / 1000:.1f}s",
    ]
    if log.ai_recommendation:
        lines.append(f"Plan: {log.ai_recommendation}")
    if log.stage_errors:
        lines.append("Stage errors:")
        lines.extend(f"  - {e.get('stage')}: {e.get('error')}" for e in log.stage_errors)
    if log.error_message:
        lines.append(f"Error: {log.error_message}")
    return "\n".join(lines)


class NotificationChannel:
    """Posts ``{"text": ...}`` to a webhook. Without a URL it only logs."""

    name = "notifications"

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.webhook_url = settings.notification_webhook_url if webhook_url is None else webhook_url
        self.timeout = timeout or settings.external_call_timeout_seconds
        self.transport = transport

    async def post(self, text: str) -> None:
        if not self.webhook_url:
            logger.info(f"No notification webhook configured; summary:\n{text}")
            return
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(
                    self.webhook_url,
                    content=json.dumps({"text": text}),
                    headers={"Content-Type": "application/json"},
                )
        except httpx.HTTPError as e:
            raise ExternalServiceError(self.name, f"webhook request failed: {e}", original=e) from e
        if resp.status_code >= 400:
            raise ExternalServiceError(
                self.name,
                f"webhook returned HTTP {resp.status_code}",
                retryable=resp.status_code >= 500,
            )

    async def send_summary(self, log: MaintenanceLogOut, list_name: str = "", campaign_name: str = "") -> bool:
        """Never raises: a lost notification must not fail the run it reports on."""
        try:
            await call_with_retry(self.name, self.post, format_maintenance_summary(log, list_name, campaign_name))
            return True
        except Exception as e:
            logger.warning(f"Failed to send maintenance summary for {log.id}: {e}")
            return False
