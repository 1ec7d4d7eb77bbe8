"""Webhook notifications."""

from __future__ import annotations

import httpx
import structlog

from .models import Ledger

logger = structlog.get_logger()


class Notifier:
    """Send webhook notifications for run events."""

    def __init__(self, webhook_url: str = "", events: list[str] | None = None):
        self.webhook_url = webhook_url
        self.events = events or []
        self.client = httpx.AsyncClient()

    async def notify(
        self,
        event: str,
        run_id: str,
        ledger: Ledger | None = None,
        error: str = "",
    ) -> None:
        if not self.webhook_url or event not in self.events:
            return

        payload: dict = {"event": event, "run_id": run_id}
        if ledger is not None:
            payload["counts"] = ledger.counts
            payload["escalated"] = [
                {"artifact": c.artifact, "batches": [c.batch_a, c.batch_b]}
                for c in ledger.unresolved
            ]
        if error:
            payload["error"] = error

        try:
            await self.client.post(self.webhook_url, json=payload, timeout=10)
        except httpx.HTTPError as exc:
            # Notification failure should not affect the run
            logger.warning("notify_failed", notify_event=event, error=str(exc))

    async def close(self) -> None:
        await self.client.aclose()
