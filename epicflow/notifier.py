"""Webhook notifications for run events.

Formats phase, circuit-breaker and run-completion events as Discord-style
embeds and posts them to a webhook. Delivery is fire-and-forget: emit()
schedules the post as a background task, and every delivery failure is
logged but never raised.
"""

import asyncio
import logging
from dataclasses import dataclass

import httpx

from epicflow.models import utcnow

logger = logging.getLogger(__name__)

COLORS = {
    "started": 0x3498DB,  # Blue
    "completed": 0x2ECC71,  # Green
    "failed": 0xE74C3C,  # Red
    "circuit_breaker": 0xF39C12,  # Orange
    "run_completed": 0x9B59B6,  # Purple
}

MAX_DESCRIPTION_LENGTH = 4096
TRUNCATION_SUFFIX = "... [truncated]"


@dataclass
class Embed:
    """Webhook embed message.

    Attributes:
        title: Bold title text at the top of the embed
        description: Main body text (max 4096 chars)
        color: Integer color value
        fields: Optional list of field dicts with name, value, inline keys
        timestamp: Optional ISO format timestamp string
    """

    title: str
    description: str
    color: int
    fields: list[dict] | None = None
    timestamp: str | None = None

    def to_dict(self) -> dict:
        result = {
            "title": self.title,
            "description": self.description,
            "color": self.color,
        }

        if self.fields is not None:
            result["fields"] = self.fields

        if self.timestamp is not None:
            result["timestamp"] = self.timestamp

        return result


async def send_webhook_message(webhook_url: str, embed: Embed) -> None:
    """Post one embed to a webhook.

    Uses a 5 second timeout. Network errors, timeouts and HTTP error
    statuses are logged as warnings and not raised.
    """
    payload = {"embeds": [embed.to_dict()]}

    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(webhook_url, json=payload)

            if response.status_code >= 400:
                logger.warning(
                    f"Webhook returned {response.status_code}: {response.text}"
                )
    except httpx.TimeoutException:
        logger.warning("Webhook request timed out")
    except httpx.ConnectError:
        logger.warning("Failed to connect to webhook")
    except Exception as e:
        logger.warning(f"Webhook error: {e}")


def _truncate_text(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def _format_duration(seconds: float) -> str:
    """Format duration like "45s", "2m 30s" or "1h 15m"."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s" if secs > 0 else f"{minutes}m"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m" if minutes > 0 else f"{hours}h"


def format_phase_started(task_id: str, phase: str) -> Embed:
    return Embed(
        title=f"🚀 Phase Started: {phase}",
        description=f"Task {task_id}",
        color=COLORS["started"],
        timestamp=utcnow().isoformat(),
    )


def format_phase_completed(
    task_id: str, phase: str, duration_s: float, cost_usd: float
) -> Embed:
    return Embed(
        title=f"✅ Phase Completed: {phase}",
        description=f"Task {task_id} finished in {_format_duration(duration_s)}",
        color=COLORS["completed"],
        fields=[
            {"name": "Duration", "value": _format_duration(duration_s), "inline": True},
            {"name": "Cost", "value": f"${cost_usd:.2f}", "inline": True},
        ],
        timestamp=utcnow().isoformat(),
    )


def format_phase_failed(task_id: str, phase: str, error: str) -> Embed:
    description = "\n".join([f"Task {task_id}", "", "**Error:**", error])
    return Embed(
        title=f"❌ Phase Failed: {phase}",
        description=_truncate_text(description, MAX_DESCRIPTION_LENGTH),
        color=COLORS["failed"],
        timestamp=utcnow().isoformat(),
    )


def format_circuit_breaker(
    task_id: str, failed: int, total: int, threshold: float
) -> Embed:
    return Embed(
        title="🛑 Circuit Breaker Tripped",
        description=(
            f"Task {task_id} aborted: {failed}/{total} teams failed, "
            f"above the {threshold:.0%} threshold."
        ),
        color=COLORS["circuit_breaker"],
        fields=[
            {"name": "Failed", "value": str(failed), "inline": True},
            {"name": "Total", "value": str(total), "inline": True},
        ],
        timestamp=utcnow().isoformat(),
    )


def format_run_completed(
    task_id: str, status: str, cost_usd: float, duration_s: float
) -> Embed:
    return Embed(
        title=f"🎉 Run {status.title()}: {task_id}",
        description=f"Run finished in {_format_duration(duration_s)}.",
        color=COLORS["run_completed"],
        fields=[
            {"name": "Status", "value": status, "inline": True},
            {"name": "Duration", "value": _format_duration(duration_s), "inline": True},
            {"name": "Total Cost", "value": f"${cost_usd:.2f}", "inline": True},
        ],
        timestamp=utcnow().isoformat(),
    )


class Notifier:
    """Schedules webhook deliveries without blocking the caller.

    With no webhook configured, events are only logged.
    """

    def __init__(self, webhook_url: str | None = None) -> None:
        self.webhook_url = webhook_url
        self._pending: set[asyncio.Task] = set()

    def emit(self, embed: Embed) -> None:
        summary = embed.description.split("\n", 1)[0]
        logger.info(f"{embed.title}: {summary}")
        if not self.webhook_url:
            return
        task = asyncio.create_task(send_webhook_message(self.webhook_url, embed))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for scheduled deliveries, e.g. before the process exits."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
