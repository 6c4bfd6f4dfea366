"""Tests for webhook notifications.

Tests cover:
- send_webhook_message() posts the embed and never raises
- Embed formatting for phase, breaker and run events
- Notifier.emit() is fire-and-forget and a no-op without a webhook
"""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from epicflow.notifier import (
    MAX_DESCRIPTION_LENGTH,
    Embed,
    Notifier,
    _format_duration,
    format_circuit_breaker,
    format_phase_completed,
    format_phase_failed,
    format_run_completed,
    send_webhook_message,
)

WEBHOOK = "https://hooks.example.com/epicflow"


def make_client(response=None, error=None) -> AsyncMock:
    """httpx.AsyncClient double usable as an async context manager."""
    client = AsyncMock()
    client.__aenter__.return_value = client
    client.__aexit__.return_value = None
    if error is not None:
        client.post.side_effect = error
    else:
        client.post.return_value = response or MagicMock(status_code=204)
    return client


class TestEmbed:
    """Tests for the Embed dataclass."""

    def test_optional_fields_left_out(self) -> None:
        data = Embed(title="T", description="D", color=1).to_dict()

        assert data == {"title": "T", "description": "D", "color": 1}

    def test_all_fields(self) -> None:
        embed = Embed(
            title="T",
            description="D",
            color=1,
            fields=[{"name": "F", "value": "V", "inline": False}],
            timestamp="2026-01-01T00:00:00+00:00",
        )

        data = embed.to_dict()

        assert data["fields"] == [{"name": "F", "value": "V", "inline": False}]
        assert data["timestamp"] == "2026-01-01T00:00:00+00:00"


class TestSendWebhookMessage:
    """Tests for send_webhook_message()."""

    @pytest.mark.asyncio
    async def test_posts_embed(self) -> None:
        client = make_client()

        with patch("epicflow.notifier.httpx.AsyncClient", return_value=client):
            await send_webhook_message(WEBHOOK, Embed("T", "D", 1))

        client.post.assert_awaited_once_with(
            WEBHOOK, json={"embeds": [{"title": "T", "description": "D", "color": 1}]}
        )

    @pytest.mark.asyncio
    async def test_http_error_is_logged(self) -> None:
        client = make_client(response=MagicMock(status_code=500, text="oops"))

        with patch("epicflow.notifier.httpx.AsyncClient", return_value=client):
            with patch("epicflow.notifier.logger") as mock_logger:
                await send_webhook_message(WEBHOOK, Embed("T", "D", 1))

        mock_logger.warning.assert_called_once_with("Webhook returned 500: oops")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error, message",
        [
            (httpx.TimeoutException("slow"), "Webhook request timed out"),
            (httpx.ConnectError("refused"), "Failed to connect to webhook"),
            (RuntimeError("odd"), "Webhook error: odd"),
        ],
    )
    async def test_failures_are_not_raised(self, error, message) -> None:
        client = make_client(error=error)

        with patch("epicflow.notifier.httpx.AsyncClient", return_value=client):
            with patch("epicflow.notifier.logger") as mock_logger:
                await send_webhook_message(WEBHOOK, Embed("T", "D", 1))

        mock_logger.warning.assert_called_once_with(message)


class TestFormatting:
    """Tests for the embed formatters."""

    @pytest.mark.parametrize(
        "seconds, expected",
        [(45, "45s"), (150, "2m 30s"), (120, "2m"), (4500, "1h 15m"), (3600, "1h")],
    )
    def test_format_duration(self, seconds, expected) -> None:
        assert _format_duration(seconds) == expected

    def test_phase_completed(self) -> None:
        embed = format_phase_completed("task-1", "review:E1", 150, 1.5)

        assert embed.title == "✅ Phase Completed: review:E1"
        assert embed.fields[1] == {"name": "Cost", "value": "$1.50", "inline": True}

    def test_phase_failed_truncates_long_errors(self) -> None:
        embed = format_phase_failed("task-1", "architecture:E1", "x" * 5000)

        assert len(embed.description) == MAX_DESCRIPTION_LENGTH
        assert embed.description.endswith("... [truncated]")

    def test_circuit_breaker(self) -> None:
        embed = format_circuit_breaker("task-1", 2, 3, 0.5)

        assert "2/3 teams failed, above the 50% threshold" in embed.description

    def test_run_completed(self) -> None:
        embed = format_run_completed("task-1", "partial", 12.0, 30)

        assert embed.title == "🎉 Run Partial: task-1"
        assert embed.fields[2]["value"] == "$12.00"


class TestNotifier:
    """Tests for Notifier."""

    @pytest.mark.asyncio
    async def test_without_webhook_only_logs(self) -> None:
        notifier = Notifier(None)

        with patch("epicflow.notifier.send_webhook_message") as send:
            notifier.emit(Embed("T", "D", 1))
            await notifier.drain()

        send.assert_not_called()

    @pytest.mark.asyncio
    async def test_emit_schedules_delivery(self) -> None:
        notifier = Notifier(WEBHOOK)
        embed = Embed("T", "D", 1)

        with patch(
            "epicflow.notifier.send_webhook_message", new_callable=AsyncMock
        ) as send:
            notifier.emit(embed)
            await notifier.drain()

        send.assert_awaited_once_with(WEBHOOK, embed)
