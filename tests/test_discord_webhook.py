from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from aecoin_store.services.discord_webhook import OrderNotification, OrderNotifier, format_order_message

WEBHOOK_URL = "https://discord.com/api/webhooks/123456789012345678/token-value"


def notification(**overrides) -> OrderNotification:
    data = {
        "username": "SHADOW KING",
        "coins": 10000,
        "payment_method": "BILLPLZ",
        "amount": Decimal("50"),
        "order_id": "ord-1",
        "timestamp": datetime(2026, 10, 19, 2, 5, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return OrderNotification(**data)


def test_message_format() -> None:
    message = format_order_message(notification())
    lines = message.split("\n")
    assert lines[0] == "💎 **AECOIN STORE — PURCHASE LOG**"
    assert "SHADOW KING" in lines[2]
    assert lines[3].endswith("10,000")
    assert lines[4].endswith("BILLPLZ")
    assert lines[5].endswith("RM50.00")
    assert lines[6].endswith("ord-1")
    assert lines[7].endswith("19/10/2026 10:05 MYT")


def test_naive_timestamp_treated_as_utc() -> None:
    message = format_order_message(notification(timestamp=datetime(2026, 1, 31, 20, 0)))
    assert "01/02/2026 04:00 MYT" in message


def test_unparseable_amount() -> None:
    assert "N/A" in format_order_message(notification(amount="abc"))


@pytest.mark.asyncio
async def test_unconfigured_is_noop() -> None:
    notifier = OrderNotifier(webhook_url="")
    with patch("aecoin_store.services.discord_webhook.discord.Webhook.from_url") as from_url:
        assert await notifier.notify(notification()) is False
        assert notifier.schedule(notification()) is None
    from_url.assert_not_called()
    assert notifier.configured is False


@pytest.mark.asyncio
async def test_sends_content_through_webhook() -> None:
    webhook = MagicMock()
    webhook.send = AsyncMock()
    notifier = OrderNotifier(webhook_url=WEBHOOK_URL)

    with patch("aecoin_store.services.discord_webhook.discord.Webhook.from_url", return_value=webhook) as from_url:
        assert await notifier.notify(notification()) is True

    assert from_url.call_args.args[0] == WEBHOOK_URL
    content = webhook.send.await_args.kwargs["content"]
    assert "PURCHASE LOG" in content
    assert "RM50.00" in content


@pytest.mark.asyncio
async def test_delivery_failure_is_swallowed() -> None:
    webhook = MagicMock()
    webhook.send = AsyncMock(side_effect=RuntimeError("discord down"))
    notifier = OrderNotifier(webhook_url=WEBHOOK_URL)

    with patch("aecoin_store.services.discord_webhook.discord.Webhook.from_url", return_value=webhook):
        assert await notifier.notify(notification()) is False


@pytest.mark.asyncio
async def test_invalid_url_is_swallowed() -> None:
    notifier = OrderNotifier(webhook_url="https://example.com/not-a-webhook")
    assert await notifier.notify(notification()) is False


@pytest.mark.asyncio
async def test_schedule_runs_in_background_and_drains() -> None:
    webhook = MagicMock()
    webhook.send = AsyncMock()
    notifier = OrderNotifier(webhook_url=WEBHOOK_URL)

    with patch("aecoin_store.services.discord_webhook.discord.Webhook.from_url", return_value=webhook):
        task = notifier.schedule(notification())
        assert task is not None
        assert notifier.pending == 1
        await notifier.drain()

    assert task.result() is True
    assert notifier.pending == 0
    webhook.send.assert_awaited_once()


def test_reads_webhook_url_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("DISCORD_WEBHOOK_URL", WEBHOOK_URL)
    assert OrderNotifier().webhook_url == WEBHOOK_URL
