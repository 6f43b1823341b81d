"""Tests for alert delivery and cooldown."""

import json

import httpx
import pytest

from kpisync.core.config import Settings
from kpisync.services.notifier import DiscordChannel, Notifier, TelegramChannel, build_channels


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestCooldown:

    @pytest.mark.asyncio
    async def test_duplicate_within_window_dropped(self, fake_channel):
        clock = FakeClock()
        notifier = Notifier([fake_channel], cooldown_seconds=300, clock=clock)

        assert await notifier.send_sync_failure("meta", "2024-01-14", "boom") is True
        clock.now = 299
        assert await notifier.send_sync_failure("meta", "2024-01-14", "boom again") is False
        assert len(fake_channel.sent) == 1

        clock.now = 301
        assert await notifier.send_sync_failure("meta", None, "boom later") is True
        assert len(fake_channel.sent) == 2

    @pytest.mark.asyncio
    async def test_keys_are_per_category_and_service(self, fake_channel):
        notifier = Notifier([fake_channel], clock=FakeClock())

        assert await notifier.send_sync_failure("meta", None, "x")
        assert await notifier.send_sync_failure("ga4", None, "x")
        assert await notifier.send_token_expiry_alert("meta")
        assert await notifier.send_rate_limit_alert("meta")
        assert await notifier.send_schedule_failure("meta", 1, "queue down")
        assert not await notifier.send_token_expiry_alert("meta")
        assert len(fake_channel.sent) == 5

    @pytest.mark.asyncio
    async def test_success_has_no_cooldown(self, fake_channel):
        notifier = Notifier([fake_channel], clock=FakeClock())
        await notifier.send_sync_success("shopify", "2024-01-14", "append", 12)
        await notifier.send_sync_success("shopify", "2024-01-15", "update", 13)

        assert len(fake_channel.sent) == 2
        assert "at row 12" in fake_channel.sent[0][1]


class TestDailySummary:

    @pytest.mark.asyncio
    async def test_lists_successes_and_failures(self, fake_channel):
        notifier = Notifier([fake_channel], clock=FakeClock())
        results = [
            {"service": "meta", "success": True, "target_date": "2024-01-14", "mode": "append", "row_number": 12},
            {"service": "ga4", "success": False, "target_date": None, "error": "quota exceeded"},
        ]

        assert await notifier.send_daily_summary(results) is True
        assert await notifier.send_daily_summary(results) is True

        subject, message = fake_channel.sent[0]
        assert subject == "[KPI Sync] Daily Summary"
        assert "Total: 2 | Succeeded: 1 | Failed: 1" in message
        assert "META 2024-01-14: append row 12" in message
        assert "GA4 default: quota exceeded" in message
        assert len(fake_channel.sent) == 2

    @pytest.mark.asyncio
    async def test_empty_period_sends_nothing(self, fake_channel):
        notifier = Notifier([fake_channel])
        assert await notifier.send_daily_summary([]) is False
        assert fake_channel.sent == []


class TestDelivery:

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_block_others(self, make_channel):
        broken = make_channel("broken", fail=True)
        working = make_channel("working")
        notifier = Notifier([broken, working])

        assert await notifier.send_rate_limit_alert("ga4") is True
        assert len(working.sent) == 1

    @pytest.mark.asyncio
    async def test_test_notifications_reports_per_channel(self, make_channel):
        notifier = Notifier([make_channel("broken", fail=True), make_channel("working")])
        assert await notifier.test_notifications() == {"broken": False, "working": True}

    @pytest.mark.asyncio
    async def test_no_channels(self):
        assert await Notifier([]).test_notifications() == {}

    @pytest.mark.asyncio
    async def test_close_closes_channels(self, fake_channel):
        await Notifier([fake_channel]).close()
        assert fake_channel.closed is True


class TestDiscordChannel:

    @pytest.mark.asyncio
    async def test_posts_content(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(204)

        channel = DiscordChannel("https://discord.test/api/webhooks/1/secret", transport=httpx.MockTransport(handler))
        await channel.send("Subject", "x" * 3000)
        await channel.close()

        body = json.loads(requests[0].content)
        assert body["content"].startswith("**Subject**")
        assert len(body["content"]) == 2000

    @pytest.mark.asyncio
    async def test_error_does_not_leak_webhook_url(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(404, text="Unknown Webhook"))
        channel = DiscordChannel("https://discord.test/api/webhooks/1/supersecret", transport=transport)

        with pytest.raises(RuntimeError) as exc_info:
            await channel.send("Subject", "body")
        assert "supersecret" not in str(exc_info.value)
        await channel.close()


class TestTelegramChannel:

    @pytest.mark.asyncio
    async def test_sends_html_message(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"ok": True})

        channel = TelegramChannel("123:ABC", "-100", transport=httpx.MockTransport(handler))
        await channel.send("Sync <Failed>", "Error: a & b")
        await channel.close()

        assert requests[0].url.path == "/bot123:ABC/sendMessage"
        body = json.loads(requests[0].content)
        assert body["chat_id"] == "-100"
        assert body["parse_mode"] == "HTML"
        assert "&lt;Failed&gt;" in body["text"]
        assert "a &amp; b" in body["text"]

    @pytest.mark.asyncio
    async def test_error_does_not_leak_token(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"ok": False}))
        channel = TelegramChannel("123:SECRETTOKEN", "-100", transport=transport)

        with pytest.raises(RuntimeError) as exc_info:
            await channel.send("Subject", "body")
        assert "SECRETTOKEN" not in str(exc_info.value)
        await channel.close()


class TestBuildChannels:

    def test_only_configured_channels(self):
        settings = Settings(discord_webhook_url="https://discord.test/hook", telegram_bot_token="t", telegram_chat_id=None)
        assert [c.name for c in build_channels(settings)] == ["discord"]

    def test_none_configured(self):
        settings = Settings(discord_webhook_url=None, telegram_bot_token=None, telegram_chat_id=None)
        assert build_channels(settings) == []
