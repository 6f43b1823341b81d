"""Deduplicated failure and success alerts over Discord and Telegram."""

import asyncio
import html
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

import httpx

logger = logging.getLogger(__name__)


class NotificationChannel:
    """One outbound alert destination."""

    name = "channel"

    async def send(self, subject: str, message: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class _HttpChannel(NotificationChannel):
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=10.0, transport=self._transport)
        return self.client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None


class DiscordChannel(_HttpChannel):
    """Posts alerts to a Discord webhook."""

    name = "discord"

    def __init__(self, webhook_url: str, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(transport)
        self.webhook_url = webhook_url

    async def send(self, subject: str, message: str) -> None:
        client = await self._get_client()
        # Discord rejects content over 2000 characters
        content = f"**{subject}**\n\n{message}"[:2000]
        response = await client.post(self.webhook_url, json={"content": content})
        if response.is_error:
            # The webhook URL embeds its secret, keep it out of the error
            raise RuntimeError(f"Discord webhook error {response.status_code}: {response.text[:200]}")


class TelegramChannel(_HttpChannel):
    """Sends alerts through the Telegram bot API."""

    name = "telegram"
    base_url = "https://api.telegram.org"

    def __init__(self, bot_token: str, chat_id: str, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(transport)
        self.bot_token = bot_token
        self.chat_id = chat_id

    async def send(self, subject: str, message: str) -> None:
        client = await self._get_client()
        response = await client.post(
            f"{self.base_url}/bot{self.bot_token}/sendMessage",
            json={
                "chat_id": self.chat_id,
                "text": f"<b>{html.escape(subject)}</b>\n\n{html.escape(message)}",
                "parse_mode": "HTML",
            },
        )
        if response.is_error:
            # Never let the bot token (part of the URL) reach the logs
            raise RuntimeError(f"Telegram API error {response.status_code}: {response.text[:200]}")


class Notifier:
    """
    Fans alerts out to every configured channel.

    Alerts of the same category and service within the cooldown window are
    dropped. Cooldown state lives in memory and resets on restart.
    """

    def __init__(
        self,
        channels: Sequence[NotificationChannel] = (),
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.channels = list(channels)
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._last_sent: dict[str, float] = {}

    def _in_cooldown(self, key: str) -> bool:
        last_sent = self._last_sent.get(key)
        if last_sent is None:
            return False
        return self._clock() - last_sent < self.cooldown_seconds

    async def _send_to_channel(self, channel: NotificationChannel, subject: str, message: str) -> bool:
        try:
            await channel.send(subject, message)
            return True
        except Exception as e:
            logger.error(f"Failed to send {channel.name} notification: {e}")
            return False

    async def _deliver(self, subject: str, message: str) -> dict[str, bool]:
        if not self.channels:
            logger.debug(f"No notification channels configured, dropping: {subject}")
            return {}
        results = await asyncio.gather(
            *(self._send_to_channel(channel, subject, message) for channel in self.channels)
        )
        return {channel.name: ok for channel, ok in zip(self.channels, results)}

    async def _deliver_with_cooldown(self, key: str, subject: str, message: str) -> bool:
        if self._in_cooldown(key):
            logger.debug(f"Notification {key} in cooldown, skipping")
            return False
        self._last_sent[key] = self._clock()
        await self._deliver(subject, message)
        return True

    @staticmethod
    def _timestamp() -> str:
        return datetime.now(timezone.utc).isoformat()

    async def send_sync_failure(self, service: str, target_date: str | None, error: str) -> bool:
        """Alert that a sync failed. Returns False when suppressed by cooldown."""
        message = (
            f"Service: {service.upper()}\n"
            f"Date: {target_date or 'default'}\n"
            f"Error: {error}\n"
            f"Time: {self._timestamp()}\n\n"
            "Please check the logs for more details."
        )
        return await self._deliver_with_cooldown(
            f"failure-{service}", f"[KPI Sync] Sync Failed: {service.upper()}", message
        )

    async def send_token_expiry_alert(self, service: str) -> bool:
        message = (
            f"Service: {service.upper()}\n"
            f"Time: {self._timestamp()}\n\n"
            f"Please refresh the access token for {service}."
        )
        return await self._deliver_with_cooldown(
            f"token-{service}", f"[KPI Sync] Token Expired: {service.upper()}", message
        )

    async def send_rate_limit_alert(self, service: str) -> bool:
        message = (
            f"Service: {service.upper()}\n"
            f"Time: {self._timestamp()}\n\n"
            f"The {service} API is rate limiting requests. Syncs will be retried automatically."
        )
        return await self._deliver_with_cooldown(
            f"ratelimit-{service}", f"[KPI Sync] Rate Limited: {service.upper()}", message
        )

    async def send_schedule_failure(self, service: str, tenant_id: int, error: str) -> bool:
        message = (
            f"Scheduled sync could not be queued for tenant {tenant_id}, service {service}.\n"
            f"Error: {error}\n"
            f"Time: {self._timestamp()}"
        )
        return await self._deliver_with_cooldown(
            f"schedule-{service}", f"[KPI Sync] Scheduled Sync Failed: {service.upper()}", message
        )

    async def send_sync_success(
        self, service: str, target_date: str | None, mode: str | None, row_number: int | None
    ) -> None:
        """Success summary. Not subject to cooldown."""
        message = (
            f"Service: {service.upper()}\n"
            f"Date: {target_date or 'default'}\n"
            f"Result: {mode or 'done'}" + (f" at row {row_number}" if row_number else "") + "\n"
            f"Time: {self._timestamp()}"
        )
        await self._deliver(f"[KPI Sync] Sync Completed: {service.upper()}", message)

    async def send_daily_summary(self, results: list[dict]) -> bool:
        """
        One message listing every sync that finished in the period.

        Each result carries service, success, target_date, mode, row_number
        and error. Not subject to cooldown. Returns False when there is
        nothing to report.
        """
        if not results:
            return False
        succeeded = [r for r in results if r.get("success")]
        failed = [r for r in results if not r.get("success")]

        lines = [f"Total: {len(results)} | Succeeded: {len(succeeded)} | Failed: {len(failed)}", ""]
        if succeeded:
            lines.append("Successful:")
            for r in succeeded:
                where = f" row {r['row_number']}" if r.get("row_number") else ""
                lines.append(
                    f"  {r['service'].upper()} {r.get('target_date') or 'default'}: {r.get('mode') or 'done'}{where}"
                )
        if failed:
            lines.append("Failed:")
            for r in failed:
                lines.append(
                    f"  {r['service'].upper()} {r.get('target_date') or 'default'}: {r.get('error') or 'unknown error'}"
                )
        lines.append(f"\nTime: {self._timestamp()}")

        await self._deliver("[KPI Sync] Daily Summary", "\n".join(lines))
        return True

    async def test_notifications(self) -> dict[str, bool]:
        """Send a test message to every channel and report which delivered."""
        return await self._deliver(
            "[KPI Sync] Test Notification",
            f"KPI sync notification test.\nTime: {self._timestamp()}",
        )

    async def close(self) -> None:
        for channel in self.channels:
            await channel.close()


def build_channels(settings) -> list[NotificationChannel]:
    """Channels enabled by the current settings."""
    channels: list[NotificationChannel] = []
    if settings.discord_webhook_url:
        channels.append(DiscordChannel(settings.discord_webhook_url))
    if settings.telegram_bot_token and settings.telegram_chat_id:
        channels.append(TelegramChannel(settings.telegram_bot_token, settings.telegram_chat_id))
    return channels
