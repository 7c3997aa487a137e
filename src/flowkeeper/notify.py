"""Notifications about supervisor events.

Events are rendered as short Markdown messages. Delivery is pluggable: the
supervisor only talks to a ``Notifier``; ``TelegramNotifier`` posts to the
Telegram Bot API, ``LogNotifier`` just logs.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger

from flowkeeper.db import format_age, heartbeat_age, utcnow
from flowkeeper.models import SupervisorConfig, TelegramConfig, WorkflowState

TELEGRAM_API_URL = "https://api.telegram.org"


class EventType:
    """Notification event constants."""

    HANG = "hang"
    AUTOHEAL_SUCCESS = "autoheal_success"
    AUTOHEAL_FAILURE = "autoheal_failure"
    RELOAD = "reload"
    PAUSE = "pause"
    RESUME = "resume"
    RESTART_EXHAUSTED = "restart_exhausted"
    STATUS_UPDATE = "status_update"


EVENT_EMOJI: dict[str, str] = {
    EventType.HANG: "⚠️",
    EventType.AUTOHEAL_SUCCESS: "✅",
    EventType.AUTOHEAL_FAILURE: "❌",
    EventType.RELOAD: "🔄",
    EventType.PAUSE: "⏸️",
    EventType.RESUME: "▶️",
    EventType.RESTART_EXHAUSTED: "💀",
    EventType.STATUS_UPDATE: "📊",
}

STATUS_EMOJI: dict[str, str] = {
    "running": "🟢",
    "error": "🔴",
    "done": "✅",
}


@dataclass
class NotificationEvent:
    """A structured supervisor event."""

    type: str
    title: str
    message: str = ""
    worktree: str = "main"
    details: dict[str, Any] = field(default_factory=dict)
    text: str | None = None  # Pre-rendered message, used as is

    def render(self) -> str:
        """Render the event as a Markdown message."""
        if self.text is not None:
            return self.text
        emoji = EVENT_EMOJI.get(self.type, "ℹ️")
        parts = [f"{emoji} **{self.title}** ({self.worktree})"]
        if self.message:
            parts.extend(["", self.message])
        details = [f"• {key}: {value}" for key, value in self.details.items() if value is not None]
        if details:
            parts.append("")
            parts.extend(details)
        return "\n".join(parts)


class Notifier(ABC):
    """Receives supervisor events."""

    @abstractmethod
    async def notify(self, event: NotificationEvent) -> None:
        """Deliver an event. May raise on delivery failure."""


class LogNotifier(Notifier):
    """Writes events to the log only."""

    async def notify(self, event: NotificationEvent) -> None:
        logger.info(f"[{event.type}] {event.title}: {event.message}")


class TelegramNotifier(Notifier):
    """Delivers events to a Telegram chat (optionally a forum topic)."""

    def __init__(
        self,
        config: TelegramConfig,
        dry_run: bool = False,
        timeout: float = 10.0,
        api_url: str = TELEGRAM_API_URL,
    ):
        self.config = config
        self.dry_run = dry_run
        self.timeout = timeout
        self.api_url = api_url

    async def notify(self, event: NotificationEvent) -> None:
        await self.send_message(event.render())

    async def send_message(self, text: str) -> None:
        if self.dry_run:
            logger.info(f"[DRY RUN] Would send Telegram message to chat {self.config.chat_id}:")
            logger.info(text)
            return

        payload: dict[str, Any] = {
            "chat_id": self.config.chat_id,
            "text": text,
            "parse_mode": "Markdown",
        }
        if self.config.message_thread_id is not None:
            payload["message_thread_id"] = self.config.message_thread_id

        url = f"{self.api_url}/bot{self.config.bot_token}/sendMessage"
        async with httpx.AsyncClient() as client:
            response = await client.post(url, json=payload, timeout=self.timeout)

        data = response.json()
        if not data.get("ok"):
            raise RuntimeError(f"Telegram API error: {data.get('description') or 'Unknown error'}")

        logger.debug("Telegram message sent successfully")


def build_notifier(config: SupervisorConfig, dry_run: bool = False) -> Notifier:
    """Pick the notifier for a configuration."""
    if config.telegram.configured:
        return TelegramNotifier(config.telegram, dry_run=dry_run)
    return LogNotifier()


async def safe_notify(notifier: Notifier | None, event: NotificationEvent) -> bool:
    """Deliver an event, logging instead of raising on failure."""
    if notifier is None:
        return False
    try:
        await notifier.notify(event)
        return True
    except Exception as e:
        logger.warning(f"Failed to send {event.type} notification: {e}")
        return False


def format_status_message(
    repo_name: str,
    branch: str,
    state: WorkflowState,
) -> str:
    """Periodic status message for a worktree."""
    status = state.status.value
    emoji = STATUS_EMOJI.get(status, "❓")

    message = f"{emoji} **{repo_name}** ({branch})\n"
    message += f"\n_{utcnow().isoformat()}_\n"
    message += f"\n**Status:** {status}"

    if state.summary:
        message += f"\n\n{state.summary}"

    if state.heartbeat:
        age = heartbeat_age(state.heartbeat)
        shown = format_age(age) if age is not None else state.heartbeat
        message += f"\n\n💓 Last heartbeat: {shown}"

    if state.last_error and status == "error":
        message += f"\n\n`{state.last_error}`"

    return message
