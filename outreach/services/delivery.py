"""Delivery actions - what runs when a step fires for a user."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from aiogram import Bot
from aiogram.exceptions import TelegramRetryAfter

if TYPE_CHECKING:
    from outreach.catalog import Step

logger = logging.getLogger(__name__)


@runtime_checkable
class DeliveryAction(Protocol):
    """
    Capability supplied by the campaign author.

    The scheduler dispatches `fire` as a background task after the step's
    receipt is committed and never awaits it; the return value is ignored.
    """

    async def fire(self, user: Any, step: "Step") -> None:
        ...


class LogAction:
    """Default action: records that the step fired and does nothing else."""

    async def fire(self, user: Any, step: "Step") -> None:
        logger.info(f"Step {step.ref} fired for user {getattr(user, 'id', user)}")

    def __repr__(self):
        return "LogAction()"


class TelegramMessageAction:
    """
    Send the step's `text` param as a Telegram direct message.

    Step params:
        text: message body (required)
        parse_mode: "Markdown" | "HTML" | None
        disable_web_page_preview: bool, default True
    """

    def __init__(self, bot: Bot, *, max_attempts: int = 3, max_retry_after_seconds: int = 3600):
        self.bot = bot
        self.max_attempts = max(1, int(max_attempts))
        self.max_retry_after_seconds = int(max_retry_after_seconds)

    async def fire(self, user: Any, step: "Step") -> None:
        chat_id = getattr(user, "telegram_id", None)
        if not chat_id:
            logger.warning(f"Skipping Telegram delivery of {step.ref}: user {getattr(user, 'id', user)} has no telegram_id")
            return

        text = str(step.params.get("text") or "").strip()
        if not text:
            logger.warning(f"Skipping Telegram delivery of {step.ref}: step has no text")
            return

        parse_mode = step.params.get("parse_mode")
        if parse_mode not in ("Markdown", "HTML"):
            parse_mode = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.bot.send_message(
                    chat_id=int(chat_id),
                    text=text,
                    parse_mode=parse_mode,
                    disable_web_page_preview=bool(step.params.get("disable_web_page_preview", True)),
                )
                logger.debug(f"Delivered {step.ref} to chat {chat_id}")
                return
            except TelegramRetryAfter as e:
                if attempt >= self.max_attempts:
                    raise
                delay = max(1, min(int(e.retry_after), self.max_retry_after_seconds))
                logger.warning(f"Telegram rate limit delivering {step.ref}; retrying in {delay}s")
                await asyncio.sleep(delay)
