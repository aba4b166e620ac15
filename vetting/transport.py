from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from telegram import Bot
from telegram.constants import ChatAction, ChatMemberStatus
from telegram.error import BadRequest, Forbidden, NetworkError, RetryAfter, TelegramError, TimedOut

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    pass


class Transport(Protocol):
    async def send(self, chat_id: str, text: str, mentions: list[str] | None = None) -> str | None: ...

    async def send_typing(self, chat_id: str, on: bool) -> None: ...

    async def remove_participant(self, chat_id: str, user_id: str) -> bool: ...

    async def is_chat_admin(self, chat_id: str, user_id: str) -> bool: ...


class TelegramTransport:
    """Outbound capabilities backed by a python-telegram-bot ``Bot``."""

    def __init__(self, bot: Bot, *, attempts: int = 3) -> None:
        self.bot = bot
        self.attempts = attempts

    async def _with_retry(self, label: str, factory):
        for attempt in range(self.attempts):
            try:
                return await factory()
            except RetryAfter as exc:
                retry_after = getattr(exc, "retry_after", 1.0)
                seconds = retry_after.total_seconds() if hasattr(retry_after, "total_seconds") else float(retry_after)
                await asyncio.sleep(seconds + 0.5)
            except (BadRequest, Forbidden) as exc:
                raise TransportError(f"{label} failed: {exc}") from exc
            except (TimedOut, NetworkError) as exc:
                if attempt >= self.attempts - 1:
                    raise TransportError(f"{label} failed: {exc}") from exc
                await asyncio.sleep(0.75 * (attempt + 1))
            except TelegramError as exc:
                raise TransportError(f"{label} failed: {exc}") from exc
        raise TransportError(f"{label} failed after {self.attempts} attempts")

    async def send(self, chat_id: str, text: str, mentions: list[str] | None = None) -> str | None:
        # Telegram renders mentions from entities; plain text keeps the adapter simple.
        message = await self._with_retry(
            "send_message",
            lambda: self.bot.send_message(chat_id=int(chat_id), text=text),
        )
        return str(message.message_id) if message is not None else None

    async def send_typing(self, chat_id: str, on: bool) -> None:
        # Telegram clears the typing indicator on the next message.
        if not on:
            return
        await self._with_retry(
            "send_chat_action",
            lambda: self.bot.send_chat_action(chat_id=int(chat_id), action=ChatAction.TYPING),
        )

    async def remove_participant(self, chat_id: str, user_id: str) -> bool:
        try:
            await self._with_retry(
                "ban_chat_member",
                lambda: self.bot.ban_chat_member(chat_id=int(chat_id), user_id=int(user_id)),
            )
            # Unban straight away so the removal is a kick, not a permanent ban.
            await self._with_retry(
                "unban_chat_member",
                lambda: self.bot.unban_chat_member(chat_id=int(chat_id), user_id=int(user_id), only_if_banned=True),
            )
        except TransportError as exc:
            if isinstance(exc.__cause__, (BadRequest, Forbidden)):
                logger.warning("Cannot remove %s from %s: %s", user_id, chat_id, exc)
                return False
            raise
        return True

    async def is_chat_admin(self, chat_id: str, user_id: str) -> bool:
        member = await self._with_retry(
            "get_chat_member",
            lambda: self.bot.get_chat_member(chat_id=int(chat_id), user_id=int(user_id)),
        )
        return member.status in (ChatMemberStatus.ADMINISTRATOR, ChatMemberStatus.OWNER)
