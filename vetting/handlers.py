from __future__ import annotations

import logging
from typing import Any

from telegram import Message, MessageEntity, Update
from telegram.ext import ContextTypes

from .controller import Controller
from .models import InboundMessage, QuotedMessage

logger = logging.getLogger(__name__)


def _service(context: ContextTypes.DEFAULT_TYPE, key: str) -> Any:
    return context.application.bot_data[key]


def _image_mimetype(message: Message) -> str | None:
    if message.photo:
        return "image/jpeg"
    document = message.document
    if document is not None and (document.mime_type or "").startswith("image/"):
        return document.mime_type
    return None


def to_inbound(message: Message) -> InboundMessage | None:
    if message.from_user is None:
        return None

    quoted = None
    reply = message.reply_to_message
    if reply is not None:
        quoted = QuotedMessage(
            id=str(reply.message_id),
            text=reply.text or reply.caption or "",
            sender_id=str(reply.from_user.id) if reply.from_user else None,
        )

    # Only text mentions carry a user id; plain @username mentions do not.
    mentions = [
        str(entity.user.id)
        for entity in (message.entities or ())
        if entity.type == MessageEntity.TEXT_MENTION and entity.user is not None
    ]

    return InboundMessage(
        event_id=f"{message.chat_id}:{message.message_id}",
        chat_id=str(message.chat_id),
        user_id=str(message.from_user.id),
        name=message.from_user.full_name,
        text=message.text or message.caption,
        image_mimetype=_image_mimetype(message),
        quoted=quoted,
        mentions=mentions,
    )


async def message_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None or message.from_user is None or message.from_user.is_bot:
        return

    inbound = to_inbound(message)
    if inbound is None:
        return

    controller: Controller = _service(context, "controller")
    try:
        await controller.handle_message(inbound)
    except Exception as exc:  # pragma: no cover - last line of defence for the update loop
        logger.exception("Unexpected error handling message %s: %s", inbound.event_id, exc)


async def new_members_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None:
        return

    controller: Controller = _service(context, "controller")
    for member in message.new_chat_members or ():
        if member.is_bot:
            continue
        await controller.handle_membership(str(message.chat_id), str(member.id), "joined", member.full_name)


async def left_member_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if message is None or message.left_chat_member is None or message.left_chat_member.is_bot:
        return

    controller: Controller = _service(context, "controller")
    member = message.left_chat_member
    await controller.handle_membership(str(message.chat_id), str(member.id), "left", member.full_name)


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Unhandled error while processing an update", exc_info=context.error)
