from __future__ import annotations

import logging
from typing import Awaitable, Callable

from .clock import Clock
from .constants import COLLECTIONS, SELECTION_TTL_SECONDS
from .database import Store, StoreError
from .models import InboundMessage, SelectionContext

logger = logging.getLogger(__name__)

SelectionHandler = Callable[[InboundMessage, SelectionContext, int], Awaitable[bool]]


class StaleSelection(Exception):
    """Raised by a handler when its menu no longer applies; the menu is dropped."""


class SelectionMatcher:
    """Routes numeric replies that quote an enumerated menu back to its handler.

    Contexts live in memory and are mirrored to the store on a best-effort
    basis; losing one only means the reply is handled as ordinary text.
    """

    def __init__(self, clock: Clock, store: Store | None = None, ttl: float = SELECTION_TTL_SECONDS) -> None:
        self.clock = clock
        self.store = store
        self.ttl = ttl
        self.collection = COLLECTIONS["selection_contexts"]
        self._contexts: dict[str, SelectionContext] = {}
        self._handlers: dict[str, SelectionHandler] = {}

    def register_handler(self, name: str, handler: SelectionHandler) -> None:
        self._handlers[name] = handler

    def _now(self) -> float:
        return self.clock.now().timestamp()

    def remember(
        self,
        message_id: str | None,
        chat_id: str,
        kind: str,
        options: list[str],
        handler_ref: str,
        payload: dict | None = None,
    ) -> SelectionContext | None:
        if not message_id or not options:
            return None

        context = SelectionContext(
            message_id=str(message_id),
            chat_id=chat_id,
            kind=kind,
            options=list(options),
            handler_ref=handler_ref,
            expires_at=self._now() + self.ttl,
            payload=dict(payload or {}),
        )
        key = self._key(chat_id, context.message_id)
        self._contexts[key] = context
        if self.store is not None:
            try:
                self.store.upsert(self.collection, key, context.to_dict())
            except StoreError as exc:
                logger.warning("Could not persist selection context %s: %s", message_id, exc)
        return context

    @staticmethod
    def _key(chat_id: str, message_id: str) -> str:
        return f"{chat_id}:{message_id}"

    def _take(self, chat_id: str, message_id: str) -> SelectionContext | None:
        key = self._key(chat_id, message_id)
        context = self._contexts.pop(key, None)
        if self.store is None:
            return context

        try:
            if context is None:
                doc = self.store.get(self.collection, key)
                context = SelectionContext.from_dict(doc) if doc else None
            self.store.delete(self.collection, key)
        except StoreError as exc:
            logger.warning("Selection context lookup failed for %s: %s", message_id, exc)
        return context

    @staticmethod
    def parse_choice(text: str | None, count: int) -> int | None:
        cleaned = (text or "").strip().rstrip(".)")
        if not cleaned.isdigit():
            return None
        value = int(cleaned)
        return value if 1 <= value <= count else None

    async def dispatch(self, message: InboundMessage) -> bool:
        """Return ``True`` when the message was consumed by a menu handler."""
        if message.quoted is None or not (message.text or "").strip().rstrip(".)").isdigit():
            return False

        context = self._take(message.chat_id, message.quoted.id)
        if context is None or context.chat_id != message.chat_id:
            return False

        if context.expires_at < self._now():
            logger.info("Selection context %s expired", context.message_id)
            return False

        choice = self.parse_choice(message.text, len(context.options))
        if choice is None:
            # Out of range: keep the menu usable for a corrected reply.
            self._contexts[self._key(context.chat_id, context.message_id)] = context
            return False

        handler = self._handlers.get(context.handler_ref)
        if handler is None:
            logger.warning("No selection handler registered for %s", context.handler_ref)
            return False

        try:
            consumed = await handler(message, context, choice)
        except StaleSelection as exc:
            logger.info("Dropping stale selection %s: %s", context.message_id, exc)
            return False
        except Exception:
            logger.exception("Selection handler %s failed", context.handler_ref)
            return False
        if not consumed:
            # Declined (e.g. wrong user); leave the menu open for its owner.
            self._contexts[self._key(context.chat_id, context.message_id)] = context
        return consumed

    def forget_session(self, session_id: str, kind: str | None = None) -> int:
        """Drop every menu issued for a session, optionally only of one kind."""
        def matches(ctx: SelectionContext) -> bool:
            return ctx.payload.get("session_id") == session_id and (kind is None or ctx.kind == kind)

        dropped = [key for key, ctx in self._contexts.items() if matches(ctx)]
        for key in dropped:
            self._contexts.pop(key, None)

        if self.store is not None:
            try:
                docs = self.store.find(self.collection, {"kind": kind} if kind else None)
                for doc in docs:
                    if matches(SelectionContext.from_dict(doc)):
                        self.store.delete(self.collection, self._key(doc["chat_id"], doc["message_id"]))
            except StoreError as exc:
                logger.warning("Could not forget selections for %s: %s", session_id, exc)
        return len(dropped)

    def purge_expired(self) -> int:
        now = self._now()
        expired = [key for key, ctx in self._contexts.items() if ctx.expires_at < now]
        for key in expired:
            self._contexts.pop(key, None)

        if self.store is not None:
            try:
                for doc in self.store.find(self.collection, {"expires_at": {"$lt": now}}):
                    self.store.delete(self.collection, self._key(doc["chat_id"], doc["message_id"]))
            except StoreError as exc:
                logger.warning("Selection purge failed: %s", exc)
        return len(expired)
