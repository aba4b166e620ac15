from __future__ import annotations

import pytest

from conftest import CHAT, make_message
from vetting.models import QuotedMessage
from vetting.selection import SelectionMatcher, StaleSelection


@pytest.fixture
def picks():
    return []


@pytest.fixture
def matcher(selection, picks):
    async def record(message, context, choice):
        picks.append((context.options[choice - 1], context.payload))
        return True

    async def explode(message, context, choice):
        raise RuntimeError("handler bug")

    selection.register_handler("record", record)
    selection.register_handler("explode", explode)
    return selection


def _reply(text: str, message_id: str = "500"):
    return make_message(text, quoted=QuotedMessage(id=message_id, text="menu"))


@pytest.mark.asyncio
async def test_reply_to_menu_is_dispatched_once(matcher, picks):
    matcher.remember("500", CHAT, "pending", ["alice", "bob"], "record", {"by": "7"})

    assert await matcher.dispatch(_reply("2")) is True
    assert picks == [("bob", {"by": "7"})]

    assert await matcher.dispatch(_reply("1")) is False
    assert len(picks) == 1


@pytest.mark.asyncio
async def test_unquoted_or_non_numeric_replies_fall_through(matcher, picks):
    matcher.remember("500", CHAT, "pending", ["alice"], "record")

    assert await matcher.dispatch(make_message("1")) is False
    assert await matcher.dispatch(_reply("alice")) is False
    assert await matcher.dispatch(_reply("1", message_id="999")) is False
    assert picks == []


@pytest.mark.asyncio
async def test_out_of_range_choice_keeps_menu(matcher, picks):
    matcher.remember("500", CHAT, "pending", ["alice", "bob"], "record")

    assert await matcher.dispatch(_reply("5")) is False
    assert await matcher.dispatch(_reply("1.")) is True
    assert picks[0][0] == "alice"


@pytest.mark.asyncio
async def test_expired_menu_is_ignored(matcher, picks, clock):
    matcher.remember("500", CHAT, "pending", ["alice"], "record")
    clock.advance(matcher.ttl + 1)

    assert await matcher.dispatch(_reply("1")) is False
    assert picks == []


@pytest.mark.asyncio
async def test_menu_from_another_chat_is_ignored(matcher, picks):
    matcher.remember("500", "-100999", "pending", ["alice"], "record")
    assert await matcher.dispatch(_reply("1")) is False
    assert picks == []


@pytest.mark.asyncio
async def test_handler_failure_is_contained(matcher):
    matcher.remember("500", CHAT, "pending", ["alice"], "explode")
    assert await matcher.dispatch(_reply("1")) is False


@pytest.mark.asyncio
async def test_context_survives_restart_through_store(clock, store, picks):
    first = SelectionMatcher(clock, store)
    first.remember("500", CHAT, "pending", ["alice", "bob"], "record")

    restarted = SelectionMatcher(clock, store)

    async def record(message, context, choice):
        picks.append(context.options[choice - 1])
        return True

    restarted.register_handler("record", record)
    assert await restarted.dispatch(_reply("1")) is True
    assert picks == ["alice"]


def test_remember_without_message_id_is_noop(selection):
    assert selection.remember(None, CHAT, "pending", ["a"], "record") is None


def test_purge_expired(selection, clock):
    selection.remember("1", CHAT, "pending", ["a"], "record")
    clock.advance(selection.ttl + 1)
    selection.remember("2", CHAT, "pending", ["b"], "record")

    assert selection.purge_expired() == 1


@pytest.mark.asyncio
async def test_stale_handler_drops_menu(selection):
    async def stale(message, context, choice):
        raise StaleSelection("question already answered")

    selection.register_handler("stale", stale)
    selection.remember("500", CHAT, "question_choice", ["a", "b"], "stale")

    assert await selection.dispatch(_reply("1")) is False
    assert selection._take(CHAT, "500") is None


def test_forget_session_drops_only_its_menus(selection, store):
    selection.remember("1", CHAT, "question_choice", ["a"], "record", {"session_id": "s1"})
    selection.remember("2", CHAT, "pending", ["b"], "record", {"session_id": "s1"})
    selection.remember("3", CHAT, "question_choice", ["c"], "record", {"session_id": "s2"})

    assert selection.forget_session("s1", "question_choice") == 1

    assert store.get(selection.collection, f"{CHAT}:1") is None
    assert store.get(selection.collection, f"{CHAT}:2") is not None
    assert selection._take(CHAT, "3") is not None
