"""
Shared fixtures for the vetting bot tests.

Everything runs against a temporary SQLite file, a manual clock and in-memory
fakes for the chat transport and the LLM, so no network is touched.
"""
from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from vetting.clock import Clock, TimerService
from vetting.database import Store
from vetting.evaluator import Evaluator
from vetting.models import InboundMessage, LLMResult, QuotedMessage, Session, Settings
from vetting.question_bank import QuestionBank, load_default_questions
from vetting.repository import Repository
from vetting.scheduler import Scheduler
from vetting.selection import SelectionMatcher
from vetting.session_manager import SessionManager
from vetting.transport import TransportError

CHAT = "-100500"
USER = "4242"
ADMIN = "7"
OWNER = "1"
MAIN_LINK = "https://t.me/+main-group"


class ManualClock(Clock):
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        self._monotonic = 1000.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        self._monotonic += seconds


class RecordingTimers(TimerService):
    """Records armed timers instead of scheduling them on a job queue."""

    def __init__(self) -> None:
        self.armed: dict[tuple[str, str], float] = {}

    def arm(self, session_id, kind, delay, callback) -> None:
        self.armed[(session_id, kind)] = delay

    def cancel(self, session_id, kind=None) -> None:
        for key in list(self.armed):
            if key[0] == session_id and (kind is None or key[1] == kind):
                del self.armed[key]

    def cancel_all(self) -> None:
        self.armed.clear()

    def pending(self, session_id) -> list[str]:
        return sorted(kind for sid, kind in self.armed if sid == session_id)


class FakeTransport:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, list[str]]] = []
        self.ids: list[str] = []
        self.typing: list[tuple[str, bool]] = []
        self.removed: list[tuple[str, str]] = []
        self.admins: set[str] = {ADMIN}
        self.fail_send = False
        self._ids = itertools.count(1000)

    async def send(self, chat_id: str, text: str, mentions: list[str] | None = None) -> str | None:
        if self.fail_send:
            raise TransportError("send failed")
        self.sent.append((chat_id, text, list(mentions or [])))
        self.ids.append(str(next(self._ids)))
        return self.ids[-1]

    async def send_typing(self, chat_id: str, on: bool) -> None:
        self.typing.append((chat_id, on))

    async def remove_participant(self, chat_id: str, user_id: str) -> bool:
        self.removed.append((chat_id, user_id))
        return True

    async def is_chat_admin(self, chat_id: str, user_id: str) -> bool:
        return user_id in self.admins

    def texts(self) -> list[str]:
        return [text for _, text, _ in self.sent]


class FakeLLM:
    """Scripted stand-in for ``LLMClient`` with the same operation names."""

    def __init__(self) -> None:
        self.available = True
        self.verdict: dict[str, Any] | None = {"decision": "APPROVE", "score": 95, "feedback": "ok"}
        self.dob: dict[str, Any] | None = None
        self.followup = ""
        self.calls: list[str] = []

    async def parse_dob(self, text: str, display_name: str) -> LLMResult:
        self.calls.append("parse_dob")
        if self.dob is not None:
            return LLMResult(ok=True, data=self.dob)
        return LLMResult(
            ok=True,
            data={"day": None, "month": None, "year": None, "clarification": "Which day in December exactly?"},
        )

    async def generate_followup(self, question_text, raw_answer, recent_turns, display_name) -> LLMResult:
        self.calls.append("generate_followup")
        return LLMResult(ok=True, data={"followup": self.followup})

    async def rephrase_question(self, question_text: str, display_name: str) -> LLMResult:
        self.calls.append("rephrase_question")
        return LLMResult(ok=False, err="llm_unavailable")

    async def score_answer(self, question_text: str, criteria: str, raw_answer: str) -> LLMResult:
        self.calls.append("score_answer")
        return LLMResult(ok=True, data={"score": 10, "feedback": "good"})

    async def score_interview(self, flattened_responses: str, photo_present: bool, prompt_template: str) -> LLMResult:
        self.calls.append("score_interview")
        if self.verdict is None:
            return LLMResult(ok=False, err="llm_unavailable")
        return LLMResult(ok=True, data=self.verdict)


_event_ids = itertools.count(1)


def make_message(
    text: str | None = None,
    *,
    image: str | None = None,
    user: str = USER,
    chat: str = CHAT,
    name: str = "Sam",
    quoted: QuotedMessage | None = None,
    mentions: list[str] | None = None,
    event_id: str | None = None,
) -> InboundMessage:
    return InboundMessage(
        event_id=event_id or f"evt-{next(_event_ids)}",
        chat_id=chat,
        user_id=user,
        name=name,
        text=text,
        image_mimetype=image,
        quoted=quoted,
        mentions=list(mentions or []),
    )


def make_session(clock: ManualClock, seq: int = 1, state: str = "active", **overrides: Any) -> Session:
    """A persisted-looking session whose timestamps default to ``clock.now()``."""
    now = clock.now()
    data: dict[str, Any] = dict(
        id=f"{CHAT}:{USER}:{seq}",
        chat_id=CHAT,
        user_id=USER,
        display_name="Sam",
        push_name="Sam",
        state=state,
        attempt=seq,
        started_at=now.isoformat(),
        expires_at=(now + timedelta(days=1)).isoformat(),
        last_activity_at=now.isoformat(),
        questions_ref="default",
        question_ids=[],
    )
    data.update(overrides)
    return Session(**data)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store(tmp_path) -> Store:
    store = Store(tmp_path / "test.db")
    store.init()
    return store


@pytest.fixture
def repo(store: Store) -> Repository:
    return Repository(store)


@pytest.fixture
def settings(repo: Repository) -> Settings:
    settings = Settings(chat_id=CHAT, enabled=True, main_chat_link=MAIN_LINK)
    repo.save_settings(settings)
    return settings


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def timers() -> RecordingTimers:
    return RecordingTimers()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def evaluator(llm: FakeLLM) -> Evaluator:
    return Evaluator(llm, followup_probability=0.0)


@pytest.fixture
def questions(store: Store) -> QuestionBank:
    return QuestionBank(store, load_default_questions())


@pytest.fixture
def selection(clock: ManualClock, store: Store) -> SelectionMatcher:
    return SelectionMatcher(clock, store)


@pytest.fixture
def scheduler(repo: Repository, clock: ManualClock, timers: RecordingTimers) -> Scheduler:
    return Scheduler(repo, clock, timers)


@pytest.fixture
def manager(repo, questions, evaluator, transport, scheduler, clock, selection) -> SessionManager:
    return SessionManager(repo, questions, evaluator, transport, scheduler, clock, selection)
