from __future__ import annotations

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

from .clock import Clock
from .constants import (
    ADMIN_ACTIONS,
    DEDUP_WINDOW_SECONDS,
    FINAL_STATES,
    ERR_INVARIANT,
    ERR_PRECONDITION,
    ERR_TRANSIENT_IO,
    GROUP_RULES,
    MAX_DOB_CLARIFICATIONS,
    Q_CHOICE,
    Q_DOB,
    Q_OPEN,
    Q_PHOTO,
    RESULT_STATES,
    RULES_ACK_PROMPT,
    SEEN_EVENTS_LIMIT,
    STATE_ACTIVE,
    STATE_APPROVED,
    STATE_AWAITING_DOB,
    STATE_AWAITING_FOLLOWUP,
    STATE_AWAITING_PHOTO,
    STATE_AWAITING_RULES_ACK,
    STATE_EVALUATING,
    STATE_EXPIRED,
    STATE_FAILED_TIMEOUT,
    STATE_PENDING_REVIEW,
    STATE_REJECTED,
    STATE_TERMINATED,
    TIMER_EXPIRY,
    TIMER_REMINDER,
    TIMER_RESPONSE,
    TRANSPORT_TIMEOUT,
    VERDICT_APPROVE,
    VERDICT_REJECT,
)
from .database import StoreError, with_retry
from .evaluator import Evaluator, is_rules_agreement
from .models import (
    AdminResult,
    Answer,
    Followup,
    InboundMessage,
    IngestResult,
    PendingFollowup,
    Photo,
    Question,
    Result,
    Session,
    Settings,
    StartResult,
    StatusSnapshot,
    Verdict,
    parse_iso,
)
from .question_bank import QuestionBank
from .repository import Repository
from .scheduler import Scheduler, expired, reminder_due, response_timed_out
from .selection import SelectionMatcher
from .transport import Transport

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(
    r"(?:my name is|my name's|name is|i am called|i'm called|called)\s+"
    r"([A-Za-z][A-Za-z'\-]*(?:\s+[A-Za-z][A-Za-z'\-]*)?)",
    re.IGNORECASE,
)

_NAME_STOPWORDS = {"and", "from", "in", "i", "im", "but", "the", "a"}


class InvariantViolation(RuntimeError):
    pass


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render(template: str, **values: Any) -> str:
    return template.format_map(_SafeDict(values))


def extract_display_name(text: str) -> str | None:
    match = _NAME_RE.search(text or "")
    if not match:
        return None
    words = [w for w in match.group(1).split() if w.lower() not in _NAME_STOPWORDS]
    if not words:
        return None
    return " ".join(w[:1].upper() + w[1:] for w in words)


def state_for_question(question: Question) -> str:
    if question.type == Q_PHOTO:
        return STATE_AWAITING_PHOTO
    if question.type == Q_DOB:
        return STATE_AWAITING_DOB
    return STATE_ACTIVE


class SessionManager:
    """Per-candidate interview state machine.

    All work for one ``(chat_id, user_id)`` runs under that candidate's lock;
    different candidates proceed concurrently. Public methods never raise:
    storage and invariant failures come back as typed results and leave the
    persisted session as it was.
    """

    def __init__(
        self,
        repo: Repository,
        questions: QuestionBank,
        evaluator: Evaluator,
        transport: Transport,
        scheduler: Scheduler,
        clock: Clock,
        selection: SelectionMatcher | None = None,
        *,
        command_prefix: str = ".",
        transport_timeout: float = TRANSPORT_TIMEOUT,
    ) -> None:
        self.repo = repo
        self.questions = questions
        self.evaluator = evaluator
        self.transport = transport
        self.scheduler = scheduler
        self.clock = clock
        self.selection = selection
        self.command_prefix = command_prefix
        self.transport_timeout = transport_timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._finished: set[str] = set()
        scheduler.bind(self)

    def _lock(self, chat_id: str, user_id: str) -> asyncio.Lock:
        key = f"{chat_id}:{user_id}"
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def _serialised(self, chat_id: str, user_id: str):
        key = f"{chat_id}:{user_id}"
        lock = self._lock(chat_id, user_id)
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                # Candidates with a finished session no longer need a lock.
                if key in self._finished and not lock.locked():
                    self._finished.discard(key)
                    self._locks.pop(key, None)

    def _mark_finished(self, session: Session) -> None:
        key = f"{session.chat_id}:{session.user_id}"
        if session.state in FINAL_STATES:
            self._finished.add(key)
        else:
            self._finished.discard(key)

    # Transport helpers: failures are logged and never abort a transition.

    async def _send(self, chat_id: str, text: str, mentions: list[str] | None = None) -> str | None:
        try:
            return await asyncio.wait_for(self.transport.send(chat_id, text, mentions), self.transport_timeout)
        except Exception as exc:
            logger.warning("Send to %s failed: %s", chat_id, exc)
            return None

    async def _typing(self, chat_id: str, on: bool) -> None:
        try:
            await asyncio.wait_for(self.transport.send_typing(chat_id, on), self.transport_timeout)
        except Exception as exc:
            logger.debug("Typing indicator failed for %s: %s", chat_id, exc)

    async def _remove(self, chat_id: str, user_id: str) -> bool:
        try:
            return bool(
                await asyncio.wait_for(self.transport.remove_participant(chat_id, user_id), self.transport_timeout)
            )
        except Exception as exc:
            logger.warning("Removing %s from %s failed: %s", user_id, chat_id, exc)
            return False

    async def _tell(self, session: Session, text: str) -> str | None:
        return await self._send(session.chat_id, f"{session.display_name}, {text}", [session.user_id])

    # Loading

    async def _settings(self, chat_id: str) -> Settings:
        return await with_retry(self.repo.get_settings, chat_id)

    async def _questions(self, session: Session) -> list[Question]:
        return await with_retry(self.questions.questions_for, session.chat_id, session.questions_ref)

    async def _save(self, session: Session) -> None:
        await with_retry(self.repo.save_session, session)
        self._mark_finished(session)

    # Start

    async def start(self, chat_id: str, user_id: str, name: str) -> StartResult:
        async with self._serialised(chat_id, user_id):
            try:
                return await self._start_locked(chat_id, user_id, name)
            except StoreError as exc:
                logger.warning("Could not start interview for %s in %s: %s", user_id, chat_id, exc)
                return StartResult(status="error", error=ERR_TRANSIENT_IO)

    async def _start_locked(self, chat_id: str, user_id: str, name: str) -> StartResult:
        settings = await self._settings(chat_id)
        if not settings.enabled:
            return StartResult(status="disabled")
        if user_id in settings.exempt_operators:
            return StartResult(status="exempt")

        current = await with_retry(self.repo.find_open_session, chat_id, user_id)
        if current is not None:
            if current.is_in_progress() and current.state != STATE_EVALUATING:
                await self._resume(current, settings)
            return StartResult(status="already_active", session_id=current.id)

        failed = await with_retry(self.repo.count_failed_attempts, chat_id, user_id)
        if failed >= settings.max_retries:
            await self._send(
                chat_id,
                f"{name}, you have used all {settings.max_retries} interview attempts. Please contact an admin.",
                [user_id],
            )
            return StartResult(status="too_many_attempts", message="too_many_attempts")

        seq = await with_retry(self.repo.count_user_sessions, chat_id, user_id) + 1
        ref = await with_retry(self.questions.current_ref, chat_id)
        questions = await with_retry(self.questions.questions_for, chat_id, ref)
        now = self.clock.now()

        session = Session(
            id=f"{chat_id}:{user_id}:{seq}",
            chat_id=chat_id,
            user_id=user_id,
            display_name=name,
            push_name=name,
            state=state_for_question(questions[0]),
            attempt=failed + 1,
            started_at=now.isoformat(),
            expires_at=(now + timedelta(seconds=settings.session_expiry)).isoformat(),
            last_activity_at=now.isoformat(),
            questions_ref=ref,
            question_ids=[q.id for q in questions],
        )
        await self._save(session)
        await with_retry(self.repo.increment_stat, chat_id, "total")
        logger.info("Started interview %s (attempt %s)", session.id, session.attempt)

        await self._send(chat_id, render(settings.welcome_template, name=name), [user_id])
        await self._prompt(session, settings, questions)
        return StartResult(status="started", session_id=session.id)

    async def _resume(self, session: Session, settings: Settings) -> None:
        questions = await self._questions(session)
        await self._tell(session, "welcome back! Let's continue where we stopped.")
        await self._send_current_prompt(session, settings, questions)
        self.scheduler.arm(session, settings)

    # Prompts

    def _current_prompt_text(self, session: Session, questions: list[Question]) -> str:
        if session.state == STATE_AWAITING_FOLLOWUP and session.pending_followup:
            return session.pending_followup.prompt
        if session.state == STATE_AWAITING_RULES_ACK:
            return RULES_ACK_PROMPT
        if session.cursor < len(questions):
            return questions[session.cursor].text
        return "a photo of yourself is required before we can finish. Please send one now."

    async def _prompt(self, session: Session, settings: Settings, questions: list[Question]) -> None:
        await self._send_current_prompt(session, settings, questions, rephrase=True)
        self.scheduler.arm(session, settings)

    async def _send_current_prompt(
        self,
        session: Session,
        settings: Settings,
        questions: list[Question],
        *,
        rephrase: bool = False,
    ) -> None:
        if session.state == STATE_AWAITING_RULES_ACK:
            await self._send(session.chat_id, GROUP_RULES)
            await self._tell(session, RULES_ACK_PROMPT)
            return
        if session.state == STATE_AWAITING_FOLLOWUP or session.cursor >= len(questions):
            await self._tell(session, self._current_prompt_text(session, questions))
            return

        question = questions[session.cursor]
        text = question.text
        if rephrase and question.type == Q_OPEN:
            await self._typing(session.chat_id, True)
            text = await self.evaluator.rephrase(question, session, settings)
            await self._typing(session.chat_id, False)

        header = f"question {session.cursor + 1}/{len(questions)}: {text}"
        if question.type == Q_CHOICE and question.choices:
            options = "\n".join(f"{i}. {c}" for i, c in enumerate(question.choices, start=1))
            header += f"\n{options}\nReply with the number or the option."

        message_id = await self._tell(session, header)
        if question.type == Q_CHOICE and question.choices and self.selection is not None:
            self.selection.remember(
                message_id,
                session.chat_id,
                "question_choice",
                question.choices,
                "question_choice",
                {"session_id": session.id, "user_id": session.user_id, "question_id": question.id},
            )

    # Ingest

    async def ingest(self, message: InboundMessage) -> IngestResult:
        async with self._serialised(message.chat_id, message.user_id):
            try:
                return await self._ingest_locked(message)
            except StoreError as exc:
                logger.warning("Store failure while handling %s: %s", message.event_id, exc)
                await self._rearm_quietly(message.chat_id, message.user_id)
                return IngestResult(ok=False, error=ERR_TRANSIENT_IO)
            except InvariantViolation as exc:
                logger.error("Invariant violation for %s/%s: %s", message.chat_id, message.user_id, exc)
                await self._rearm_quietly(message.chat_id, message.user_id)
                return IngestResult(ok=False, error=ERR_INVARIANT)

    def _is_duplicate(self, session: Session, message: InboundMessage) -> bool:
        if message.event_id:
            return message.event_id in session.seen_events

        # Without an event id, fall back to the last recorded input.
        raw = (message.text or "").strip()
        records = [*session.answers[-1:], *session.followups[-1:]]
        if not raw or not records:
            return False
        last = max(records, key=lambda r: r.at)
        at = parse_iso(last.at)
        window = timedelta(seconds=DEDUP_WINDOW_SECONDS)
        return last.raw_answer == raw and at is not None and self.clock.now() - at <= window

    async def _rearm_quietly(self, chat_id: str, user_id: str) -> None:
        try:
            session = self.repo.find_open_session(chat_id, user_id)
            if session is not None and session.is_in_progress():
                self.scheduler.arm(session, self.repo.get_settings(chat_id))
        except StoreError as exc:
            logger.warning("Could not re-arm timers for %s/%s: %s", chat_id, user_id, exc)

    async def _ingest_locked(self, message: InboundMessage) -> IngestResult:
        stored = await with_retry(self.repo.find_open_session, message.chat_id, message.user_id)
        if stored is None:
            return IngestResult(ok=False, error=ERR_PRECONDITION, message="session_not_found")
        if not stored.is_in_progress():
            return IngestResult(ok=True, state=stored.state, message=stored.state)
        if self._is_duplicate(stored, message):
            logger.info("Ignoring duplicate event %s for %s", message.event_id or "(no id)", stored.id)
            return IngestResult(ok=True, state=stored.state, message="duplicate")

        # The message wins over any timer about to fire.
        self.scheduler.cancel(stored.id)

        settings = await self._settings(stored.chat_id)
        questions = await self._questions(stored)

        session = Session.from_dict(stored.to_dict())
        if message.event_id:
            session.seen_events = (session.seen_events + [message.event_id])[-SEEN_EVENTS_LIMIT:]
        session.last_activity_at = self.clock.now_iso()

        if session.state == STATE_EVALUATING:
            await self._tell(session, "your answers are being reviewed, please wait a moment.")
            return IngestResult(ok=True, state=session.state)

        if session.cursor > len(questions) or len(session.answers) > len(questions):
            raise InvariantViolation(f"cursor {session.cursor} out of range for {session.id}")

        handlers = {
            STATE_ACTIVE: self._on_answer,
            STATE_AWAITING_FOLLOWUP: self._on_followup,
            STATE_AWAITING_PHOTO: self._on_photo_step,
            STATE_AWAITING_DOB: self._on_dob,
            STATE_AWAITING_RULES_ACK: self._on_rules_ack,
        }
        return await handlers[session.state](session, message, settings, questions)

    async def _reprompt(self, session: Session, settings: Settings, questions: list[Question], text: str) -> IngestResult:
        await self._save(session)
        await self._tell(session, text)
        self.scheduler.arm(session, settings)
        return IngestResult(ok=True, advanced=False, state=session.state)

    async def _on_answer(
        self, session: Session, message: InboundMessage, settings: Settings, questions: list[Question]
    ) -> IngestResult:
        question = questions[session.cursor]
        raw = (message.text or "").strip()
        if not raw:
            return await self._reprompt(session, settings, questions, f"please answer in text: {question.text}")

        if question.type == Q_OPEN and not any(a.raw_answer for a in session.answers if self._is_open(a, questions)):
            name = extract_display_name(raw)
            if name:
                session.display_name = name

        scored = await self.evaluator.score_answer(question, raw, settings)
        session.answers.append(
            Answer(
                question_id=question.id,
                question_text=question.text,
                raw_answer=raw,
                score=scored.score,
                max_score=scored.max_score,
                feedback=scored.feedback,
                at=session.last_activity_at,
            )
        )

        followup = await self.evaluator.maybe_followup(question, raw, session, settings)
        if followup:
            session.pending_followup = PendingFollowup(
                parent_question_id=question.id,
                prompt=followup,
                asked_at=session.last_activity_at,
            )
            session.state = STATE_AWAITING_FOLLOWUP
            await self._save(session)
            await self._tell(session, followup)
            self.scheduler.arm(session, settings)
            return IngestResult(ok=True, advanced=False, state=session.state)

        return await self._advance(session, settings, questions)

    @staticmethod
    def _is_open(answer: Answer, questions: list[Question]) -> bool:
        return any(q.id == answer.question_id and q.type == Q_OPEN for q in questions)

    async def _on_followup(
        self, session: Session, message: InboundMessage, settings: Settings, questions: list[Question]
    ) -> IngestResult:
        raw = (message.text or "").strip()
        pending = session.pending_followup
        if pending is None:
            raise InvariantViolation(f"{session.id} awaits a follow-up without a prompt")
        if not raw:
            return await self._reprompt(session, settings, questions, pending.prompt)

        session.followups.append(
            Followup(
                parent_question_id=pending.parent_question_id,
                prompt=pending.prompt,
                raw_answer=raw,
                at=session.last_activity_at,
            )
        )
        return await self._advance(session, settings, questions)

    async def _on_photo_step(
        self, session: Session, message: InboundMessage, settings: Settings, questions: list[Question]
    ) -> IngestResult:
        if message.has_image:
            session.photo = Photo(mimetype=message.image_mimetype or "image/jpeg", provenance=f"message:{message.event_id}")
            if session.cursor < len(questions) and questions[session.cursor].type == Q_PHOTO:
                question = questions[session.cursor]
                scored = await self.evaluator.score_answer(question, "[photo]", settings)
                session.answers.append(
                    Answer(
                        question_id=question.id,
                        question_text=question.text,
                        raw_answer="[photo]",
                        score=scored.score,
                        max_score=scored.max_score,
                        feedback=scored.feedback,
                        at=session.last_activity_at,
                    )
                )
                return await self._advance(session, settings, questions)
            return await self._enter_rules_ack(session, settings, questions)

        # Text cannot satisfy the photo step; it only uses up the reminder budget.
        if session.reminders_sent < settings.max_reminders:
            session.reminders_sent += 1
        if session.reminders_sent >= settings.max_reminders:
            return await self._conclude(session, settings, STATE_FAILED_TIMEOUT, reason="mandatory_photo_missing")

        remaining = settings.max_reminders - session.reminders_sent
        return await self._reprompt(
            session,
            settings,
            questions,
            f"a photo is mandatory and text can't replace it. Please send a picture of yourself "
            f"({remaining} reminder(s) left).",
        )

    async def _on_dob(
        self, session: Session, message: InboundMessage, settings: Settings, questions: list[Question]
    ) -> IngestResult:
        question = questions[session.cursor]
        raw = (message.text or "").strip()
        if not raw:
            return await self._reprompt(session, settings, questions, question.text)

        await self._typing(session.chat_id, True)
        parsed = await self.evaluator.parse_dob(raw, session.display_name, settings)
        await self._typing(session.chat_id, False)

        if parsed.ok:
            session.dob = parsed.dob
            scored = await self.evaluator.score_answer(question, raw, settings)
            session.answers.append(
                Answer(
                    question_id=question.id,
                    question_text=question.text,
                    raw_answer=raw,
                    score=scored.score,
                    max_score=scored.max_score,
                    feedback=scored.feedback,
                    at=session.last_activity_at,
                )
            )
            return await self._advance(session, settings, questions)

        session.dob_clarifications += 1
        if session.dob_clarifications >= MAX_DOB_CLARIFICATIONS:
            logger.info("Giving up on date of birth for %s after %s tries", session.id, session.dob_clarifications)
            session.answers.append(
                Answer(
                    question_id=question.id,
                    question_text=question.text,
                    raw_answer=raw,
                    score=0.0,
                    max_score=float(question.weight),
                    feedback="Date of birth not understood",
                    at=session.last_activity_at,
                )
            )
            return await self._advance(session, settings, questions)

        return await self._reprompt(session, settings, questions, parsed.clarification or question.text)

    async def _on_rules_ack(
        self, session: Session, message: InboundMessage, settings: Settings, questions: list[Question]
    ) -> IngestResult:
        if is_rules_agreement(message.text or ""):
            session.rules_acknowledged = True
            session.state = STATE_EVALUATING
            await self._save(session)
            await self._tell(session, "thank you! Reviewing your answers now.")
            return await self._evaluate(session, settings)

        if session.rules_ack_attempts < settings.rules_ack_attempts_max:
            session.rules_ack_attempts += 1
        if session.rules_ack_attempts >= settings.rules_ack_attempts_max:
            return await self._conclude(session, settings, STATE_FAILED_TIMEOUT, reason="rules_not_acknowledged")

        return await self._reprompt(
            session,
            settings,
            questions,
            "you need to accept the group rules to join. " + RULES_ACK_PROMPT,
        )

    async def _advance(self, session: Session, settings: Settings, questions: list[Question]) -> IngestResult:
        if len(session.answers) != session.cursor + 1:
            raise InvariantViolation(
                f"{session.id} has {len(session.answers)} answers at cursor {session.cursor}"
            )
        if self.selection is not None and questions[session.cursor].type == Q_CHOICE:
            self.selection.forget_session(session.id, "question_choice")
        session.cursor += 1
        session.pending_followup = None

        if session.cursor < len(questions):
            session.state = state_for_question(questions[session.cursor])
            await self._save(session)
            await self._prompt(session, settings, questions)
            return IngestResult(ok=True, advanced=True, state=session.state)

        if session.photo is None:
            session.state = STATE_AWAITING_PHOTO
            await self._save(session)
            await self._tell(session, "a photo of yourself is required before we can finish. Please send one now.")
            self.scheduler.arm(session, settings)
            return IngestResult(ok=True, advanced=True, state=session.state)

        result = await self._enter_rules_ack(session, settings, questions)
        result.advanced = True
        return result

    async def _enter_rules_ack(self, session: Session, settings: Settings, questions: list[Question]) -> IngestResult:
        session.state = STATE_AWAITING_RULES_ACK
        await self._save(session)
        await self._send_current_prompt(session, settings, questions)
        self.scheduler.arm(session, settings)
        return IngestResult(ok=True, state=session.state)

    # Evaluation and outcomes

    async def _evaluate(self, session: Session, settings: Settings, *, force_fallback: bool = False) -> IngestResult:
        prompt = await with_retry(self.repo.get_eval_prompt, session.chat_id)
        await self._typing(session.chat_id, True)
        verdict = await self.evaluator.final_verdict(session, settings, prompt, force_fallback=force_fallback)
        await self._typing(session.chat_id, False)
        logger.info("Verdict for %s: %s (%s)", session.id, verdict.decision, verdict.score)
        return await self._conclude(session, settings, verdict.outcome_state, verdict=verdict)

    def _build_result(self, session: Session, verdict: Verdict | None, reason: str | None) -> Result:
        score, max_score, percentage = self.evaluator.deterministic_percentage(session)
        started = parse_iso(session.started_at)
        completed = parse_iso(session.completed_at)
        if verdict is not None:
            percentage = verdict.score
        return Result(
            session_id=session.id,
            chat_id=session.chat_id,
            user_id=session.user_id,
            display_name=session.display_name,
            attempt=session.attempt,
            state=session.state,
            verdict=verdict.decision if verdict else VERDICT_REJECT,
            score=score,
            max_score=max_score,
            percentage=percentage,
            feedback=verdict.feedback if verdict else (reason or ""),
            answers=[vars_of(a) for a in session.answers],
            followups=[vars_of(f) for f in session.followups],
            photo_present=session.photo is not None,
            dob=vars_of(session.dob) if session.dob else None,
            rules_acknowledged=session.rules_acknowledged,
            reminders_sent=session.reminders_sent,
            started_at=session.started_at,
            completed_at=session.completed_at or "",
            duration=round((completed - started).total_seconds(), 1) if completed else 0.0,
            fallback=verdict.fallback if verdict else False,
            red_flags=list(verdict.red_flags) if verdict else [],
        )

    async def _conclude(
        self,
        session: Session,
        settings: Settings,
        state: str,
        *,
        verdict: Verdict | None = None,
        reason: str | None = None,
    ) -> IngestResult:
        if state == STATE_APPROVED and (session.photo is None or session.dob is None or not session.dob.is_valid()):
            raise InvariantViolation(f"{session.id} cannot be approved without photo and date of birth")

        score, max_score, percentage = self.evaluator.deterministic_percentage(session)
        previous = session.state
        session.state = state
        session.completed_at = self.clock.now_iso()
        session.end_reason = reason
        session.pending_followup = None
        session.score = score
        session.max_score = max_score
        session.percentage = verdict.score if verdict else percentage
        session.verdict_feedback = verdict.feedback if verdict else reason

        # Result first, session last: a crash in between is repaired by recovery.
        result = None
        if state in RESULT_STATES:
            result = self._build_result(session, verdict, reason)
            if not await with_retry(self.repo.write_result, result):
                logger.info("Result for %s already recorded", session.id)
        await self._save(session)
        self.scheduler.cancel(session.id)

        await self._record_stats(session, state, result, previous)
        await self._dispatch_outcome(session, settings, reason)
        return IngestResult(ok=True, terminal=True, state=state)

    async def _record_stats(self, session: Session, state: str, result: Result | None, previous: str | None = None) -> None:
        counters = {
            STATE_APPROVED: "approved",
            STATE_REJECTED: "rejected",
            STATE_PENDING_REVIEW: "pending_review",
            STATE_FAILED_TIMEOUT: "failed_timeout",
            STATE_EXPIRED: "expired",
        }
        try:
            if previous == STATE_PENDING_REVIEW and state != STATE_PENDING_REVIEW:
                # Leaving the review queue by any path other than an admin decision.
                await with_retry(self.repo.increment_stat, session.chat_id, "pending_review", -1)
            if state in counters:
                await with_retry(self.repo.increment_stat, session.chat_id, counters[state])
            if result is not None and state in (STATE_APPROVED, STATE_REJECTED, STATE_PENDING_REVIEW):
                await with_retry(self.repo.record_score, session.chat_id, result.percentage, result.duration)
        except StoreError as exc:
            logger.warning("Stats update failed for %s: %s", session.id, exc)

    async def _dispatch_outcome(self, session: Session, settings: Settings, reason: str | None) -> None:
        name = session.display_name
        if session.state == STATE_APPROVED:
            await self._send(
                session.chat_id,
                render(
                    settings.pass_template,
                    name=name,
                    score=round(session.percentage or 0),
                    link=settings.main_chat_link or "(ask an admin for the link)",
                ),
                [session.user_id],
            )
            return

        if session.state == STATE_PENDING_REVIEW:
            await self._tell(session, "thanks for completing the interview! An admin will review your answers shortly.")
            return

        if session.state == STATE_EXPIRED:
            await self._tell(
                session,
                f"your interview session has expired. Send {self.command_prefix}interview to start again.",
            )
            return

        if session.state == STATE_TERMINATED:
            if reason != "reset_by_admin":
                await self._tell(session, "your interview was ended by an admin.")
            return

        if session.state == STATE_REJECTED:
            await self._send(session.chat_id, render(settings.fail_template, name=name), [session.user_id])
        elif session.state == STATE_FAILED_TIMEOUT:
            messages = {
                "mandatory_photo_missing": "a photo is mandatory to join, so the interview has ended.",
                "rules_not_acknowledged": "the group rules were not acknowledged, so the interview has ended.",
            }
            await self._tell(session, messages.get(reason or "", "you did not respond in time, so the interview has ended."))

        if settings.auto_remove_on_fail:
            if await self._remove(session.chat_id, session.user_id):
                logger.info("Removed %s from %s after %s", session.user_id, session.chat_id, session.state)
                try:
                    await with_retry(self.repo.increment_stat, session.chat_id, "auto_removed")
                except StoreError as exc:
                    logger.warning("Stats update failed for %s: %s", session.id, exc)

    # Timers and sweeps

    async def on_timer_fire(self, session_id: str, kind: str) -> None:
        actions = {
            TIMER_REMINDER: self.send_reminder,
            TIMER_RESPONSE: self.time_out,
            TIMER_EXPIRY: self.expire,
        }
        action = actions.get(kind)
        if action is None:
            logger.warning("Unknown timer kind %s for %s", kind, session_id)
            return
        await action(session_id, blocking=True)

    async def _locked_action(self, session_id: str, blocking: bool, action) -> bool:
        try:
            session = await with_retry(self.repo.get_session, session_id)
        except StoreError as exc:
            logger.warning("Could not load %s: %s", session_id, exc)
            return False
        if session is None or not session.is_in_progress():
            return False

        lock = self._lock(session.chat_id, session.user_id)
        if not blocking and lock.locked():
            return False

        async with self._serialised(session.chat_id, session.user_id):
            try:
                session = await with_retry(self.repo.get_session, session_id)
                if session is None or not session.is_in_progress():
                    return False
                settings = await self._settings(session.chat_id)
                return await action(session, settings)
            except StoreError as exc:
                logger.warning("Scheduled action on %s aborted: %s", session_id, exc)
                return False
            except InvariantViolation as exc:
                logger.error("Invariant violation on %s: %s", session_id, exc)
                return False

    async def send_reminder(self, session_id: str, *, blocking: bool = True) -> bool:
        return await self._locked_action(session_id, blocking, self._remind_locked)

    async def _remind_locked(self, session: Session, settings: Settings) -> bool:
        now = self.clock.now()
        if not reminder_due(session, settings, now):
            if response_timed_out(session, settings, now):
                return await self._time_out_locked(session, settings)
            self.scheduler.arm(session, settings)
            return False

        # The persisted counter is the idempotency token; bump it before sending.
        session.reminders_sent += 1
        session.last_reminder_at = now.isoformat()
        await self._save(session)

        questions = await self._questions(session)
        prompt = self._current_prompt_text(session, questions)
        await self._tell(
            session,
            f"reminder {session.reminders_sent}/{settings.max_reminders}: we're still waiting for your answer.\n{prompt}",
        )
        self.scheduler.arm(session, settings)
        return True

    async def time_out(self, session_id: str, *, blocking: bool = True) -> bool:
        return await self._locked_action(session_id, blocking, self._time_out_locked)

    async def _time_out_locked(self, session: Session, settings: Settings) -> bool:
        now = self.clock.now()
        if not response_timed_out(session, settings, now):
            if reminder_due(session, settings, now):
                return await self._remind_locked(session, settings)
            self.scheduler.arm(session, settings)
            return False
        await self._conclude(session, settings, STATE_FAILED_TIMEOUT, reason="no_response")
        return True

    async def expire(self, session_id: str, *, blocking: bool = True) -> bool:
        return await self._locked_action(session_id, blocking, self._expire_locked)

    async def _expire_locked(self, session: Session, settings: Settings) -> bool:
        if not expired(session, self.clock.now()):
            return False
        await self._conclude(session, settings, STATE_EXPIRED, reason="session_expired")
        return True

    async def reconcile_evaluating(self, session_id: str, *, blocking: bool = True) -> bool:
        return await self._locked_action(session_id, blocking, self._reconcile_locked)

    async def _reconcile_locked(self, session: Session, settings: Settings) -> bool:
        if session.state != STATE_EVALUATING:
            return False

        existing = await with_retry(self.repo.get_result, session.id)
        if existing is not None:
            verdict = Verdict(
                decision=existing.verdict,
                score=existing.percentage,
                feedback=existing.feedback,
                outcome_state=existing.state,
                fallback=existing.fallback,
                red_flags=list(existing.red_flags),
            )
            logger.info("Completing %s from its recorded result (%s)", session.id, existing.state)
            await self._conclude(session, settings, existing.state, verdict=verdict)
            return True

        logger.info("Re-evaluating stuck session %s with fallback scoring", session.id)
        await self._evaluate(session, settings, force_fallback=True)
        return True

    # Membership

    async def on_membership_change(self, chat_id: str, user_id: str, change: str, name: str = "") -> StartResult | None:
        if change == "joined":
            return await self.start(chat_id, user_id, name or user_id)

        if change == "left":
            try:
                session = await with_retry(self.repo.find_open_session, chat_id, user_id)
            except StoreError as exc:
                logger.warning("Could not look up %s after leaving %s: %s", user_id, chat_id, exc)
                return None
            if session is not None:
                self.scheduler.cancel(session.id)
                logger.info("Candidate %s left %s; session %s paused", user_id, chat_id, session.id)
        return None

    # Queries

    async def status(self, chat_id: str, user_id: str) -> StatusSnapshot:
        try:
            session = await with_retry(self.repo.find_open_session, chat_id, user_id)
            if session is None:
                session = await with_retry(self.repo.latest_session, chat_id, user_id)
        except StoreError as exc:
            logger.warning("Status lookup failed for %s/%s: %s", chat_id, user_id, exc)
            return StatusSnapshot(found=False)
        if session is None:
            return StatusSnapshot(found=False)

        return StatusSnapshot(
            found=True,
            state=session.state,
            cursor=session.cursor,
            total_questions=len(session.question_ids),
            answers=len(session.answers),
            followups=len(session.followups),
            reminders_sent=session.reminders_sent,
            attempt=session.attempt,
            photo_present=session.photo is not None,
            dob_present=session.dob is not None,
            started_at=session.started_at,
            expires_at=session.expires_at,
            percentage=session.percentage,
        )

    async def transcript(self, chat_id: str, user_id: str) -> Session | None:
        try:
            return await with_retry(self.repo.latest_session, chat_id, user_id)
        except StoreError as exc:
            logger.warning("Transcript lookup failed for %s/%s: %s", chat_id, user_id, exc)
            return None

    # Admin actions

    async def admin(self, chat_id: str, user_id: str, action: str, actor_id: str = "") -> AdminResult:
        if action not in ADMIN_ACTIONS:
            return AdminResult(status="error", error=ERR_PRECONDITION, message=f"unknown action {action}")

        async with self._serialised(chat_id, user_id):
            try:
                return await self._admin_locked(chat_id, user_id, action, actor_id)
            except StoreError as exc:
                logger.warning("Admin %s on %s/%s aborted: %s", action, chat_id, user_id, exc)
                await self._rearm_quietly(chat_id, user_id)
                return AdminResult(status="error", error=ERR_TRANSIENT_IO)
            except InvariantViolation as exc:
                logger.error("Admin %s on %s/%s violated an invariant: %s", action, chat_id, user_id, exc)
                await self._rearm_quietly(chat_id, user_id)
                return AdminResult(status="error", error=ERR_INVARIANT)

    async def _admin_locked(self, chat_id: str, user_id: str, action: str, actor_id: str) -> AdminResult:
        session = await with_retry(self.repo.find_open_session, chat_id, user_id)
        settings = await self._settings(chat_id)

        if action == "reset":
            if session is not None:
                await self._conclude(session, settings, STATE_TERMINATED, reason="reset_by_admin")
            latest = await with_retry(self.repo.latest_session, chat_id, user_id)
            name = latest.push_name if latest else user_id
            started = await self._start_locked(chat_id, user_id, name)
            return AdminResult(status="ok", state=started.status, message=started.status)

        if session is None:
            return AdminResult(status="not_found", message="session_not_found")

        self.scheduler.cancel(session.id)
        session.last_activity_at = self.clock.now_iso()

        if action == "end":
            result = await self._conclude(session, settings, STATE_TERMINATED, reason="ended_by_admin")
            return AdminResult(status="ok", state=result.state)

        if action == "skip":
            return await self._admin_skip(session, settings)

        if action == "approve":
            if session.photo is None:
                self.scheduler.arm(session, settings)
                return AdminResult(status="forbidden", state=session.state, message="mandatory_photo_missing")
            if session.dob is None or not session.dob.is_valid():
                self.scheduler.arm(session, settings)
                return AdminResult(status="forbidden", state=session.state, message="dob_missing")
            return await self._admin_decide(session, settings, STATE_APPROVED, actor_id)

        return await self._admin_decide(session, settings, STATE_REJECTED, actor_id)

    async def _admin_skip(self, session: Session, settings: Settings) -> AdminResult:
        if session.state in (STATE_EVALUATING, STATE_PENDING_REVIEW, STATE_AWAITING_RULES_ACK):
            self.scheduler.arm(session, settings)
            return AdminResult(status="forbidden", state=session.state, message="nothing_to_skip")

        questions = await self._questions(session)
        if session.state == STATE_AWAITING_FOLLOWUP:
            result = await self._advance(session, settings, questions)
            return AdminResult(status="ok", state=result.state)

        if session.cursor >= len(questions) or questions[session.cursor].type == Q_PHOTO:
            # The photo step is mandatory and cannot be skipped.
            self.scheduler.arm(session, settings)
            return AdminResult(status="forbidden", state=session.state, message="mandatory_photo_missing")

        question = questions[session.cursor]
        session.answers.append(
            Answer(
                question_id=question.id,
                question_text=question.text,
                raw_answer="",
                score=0.0,
                max_score=float(question.weight),
                feedback="Skipped by admin",
                at=session.last_activity_at,
            )
        )
        result = await self._advance(session, settings, questions)
        return AdminResult(status="ok", state=result.state)

    async def _admin_decide(self, session: Session, settings: Settings, state: str, actor_id: str) -> AdminResult:
        decision = VERDICT_APPROVE if state == STATE_APPROVED else VERDICT_REJECT
        review = {"decision": decision, "by": actor_id, "at": self.clock.now_iso()}

        if session.state == STATE_PENDING_REVIEW:
            # The Result stays as recorded; the admin decision lives on the session.
            session.state = state
            session.review = review
            session.completed_at = session.completed_at or self.clock.now_iso()
            await self._save(session)
            try:
                await with_retry(self.repo.increment_stat, session.chat_id, "pending_review", -1)
                await with_retry(self.repo.increment_stat, session.chat_id, "approved" if decision == VERDICT_APPROVE else "rejected")
            except StoreError as exc:
                logger.warning("Stats update failed for %s: %s", session.id, exc)
            await self._dispatch_outcome(session, settings, "admin_decision")
            return AdminResult(status="ok", state=state)

        _, _, percentage = self.evaluator.deterministic_percentage(session)
        session.review = review
        verdict = Verdict(
            decision=decision,
            score=percentage,
            feedback=f"{'Approved' if state == STATE_APPROVED else 'Rejected'} by admin",
            outcome_state=state,
        )
        result = await self._conclude(session, settings, state, verdict=verdict, reason="admin_decision")
        return AdminResult(status="ok", state=result.state)


def vars_of(record: Any) -> dict[str, Any]:
    return {name: getattr(record, name) for name in record.__slots__}
