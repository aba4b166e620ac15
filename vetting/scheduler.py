from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from .clock import Clock, TimerService
from .constants import (
    IN_PROGRESS_STATES,
    STATE_EVALUATING,
    STUCK_EVALUATION_SECONDS,
    TIMER_EXPIRY,
    TIMER_REMINDER,
    TIMER_RESPONSE,
)
from .database import StoreError, with_retry
from .models import Session, Settings, parse_iso
from .repository import Repository

if TYPE_CHECKING:
    from .session_manager import SessionManager

logger = logging.getLogger(__name__)

# Timer jobs may fire a hair early; treat that as on time.
_TOLERANCE = timedelta(seconds=1)

_WAITING_STATES = [s for s in IN_PROGRESS_STATES if s != STATE_EVALUATING]


def idle_since(session: Session) -> datetime:
    """Latest of last activity and last reminder: the start of the current wait."""
    activity = parse_iso(session.last_activity_at)
    reminder = parse_iso(session.last_reminder_at)
    if reminder is not None and reminder > activity:
        return reminder
    return activity


def reminder_due(session: Session, settings: Settings, now: datetime) -> bool:
    if session.state not in _WAITING_STATES:
        return False
    if session.reminders_sent >= settings.max_reminders:
        return False
    return now + _TOLERANCE >= idle_since(session) + timedelta(seconds=settings.reminder_timeout)


def response_timed_out(session: Session, settings: Settings, now: datetime) -> bool:
    if session.state not in _WAITING_STATES:
        return False
    if session.reminders_sent < settings.max_reminders:
        return False
    return now + _TOLERANCE >= idle_since(session) + timedelta(seconds=settings.response_timeout)


def expired(session: Session, now: datetime) -> bool:
    return session.is_in_progress() and now + _TOLERANCE >= parse_iso(session.expires_at)


class Scheduler:
    """Timer chain per session plus the periodic reminder and expiry sweeps.

    In-memory timers only reduce latency; the sweeps read persisted
    timestamps and are authoritative, so a restart loses nothing.
    """

    def __init__(self, repo: Repository, clock: Clock, timers: TimerService) -> None:
        self.repo = repo
        self.clock = clock
        self.timers = timers
        self._manager: SessionManager | None = None

    def bind(self, manager: SessionManager) -> None:
        self._manager = manager

    @property
    def manager(self) -> SessionManager:
        if self._manager is None:
            raise RuntimeError("Scheduler is not bound to a SessionManager")
        return self._manager

    async def _fire(self, session_id: str, kind: str) -> None:
        await self.manager.on_timer_fire(session_id, kind)

    def cancel(self, session_id: str) -> None:
        self.timers.cancel(session_id)

    def arm(self, session: Session, settings: Settings) -> None:
        """Arm the wait timers for a session from its persisted timestamps."""
        self.timers.cancel(session.id, TIMER_REMINDER)
        self.timers.cancel(session.id, TIMER_RESPONSE)
        if session.state not in _WAITING_STATES:
            return

        now = self.clock.now()
        start = idle_since(session)
        if session.reminders_sent < settings.max_reminders:
            due = start + timedelta(seconds=settings.reminder_timeout)
            self.timers.arm(session.id, TIMER_REMINDER, (due - now).total_seconds(), self._fire)
        else:
            due = start + timedelta(seconds=settings.response_timeout)
            self.timers.arm(session.id, TIMER_RESPONSE, (due - now).total_seconds(), self._fire)

        expires_at = parse_iso(session.expires_at)
        self.timers.arm(session.id, TIMER_EXPIRY, (expires_at - now).total_seconds(), self._fire)

    async def reminder_sweep(self) -> dict[str, int]:
        """Send due reminders, fail exhausted sessions, re-evaluate stuck ones."""
        counts = {"reminded": 0, "timed_out": 0, "reevaluated": 0, "skipped": 0}
        try:
            sessions = await with_retry(self.repo.find_sessions, IN_PROGRESS_STATES)
        except StoreError as exc:
            logger.warning("Reminder sweep could not read sessions: %s", exc)
            return counts

        now = self.clock.now()
        settings_cache: dict[str, Settings] = {}
        stuck_before = now - timedelta(seconds=STUCK_EVALUATION_SECONDS)

        for session in sessions:
            settings = settings_cache.get(session.chat_id)
            if settings is None:
                settings = await with_retry(self.repo.get_settings, session.chat_id)
                settings_cache[session.chat_id] = settings

            if session.state == STATE_EVALUATING:
                if parse_iso(session.last_activity_at) <= stuck_before:
                    outcome = await self.manager.reconcile_evaluating(session.id, blocking=False)
                    counts["reevaluated" if outcome else "skipped"] += 1
                continue

            if reminder_due(session, settings, now):
                outcome = await self.manager.send_reminder(session.id, blocking=False)
                counts["reminded" if outcome else "skipped"] += 1
            elif response_timed_out(session, settings, now):
                outcome = await self.manager.time_out(session.id, blocking=False)
                counts["timed_out" if outcome else "skipped"] += 1

        if counts["reminded"] or counts["timed_out"] or counts["reevaluated"]:
            logger.info("Reminder sweep: %s", counts)
        return counts

    async def expiry_sweep(self) -> int:
        try:
            sessions = await with_retry(self.repo.find_sessions, IN_PROGRESS_STATES)
        except StoreError as exc:
            logger.warning("Expiry sweep could not read sessions: %s", exc)
            return 0

        now = self.clock.now()
        count = 0
        for session in sessions:
            if expired(session, now) and await self.manager.expire(session.id, blocking=False):
                count += 1
        if count:
            logger.info("Expiry sweep expired %s session(s)", count)
        return count

    async def recover(self) -> int:
        """Rebuild timers after a restart and finish interrupted evaluations."""
        sessions = await with_retry(self.repo.find_sessions, IN_PROGRESS_STATES)
        rearmed = 0
        for session in sessions:
            if session.state == STATE_EVALUATING:
                await self.manager.reconcile_evaluating(session.id, blocking=True)
                continue
            settings = await with_retry(self.repo.get_settings, session.chat_id)
            self.arm(session, settings)
            rearmed += 1
        logger.info("Recovered %s in-progress interview session(s)", rearmed)
        return rearmed

    def shutdown(self) -> None:
        self.timers.cancel_all()
