from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable

from telegram.ext import ContextTypes, Job, JobQueue

logger = logging.getLogger(__name__)

TimerCallback = Callable[[str, str], Awaitable[None]]


class Clock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def now_iso(self) -> str:
        return self.now().isoformat()

    def monotonic(self) -> float:
        return time.monotonic()


@dataclass(slots=True, frozen=True)
class _TimerData:
    session_id: str
    kind: str
    callback: TimerCallback


class TimerService:
    """Named one-shot timers keyed by ``(session_id, kind)``, run on the bot's job queue.

    Arming a timer replaces any pending timer of the same key. Each fire runs
    as its own job, so a slow callback never delays another session's timer.
    """

    def __init__(self, job_queue: JobQueue) -> None:
        self.job_queue = job_queue

    @staticmethod
    def _name(session_id: str, kind: str) -> str:
        return f"{session_id}:{kind}"

    def _timer_jobs(self) -> list[Job]:
        return [job for job in self.job_queue.jobs() if isinstance(job.data, _TimerData) and not job.removed]

    def arm(self, session_id: str, kind: str, delay: float, callback: TimerCallback) -> None:
        self.cancel(session_id, kind)
        self.job_queue.run_once(
            self._run,
            when=max(delay, 0.0),
            name=self._name(session_id, kind),
            data=_TimerData(session_id, kind, callback),
        )

    @staticmethod
    async def _run(context: ContextTypes.DEFAULT_TYPE) -> None:
        timer: _TimerData = context.job.data
        try:
            await timer.callback(timer.session_id, timer.kind)
        except Exception:
            logger.exception("Timer callback failed for %s/%s", timer.session_id, timer.kind)

    def cancel(self, session_id: str, kind: str | None = None) -> None:
        if kind is not None:
            jobs = self.job_queue.get_jobs_by_name(self._name(session_id, kind))
        else:
            jobs = [job for job in self._timer_jobs() if job.data.session_id == session_id]
        for job in jobs:
            job.schedule_removal()

    def cancel_all(self) -> None:
        for job in self._timer_jobs():
            job.schedule_removal()

    def pending(self, session_id: str) -> list[str]:
        return sorted(job.data.kind for job in self._timer_jobs() if job.data.session_id == session_id)
