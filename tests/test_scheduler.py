from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import CHAT, USER, make_session
from vetting.constants import (
    STATE_ACTIVE,
    STATE_APPROVED,
    STATE_AWAITING_RULES_ACK,
    STATE_EVALUATING,
    STATE_EXPIRED,
    STATE_FAILED_TIMEOUT,
    STATE_PENDING_REVIEW,
)
from vetting.models import Answer, Dob, Photo, Result
from vetting.scheduler import idle_since, reminder_due, response_timed_out


def _ago(clock, seconds: float) -> str:
    return (clock.now() - timedelta(seconds=seconds)).isoformat()


def _complete_session(clock, state: str, **overrides):
    answer = Answer(
        question_id="intro",
        question_text="Tell us about yourself",
        raw_answer="I like chess",
        score=8.0,
        max_score=10.0,
        feedback="",
        at=clock.now_iso(),
    )
    return make_session(
        clock,
        state=state,
        question_ids=["intro"],
        cursor=1,
        answers=[answer],
        photo=Photo(mimetype="image/jpeg", provenance="message:1"),
        dob=Dob(day=8, month=12, year=1999),
        rules_acknowledged=True,
        **overrides,
    )


def test_idle_since_prefers_latest_reminder(clock):
    session = make_session(clock, last_activity_at=_ago(clock, 900), last_reminder_at=_ago(clock, 100))
    assert idle_since(session) == clock.now() - timedelta(seconds=100)


def test_reminder_and_timeout_predicates(clock, settings):
    session = make_session(clock, last_activity_at=_ago(clock, settings.reminder_timeout))
    assert reminder_due(session, settings, clock.now()) is True
    assert response_timed_out(session, settings, clock.now()) is False

    session.reminders_sent = settings.max_reminders
    session.last_reminder_at = _ago(clock, settings.response_timeout)
    assert reminder_due(session, settings, clock.now()) is False
    assert response_timed_out(session, settings, clock.now()) is True

    session.state = STATE_EVALUATING
    assert response_timed_out(session, settings, clock.now()) is False


@pytest.mark.asyncio
async def test_repeated_sweeps_send_one_reminder(manager, scheduler, repo, settings, transport, clock):
    session = _complete_session(clock, STATE_AWAITING_RULES_ACK, last_activity_at=_ago(clock, 2 * 3600))
    session.rules_acknowledged = False
    repo.save_session(session)

    first, second = await asyncio.gather(scheduler.reminder_sweep(), scheduler.reminder_sweep())
    third = await scheduler.reminder_sweep()

    assert first["reminded"] + second["reminded"] + third["reminded"] == 1
    assert repo.get_session(session.id).reminders_sent == 1
    reminders = [text for text in transport.texts() if "reminder 1/" in text]
    assert len(reminders) == 1


@pytest.mark.asyncio
async def test_sweep_skips_session_busy_with_a_message(manager, scheduler, repo, settings, transport, clock):
    session = _complete_session(clock, STATE_AWAITING_RULES_ACK, last_activity_at=_ago(clock, 2 * 3600))
    session.rules_acknowledged = False
    repo.save_session(session)

    async with manager._lock(CHAT, USER):
        counts = await scheduler.reminder_sweep()

    assert counts["skipped"] == 1
    assert counts["reminded"] == 0
    assert transport.sent == []
    assert repo.get_session(session.id).reminders_sent == 0


@pytest.mark.asyncio
async def test_sweep_times_out_after_last_reminder(manager, scheduler, repo, settings, clock):
    session = make_session(
        clock,
        reminders_sent=settings.max_reminders,
        last_activity_at=_ago(clock, 3 * 3600),
        last_reminder_at=_ago(clock, settings.response_timeout + 5),
    )
    repo.save_session(session)

    counts = await scheduler.reminder_sweep()

    assert counts["timed_out"] == 1
    stored = repo.get_session(session.id)
    assert stored.state == STATE_FAILED_TIMEOUT
    assert stored.end_reason == "no_response"


@pytest.mark.asyncio
async def test_recover_rearms_in_progress_sessions(manager, scheduler, repo, settings, timers, clock):
    session = make_session(clock, state=STATE_ACTIVE)
    repo.save_session(session)
    repo.save_session(make_session(clock, seq=2, state=STATE_FAILED_TIMEOUT))

    rearmed = await scheduler.recover()

    assert rearmed == 1
    assert timers.pending(session.id) == ["expiry", "reminder"]
    assert timers.pending(f"{CHAT}:{USER}:2") == []


@pytest.mark.asyncio
async def test_recover_falls_back_for_interrupted_evaluation(manager, scheduler, repo, settings, llm, clock):
    session = _complete_session(clock, STATE_EVALUATING)
    repo.save_session(session)

    await scheduler.recover()

    stored = repo.get_session(session.id)
    assert stored.state == STATE_PENDING_REVIEW
    recorded = repo.get_result(session.id)
    assert recorded.fallback is True
    assert recorded.percentage == 70
    assert "score_interview" not in llm.calls


@pytest.mark.asyncio
async def test_recover_adopts_recorded_result(manager, scheduler, repo, settings, clock):
    session = _complete_session(clock, STATE_EVALUATING)
    repo.save_session(session)
    repo.write_result(
        Result(
            session_id=session.id,
            chat_id=CHAT,
            user_id=USER,
            display_name="Sam",
            attempt=1,
            state=STATE_APPROVED,
            verdict="APPROVE",
            score=8.0,
            max_score=10.0,
            percentage=88.0,
            feedback="Great fit",
            answers=[],
            followups=[],
            photo_present=True,
            dob={"day": 8, "month": 12, "year": 1999},
            rules_acknowledged=True,
            reminders_sent=0,
            started_at=session.started_at,
            completed_at=clock.now_iso(),
            duration=0.0,
        )
    )

    await scheduler.recover()

    stored = repo.get_session(session.id)
    assert stored.state == STATE_APPROVED
    assert stored.percentage == 88.0
    assert repo.get_result(session.id).feedback == "Great fit"
    assert repo.count_results(CHAT) == 1
    assert repo.get_stats(CHAT).approved == 1


@pytest.mark.asyncio
async def test_sweep_reevaluates_only_stuck_evaluations(manager, scheduler, repo, settings, clock):
    fresh = _complete_session(clock, STATE_EVALUATING, last_activity_at=_ago(clock, 60))
    repo.save_session(fresh)

    counts = await scheduler.reminder_sweep()
    assert counts["reevaluated"] == 0
    assert repo.get_session(fresh.id).state == STATE_EVALUATING

    clock.advance(15 * 60)
    counts = await scheduler.reminder_sweep()
    assert counts["reevaluated"] == 1
    assert repo.get_session(fresh.id).state == STATE_PENDING_REVIEW


@pytest.mark.asyncio
async def test_expiry_sweep(manager, scheduler, repo, settings, clock):
    stale = make_session(clock, expires_at=_ago(clock, 10))
    live = make_session(clock, seq=2, user_id="5151", id=f"{CHAT}:5151:1")
    repo.save_session(stale)
    repo.save_session(live)

    assert await scheduler.expiry_sweep() == 1
    assert await scheduler.expiry_sweep() == 0

    assert repo.get_session(stale.id).state == STATE_EXPIRED
    assert repo.get_session(live.id).state == STATE_ACTIVE
    assert repo.get_stats(CHAT).expired == 1


def test_arm_switches_to_response_timer_after_last_reminder(scheduler, settings, timers, clock):
    session = make_session(clock, reminders_sent=settings.max_reminders, last_reminder_at=clock.now_iso())

    scheduler.arm(session, settings)

    assert timers.pending(session.id) == ["expiry", "response"]
    assert timers.armed[(session.id, "response")] == settings.response_timeout
