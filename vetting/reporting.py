from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import Question, Result, Session, Settings, Stats, StatusSnapshot, parse_iso

STATE_DISPLAY = {
    "active": "answering questions",
    "awaiting_photo": "waiting for a photo",
    "awaiting_dob": "waiting for date of birth",
    "awaiting_followup": "answering a follow-up",
    "awaiting_rules_ack": "waiting for rules acknowledgement",
    "evaluating": "being evaluated",
    "pending_review": "waiting for admin review",
    "approved": "approved",
    "rejected": "rejected",
    "failed_timeout": "failed (no response)",
    "terminated": "ended by an admin",
    "expired": "expired",
}


def chunk_text(text: str, limit: int = 3800) -> list[str]:
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    cursor = 0
    while cursor < len(text):
        next_cursor = min(cursor + limit, len(text))
        if next_cursor < len(text):
            split = text.rfind("\n", cursor, next_cursor)
            if split > cursor:
                next_cursor = split
        chunks.append(text[cursor:next_cursor].strip())
        cursor = next_cursor
    return [c for c in chunks if c]


def _clip(text: str, limit: int = 140) -> str:
    text = " ".join((text or "").split())
    if len(text) > limit:
        return text[: limit - 1].rstrip() + "…"
    return text


def _minutes(seconds: int) -> str:
    return f"{seconds // 60} min"


class ReportBuilder:
    """Plain-text renderings for chat replies plus JSON transcript exports."""

    def __init__(self, exports_dir: Path | None = None) -> None:
        self.exports_dir = exports_dir

    @staticmethod
    def state_display(state: str | None) -> str:
        return STATE_DISPLAY.get(state or "", str(state))

    def build_status(self, snapshot: StatusSnapshot, prefix: str = ".") -> str:
        if not snapshot.found:
            return f"You have no interview yet. Send {prefix}interview to start."

        lines = [
            f"Interview status: {self.state_display(snapshot.state)}",
            f"Attempt: {snapshot.attempt}",
            f"Progress: {min(snapshot.cursor, snapshot.total_questions)}/{snapshot.total_questions} questions",
            f"Photo: {'received' if snapshot.photo_present else 'missing'}",
            f"Date of birth: {'received' if snapshot.dob_present else 'missing'}",
        ]
        if snapshot.followups:
            lines.append(f"Follow-ups answered: {snapshot.followups}")
        if snapshot.reminders_sent:
            lines.append(f"Reminders sent: {snapshot.reminders_sent}")
        if snapshot.percentage is not None:
            lines.append(f"Score: {snapshot.percentage:.0f}%")
        expires = parse_iso(snapshot.expires_at)
        if expires is not None and snapshot.state not in ("approved", "rejected", "expired"):
            lines.append(f"Expires: {expires.strftime('%Y-%m-%d %H:%M')} UTC")
        return "\n".join(lines)

    def build_transcript(self, session: Session, result: Result | None = None) -> str:
        lines = [
            f"Transcript for {session.display_name} ({session.user_id})",
            f"State: {self.state_display(session.state)} | attempt {session.attempt}",
        ]
        if session.percentage is not None:
            lines.append(f"Score: {session.percentage:.0f}%")
        if result is not None and result.red_flags:
            lines.append("Red flags: " + ", ".join(result.red_flags))
        if session.verdict_feedback:
            lines.append(f"Feedback: {session.verdict_feedback}")
        if session.review:
            lines.append(f"Admin decision: {session.review.get('decision')} by {session.review.get('by') or 'unknown'}")
        lines.append("")

        followups: dict[str, list[Any]] = {}
        for item in session.followups:
            followups.setdefault(item.parent_question_id, []).append(item)

        for idx, answer in enumerate(session.answers, start=1):
            lines.append(f"{idx}. {answer.question_text}")
            lines.append(f"   > {_clip(answer.raw_answer) or '(skipped)'}  [{answer.score:g}/{answer.max_score:g}]")
            for item in followups.get(answer.question_id, []):
                lines.append(f"   Follow-up: {item.prompt}")
                lines.append(f"   > {_clip(item.raw_answer)}")

        if not session.answers:
            lines.append("No answers yet.")

        lines.append("")
        lines.append(f"Photo: {'yes' if session.photo else 'no'}")
        if session.dob is not None:
            year = f"/{session.dob.year}" if session.dob.year else ""
            lines.append(f"Date of birth: {session.dob.day}/{session.dob.month}{year}")
        else:
            lines.append("Date of birth: missing")
        lines.append(f"Rules acknowledged: {'yes' if session.rules_acknowledged else 'no'}")
        return "\n".join(lines).strip()

    @staticmethod
    def build_pending(sessions: list[Session]) -> tuple[str, list[str]]:
        if not sessions:
            return "No interviews are waiting for review.", []

        lines = ["Interviews waiting for review:"]
        options: list[str] = []
        for idx, session in enumerate(sessions, start=1):
            score = f"{session.percentage:.0f}%" if session.percentage is not None else "n/a"
            lines.append(f"{idx}. {session.display_name} ({session.user_id}) - {score}")
            options.append(session.user_id)
        lines.append("")
        lines.append("Reply to this message with a number to open the transcript.")
        return "\n".join(lines), options

    @staticmethod
    def build_stats(stats: Stats, pending_now: int) -> str:
        decided = stats.approved + stats.rejected
        pass_rate = f"{100.0 * stats.approved / decided:.0f}%" if decided else "n/a"
        lines = [
            "Interview statistics",
            f"Started: {stats.total}",
            f"Approved: {stats.approved}",
            f"Rejected: {stats.rejected}",
            f"Pending review: {pending_now}",
            f"Failed (no response): {stats.failed_timeout}",
            f"Expired: {stats.expired}",
            f"Auto-removed: {stats.auto_removed}",
            f"Pass rate: {pass_rate}",
        ]
        if stats.scored:
            lines.append(f"Average score: {stats.avg_score:.1f}%")
            lines.append(f"Average duration: {stats.avg_duration / 60:.1f} min")
        return "\n".join(lines)

    @staticmethod
    def build_settings(settings: Settings, custom_prompt: bool) -> str:
        exempt = ", ".join(settings.exempt_operators) or "none"
        return "\n".join(
            [
                "Interview settings",
                f"Enabled: {'yes' if settings.enabled else 'no'}",
                f"Pass threshold: {settings.pass_threshold}%",
                f"Max attempts: {settings.max_retries}",
                f"Reminders: {settings.max_reminders} every {_minutes(settings.reminder_timeout)}",
                f"Response grace: {_minutes(settings.response_timeout)}",
                f"Session expiry: {settings.session_expiry // 3600} h",
                f"Auto-remove on fail: {'on' if settings.auto_remove_on_fail else 'off'}",
                f"AI evaluation: {'on' if settings.use_llm else 'off'}",
                f"Main chat link: {settings.main_chat_link or 'not set'}",
                f"Evaluation prompt: {'custom' if custom_prompt else 'default'}",
                f"Exempt: {exempt}",
            ]
        )

    @staticmethod
    def build_questions(questions: list[Question]) -> str:
        lines = ["Interview questions:"]
        for idx, q in enumerate(questions, start=1):
            extra = f" [{', '.join(q.choices)}]" if q.choices else ""
            lines.append(f"{idx}. ({q.id}, {q.type}, w{q.weight:g}) {q.text}{extra}")
        return "\n".join(lines)

    def export_transcript(self, session: Session, result: Result | None = None) -> Path | None:
        if self.exports_dir is None:
            return None

        generated_at = datetime.now(timezone.utc)
        timestamp = generated_at.strftime("%Y%m%d_%H%M%S")
        safe_id = session.id.replace(":", "_").replace("@", "_")
        export_path = self.exports_dir / f"{safe_id}_{timestamp}.json"

        payload = {
            "version": "1.0",
            "generated_at": generated_at.isoformat(),
            "session": session.to_dict(),
            "result": result.to_dict() if result else None,
        }
        with export_path.open("w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
        return export_path
