from __future__ import annotations

from typing import Any

from .constants import COLLECTIONS, DEFAULT_EVAL_PROMPT, FAILED_STATES, OPEN_STATES, STATE_PENDING_REVIEW
from .database import Store, utc_now_iso
from .models import EvaluationPrompt, Result, Session, Settings, Stats


class Repository:
    """Typed accessors for the interview collections."""

    def __init__(self, store: Store) -> None:
        self.store = store
        self.sessions = COLLECTIONS["sessions"]
        self.settings = COLLECTIONS["settings"]
        self.results = COLLECTIONS["results"]
        self.stats = COLLECTIONS["stats"]
        self.eval_prompts = COLLECTIONS["eval_prompts"]

    # Settings

    def get_settings(self, chat_id: str) -> Settings:
        doc = self.store.get(self.settings, chat_id)
        if doc is None:
            return Settings(chat_id=chat_id)
        return Settings.from_dict(doc)

    def save_settings(self, settings: Settings) -> None:
        self.store.upsert(self.settings, settings.chat_id, settings.to_dict())

    # Sessions

    def get_session(self, session_id: str) -> Session | None:
        doc = self.store.get(self.sessions, session_id)
        return Session.from_dict(doc) if doc else None

    def save_session(self, session: Session) -> None:
        self.store.upsert(self.sessions, session.key, session.to_dict())

    def find_open_session(self, chat_id: str, user_id: str) -> Session | None:
        docs = self.store.find(
            self.sessions,
            {"chat_id": chat_id, "user_id": user_id, "state": {"$in": OPEN_STATES}},
            order_by=[("started_at", -1)],
            limit=1,
        )
        return Session.from_dict(docs[0]) if docs else None

    def latest_session(self, chat_id: str, user_id: str) -> Session | None:
        docs = self.store.find(
            self.sessions,
            {"chat_id": chat_id, "user_id": user_id},
            order_by=[("started_at", -1)],
            limit=1,
        )
        return Session.from_dict(docs[0]) if docs else None

    def list_user_sessions(self, chat_id: str, user_id: str) -> list[Session]:
        docs = self.store.find(
            self.sessions,
            {"chat_id": chat_id, "user_id": user_id},
            order_by=[("started_at", 1)],
        )
        return [Session.from_dict(d) for d in docs]

    def count_user_sessions(self, chat_id: str, user_id: str) -> int:
        return self.store.count(self.sessions, {"chat_id": chat_id, "user_id": user_id})

    def count_failed_attempts(self, chat_id: str, user_id: str) -> int:
        return self.store.count(
            self.sessions,
            {"chat_id": chat_id, "user_id": user_id, "state": {"$in": FAILED_STATES}},
        )

    def find_sessions(self, states: list[str], chat_id: str | None = None) -> list[Session]:
        filt: dict[str, Any] = {"state": {"$in": states}}
        if chat_id is not None:
            filt["chat_id"] = chat_id
        docs = self.store.find(self.sessions, filt, order_by=[("last_activity_at", 1)])
        return [Session.from_dict(d) for d in docs]

    def pending_reviews(self, chat_id: str) -> list[Session]:
        return self.find_sessions([STATE_PENDING_REVIEW], chat_id=chat_id)

    # Results

    def get_result(self, session_id: str) -> Result | None:
        doc = self.store.get(self.results, session_id)
        return Result.from_dict(doc) if doc else None

    def write_result(self, result: Result) -> bool:
        """Write a Result once; returns ``False`` if one already exists."""
        if self.store.get(self.results, result.session_id) is not None:
            return False
        self.store.upsert(self.results, result.session_id, result.to_dict())
        return True

    def count_results(self, chat_id: str) -> int:
        return self.store.count(self.results, {"chat_id": chat_id})

    # Stats

    def get_stats(self, chat_id: str) -> Stats:
        doc = self.store.get(self.stats, chat_id)
        return Stats.from_dict(doc) if doc else Stats(chat_id=chat_id)

    def increment_stat(self, chat_id: str, field: str, delta: int = 1) -> None:
        self.store.atomic_increment(self.stats, chat_id, field, delta, defaults=Stats(chat_id=chat_id).to_dict())

    def record_score(self, chat_id: str, percentage: float, duration: float) -> Stats:
        stats = self.get_stats(chat_id)
        stats.scored += 1
        stats.avg_score = round(stats.avg_score + (percentage - stats.avg_score) / stats.scored, 2)
        stats.avg_duration = round(stats.avg_duration + (duration - stats.avg_duration) / stats.scored, 1)
        self.store.upsert(self.stats, chat_id, stats.to_dict())
        return stats

    # Evaluation prompts

    def get_eval_prompt(self, chat_id: str) -> str:
        doc = self.store.get(self.eval_prompts, chat_id)
        if doc is None:
            return DEFAULT_EVAL_PROMPT
        return EvaluationPrompt.from_dict(doc).template

    def has_custom_eval_prompt(self, chat_id: str) -> bool:
        return self.store.get(self.eval_prompts, chat_id) is not None

    def set_eval_prompt(self, chat_id: str, template: str, updated_by: str) -> EvaluationPrompt:
        prompt = EvaluationPrompt(chat_id=chat_id, template=template, updated_by=updated_by, updated_at=utc_now_iso())
        self.store.upsert(self.eval_prompts, chat_id, prompt.to_dict())
        return prompt

    def reset_eval_prompt(self, chat_id: str) -> bool:
        return self.store.delete(self.eval_prompts, chat_id)
