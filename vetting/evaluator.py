from __future__ import annotations

import logging
import random
import re
from datetime import date
from typing import Any

from .constants import (
    AGREE_MARKERS,
    DISAGREE_MARKERS,
    FALLBACK_FEEDBACK,
    FALLBACK_SCORE,
    FOLLOWUP_MIN_WORDS,
    FOLLOWUP_PROBABILITY,
    MAX_FOLLOWUPS,
    NO_WORDS,
    Q_BOOLEAN,
    Q_CHOICE,
    Q_DOB,
    Q_OPEN,
    Q_PHOTO,
    REVIEW_BAND,
    STATE_APPROVED,
    STATE_PENDING_REVIEW,
    STATE_REJECTED,
    VERDICT_APPROVE,
    VERDICT_REJECT,
    VERDICT_REVIEW,
    YES_WORDS,
)
from .llm_service import LLMClient
from .models import Dob, DobParse, Question, ScoredAnswer, Session, Settings, Verdict

logger = logging.getLogger(__name__)

MONTHS = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}

DOB_CLARIFICATION = "I couldn't read that date. Please send your day and month of birth, for example 8/12."

_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_NUMERIC_DATE_RE = re.compile(r"\b(\d{1,2})\s*[/\-.]\s*(\d{1,2})(?:\s*[/\-.]\s*(\d{2,4}))?\b")
_DAY_MONTH_RE = re.compile(r"\b(\d{1,2})(?:st|nd|rd|th)?\s+(?:of\s+)?([a-z]{3,9})\b(?:,?\s+(\d{4}))?")
_MONTH_DAY_RE = re.compile(r"\b([a-z]{3,9})\.?\s+(\d{1,2})(?:st|nd|rd|th)?\b(?:,?\s+(\d{4}))?")


def normalise_boolean(text: str) -> bool | None:
    cleaned = re.sub(r"[^a-z\s]", " ", (text or "").lower()).split()
    if not cleaned:
        return None
    if cleaned[0] in YES_WORDS:
        return True
    if cleaned[0] in NO_WORDS:
        return False
    if any(word in YES_WORDS for word in cleaned) and not any(word in NO_WORDS for word in cleaned):
        return True
    if any(word in NO_WORDS for word in cleaned):
        return False
    return None


def _has_marker(text: str, markers: list[str]) -> bool:
    return any(re.search(r"\b" + re.escape(marker) + r"\b", text) for marker in markers)


def is_rules_agreement(text: str) -> bool:
    lowered = re.sub(r"\s+", " ", (text or "").lower().replace("\u2019", "'")).strip()
    if not lowered or _has_marker(lowered, DISAGREE_MARKERS):
        return False
    return _has_marker(lowered, AGREE_MARKERS)


def word_count(text: str) -> int:
    return len((text or "").split())


def length_heuristic(raw_answer: str, weight: float) -> float:
    words = word_count(raw_answer)
    if words < 5:
        return round(weight * 0.3, 2)
    if words < 20:
        return round(weight * 0.7, 2)
    return float(weight)


def _month_from_name(name: str) -> int | None:
    return MONTHS.get(name[:3].lower()) if len(name) >= 3 else None


def _full_year(raw: str | None) -> int | None:
    if not raw:
        return None
    year = int(raw)
    if year < 100:
        current = date.today().year % 100
        year += 1900 if year > current else 2000
    return year


def _valid_dob(day: int, month: int, year: int | None) -> Dob | None:
    try:
        date(year or 2000, month, day)
    except ValueError:
        return None
    if year is not None and not 1900 <= year <= date.today().year:
        return None
    return Dob(day=day, month=month, year=year)


def parse_dob_text(text: str) -> Dob | None:
    """Deterministic day-first date parsing; returns ``None`` when ambiguous."""
    lowered = (text or "").lower()

    # A pattern that matches something other than a real date (a time such as
    # "5.30") falls through to the next one.
    match = _ISO_DATE_RE.search(lowered)
    if match:
        dob = _valid_dob(int(match.group(3)), int(match.group(2)), int(match.group(1)))
        if dob:
            return dob

    match = _NUMERIC_DATE_RE.search(lowered)
    if match:
        dob = _valid_dob(int(match.group(1)), int(match.group(2)), _full_year(match.group(3)))
        if dob:
            return dob

    match = _DAY_MONTH_RE.search(lowered)
    if match:
        month = _month_from_name(match.group(2))
        dob = _valid_dob(int(match.group(1)), month, _full_year(match.group(3))) if month else None
        if dob:
            return dob

    match = _MONTH_DAY_RE.search(lowered)
    if match:
        month = _month_from_name(match.group(1))
        if month:
            return _valid_dob(int(match.group(2)), month, _full_year(match.group(3)))

    return None


def match_choice(raw_answer: str, choices: list[str]) -> str | None:
    cleaned = (raw_answer or "").strip()
    if cleaned.isdigit():
        index = int(cleaned)
        if 1 <= index <= len(choices):
            return choices[index - 1]

    lowered = cleaned.lower()
    for option in choices:
        if option.lower() in lowered:
            return option
    return None


class Evaluator:
    def __init__(
        self,
        llm: LLMClient,
        *,
        rng: random.Random | None = None,
        followup_probability: float = FOLLOWUP_PROBABILITY,
    ) -> None:
        self.llm = llm
        self.rng = rng or random.Random()
        self.followup_probability = followup_probability

    def _llm_enabled(self, settings: Settings) -> bool:
        return settings.use_llm and self.llm.available

    async def score_answer(self, question: Question, raw_answer: str, settings: Settings) -> ScoredAnswer:
        weight = float(question.weight)
        if question.type not in (Q_PHOTO,) and not (raw_answer or "").strip():
            return ScoredAnswer(score=0.0, max_score=weight, feedback="Empty answer", source="rule")

        if question.type == Q_BOOLEAN:
            value = normalise_boolean(raw_answer)
            if value is None:
                return ScoredAnswer(score=0.0, max_score=weight, feedback="Unclear yes/no answer", source="rule")
            expected = normalise_boolean(question.correct_value) if question.correct_value else None
            if expected is not None and value != expected:
                return ScoredAnswer(score=0.0, max_score=weight, feedback="Answer does not match", source="rule")
            return ScoredAnswer(score=weight, max_score=weight, feedback="", source="rule")

        if question.type == Q_CHOICE:
            selected = match_choice(raw_answer, question.choices or [])
            if selected is not None:
                return ScoredAnswer(score=weight, max_score=weight, feedback=f"Chose {selected}", source="rule")
            return ScoredAnswer(score=round(weight * 0.5, 2), max_score=weight, feedback="Unlisted choice", source="rule")

        if question.type in (Q_PHOTO, Q_DOB):
            return ScoredAnswer(score=weight, max_score=weight, feedback="", source="rule")

        if self._llm_enabled(settings) and question.ai_criteria:
            result = await self.llm.score_answer(question.text, question.ai_criteria, raw_answer)
            if result.ok and result.data is not None:
                score = round(weight * float(result.data["score"]) / 10.0, 2)
                return ScoredAnswer(
                    score=min(max(score, 0.0), weight),
                    max_score=weight,
                    feedback=str(result.data.get("feedback", "")),
                    source="llm",
                )
            logger.warning("Per-answer LLM scoring failed (%s), using fallback", result.err)
            return ScoredAnswer(score=round(weight * 0.7, 2), max_score=weight, feedback="Fallback score", source="fallback")

        return ScoredAnswer(
            score=length_heuristic(raw_answer, weight),
            max_score=weight,
            feedback="",
            source="heuristic",
        )

    async def parse_dob(self, text: str, display_name: str, settings: Settings) -> DobParse:
        dob = parse_dob_text(text)
        if dob is not None:
            return DobParse(dob=dob)

        if not self._llm_enabled(settings):
            return DobParse(clarification=DOB_CLARIFICATION)

        result = await self.llm.parse_dob(text, display_name)
        if not result.ok or result.data is None:
            return DobParse(clarification=DOB_CLARIFICATION, error=result.err)

        data = result.data
        if data.get("day") and data.get("month"):
            dob = _valid_dob(int(data["day"]), int(data["month"]), data.get("year"))
            if dob is not None:
                return DobParse(dob=dob)

        clarification = (data.get("clarification") or "").strip() or DOB_CLARIFICATION
        return DobParse(clarification=clarification)

    async def maybe_followup(
        self,
        question: Question,
        raw_answer: str,
        session: Session,
        settings: Settings,
    ) -> str | None:
        if question.type != Q_OPEN or not self._llm_enabled(settings):
            return None
        if len(session.followups) + (1 if session.pending_followup else 0) >= MAX_FOLLOWUPS:
            return None
        if word_count(raw_answer) < FOLLOWUP_MIN_WORDS:
            return None
        if self.rng.random() >= self.followup_probability:
            return None

        recent_turns = [
            {"question": a.question_text, "answer": a.raw_answer} for a in session.answers[-3:]
        ]
        result = await self.llm.generate_followup(question.text, raw_answer, recent_turns, session.display_name)
        if not result.ok or result.data is None:
            return None
        prompt = str(result.data.get("followup", "")).strip()
        return prompt or None

    async def rephrase(self, question: Question, session: Session, settings: Settings) -> str:
        if question.type != Q_OPEN or not self._llm_enabled(settings):
            return question.text
        result = await self.llm.rephrase_question(question.text, session.display_name)
        if not result.ok or result.data is None:
            return question.text
        return str(result.data.get("question") or question.text).strip()

    @staticmethod
    def red_flags(session: Session) -> list[str]:
        flags: list[str] = []
        if session.photo is None:
            flags.append("photo_missing")
        if session.dob is None or not session.dob.is_valid():
            flags.append("dob_missing")
        if not session.rules_acknowledged:
            flags.append("rules_not_acknowledged")
        return flags

    @staticmethod
    def deterministic_percentage(session: Session) -> tuple[float, float, float]:
        score = sum(a.score for a in session.answers)
        max_score = sum(a.max_score for a in session.answers)
        percentage = round(100.0 * score / max_score, 1) if max_score else 0.0
        return score, max_score, percentage

    @staticmethod
    def flatten_responses(session: Session) -> str:
        lines: list[str] = []
        followups: dict[str, list[Any]] = {}
        for item in session.followups:
            followups.setdefault(item.parent_question_id, []).append(item)

        for idx, answer in enumerate(session.answers, start=1):
            lines.append(f"Q{idx}: {answer.question_text}")
            lines.append(f"A{idx}: {answer.raw_answer}")
            for item in followups.get(answer.question_id, []):
                lines.append(f"Follow-up: {item.prompt}")
                lines.append(f"Answer: {item.raw_answer}")
        return "\n".join(lines)

    @staticmethod
    def fallback_verdict() -> Verdict:
        return Verdict(
            decision=VERDICT_REVIEW,
            score=FALLBACK_SCORE,
            feedback=FALLBACK_FEEDBACK,
            outcome_state=STATE_PENDING_REVIEW,
            fallback=True,
        )

    @staticmethod
    def _deterministic_verdict(percentage: float, settings: Settings) -> Verdict:
        if percentage >= settings.pass_threshold:
            return Verdict(VERDICT_APPROVE, percentage, "Passed the automatic checks.", STATE_APPROVED)
        return Verdict(VERDICT_REVIEW, percentage, "Below the pass threshold; needs a manual review.", STATE_PENDING_REVIEW)

    @staticmethod
    def verdict_from_llm(data: dict[str, Any], settings: Settings) -> Verdict:
        decision = str(data["decision"])
        score = float(data["score"])
        feedback = str(data.get("feedback", ""))

        if decision == VERDICT_REJECT or score < settings.pass_threshold - REVIEW_BAND:
            return Verdict(VERDICT_REJECT, score, feedback, STATE_REJECTED)
        if decision == VERDICT_APPROVE and score >= settings.pass_threshold:
            return Verdict(VERDICT_APPROVE, score, feedback, STATE_APPROVED)
        return Verdict(VERDICT_REVIEW, score, feedback, STATE_PENDING_REVIEW)

    async def final_verdict(
        self,
        session: Session,
        settings: Settings,
        prompt_template: str,
        *,
        force_fallback: bool = False,
    ) -> Verdict:
        _, _, percentage = self.deterministic_percentage(session)

        flags = self.red_flags(session)
        if flags:
            return Verdict(
                decision=VERDICT_REJECT,
                score=percentage,
                feedback="Mandatory step missing: " + ", ".join(flags),
                outcome_state=STATE_REJECTED,
                red_flags=flags,
            )

        if force_fallback:
            return self.fallback_verdict()

        if not self._llm_enabled(settings):
            return self._deterministic_verdict(percentage, settings)

        result = await self.llm.score_interview(
            self.flatten_responses(session),
            session.photo is not None,
            prompt_template,
        )
        if not result.ok or result.data is None:
            logger.warning("Interview scoring unavailable for %s (%s), using fallback", session.id, result.err)
            return self.fallback_verdict()

        return self.verdict_from_llm(result.data, settings)
