from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from .constants import COLLECTIONS, DEFAULT_QUESTIONS, QUESTION_TYPES, Q_CHOICE, Q_DOB, Q_PHOTO
from .database import Store
from .models import Question

logger = logging.getLogger(__name__)

DEFAULT_REF = "default"


class QuestionBankError(RuntimeError):
    pass


def _load_json(path: Path) -> list[dict[str, Any]]:
    with path.open("r", encoding="utf-8") as f:
        payload = json.load(f)
    if isinstance(payload, dict):
        payload = payload.get("questions")
    if not isinstance(payload, list):
        raise QuestionBankError(f"Question file must hold a list of questions: {path}")
    return payload


def validate_bank(questions: list[Question]) -> None:
    if not questions:
        raise QuestionBankError("Question bank is empty")

    ids = [q.id for q in questions]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise QuestionBankError(f"Duplicate question ids: {', '.join(duplicates)}")

    for q in questions:
        if q.type not in QUESTION_TYPES:
            raise QuestionBankError(f"Question {q.id} has unknown type {q.type!r}")
        if not q.text.strip():
            raise QuestionBankError(f"Question {q.id} has no text")
        if q.weight < 0:
            raise QuestionBankError(f"Question {q.id} has a negative weight")
        if q.type == Q_CHOICE and not q.choices:
            raise QuestionBankError(f"Choice question {q.id} needs options")

    # Approval needs a photo and a date of birth, so both steps must exist.
    for required_type in (Q_PHOTO, Q_DOB):
        count = sum(1 for q in questions if q.type == required_type)
        if count != 1:
            raise QuestionBankError(f"Question bank needs exactly one {required_type} question, found {count}")


def load_default_questions(path: Path | None = None) -> list[Question]:
    if path is not None and path.exists():
        raw = _load_json(path)
        source = str(path)
    else:
        raw = DEFAULT_QUESTIONS
        source = "built-in defaults"

    try:
        questions = [Question.from_dict(item) for item in raw]
    except TypeError as exc:
        raise QuestionBankError(f"Invalid question entry in {source}: {exc}") from exc

    validate_bank(questions)
    logger.info("Loaded %s default questions from %s", len(questions), source)
    return questions


def _slug(text: str) -> str:
    words = re.findall(r"[a-z0-9]+", text.lower())[:4]
    return "_".join(words) or "question"


class QuestionBank:
    """Per-chat ordered question lists.

    Every edit stores a new version under a fresh ``ref``; older versions are
    kept so sessions that started on them can still resolve their questions.
    """

    def __init__(self, store: Store, defaults: list[Question]) -> None:
        self.store = store
        self.defaults = defaults
        self.collection = COLLECTIONS["questions"]

    def _doc(self, chat_id: str) -> dict[str, Any]:
        return self.store.get(self.collection, chat_id) or {"chat_id": chat_id, "current": DEFAULT_REF, "versions": {}}

    def current_ref(self, chat_id: str) -> str:
        return self._doc(chat_id)["current"]

    def questions_for(self, chat_id: str, ref: str | None = None) -> list[Question]:
        doc = self._doc(chat_id)
        ref = ref or doc["current"]
        if ref == DEFAULT_REF:
            return list(self.defaults)
        raw = doc["versions"].get(ref)
        if raw is None:
            logger.warning("Question bank %s missing for chat %s, using defaults", ref, chat_id)
            return list(self.defaults)
        return [Question.from_dict(item) for item in raw]

    def _save(self, chat_id: str, questions: list[Question]) -> str:
        validate_bank(questions)
        doc = self._doc(chat_id)
        ref = f"v{len(doc['versions']) + 1}"
        doc["versions"][ref] = [q.to_dict() for q in questions]
        doc["current"] = ref
        self.store.upsert(self.collection, chat_id, doc)
        return ref

    def add(
        self,
        chat_id: str,
        qtype: str,
        text: str,
        choices: list[str] | None = None,
        weight: float = 10,
    ) -> Question:
        if qtype not in QUESTION_TYPES:
            raise QuestionBankError(f"Unknown question type {qtype!r}; use one of {', '.join(QUESTION_TYPES)}")

        questions = self.questions_for(chat_id)
        existing = {q.id for q in questions}
        base = _slug(text)
        qid = base
        n = 2
        while qid in existing:
            qid = f"{base}_{n}"
            n += 1

        question = Question(
            id=qid,
            text=text.strip(),
            type=qtype,
            weight=weight,
            choices=choices or None,
            correct_value="yes" if qtype == "boolean" else None,
        )
        self._save(chat_id, questions + [question])
        return question

    def remove(self, chat_id: str, question_id: str) -> Question:
        questions = self.questions_for(chat_id)
        match = next((q for q in questions if q.id == question_id), None)
        if match is None:
            raise QuestionBankError(f"No question with id {question_id}")
        self._save(chat_id, [q for q in questions if q.id != question_id])
        return match

    def move(self, chat_id: str, question_id: str, position: int) -> list[Question]:
        questions = self.questions_for(chat_id)
        match = next((q for q in questions if q.id == question_id), None)
        if match is None:
            raise QuestionBankError(f"No question with id {question_id}")
        if not 1 <= position <= len(questions):
            raise QuestionBankError(f"Position must be between 1 and {len(questions)}")

        reordered = [q for q in questions if q.id != question_id]
        reordered.insert(position - 1, match)
        self._save(chat_id, reordered)
        return reordered

    def replace(self, chat_id: str, questions: list[Question]) -> str:
        return self._save(chat_id, questions)

    def reset(self, chat_id: str) -> None:
        doc = self._doc(chat_id)
        doc["current"] = DEFAULT_REF
        self.store.upsert(self.collection, chat_id, doc)
