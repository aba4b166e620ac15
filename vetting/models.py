from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any

from .constants import DEFAULT_SETTINGS, FINAL_STATES, IN_PROGRESS_STATES, OPEN_STATES


def _known_fields(cls: type, payload: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {key: value for key, value in payload.items() if key in names}


@dataclass(slots=True)
class Answer:
    question_id: str
    question_text: str
    raw_answer: str
    score: float
    max_score: float
    feedback: str
    at: str

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Answer:
        return cls(**_known_fields(cls, payload))


@dataclass(slots=True)
class Followup:
    parent_question_id: str
    prompt: str
    raw_answer: str
    at: str

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Followup:
        return cls(**_known_fields(cls, payload))


@dataclass(slots=True)
class PendingFollowup:
    parent_question_id: str
    prompt: str
    asked_at: str

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PendingFollowup:
        return cls(**_known_fields(cls, payload))


@dataclass(slots=True)
class Photo:
    mimetype: str
    provenance: str

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Photo:
        return cls(**_known_fields(cls, payload))


@dataclass(slots=True)
class Dob:
    day: int
    month: int
    year: int | None = None

    def is_valid(self) -> bool:
        return 1 <= self.day <= 31 and 1 <= self.month <= 12

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Dob:
        return cls(**_known_fields(cls, payload))


@dataclass(slots=True)
class Question:
    id: str
    text: str
    type: str
    required: bool = True
    weight: float = 10
    choices: list[str] | None = None
    correct_value: str | None = None
    ai_criteria: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Question:
        return cls(**_known_fields(cls, payload))


@dataclass(slots=True)
class Settings:
    chat_id: str
    enabled: bool = DEFAULT_SETTINGS["enabled"]
    main_chat_link: str = DEFAULT_SETTINGS["main_chat_link"]
    welcome_template: str = DEFAULT_SETTINGS["welcome_template"]
    pass_template: str = DEFAULT_SETTINGS["pass_template"]
    fail_template: str = DEFAULT_SETTINGS["fail_template"]
    questions_ref: str = DEFAULT_SETTINGS["questions_ref"]
    pass_threshold: int = DEFAULT_SETTINGS["pass_threshold"]
    max_retries: int = DEFAULT_SETTINGS["max_retries"]
    max_reminders: int = DEFAULT_SETTINGS["max_reminders"]
    response_timeout: int = DEFAULT_SETTINGS["response_timeout"]
    reminder_timeout: int = DEFAULT_SETTINGS["reminder_timeout"]
    session_expiry: int = DEFAULT_SETTINGS["session_expiry"]
    rules_ack_attempts_max: int = DEFAULT_SETTINGS["rules_ack_attempts_max"]
    exempt_operators: list[str] = field(default_factory=list)
    auto_remove_on_fail: bool = DEFAULT_SETTINGS["auto_remove_on_fail"]
    use_llm: bool = DEFAULT_SETTINGS["use_llm"]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Settings:
        return cls(**_known_fields(cls, payload))


@dataclass(slots=True)
class Session:
    id: str
    chat_id: str
    user_id: str
    display_name: str
    push_name: str
    state: str
    attempt: int
    started_at: str
    expires_at: str
    last_activity_at: str
    questions_ref: str
    question_ids: list[str]
    cursor: int = 0
    answers: list[Answer] = field(default_factory=list)
    followups: list[Followup] = field(default_factory=list)
    pending_followup: PendingFollowup | None = None
    photo: Photo | None = None
    dob: Dob | None = None
    dob_clarifications: int = 0
    rules_acknowledged: bool = False
    rules_ack_attempts: int = 0
    reminders_sent: int = 0
    last_reminder_at: str | None = None
    seen_events: list[str] = field(default_factory=list)
    score: float | None = None
    max_score: float | None = None
    percentage: float | None = None
    verdict_feedback: str | None = None
    completed_at: str | None = None
    end_reason: str | None = None
    review: dict[str, Any] | None = None

    @property
    def key(self) -> str:
        return self.id

    def is_in_progress(self) -> bool:
        return self.state in IN_PROGRESS_STATES

    def is_open(self) -> bool:
        return self.state in OPEN_STATES

    def is_final(self) -> bool:
        return self.state in FINAL_STATES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Session:
        data = _known_fields(cls, payload)
        data["answers"] = [Answer.from_dict(a) for a in data.get("answers") or []]
        data["followups"] = [Followup.from_dict(f) for f in data.get("followups") or []]
        if data.get("pending_followup"):
            data["pending_followup"] = PendingFollowup.from_dict(data["pending_followup"])
        if data.get("photo"):
            data["photo"] = Photo.from_dict(data["photo"])
        if data.get("dob"):
            data["dob"] = Dob.from_dict(data["dob"])
        return cls(**data)


@dataclass(slots=True)
class Result:
    session_id: str
    chat_id: str
    user_id: str
    display_name: str
    attempt: int
    state: str
    verdict: str
    score: float
    max_score: float
    percentage: float
    feedback: str
    answers: list[dict[str, Any]]
    followups: list[dict[str, Any]]
    photo_present: bool
    dob: dict[str, Any] | None
    rules_acknowledged: bool
    reminders_sent: int
    started_at: str
    completed_at: str
    duration: float
    fallback: bool = False
    red_flags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Result:
        return cls(**_known_fields(cls, payload))


@dataclass(slots=True)
class Stats:
    chat_id: str
    total: int = 0
    approved: int = 0
    rejected: int = 0
    auto_removed: int = 0
    pending_review: int = 0
    failed_timeout: int = 0
    expired: int = 0
    scored: int = 0
    avg_score: float = 0.0
    avg_duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Stats:
        return cls(**_known_fields(cls, payload))


@dataclass(slots=True)
class EvaluationPrompt:
    chat_id: str
    template: str
    updated_by: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> EvaluationPrompt:
        return cls(**_known_fields(cls, payload))


@dataclass(slots=True)
class SelectionContext:
    message_id: str
    chat_id: str
    kind: str
    options: list[str]
    handler_ref: str
    expires_at: float
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SelectionContext:
        return cls(**_known_fields(cls, payload))


@dataclass(slots=True)
class QuotedMessage:
    id: str
    text: str = ""
    sender_id: str | None = None


@dataclass(slots=True)
class InboundMessage:
    event_id: str
    chat_id: str
    user_id: str
    name: str
    text: str | None = None
    image_mimetype: str | None = None
    quoted: QuotedMessage | None = None
    mentions: list[str] = field(default_factory=list)

    @property
    def has_image(self) -> bool:
        return self.image_mimetype is not None


@dataclass(slots=True)
class LLMResult:
    ok: bool
    data: dict[str, Any] | None = None
    err: str | None = None


@dataclass(slots=True)
class ScoredAnswer:
    score: float
    max_score: float
    feedback: str
    source: str


@dataclass(slots=True)
class DobParse:
    dob: Dob | None = None
    clarification: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.dob is not None


@dataclass(slots=True)
class Verdict:
    decision: str
    score: float
    feedback: str
    outcome_state: str
    fallback: bool = False
    red_flags: list[str] = field(default_factory=list)


@dataclass(slots=True)
class StartResult:
    status: str
    session_id: str | None = None
    error: str | None = None
    message: str | None = None


@dataclass(slots=True)
class IngestResult:
    ok: bool
    advanced: bool = False
    terminal: bool = False
    state: str | None = None
    error: str | None = None
    message: str | None = None


@dataclass(slots=True)
class AdminResult:
    status: str
    state: str | None = None
    error: str | None = None
    message: str | None = None


@dataclass(slots=True)
class StatusSnapshot:
    found: bool
    state: str | None = None
    cursor: int = 0
    total_questions: int = 0
    answers: int = 0
    followups: int = 0
    reminders_sent: int = 0
    attempt: int = 0
    photo_present: bool = False
    dob_present: bool = False
    started_at: str | None = None
    expires_at: str | None = None
    percentage: float | None = None


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)
