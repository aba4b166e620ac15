from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import date
from typing import Any, Literal, Type, TypeVar

from openai import APIError, APITimeoutError, AsyncOpenAI, RateLimitError
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .constants import ERR_LLM_UNAVAILABLE, ERR_SCHEMA_VIOLATION
from .models import LLMResult
from .rate_limiter import TokenBucket

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class LLMServiceError(RuntimeError):
    pass


class ScorePayload(BaseModel):
    decision: Literal["APPROVE", "REJECT", "REVIEW"]
    score: float = Field(ge=0, le=100)
    feedback: str = ""

    @field_validator("decision", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("feedback")
    @classmethod
    def _clip(cls, value: str) -> str:
        return value.strip()[:150]


class DobPayload(BaseModel):
    day: int | None = Field(default=None, ge=1, le=31)
    month: int | None = Field(default=None, ge=1, le=12)
    year: int | None = Field(default=None, ge=1900, le=2100)
    clarification: str | None = None

    @model_validator(mode="after")
    def _check_date(self) -> DobPayload:
        if self.day is None or self.month is None:
            if not (self.clarification or "").strip():
                raise ValueError("either day/month or clarification is required")
            return self
        # 2000 is a leap year, so 29 February passes when the year is unknown.
        date(self.year or 2000, self.month, self.day)
        return self


class FollowupPayload(BaseModel):
    followup: str = ""


class RephrasePayload(BaseModel):
    question: str = Field(min_length=3)


class AnswerScorePayload(BaseModel):
    score: float = Field(ge=0, le=10)
    feedback: str = ""

    @field_validator("feedback")
    @classmethod
    def _clip(cls, value: str) -> str:
        return value.strip()[:150]


T = TypeVar("T", bound=BaseModel)


class LLMClient:
    """Best-effort chat-completions client.

    Every public operation returns an :class:`LLMResult`; transport failures,
    timeouts and malformed payloads are reported as ``err`` instead of raised.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        base_url: str | None = None,
        timeout: float = 18.0,
        limiter: TokenBucket | None = None,
        client: Any | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.limiter = limiter or TokenBucket()
        if client is not None:
            self.client = client
        elif api_key:
            self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0, timeout=timeout)
        else:
            self.client = None

    @property
    def available(self) -> bool:
        return self.client is not None

    async def _create_with_retry(self, **kwargs: Any) -> Any:
        delay = 0.5
        last_error: Exception | None = None

        for attempt in range(3):
            try:
                return await self.client.chat.completions.create(**kwargs)
            except (RateLimitError, APITimeoutError) as exc:
                last_error = exc
                logger.warning(
                    "LLM transient error (%s), retry %s/3",
                    exc.__class__.__name__,
                    attempt + 1,
                )
            except APIError as exc:
                last_error = exc
                retriable = (getattr(exc, "status_code", None) or 500) >= 500
                if not retriable:
                    break
                logger.warning("LLM APIError retry %s/3: %s", attempt + 1, exc)
            if attempt < 2:
                await asyncio.sleep(delay)
                delay *= 2

        raise LLMServiceError(f"LLM request failed after retries: {last_error}")

    @staticmethod
    def _extract_text(response: Any) -> str:
        choices = getattr(response, "choices", None)
        if choices is None and isinstance(response, dict):
            choices = response.get("choices")
        if not choices:
            raise LLMServiceError("LLM response had no choices")

        first = choices[0]
        message = getattr(first, "message", None)
        if message is None and isinstance(first, dict):
            message = first.get("message")
        content = getattr(message, "content", None)
        if content is None and isinstance(message, dict):
            content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            raise LLMServiceError("LLM returned empty content")
        return content.strip()

    @staticmethod
    def _extract_json(raw_text: str) -> dict[str, Any]:
        raw_text = raw_text.strip()
        fenced = _FENCE_RE.search(raw_text)
        if fenced:
            raw_text = fenced.group(1).strip()

        try:
            payload = json.loads(raw_text)
        except json.JSONDecodeError:
            match = re.search(r"\{.*\}", raw_text, re.DOTALL)
            if not match:
                raise LLMServiceError("Model output was not valid JSON")
            try:
                payload = json.loads(match.group(0))
            except json.JSONDecodeError as exc:
                raise LLMServiceError(f"Model output JSON parse failed: {exc}") from exc

        if not isinstance(payload, dict):
            raise LLMServiceError("Model output JSON must be an object")
        return payload

    async def _call(
        self,
        label: str,
        schema: Type[T],
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float,
        max_tokens: int,
    ) -> LLMResult:
        if self.client is None:
            return LLMResult(ok=False, err=ERR_LLM_UNAVAILABLE)

        if not await self.limiter.acquire():
            logger.warning("LLM rate limit reached, skipping %s", label)
            return LLMResult(ok=False, err=ERR_LLM_UNAVAILABLE)

        try:
            response = await asyncio.wait_for(
                self._create_with_retry(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    temperature=temperature,
                    max_tokens=max_tokens,
                ),
                timeout=self.timeout,
            )
            payload = self._extract_json(self._extract_text(response))
        except asyncio.TimeoutError:
            logger.warning("LLM %s timed out after %ss", label, self.timeout)
            return LLMResult(ok=False, err=ERR_LLM_UNAVAILABLE)
        except LLMServiceError as exc:
            logger.warning("LLM %s failed: %s", label, exc)
            return LLMResult(ok=False, err=ERR_LLM_UNAVAILABLE)
        except Exception:
            logger.exception("Unexpected LLM failure on %s", label)
            return LLMResult(ok=False, err=ERR_LLM_UNAVAILABLE)

        try:
            validated = schema.model_validate(payload)
        except ValidationError as exc:
            logger.warning("LLM %s returned an invalid payload: %s", label, exc.errors()[:3])
            return LLMResult(ok=False, err=ERR_SCHEMA_VIOLATION)

        return LLMResult(ok=True, data=validated.model_dump())

    async def parse_dob(self, text: str, display_name: str) -> LLMResult:
        system_prompt = (
            "You extract a date of birth from a chat message. "
            'Reply with JSON only: {"day": 1-31, "month": 1-12, "year": null or number}. '
            "If the day or month cannot be determined, reply "
            '{"day": null, "month": null, "year": null, "clarification": "<one short question>"}.'
        )
        user_prompt = json.dumps({"candidate": display_name, "message": text}, ensure_ascii=True)
        return await self._call("parse_dob", DobPayload, system_prompt, user_prompt, temperature=0.0, max_tokens=120)

    async def generate_followup(
        self,
        question_text: str,
        raw_answer: str,
        recent_turns: list[dict[str, str]],
        display_name: str,
    ) -> LLMResult:
        system_prompt = (
            "You are a warm, concise community interviewer. "
            "Ask at most one short follow-up question that invites the candidate to elaborate "
            "on their last answer. "
            'Reply with JSON only: {"followup": "<question>"}; use an empty string if no follow-up is needed.'
        )
        user_prompt = json.dumps(
            {
                "candidate": display_name,
                "question": question_text,
                "answer": raw_answer,
                "recent_turns": recent_turns,
                "constraints": {"max_words": 25, "one_question_only": True},
            },
            ensure_ascii=True,
        )
        return await self._call(
            "generate_followup", FollowupPayload, system_prompt, user_prompt, temperature=0.7, max_tokens=120
        )

    async def rephrase_question(self, question_text: str, display_name: str) -> LLMResult:
        system_prompt = (
            "Rephrase the interview question so it sounds natural in a friendly chat. "
            "Keep the meaning and keep it to one sentence. "
            'Reply with JSON only: {"question": "<text>"}.'
        )
        user_prompt = json.dumps({"candidate": display_name, "question": question_text}, ensure_ascii=True)
        return await self._call(
            "rephrase_question", RephrasePayload, system_prompt, user_prompt, temperature=0.8, max_tokens=100
        )

    async def score_answer(self, question_text: str, criteria: str, raw_answer: str) -> LLMResult:
        system_prompt = (
            "You grade one answer from a community membership interview against the given criteria. "
            'Reply with JSON only: {"score": 0-10, "feedback": "at most 150 characters"}.'
        )
        user_prompt = json.dumps(
            {"question": question_text, "criteria": criteria, "answer": raw_answer},
            ensure_ascii=True,
        )
        return await self._call(
            "score_answer", AnswerScorePayload, system_prompt, user_prompt, temperature=0.2, max_tokens=150
        )

    async def score_interview(
        self,
        flattened_responses: str,
        photo_present: bool,
        prompt_template: str,
    ) -> LLMResult:
        system_prompt = (
            "You are a calibrated reviewer for community membership interviews. "
            "Base the decision only on the candidate's answers."
        )
        user_prompt = prompt_template.replace("${responses}", flattened_responses)
        user_prompt += f"\n\nPhoto provided: {'yes' if photo_present else 'no'}"
        return await self._call(
            "score_interview", ScorePayload, system_prompt, user_prompt, temperature=0.2, max_tokens=300
        )
