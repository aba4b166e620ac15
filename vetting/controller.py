from __future__ import annotations

import asyncio
import dataclasses
import logging

from .constants import HELP_TEXT, QUESTION_TYPES, STATE_ACTIVE, TRANSPORT_TIMEOUT
from .database import StoreError, with_retry
from .models import InboundMessage, SelectionContext, Settings
from .question_bank import QuestionBank, QuestionBankError
from .reporting import ReportBuilder, chunk_text
from .repository import Repository
from .selection import SelectionMatcher, StaleSelection
from .session_manager import SessionManager
from .transport import Transport

logger = logging.getLogger(__name__)

CANDIDATE_COMMANDS = {"interview", "start", "status", "retry", "help"}
ADMIN_TARGET_COMMANDS = {"skip", "end", "reset", "approve", "reject"}
ADMIN_COMMANDS = ADMIN_TARGET_COMMANDS | {
    "pending",
    "transcript",
    "interviewsettings",
    "interviewstats",
    "questions",
    "evalprompt",
}

# name -> (settings field, minimum, maximum, seconds per unit)
_NUMERIC_SETTINGS = {
    "threshold": ("pass_threshold", 1, 100, 1),
    "retries": ("max_retries", 1, 10, 1),
    "reminders": ("max_reminders", 0, 10, 1),
    "timeout": ("response_timeout", 1, 1440, 60),
    "reminder": ("reminder_timeout", 1, 1440, 60),
    "expiry": ("session_expiry", 1, 720, 3600),
}

_TEMPLATE_SETTINGS = {
    "welcome": "welcome_template",
    "pass": "pass_template",
    "fail": "fail_template",
}

_ADMIN_REPLIES = {
    "ok": "Done: {action} for {target} ({state}).",
    "not_found": "No open interview for {target}.",
    "forbidden": "Cannot {action} {target}: {message}.",
    "error": "Could not {action} {target} right now, please try again.",
}

_START_REPLIES = {
    "already_active": "You already have an interview in progress.",
    "disabled": "Interviews are not enabled in this chat.",
    "exempt": "You are exempt from the interview.",
    "error": "Something went wrong starting your interview. Please try again in a moment.",
}


def _on_off(value: str) -> bool | None:
    lowered = value.strip().lower()
    if lowered in ("on", "yes", "true", "1"):
        return True
    if lowered in ("off", "no", "false", "0"):
        return False
    return None


class Controller:
    """Turns chat messages and membership events into core operations."""

    def __init__(
        self,
        manager: SessionManager,
        repo: Repository,
        questions: QuestionBank,
        transport: Transport,
        selection: SelectionMatcher,
        reporter: ReportBuilder,
        *,
        owner_id: str = "",
        prefix: str = ".",
        transport_timeout: float = TRANSPORT_TIMEOUT,
    ) -> None:
        self.manager = manager
        self.repo = repo
        self.questions = questions
        self.transport = transport
        self.selection = selection
        self.reporter = reporter
        self.owner_id = owner_id
        self.prefix = prefix
        self.transport_timeout = transport_timeout

        selection.register_handler("question_choice", self._on_question_choice)
        selection.register_handler("pending_review", self._on_pending_choice)

    # Entry points

    async def handle_message(self, message: InboundMessage) -> None:
        text = (message.text or "").strip()
        if text.startswith(self.prefix) and len(text) > len(self.prefix):
            command, _, rest = text[len(self.prefix):].partition(" ")
            command = command.lower()
            if command in CANDIDATE_COMMANDS or command in ADMIN_COMMANDS:
                await self.handle_command(message, command, rest.strip())
                return

        if await self.selection.dispatch(message):
            return

        result = await self.manager.ingest(message)
        if result.error and result.message != "session_not_found":
            logger.warning("Message %s not processed: %s", message.event_id, result.error)

    async def handle_membership(self, chat_id: str, user_id: str, change: str, name: str = "") -> None:
        result = await self.manager.on_membership_change(chat_id, user_id, change, name)
        if result is not None and result.status not in ("started", "already_active", "disabled", "exempt"):
            logger.info("Interview not started for %s in %s: %s", user_id, chat_id, result.status)

    async def handle_command(self, message: InboundMessage, command: str, args: str) -> None:
        if command in ADMIN_COMMANDS:
            if not await self.is_admin(message.chat_id, message.user_id):
                await self.reply(message, "Only group admins can use this command.")
                return

        handler = getattr(self, f"_cmd_{command}", None)
        if handler is None:
            await self._cmd_help(message, args)
            return
        try:
            await handler(message, args)
        except StoreError as exc:
            logger.warning("Command %s failed on the store: %s", command, exc)
            await self.reply(message, "Storage is temporarily unavailable, please try again.")

    # Helpers

    async def reply(self, message: InboundMessage, text: str) -> str | None:
        message_id = None
        for chunk in chunk_text(text):
            try:
                message_id = await asyncio.wait_for(
                    self.transport.send(message.chat_id, chunk, None),
                    self.transport_timeout,
                )
            except Exception as exc:
                logger.warning("Reply in %s failed: %s", message.chat_id, exc)
                return None
        return message_id

    async def is_admin(self, chat_id: str, user_id: str) -> bool:
        if self.owner_id and user_id == self.owner_id:
            return True
        try:
            return bool(
                await asyncio.wait_for(self.transport.is_chat_admin(chat_id, user_id), self.transport_timeout)
            )
        except Exception as exc:
            logger.warning("Admin check for %s in %s failed: %s", user_id, chat_id, exc)
            return False

    @staticmethod
    def resolve_target(message: InboundMessage, args: str) -> str | None:
        if message.mentions:
            return message.mentions[0]
        if message.quoted is not None and message.quoted.sender_id:
            return message.quoted.sender_id
        token = args.split()[0] if args.split() else ""
        token = token.lstrip("@")
        return token or None

    async def _settings(self, chat_id: str) -> Settings:
        return await with_retry(self.repo.get_settings, chat_id)

    # Candidate commands

    async def _start(self, message: InboundMessage) -> None:
        result = await self.manager.start(message.chat_id, message.user_id, message.name)
        reply = _START_REPLIES.get(result.status)
        if reply:
            await self.reply(message, reply)

    async def _cmd_interview(self, message: InboundMessage, args: str) -> None:
        await self._start(message)

    async def _cmd_start(self, message: InboundMessage, args: str) -> None:
        await self._start(message)

    async def _cmd_retry(self, message: InboundMessage, args: str) -> None:
        await self._start(message)

    async def _cmd_status(self, message: InboundMessage, args: str) -> None:
        snapshot = await self.manager.status(message.chat_id, message.user_id)
        await self.reply(message, self.reporter.build_status(snapshot, self.prefix))

    async def _cmd_help(self, message: InboundMessage, args: str) -> None:
        await self.reply(message, HELP_TEXT.format(p=self.prefix))

    # Admin commands on a candidate

    async def _admin_action(self, message: InboundMessage, action: str, args: str) -> None:
        target = self.resolve_target(message, args)
        if target is None:
            await self.reply(message, f"Usage: {self.prefix}{action} @user")
            return

        result = await self.manager.admin(message.chat_id, target, action, message.user_id)
        template = _ADMIN_REPLIES.get(result.status, _ADMIN_REPLIES["error"])
        await self.reply(
            message,
            template.format(
                action=action,
                target=target,
                state=self.reporter.state_display(result.state),
                message=(result.message or "not allowed").replace("_", " "),
            ),
        )

    async def _cmd_skip(self, message: InboundMessage, args: str) -> None:
        await self._admin_action(message, "skip", args)

    async def _cmd_end(self, message: InboundMessage, args: str) -> None:
        await self._admin_action(message, "end", args)

    async def _cmd_reset(self, message: InboundMessage, args: str) -> None:
        await self._admin_action(message, "reset", args)

    async def _cmd_approve(self, message: InboundMessage, args: str) -> None:
        await self._admin_action(message, "approve", args)

    async def _cmd_reject(self, message: InboundMessage, args: str) -> None:
        await self._admin_action(message, "reject", args)

    async def _cmd_pending(self, message: InboundMessage, args: str) -> None:
        sessions = await with_retry(self.repo.pending_reviews, message.chat_id)
        text, options = self.reporter.build_pending(sessions)
        message_id = await self.reply(message, text)
        if options:
            self.selection.remember(message_id, message.chat_id, "pending_review", options, "pending_review")

    async def _send_transcript(self, message: InboundMessage, user_id: str) -> None:
        session = await self.manager.transcript(message.chat_id, user_id)
        if session is None:
            await self.reply(message, f"No interview found for {user_id}.")
            return
        result = await with_retry(self.repo.get_result, session.id)
        await self.reply(message, self.reporter.build_transcript(session, result))
        try:
            path = self.reporter.export_transcript(session, result)
        except OSError as exc:
            logger.warning("Transcript export for %s failed: %s", session.id, exc)
            return
        if path is not None:
            logger.info("Transcript for %s exported to %s", session.id, path)

    async def _cmd_transcript(self, message: InboundMessage, args: str) -> None:
        target = self.resolve_target(message, args)
        if target is None:
            await self.reply(message, f"Usage: {self.prefix}transcript @user")
            return
        await self._send_transcript(message, target)

    async def _cmd_interviewstats(self, message: InboundMessage, args: str) -> None:
        stats = await with_retry(self.repo.get_stats, message.chat_id)
        pending = await with_retry(self.repo.pending_reviews, message.chat_id)
        await self.reply(message, self.reporter.build_stats(stats, len(pending)))

    # Settings

    async def _cmd_interviewsettings(self, message: InboundMessage, args: str) -> None:
        sub, _, value = args.partition(" ")
        sub = sub.lower()
        value = value.strip()
        settings = await self._settings(message.chat_id)

        if sub in ("", "show"):
            custom = await with_retry(self.repo.has_custom_eval_prompt, message.chat_id)
            await self.reply(message, self.reporter.build_settings(settings, custom))
            return

        error = self._apply_setting(settings, message, sub, value)
        if error is not None:
            await self.reply(message, error)
            return

        await with_retry(self.repo.save_settings, settings)
        logger.info("Settings %s updated in %s by %s", sub, message.chat_id, message.user_id)
        await self.reply(message, f"Setting updated: {sub}.")

    def _apply_setting(self, settings: Settings, message: InboundMessage, sub: str, value: str) -> str | None:
        """Mutate ``settings`` in place; return an error text or ``None``."""
        if sub in ("enable", "disable"):
            settings.enabled = sub == "enable"
            return None

        if sub in _NUMERIC_SETTINGS:
            field_name, low, high, unit = _NUMERIC_SETTINGS[sub]
            try:
                number = int(value)
            except ValueError:
                return f"Usage: {self.prefix}interviewsettings {sub} <number {low}-{high}>"
            if not low <= number <= high:
                return f"{sub} must be between {low} and {high}."
            setattr(settings, field_name, number * unit)
            return None

        if sub in ("autokick", "ai"):
            flag = _on_off(value)
            if flag is None:
                return f"Usage: {self.prefix}interviewsettings {sub} on|off"
            if sub == "autokick":
                settings.auto_remove_on_fail = flag
            else:
                settings.use_llm = flag
            return None

        if sub == "link":
            if not value:
                return f"Usage: {self.prefix}interviewsettings link URL"
            settings.main_chat_link = value
            return None

        if sub in ("exempt", "unexempt"):
            target = self.resolve_target(message, value)
            if target is None:
                return f"Usage: {self.prefix}interviewsettings {sub} @user"
            exempt = [u for u in settings.exempt_operators if u != target]
            if sub == "exempt":
                exempt.append(target)
            settings.exempt_operators = exempt
            return None

        if sub in _TEMPLATE_SETTINGS:
            if not value:
                return f"Usage: {self.prefix}interviewsettings {sub} TEXT (placeholders: {{name}}, {{score}}, {{link}})"
            setattr(settings, _TEMPLATE_SETTINGS[sub], value)
            return None

        return HELP_TEXT.format(p=self.prefix)

    # Question bank

    async def _cmd_questions(self, message: InboundMessage, args: str) -> None:
        sub, _, rest = args.partition(" ")
        sub = sub.lower()
        rest = rest.strip()
        chat_id = message.chat_id

        try:
            if sub in ("", "list"):
                questions = await with_retry(self.questions.questions_for, chat_id)
                await self.reply(message, self.reporter.build_questions(questions))
            elif sub == "add":
                qtype, _, body = rest.partition(" ")
                qtype = qtype.lower()
                text, _, raw_choices = body.partition("|")
                if qtype not in QUESTION_TYPES or not text.strip():
                    await self.reply(
                        message,
                        f"Usage: {self.prefix}questions add {'|'.join(QUESTION_TYPES)} TEXT [| option1, option2]",
                    )
                    return
                choices = [c.strip() for c in raw_choices.split(",") if c.strip()] or None
                question = await with_retry(self.questions.add, chat_id, qtype, text.strip(), choices)
                await self.reply(message, f"Added question {question.id}.")
            elif sub == "remove":
                removed = await with_retry(self.questions.remove, chat_id, rest)
                await self.reply(message, f"Removed question {removed.id}.")
            elif sub == "move":
                qid, _, position = rest.partition(" ")
                try:
                    pos = int(position)
                except ValueError:
                    await self.reply(message, f"Usage: {self.prefix}questions move ID POSITION")
                    return
                questions = await with_retry(self.questions.move, chat_id, qid, pos)
                await self.reply(message, self.reporter.build_questions(questions))
            elif sub == "reset":
                await with_retry(self.questions.reset, chat_id)
                await self.reply(message, "Questions reset to the defaults.")
            else:
                await self._cmd_help(message, args)
        except QuestionBankError as exc:
            await self.reply(message, str(exc))

    # Evaluation prompt

    async def _cmd_evalprompt(self, message: InboundMessage, args: str) -> None:
        sub, _, text = args.partition(" ")
        sub = sub.lower()
        text = text.strip()

        if sub in ("", "show"):
            template = await with_retry(self.repo.get_eval_prompt, message.chat_id)
            await self.reply(message, template)
        elif sub == "set":
            if "${responses}" not in text:
                await self.reply(message, "The evaluation prompt must contain ${responses}.")
                return
            await with_retry(self.repo.set_eval_prompt, message.chat_id, text, message.user_id)
            await self.reply(message, "Evaluation prompt updated.")
        elif sub == "reset":
            await with_retry(self.repo.reset_eval_prompt, message.chat_id)
            await self.reply(message, "Evaluation prompt reset to the default.")
        else:
            await self._cmd_help(message, args)

    # Selection handlers

    async def _on_question_choice(self, message: InboundMessage, context: SelectionContext, choice: int) -> bool:
        if context.payload.get("user_id") != message.user_id:
            return False
        session = await with_retry(self.repo.find_open_session, message.chat_id, message.user_id)
        if session is None or session.id != context.payload.get("session_id"):
            raise StaleSelection(f"session {context.payload.get('session_id')} is no longer open")
        questions = await with_retry(self.questions.questions_for, session.chat_id, session.questions_ref)
        if (
            session.state != STATE_ACTIVE
            or session.cursor >= len(questions)
            or questions[session.cursor].id != context.payload.get("question_id")
        ):
            raise StaleSelection(f"{session.id} has moved past {context.payload.get('question_id')}")
        selected = dataclasses.replace(message, text=context.options[choice - 1])
        await self.manager.ingest(selected)
        return True

    async def _on_pending_choice(self, message: InboundMessage, context: SelectionContext, choice: int) -> bool:
        if not await self.is_admin(message.chat_id, message.user_id):
            return False
        await self._send_transcript(message, context.options[choice - 1])
        return True
