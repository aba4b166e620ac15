from __future__ import annotations

import logging
import sys

from telegram import Update
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from vetting.clock import Clock, TimerService
from vetting.config import DB_PATH, EXPORTS_DIR, QUESTIONS_PATH, AppConfig, ConfigError, ensure_data_dirs, load_config
from vetting.constants import EXPIRY_SWEEP_INTERVAL, REMINDER_SWEEP_INTERVAL
from vetting.controller import Controller
from vetting.database import Store, StoreError
from vetting.evaluator import Evaluator
from vetting.handlers import error_handler, left_member_handler, message_handler, new_members_handler
from vetting.llm_service import LLMClient
from vetting.question_bank import QuestionBank, QuestionBankError, load_default_questions
from vetting.rate_limiter import TokenBucket
from vetting.reporting import ReportBuilder
from vetting.repository import Repository
from vetting.scheduler import Scheduler
from vetting.selection import SelectionMatcher
from vetting.session_manager import SessionManager
from vetting.transport import TelegramTransport

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    # httpx logs every Telegram poll at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def _reminder_sweep_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    scheduler: Scheduler = context.application.bot_data["scheduler"]
    selection: SelectionMatcher = context.application.bot_data["selection"]
    await scheduler.reminder_sweep()
    selection.purge_expired()


async def _expiry_sweep_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    scheduler: Scheduler = context.application.bot_data["scheduler"]
    await scheduler.expiry_sweep()


async def _post_init_recover(app: Application) -> None:
    scheduler: Scheduler = app.bot_data["scheduler"]
    try:
        await scheduler.recover()
    except StoreError as exc:
        logger.error("Session recovery failed, sweeps will catch up: %s", exc)


async def _post_shutdown(app: Application) -> None:
    scheduler: Scheduler = app.bot_data["scheduler"]
    scheduler.shutdown()


def build_application(config: AppConfig) -> Application:
    ensure_data_dirs()
    defaults = load_default_questions(QUESTIONS_PATH)

    store = Store(DB_PATH)
    store.init()

    clock = Clock()
    repo = Repository(store)
    questions = QuestionBank(store, defaults)
    limiter = TokenBucket(rate_per_minute=config.llm_calls_per_minute, burst=config.llm_burst)
    llm = LLMClient(
        config.llm_api_key,
        config.llm_model,
        base_url=config.llm_base_url,
        timeout=config.llm_timeout,
        limiter=limiter,
    )
    evaluator = Evaluator(llm)
    reporter = ReportBuilder(exports_dir=EXPORTS_DIR)

    app = (
        Application.builder()
        .token(config.telegram_bot_token)
        .post_init(_post_init_recover)
        .post_shutdown(_post_shutdown)
        .build()
    )
    if app.job_queue is None:
        raise ConfigError("python-telegram-bot must be installed with the [job-queue] extra")

    transport = TelegramTransport(app.bot)
    selection = SelectionMatcher(clock, store)
    scheduler = Scheduler(repo, clock, TimerService(app.job_queue))
    manager = SessionManager(
        repo,
        questions,
        evaluator,
        transport,
        scheduler,
        clock,
        selection,
        command_prefix=config.command_prefix,
    )
    controller = Controller(
        manager,
        repo,
        questions,
        transport,
        selection,
        reporter,
        owner_id=config.owner_id,
        prefix=config.command_prefix,
    )

    app.bot_data["store"] = store
    app.bot_data["scheduler"] = scheduler
    app.bot_data["selection"] = selection
    app.bot_data["manager"] = manager
    app.bot_data["controller"] = controller

    app.add_handler(MessageHandler(filters.StatusUpdate.NEW_CHAT_MEMBERS, new_members_handler))
    app.add_handler(MessageHandler(filters.StatusUpdate.LEFT_CHAT_MEMBER, left_member_handler))
    app.add_handler(
        MessageHandler(
            (filters.TEXT | filters.PHOTO | filters.Document.IMAGE) & ~filters.StatusUpdate.ALL,
            message_handler,
        )
    )
    app.add_error_handler(error_handler)

    app.job_queue.run_repeating(_reminder_sweep_job, interval=REMINDER_SWEEP_INTERVAL, first=60)
    app.job_queue.run_repeating(_expiry_sweep_job, interval=EXPIRY_SWEEP_INTERVAL, first=300)

    return app


def main() -> None:
    try:
        config = load_config()
    except ConfigError as exc:
        configure_logging()
        logging.error("Startup failed: %s", exc)
        sys.exit(1)

    configure_logging(config.log_level)

    try:
        app = build_application(config)
    except (ConfigError, QuestionBankError, StoreError) as exc:
        logging.error("Startup failed: %s", exc)
        sys.exit(1)

    app.run_polling(allowed_updates=Update.ALL_TYPES, drop_pending_updates=True)


if __name__ == "__main__":
    main()
