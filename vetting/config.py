from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_DATA_DIR = BASE_DIR / "data"

DEFAULT_LLM_MODEL = "llama-3.1-70b-versatile"
DEFAULT_LLM_BASE_URL = "https://api.groq.com/openai/v1"


def _resolve_path(raw_path: str | None, default_path: Path) -> Path:
    if not raw_path:
        return default_path
    path = Path(raw_path).expanduser()
    if path.is_absolute():
        return path
    return (BASE_DIR / path).resolve()


# Load .env early so path env vars are available for module-level constants.
load_dotenv()

DATA_DIR = _resolve_path(os.getenv("DATA_DIR"), DEFAULT_DATA_DIR)
EXPORTS_DIR = DATA_DIR / "exports"
DB_PATH = _resolve_path(os.getenv("DB_PATH"), DATA_DIR / "interviews.db")
QUESTIONS_PATH = _resolve_path(os.getenv("QUESTIONS_PATH"), DATA_DIR / "questions.json")


@dataclass(frozen=True)
class AppConfig:
    telegram_bot_token: str
    llm_api_key: str
    owner_id: str = ""
    llm_model: str = DEFAULT_LLM_MODEL
    llm_base_url: str = DEFAULT_LLM_BASE_URL
    llm_timeout: float = 18.0
    llm_calls_per_minute: int = 30
    llm_burst: int = 5
    command_prefix: str = "."
    log_level: str = "INFO"


class ConfigError(RuntimeError):
    pass


def _int_env(name: str, default: str, low: int, high: int) -> int:
    raw = os.getenv(name, default).strip()
    try:
        value = int(raw)
        if value < low or value > high:
            raise ValueError
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer in range [{low}, {high}]") from exc
    return value


def load_config() -> AppConfig:
    load_dotenv()

    telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
    llm_api_key = (
        os.getenv("LLM_API_KEY", "").strip()
        or os.getenv("GROQ_API_KEY", "").strip()
        or os.getenv("OPENAI_API_KEY", "").strip()
    )
    owner_id = os.getenv("OWNER_ID", "").strip()
    llm_model = os.getenv("LLM_MODEL", DEFAULT_LLM_MODEL).strip() or DEFAULT_LLM_MODEL
    llm_base_url = os.getenv("LLM_BASE_URL", DEFAULT_LLM_BASE_URL).strip() or DEFAULT_LLM_BASE_URL
    command_prefix = os.getenv("COMMAND_PREFIX", ".").strip() or "."
    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

    if not telegram_bot_token:
        raise ConfigError("Missing TELEGRAM_BOT_TOKEN in environment/.env")
    if not llm_api_key:
        logger.warning("No LLM_API_KEY set; interviews will use deterministic scoring only")
    if owner_id and not owner_id.lstrip("-").isdigit():
        raise ConfigError("OWNER_ID must be a numeric user id")
    if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        raise ConfigError("LOG_LEVEL must be one of DEBUG, INFO, WARNING, ERROR")

    llm_timeout_raw = os.getenv("LLM_TIMEOUT", "18").strip()
    try:
        llm_timeout = float(llm_timeout_raw)
        if llm_timeout < 15 or llm_timeout > 20:
            raise ValueError
    except ValueError as exc:
        raise ConfigError("LLM_TIMEOUT must be a number of seconds in range [15, 20]") from exc

    return AppConfig(
        telegram_bot_token=telegram_bot_token,
        llm_api_key=llm_api_key,
        owner_id=owner_id,
        llm_model=llm_model,
        llm_base_url=llm_base_url,
        llm_timeout=llm_timeout,
        llm_calls_per_minute=_int_env("LLM_CALLS_PER_MINUTE", "30", 1, 600),
        llm_burst=_int_env("LLM_BURST", "5", 1, 100),
        command_prefix=command_prefix,
        log_level=log_level,
    )


def ensure_data_dirs() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    EXPORTS_DIR.mkdir(parents=True, exist_ok=True)
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
