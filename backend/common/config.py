from typing import Optional, Set
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Shared
    APP_ENV: str = "dev"
    APP_PORT: int = 8000
    APP_TIMEZONE: str = "Europe/Moscow"
    DATABASE_URL: str
    REDIS_URL: str
    UPDATE_DEDUP_TTL_SECONDS: int = 3600

    # Provider
    LLM_API_KEY: str
    LLM_API_BASE_URL: str = ""
    LLM_MODEL_ANALYZE: str
    LLM_TIMEOUT_SECONDS: int = 10
    LLM_MAX_RETRIES: int = 1
    LLM_RETRY_BACKOFF_SECONDS: float = 1.0
    LLM_TEMPERATURE: float = 0.3
    LLM_MAX_TOKENS: int = 2000

    # Telegram
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_WEBHOOK_SECRET: Optional[str] = None
    TELEGRAM_API_BASE: str = "https://api.telegram.org"
    TELEGRAM_COMMAND_TIMEOUT_SECONDS: int = 10
    TELEGRAM_ALLOWED_CHAT_IDS: Optional[str] = None  # Comma-separated

    # Todoist
    TODOIST_TOKEN: Optional[str] = None
    TODOIST_API_BASE: str = "https://api.todoist.com/rest/v2"
    TODOIST_TIMEOUT_SECONDS: int = 10

    # Edit prompts awaiting a reply
    EDIT_PROMPT_TTL_SECONDS: int = 3600
    EDIT_PROMPT_MAX_ENTRIES: int = 1000

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def telegram_allowed_chat_ids(self) -> Set[str]:
        if not self.TELEGRAM_ALLOWED_CHAT_IDS:
            return set()
        return {c.strip() for c in self.TELEGRAM_ALLOWED_CHAT_IDS.split(",") if c.strip()}

settings = Settings()
