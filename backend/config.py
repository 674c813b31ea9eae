import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

DEFAULT_MODEL = "claude-sonnet-4-5"
PLACEHOLDER_API_KEY = "your-api-key-here"


def _split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    anthropic_api_key: Optional[str]
    model: str = DEFAULT_MODEL
    database_path: str = "taskpal.db"
    log_level: str = "info"
    log_dir: Optional[str] = None
    export_dir: str = "."
    backup_dir: str = "backups"
    owner_id: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_webhook_secret: Optional[str] = None
    telegram_admin_ids: list[str] = field(default_factory=list)

    @property
    def api_key_configured(self) -> bool:
        return bool(self.anthropic_api_key) and self.anthropic_api_key != PLACEHOLDER_API_KEY

    @staticmethod
    def from_env() -> "Settings":
        load_dotenv()
        return Settings(
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            model=os.getenv("TASKPAL_MODEL", DEFAULT_MODEL),
            database_path=os.getenv("TASKPAL_DATABASE_PATH", "taskpal.db"),
            log_level=os.getenv("TASKPAL_LOG_LEVEL", "info"),
            log_dir=os.getenv("TASKPAL_LOG_DIR") or None,
            export_dir=os.getenv("TASKPAL_EXPORT_DIR", "."),
            backup_dir=os.getenv("TASKPAL_BACKUP_DIR", "backups"),
            owner_id=os.getenv("TASKPAL_OWNER_ID") or None,
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
            telegram_webhook_secret=os.getenv("TELEGRAM_WEBHOOK_SECRET") or None,
            telegram_admin_ids=_split_csv(os.getenv("TELEGRAM_ADMIN_IDS", "")),
        )
