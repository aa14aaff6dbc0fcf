import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_LOCAL_DATABASE_URL = "sqlite:///./invoice_memory.db"


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str]
    local_database_url: str
    offline_mode: bool
    db_connect_retries: int
    db_retry_delay: float
    log_level: str
    frontend_url: Optional[str]

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            local_database_url=os.getenv("LOCAL_DATABASE_URL", DEFAULT_LOCAL_DATABASE_URL),
            offline_mode=_flag("OFFLINE_MODE"),
            db_connect_retries=int(os.getenv("DB_CONNECT_RETRIES", "3")),
            db_retry_delay=float(os.getenv("DB_RETRY_DELAY", "2")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            frontend_url=os.getenv("FRONTEND_URL") or None,
        )

    @property
    def effective_database_url(self) -> str:
        return self.database_url or self.local_database_url


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
