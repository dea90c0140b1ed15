"""Application settings and logging setup, read from the environment."""
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# Optional .env at the project root; real environment variables win
_dotenv_path = Path(__file__).resolve().parent.parent / ".env"
if _dotenv_path.is_file():
    load_dotenv(dotenv_path=_dotenv_path, override=False)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}")


class Settings:
    """Snapshot of the environment taken at import time."""

    def __init__(self):
        # Use PostgreSQL in production (from DATABASE_URL env var), SQLite locally
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./brocy.db")
        # Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
        if self.database_url.startswith("postgres://"):
            self.database_url = self.database_url.replace("postgres://", "postgresql://", 1)

        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        self.bulk_max_items = _int_env("BULK_MAX_ITEMS", 100)
        self.idempotency_window_hours = _int_env("IDEMPOTENCY_WINDOW_HOURS", 24)
        self.overdue_sweep_interval_minutes = _int_env("OVERDUE_SWEEP_INTERVAL_MINUTES", 0)
        self.cors_origins = [
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", "*").split(",")
            if origin.strip()
        ]


settings = Settings()


_log_handler = None


def configure_logging(level: str = None) -> None:
    """Configure the root logger once; later calls only adjust the level."""
    global _log_handler
    level_name = (level or settings.log_level).upper()
    root = logging.getLogger()
    if _log_handler is None:
        _log_handler = logging.StreamHandler(sys.stderr)
        _log_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d - %(message)s"
        ))
        root.addHandler(_log_handler)
    root.setLevel(logging.getLevelName(level_name))
