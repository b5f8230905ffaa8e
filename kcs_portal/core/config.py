import logging
import os
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


APP_ENV = os.getenv("APP_ENV", "development")

# Relative database and backup paths are resolved against this directory.
ROOT_DIR = Path(os.getenv("KCS_ROOT_DIR", Path(__file__).resolve().parents[2]))

DATABASE_PATH = os.getenv("DATABASE_PATH", "")
DEFAULT_DATABASE_PATH = ROOT_DIR / "database" / "kcs_portal.db"
BACKUP_DIR = Path(os.getenv("BACKUP_DIR", ROOT_DIR / "backups"))
DB_MAX_RETRIES = int(os.getenv("DB_MAX_RETRIES", "3"))
ALLOWED_DB_EXTENSIONS = (".db", ".sqlite", ".sqlite3")

LOG_DIR = os.getenv("LOG_DIR", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

ALLOWED_ORIGINS = _get_list(os.getenv("FRONTEND_URL"), ["http://localhost:5173"])

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", str(24 * 60)))

BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

DOCS_ENABLED = _get_bool(os.getenv("DOCS_ENABLED"), default=True)


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")


def configure_logging() -> None:
    root = logging.getLogger()
    root.setLevel(LOG_LEVEL)

    if not root.handlers:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root.addHandler(console)

    if LOG_DIR and not any(isinstance(handler, TimedRotatingFileHandler) for handler in root.handlers):
        log_dir = Path(LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = TimedRotatingFileHandler(log_dir / "backend.log", when="midnight", backupCount=14)
        file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root.addHandler(file_handler)
