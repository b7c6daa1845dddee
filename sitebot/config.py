from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_DATA_DIR = BASE_DIR / "data"


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
EXPORTS_DIR = _resolve_path(os.getenv("EXPORTS_DIR"), DATA_DIR / "exports")
DB_PATH = _resolve_path(os.getenv("DB_PATH"), DATA_DIR / "sitebot.db")


@dataclass(frozen=True)
class AppConfig:
    telegram_bot_token: str
    openai_api_key: str | None = None
    openai_model: str = "gpt-4.1-mini"
    generation_allowance: int = 10
    default_downloads: int = 0
    admin_user_ids: frozenset[int] = field(default_factory=frozenset)


class ConfigError(RuntimeError):
    pass


def _parse_admin_ids(raw: str) -> frozenset[int]:
    ids: set[int] = set()
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            ids.add(int(chunk))
        except ValueError as exc:
            raise ConfigError(f"ADMIN_USER_IDS contains a non-integer value: {chunk!r}") from exc
    return frozenset(ids)


def load_config() -> AppConfig:
    load_dotenv()

    telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
    openai_api_key = os.getenv("OPENAI_API_KEY", "").strip() or None
    openai_model = os.getenv("OPENAI_MODEL", "gpt-4.1-mini").strip() or "gpt-4.1-mini"
    allowance_raw = os.getenv("GENERATION_ALLOWANCE", "10").strip()
    downloads_raw = os.getenv("DEFAULT_DOWNLOADS", "0").strip()
    admin_ids_raw = os.getenv("ADMIN_USER_IDS", "")

    if not telegram_bot_token:
        raise ConfigError("Missing TELEGRAM_BOT_TOKEN in environment/.env")

    try:
        generation_allowance = int(allowance_raw)
        if generation_allowance < 1 or generation_allowance > 1000:
            raise ValueError
    except ValueError as exc:
        raise ConfigError("GENERATION_ALLOWANCE must be an integer in range [1, 1000]") from exc

    try:
        default_downloads = int(downloads_raw)
        if default_downloads < 0:
            raise ValueError
    except ValueError as exc:
        raise ConfigError("DEFAULT_DOWNLOADS must be a non-negative integer") from exc

    return AppConfig(
        telegram_bot_token=telegram_bot_token,
        openai_api_key=openai_api_key,
        openai_model=openai_model,
        generation_allowance=generation_allowance,
        default_downloads=default_downloads,
        admin_user_ids=_parse_admin_ids(admin_ids_raw),
    )


def ensure_data_dirs() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    EXPORTS_DIR.mkdir(parents=True, exist_ok=True)
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
