"""
Service configuration

Settings are read from the environment (and a local .env file). The email
category set is loaded from JSON at startup and validated before use.
"""
import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import DEFAULT_CATEGORY

load_dotenv()

logger = logging.getLogger(__name__)


DEFAULT_EMAIL_CATEGORIES: Dict[str, str] = {
    "event_platform": "Emails mentioning Tagvenue or Peerspace",
    "event": "Emails related to event bookings, catering, drinks. Do not include OpenTable emails.",
    "other": "Any other type of email, including receipts",
}


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Storage
    database_url: str = "sqlite:///./data/inbox_assistant.db"

    # Gmail
    gmail_token_file: str = "token.json"
    gmail_user_id: str = "me"
    gmail_query: Optional[str] = None

    # Language model
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-5-sonnet-20241022"
    llm_max_tokens: int = 1024

    # SMS
    sms_gateway_url: str = "http://localhost:8080"
    sms_gateway_username: str = ""
    sms_gateway_password: str = ""
    sms_gateway_webhook_signing_key: str = ""
    notification_phone_number: str = ""

    # Event store
    event_store_url: str = "http://localhost:8004"

    # Classification
    email_categories_file: Optional[str] = None
    background_info_file: Optional[str] = None

    # Pipeline tuning
    hydration_concurrency: int = 5
    hydration_batch_timeout: float = 120.0
    association_refresh_seconds: int = 300
    max_fetch_retries: int = 3
    retry_backoff_seconds: float = 1.0
    suggestion_fetch_size: int = 25
    poll_interval: int = 0  # seconds, 0 disables the background poller

    # Service
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8003

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """Get the process-wide settings instance"""
    return Settings()


def validate_categories(categories: Dict[str, str]) -> Dict[str, str]:
    """
    Validate a category set.

    Args:
        categories: Mapping of category name to description

    Returns:
        Normalized copy that always contains the default category

    Raises:
        ValueError: If the set is malformed
    """
    if not isinstance(categories, dict):
        raise ValueError("Email categories must be an object of {name: description}")

    validated: Dict[str, str] = {}
    for name, description in categories.items():
        if not isinstance(name, str) or not name.strip():
            raise ValueError(f"Invalid category name: {name!r}")
        if description is not None and not isinstance(description, str):
            raise ValueError(f"Description for category {name!r} must be a string")
        validated[name.strip()] = description or ""

    if DEFAULT_CATEGORY not in validated:
        validated[DEFAULT_CATEGORY] = DEFAULT_EMAIL_CATEGORIES[DEFAULT_CATEGORY]
    return validated


def load_email_categories(path: Optional[str]) -> Dict[str, str]:
    """
    Load the email category set from a JSON file.

    Falls back to the built-in venue categories when no file is configured
    or the file does not exist yet.
    """
    if not path:
        return dict(DEFAULT_EMAIL_CATEGORIES)

    categories_file = Path(path)
    if not categories_file.exists():
        logger.info(f"No categories file at {categories_file}, using defaults")
        return dict(DEFAULT_EMAIL_CATEGORIES)

    with open(categories_file, "r", encoding="utf-8") as f:
        data = json.load(f)

    # Accept either {name: description} or {"emailCategories": {...}}
    if isinstance(data, dict) and "emailCategories" in data:
        data = data["emailCategories"]

    categories = validate_categories(data)
    logger.info(f"Loaded {len(categories)} email categories from {categories_file}")
    return categories


def save_email_categories(path: Optional[str], categories: Dict[str, str]) -> None:
    """Persist the category set, writing atomically through a temp file"""
    if not path:
        return
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_file = target.with_suffix(".tmp")
    with open(temp_file, "w", encoding="utf-8") as f:
        json.dump({"emailCategories": categories}, f, indent=2)
    temp_file.replace(target)


def load_background_info(path: Optional[str]) -> str:
    """Read the venue background notes included in reply drafts"""
    if not path:
        return ""
    background_file = Path(path)
    if not background_file.exists():
        return ""
    return background_file.read_text(encoding="utf-8").strip()
