"""Configuration loading from .env file."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


@dataclass
class Config:
    """Application configuration."""

    # Hosted database REST endpoint
    supabase_url: str
    supabase_key: str

    # Signed-in user (issued by the auth flow, outside this package)
    access_token: str | None
    user_id: str | None

    # One timeout and retry policy for every remote query
    request_timeout: float
    retry_attempts: int
    retry_delay: float

    # Cache behaviour
    page_size: int
    search_debounce: float
    undo_window: float

    # Logging
    log_level: str


def load_config(env_file: Path | None = None) -> Config:
    """
    Load configuration from environment variables.

    Args:
        env_file: Optional path to .env file. Defaults to .env in current directory.

    Returns:
        Config object with all settings.

    Raises:
        ValueError: If required configuration is missing or malformed.
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    # Required settings
    url = os.getenv("ANCHOR_SUPABASE_URL")
    key = os.getenv("ANCHOR_SUPABASE_KEY")

    if not url:
        raise ValueError("ANCHOR_SUPABASE_URL is required")
    if not key:
        raise ValueError("ANCHOR_SUPABASE_KEY is required")

    retry_attempts = int(os.getenv("ANCHOR_RETRY_ATTEMPTS", "2"))
    if retry_attempts < 1:
        raise ValueError("ANCHOR_RETRY_ATTEMPTS must be at least 1")

    page_size = int(os.getenv("ANCHOR_PAGE_SIZE", "30"))
    if page_size < 1:
        raise ValueError("ANCHOR_PAGE_SIZE must be at least 1")

    # Optional settings with defaults
    return Config(
        supabase_url=url.rstrip("/"),
        supabase_key=key,
        access_token=os.getenv("ANCHOR_ACCESS_TOKEN") or None,
        user_id=os.getenv("ANCHOR_USER_ID") or None,
        request_timeout=float(os.getenv("ANCHOR_REQUEST_TIMEOUT", "10")),
        retry_attempts=retry_attempts,
        retry_delay=float(os.getenv("ANCHOR_RETRY_DELAY", "0.5")),
        page_size=page_size,
        search_debounce=float(os.getenv("ANCHOR_SEARCH_DEBOUNCE", "0.3")),
        undo_window=float(os.getenv("ANCHOR_UNDO_WINDOW", "5")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
