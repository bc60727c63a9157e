# Salesforce connection and sync configuration
# Values come from the environment (optionally a .env file), same variables as the CLI tools use

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from sync_errors import ConfigError

API_VERSION = '59.0'

# Composite API accepts at most 25 subrequests per call
DEFAULT_CHUNK_SIZE = 25

# Seconds before a single Salesforce call is abandoned
DEFAULT_TIMEOUT = 30

# LIMIT clause bounds for generated queries
MAX_ROWS_DEFAULT = 10000
MAX_ROWS_LIMIT = 50000

# Objects that can be imported in one go
MAX_OBJECTS = 5

DEFAULT_LOG_DIR = 'logs'


@dataclass
class Settings:
    """Runtime configuration for a sync session."""

    username: Optional[str] = None
    password: Optional[str] = None
    consumer_key: Optional[str] = None
    consumer_secret: Optional[str] = None
    domain: str = 'login'
    instance_url: Optional[str] = None
    access_token: Optional[str] = None
    api_version: str = API_VERSION
    timeout: float = DEFAULT_TIMEOUT
    chunk_size: int = DEFAULT_CHUNK_SIZE
    log_dir: str = DEFAULT_LOG_DIR

    @property
    def uses_session_token(self):
        return bool(self.instance_url and self.access_token)


def _int_env(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _float_env(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def load_settings(dotenv_path=None):
    """Load Salesforce settings from the environment and an optional .env file."""
    load_dotenv(dotenv_path, override=True)

    settings = Settings(
        username=os.getenv("SALESFORCE_USERNAME"),
        password=os.getenv("SALESFORCE_PASSWORD"),
        consumer_key=os.getenv("SALESFORCE_CONSUMER_KEY"),
        consumer_secret=os.getenv("SALESFORCE_CONSUMER_SECRET"),
        domain=os.getenv("SALESFORCE_DOMAIN", "login"),
        instance_url=os.getenv("SALESFORCE_INSTANCE_URL"),
        access_token=os.getenv("SALESFORCE_ACCESS_TOKEN"),
        api_version=os.getenv("SALESFORCE_API_VERSION", API_VERSION),
        timeout=_float_env("SALESFORCE_TIMEOUT", DEFAULT_TIMEOUT),
        chunk_size=_int_env("SYNC_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
        log_dir=os.getenv("SYNC_LOG_DIR", DEFAULT_LOG_DIR),
    )

    if not settings.uses_session_token and not (settings.username and settings.password):
        raise ConfigError(
            "Missing Salesforce credentials. Set SALESFORCE_INSTANCE_URL and "
            "SALESFORCE_ACCESS_TOKEN, or SALESFORCE_USERNAME and SALESFORCE_PASSWORD."
        )

    if settings.chunk_size < 1 or settings.chunk_size > DEFAULT_CHUNK_SIZE:
        raise ConfigError(f"SYNC_CHUNK_SIZE must be between 1 and {DEFAULT_CHUNK_SIZE}")

    return settings
