"""Configuration management for emailsnap."""

from __future__ import annotations

import os
from datetime import time
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from emailsnap.models import DEFAULT_WEB_LINK
from emailsnap.rules_engine import extract_domain


class ImapConfig(BaseModel):
    """IMAP account credentials and connection settings."""

    host: str
    port: int = 993
    email: str
    password: str = Field(default="", repr=False)
    password_env: str | None = None
    timeout: int = 30
    web_link: str = DEFAULT_WEB_LINK

    def get_password(self) -> str:
        """Return the password, preferring the configured environment variable."""
        if self.password_env:
            return os.environ.get(self.password_env, self.password)
        return self.password


class LLMConfig(BaseModel):
    """OpenAI-compatible chat completion endpoint (Groq by default)."""

    base_url: str = "https://api.groq.com/openai/v1"
    model: str = "llama-3.3-70b-versatile"
    timeout: int = 60
    temperature: float = 0.3
    max_tokens: int = 1024
    api_key_env: str = "GROQ_API_KEY"
    rate_limit_retries: int = 2
    rate_limit_wait: float = 10.0


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    log_file: str | None = None
    audit_file: str | None = None


class Config(BaseModel):
    """Main configuration."""

    imap: ImapConfig
    llm: LLMConfig = Field(default_factory=lambda: LLMConfig())
    logging: LoggingConfig = Field(default_factory=lambda: LoggingConfig())
    database_path: str = "emailsnap.db"


def parse_hhmm(value: str) -> time:
    """Parse an 'HH:MM' string into a time of day."""
    hours, _, minutes = value.strip().partition(":")
    return time(hour=int(hours), minute=int(minutes or 0))


class AppSettings(BaseModel):
    """User settings persisted as independent key/value rows."""

    polling_interval: int = Field(default=60, ge=30, le=3600)
    notifications_enabled: bool = True
    work_hours_only: bool = False
    work_hours_start: str = "09:00"
    work_hours_end: str = "18:00"
    auto_cleanup_days: int = Field(default=30, ge=1)
    launch_on_startup: bool = False
    company_domain: str = ""
    groq_api_key: str = Field(default="", repr=False)
    ai_categorization: bool = False

    @field_validator("work_hours_start", "work_hours_end")
    @classmethod
    def _validate_hhmm(cls, value: str) -> str:
        parse_hhmm(value)
        return value

    @property
    def ai_enabled(self) -> bool:
        """AI classification needs both the toggle and a key."""
        return self.ai_categorization and bool(self.groq_api_key)

    def trust_domain_for(self, email: str) -> str:
        """Company domain, defaulting to the account's own domain."""
        if self.company_domain:
            return self.company_domain.strip().lower()
        return extract_domain(email)


def load_config(config_path: str | Path) -> Config:
    """Load configuration from YAML file."""
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    return Config(**(data or {}))
