"""Settings Management Module.

Handles loading, saving, and accessing dispatcher configuration.
Persists configuration to data/settings.json (or the path named by
CAREHOOKS_SETTINGS_FILE).
"""

import json
import logging
import math
import os
from pathlib import Path
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..webhooks.models import RetryPolicy, check_header_value
from ..webhooks.security import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)

# Constants
SETTINGS_ENV_VAR = "CAREHOOKS_SETTINGS_FILE"
DEFAULT_SETTINGS_FILE = Path("data/settings.json")


class WebhookSettings(BaseModel):
    """Runtime configuration for the webhook dispatch core."""

    model_config = ConfigDict(validate_assignment=True)

    # Storage
    database_path: str = "data/carehooks.db"
    durable: bool = True  # False keeps queue and ledger in memory only

    # Workers
    worker_concurrency: int = Field(8, ge=1)
    per_endpoint_concurrency: int = Field(2, ge=1)
    poll_interval_seconds: float = Field(1.0, gt=0)
    lease_timeout_seconds: float = Field(60.0, gt=0)
    request_timeout_seconds: float = Field(10.0, gt=0)
    snapshot_refresh_seconds: float = Field(5.0, ge=0)
    resolution_batch_size: int = Field(100, ge=1)
    strict_ordering: bool = False

    # Retries
    default_retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)

    # Endpoint circuit breaker
    circuit_breaker_enabled: bool = True
    circuit_failure_threshold: int = Field(5, ge=1)
    circuit_timeout_seconds: float = Field(60.0, ge=0)

    # Outbound requests
    user_agent: str = DEFAULT_USER_AGENT

    # API process
    run_workers_in_api: bool = False

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = "carehooks.log"

    @field_validator("user_agent")
    @classmethod
    def _user_agent_header_safe(cls, value: str) -> str:
        return check_header_value(value, "user_agent")

    @model_validator(mode="after")
    def _lease_outlives_request(self) -> "WebhookSettings":
        # A worker may queue behind every other worker on one endpoint
        # before its own request starts, all within a single lease.
        rounds = math.ceil(self.worker_concurrency / self.per_endpoint_concurrency)
        if self.lease_timeout_seconds <= self.request_timeout_seconds * rounds:
            raise ValueError(
                "lease_timeout_seconds must exceed request_timeout_seconds times "
                "ceil(worker_concurrency / per_endpoint_concurrency)"
            )
        return self


class SettingsManager:
    """Manages loading and saving of settings."""

    def __init__(self, settings_file: Optional[Path] = None):
        self.settings_file = Path(
            settings_file or os.environ.get(SETTINGS_ENV_VAR) or DEFAULT_SETTINGS_FILE
        )
        self._settings: Optional[WebhookSettings] = None
        self._load()

    def _load(self):
        """Load settings from JSON or fall back to defaults."""
        if self.settings_file.exists():
            try:
                data = json.loads(self.settings_file.read_text(encoding="utf-8"))
                self._settings = WebhookSettings(**data)
                logger.info(f"Loaded settings from {self.settings_file}")
            except (OSError, ValueError, ValidationError) as e:
                logger.error(f"Error loading settings from {self.settings_file}: {e}. Using defaults.")
                self._settings = WebhookSettings()
        else:
            self._settings = WebhookSettings()

    def get(self) -> WebhookSettings:
        """Get current settings."""
        if not self._settings:
            self._load()
        return self._settings

    def save(self, new_settings: Optional[WebhookSettings] = None):
        """Save settings to file."""
        if new_settings:
            self._settings = new_settings

        # Ensure directory exists
        self.settings_file.parent.mkdir(parents=True, exist_ok=True)

        self.settings_file.write_text(
            self._settings.model_dump_json(indent=4),
            encoding="utf-8"
        )


_settings_manager: Optional[SettingsManager] = None


def get_settings_manager() -> SettingsManager:
    """Get the process-wide settings manager."""
    global _settings_manager
    if _settings_manager is None:
        _settings_manager = SettingsManager()
    return _settings_manager


def get_settings() -> WebhookSettings:
    return get_settings_manager().get()
