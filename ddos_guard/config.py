"""
ddos-guard configuration.

Nothing is required at startup: the detection core runs with sensible
defaults and no external integrations. Integration vars (threat feed,
webhook, Slack) are validated lazily when the relevant component is first
wired via validate_for_component().
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Maps each component name to the settings fields it requires.
_COMPONENT_REQUIRED_FIELDS: dict[str, list[str]] = {
    "threat_feed": [
        "threat_feed_url",
        "threat_feed_api_key",
    ],
    "webhook": [
        "webhook_url",
    ],
    "slack": [
        "slack_bot_token",
    ],
    "detection": [],
}

_KNOWN_COMPONENTS = set(_COMPONENT_REQUIRED_FIELDS.keys())


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------
    detector_timeout_seconds: float = 2.0
    max_concurrent_evaluations: int = 8

    # ------------------------------------------------------------------
    # Threat intelligence feed
    # ------------------------------------------------------------------
    threat_feed_url: Optional[str] = None
    threat_feed_api_key: Optional[str] = None
    threat_feed_refresh_minutes: float = 15.0
    threat_feed_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Alert lifecycle
    # ------------------------------------------------------------------
    alert_dedup_window_seconds: float = 300.0

    # ------------------------------------------------------------------
    # Notifications: per-channel enable flags
    # ------------------------------------------------------------------
    notify_email: bool = True
    notify_sms: bool = True
    notify_webhook: bool = True
    notify_slack: bool = False
    notification_timeout_seconds: float = 5.0

    # Webhook
    webhook_url: Optional[str] = None

    # Slack
    slack_bot_token: Optional[str] = None
    slack_alert_channel: str = "#soc-alerts"

    def validate_for_component(self, component: str) -> None:
        """Assert that all settings required by *component* are present.

        Call this before wiring an integration that depends on external
        credentials or endpoints.

        Raises:
            ValueError: If *component* is not a recognised component.
            RuntimeError: If one or more required settings are absent.
        """
        if component not in _KNOWN_COMPONENTS:
            raise ValueError(
                f"Unknown component '{component}'. "
                f"Known components: {', '.join(sorted(_KNOWN_COMPONENTS))}"
            )

        required = _COMPONENT_REQUIRED_FIELDS[component]
        # blank values from a copied .env.example count as missing
        missing = [field for field in required if not getattr(self, field, None)]

        if missing:
            missing_vars = ", ".join(m.upper() for m in missing)
            raise RuntimeError(
                f"Component '{component}' cannot start: "
                f"missing required environment variables: {missing_vars}. "
                f"Set these in your .env file (see .env.example)."
            )

    def is_configured(self, component: str) -> bool:
        """Return True when validate_for_component() would pass."""
        try:
            self.validate_for_component(component)
        except RuntimeError:
            return False
        return True


@lru_cache
def get_settings() -> Settings:
    """Return the cached application settings singleton.

    In tests, clear the cache with get_settings.cache_clear() after
    patching environment variables, or instantiate Settings() directly
    with _env_file=None to avoid reading the .env file.
    """
    return Settings()
