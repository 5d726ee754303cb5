"""Configuration management - loads billing.yaml and environment variables."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from billing_sync.models import BillingConfig, PlanDefinition
from billing_sync.utils.billing_period import validate_billing_period


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Config:
    """Application configuration loader and manager.

    Loads billing.yaml and provides validated access to:
    - Plan catalog
    - Lifecycle windows (grace period, intent TTL, idempotency retention)
    - Webhook, worker, reconciliation, provider and dead-letter settings

    Secrets can be supplied through WEBHOOK_SECRET and PROVIDER_API_KEY
    instead of the file.
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to billing.yaml. If not provided, uses CONFIG_PATH env var
                        or defaults to ./config/billing.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._billing_config: Optional[BillingConfig] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path from argument, env var, or default."""
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path("config/billing.yaml")

    def _load_config(self) -> None:
        """Load and validate billing.yaml configuration."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/billing.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}") from e

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")

        try:
            billing_config = BillingConfig(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

        self._validate_durations(billing_config)
        self._validate_plans(billing_config.plans)
        self._apply_env_overrides(billing_config)
        self._billing_config = billing_config

    @staticmethod
    def _validate_durations(billing_config: BillingConfig) -> None:
        windows = billing_config.billing
        for name in ("grace_period", "checkout_intent_ttl", "idempotency_retention"):
            value = getattr(windows, name)
            if not validate_billing_period(value):
                raise ConfigurationError(f"billing.{name} is not a valid ISO 8601 duration: {value!r}")

    @staticmethod
    def _validate_plans(plans: list[PlanDefinition]) -> None:
        seen: set[str] = set()
        for plan in plans:
            if plan.id in seen:
                raise ConfigurationError(f"Duplicate plan id in catalog: {plan.id}")
            seen.add(plan.id)
            if not validate_billing_period(plan.billing_period):
                raise ConfigurationError(
                    f"Plan {plan.id} has an invalid billing_period: {plan.billing_period!r}"
                )
            if plan.trial_period and not validate_billing_period(plan.trial_period):
                raise ConfigurationError(
                    f"Plan {plan.id} has an invalid trial_period: {plan.trial_period!r}"
                )

    @staticmethod
    def _apply_env_overrides(billing_config: BillingConfig) -> None:
        webhook_secret = os.getenv("WEBHOOK_SECRET")
        if webhook_secret:
            billing_config.webhook.secret = webhook_secret

        provider_api_key = os.getenv("PROVIDER_API_KEY")
        if provider_api_key:
            billing_config.provider.api_key = provider_api_key

    @property
    def settings(self) -> BillingConfig:
        """Get validated billing configuration."""
        if self._billing_config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._billing_config

    @property
    def config_path(self) -> Path:
        """Get path to configuration file."""
        return self._config_path

    @property
    def plans(self) -> list[PlanDefinition]:
        """Get the plan catalog."""
        return self.settings.plans

    def get_plan_by_id(self, plan_id: str) -> Optional[PlanDefinition]:
        """Get plan definition by ID.

        Args:
            plan_id: Plan ID (e.g., "pro.monthly")

        Returns:
            PlanDefinition if found, None otherwise
        """
        for plan in self.plans:
            if plan.id == plan_id:
                return plan
        return None

    @property
    def grace_period(self) -> str:
        """ISO 8601 duration a past_due subscription keeps before auto-cancel."""
        return self.settings.billing.grace_period

    @property
    def checkout_intent_ttl(self) -> str:
        """ISO 8601 duration a checkout intent stays pending."""
        return self.settings.billing.checkout_intent_ttl

    @property
    def idempotency_retention(self) -> str:
        """ISO 8601 duration completed idempotency claims are kept."""
        return self.settings.billing.idempotency_retention

    @property
    def webhook_secret(self) -> str:
        return self.settings.webhook.secret

    @property
    def worker_settings(self):
        """Get worker pool settings."""
        return self.settings.worker

    @property
    def reconciliation_settings(self):
        """Get reconciliation loop settings."""
        return self.settings.reconciliation

    @property
    def provider_settings(self):
        """Get payment provider API settings."""
        return self.settings.provider

    @property
    def dead_letter_settings(self):
        """Get dead-letter channel settings."""
        return self.settings.dead_letter

    def reload(self) -> None:
        """Reload configuration from disk."""
        self._load_config()


# Global configuration instance
_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Get global configuration instance (singleton).

    Args:
        config_path: Optional path to configuration file (only used on first call)

    Returns:
        Config instance
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path)
    return _config_instance


def reload_config() -> None:
    """Reload global configuration from disk."""
    global _config_instance
    if _config_instance:
        _config_instance.reload()
    else:
        _config_instance = Config()


def reset_config() -> None:
    """Drop the global configuration instance (for testing)."""
    global _config_instance
    _config_instance = None
