"""
Billex Configuration Management

System-wide settings for the store, locks, provider, job runner, database
and logging. Values are layered: packaged defaults, then the user file,
then environment variables, then explicit setup() calls.
"""

import copy
import os
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from billex.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Environment variable -> dot-notation key
ENV_OVERRIDES = {
    'BILLEX_REDIS_URL': 'store.redis_url',
    'REDIS_URL': 'store.redis_url',
    'BILLEX_DATABASE_URL': 'database.url',
    'BILLEX_PROVIDER_URL': 'provider.base_url',
    'BILLEX_PROVIDER_API_KEY': 'provider.api_key',
    'BILLEX_LOG_LEVEL': 'logging.level',
}


class BillexConfig:
    """
    Manages system-wide configuration for Billex

    Singleton: every BillexConfig() call returns the same instance, so
    components constructed without an explicit config share one view.
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not hasattr(self, 'initialized'):
            self.config: Dict[str, Any] = self.load_defaults()

            self.config_file = Path.home() / '.billex' / 'config.yaml'
            if self.config_file.exists():
                self._load_config(self.config_file)

            self._apply_environment()
            self.initialized = True

    @staticmethod
    def load_defaults() -> Dict[str, Any]:
        """Load the packaged default configuration"""
        default_config_path = Path(__file__).parent / 'default_config.yaml'
        with open(default_config_path, 'r') as f:
            return yaml.safe_load(f)

    @classmethod
    def from_file(cls, config_path: str) -> 'BillexConfig':
        """Overlay a YAML file on the current configuration

        Args:
            config_path: Path to configuration file

        Returns:
            BillexConfig instance
        """
        instance = cls()
        instance._load_config(Path(config_path))
        return instance

    @classmethod
    def setup(cls, **sections: Dict[str, Any]) -> 'BillexConfig':
        """
        Deep-merge configuration sections

        Example:
            BillexConfig.setup(
                store={'redis_url': 'redis://localhost:6379/0'},
                locks={'folio_ttl_seconds': 90}
            )
        """
        instance = cls()
        instance._update_config_recursive(instance.config, sections)
        logger.info(f"Billex configuration updated: {', '.join(sorted(sections))}")
        return instance

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next BillexConfig() reloads defaults"""
        cls._instance = None

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value

        Args:
            key: Configuration key (dot notation)
            default: Default value if key not found
        """
        try:
            value = self.config
            for k in key.split('.'):
                value = value[k]
            return value if value is not None else default
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value (dot notation)"""
        keys = key.split('.')
        config = self.config
        for k in keys[:-1]:
            if k not in config or not isinstance(config[k], dict):
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value

    def section(self, name: str) -> Dict[str, Any]:
        """Return a copy of a top-level section"""
        return copy.deepcopy(self.config.get(name) or {})

    def save(self, path: Optional[Path] = None) -> Path:
        """Write the current configuration to disk"""
        target = Path(path) if path else self.config_file
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, 'w') as f:
            yaml.safe_dump(self.config, f, sort_keys=False)
        logger.info(f"Configuration saved to {target}")
        return target

    def _load_config(self, path: Path) -> None:
        """Load configuration from file"""
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")
        try:
            with open(path, 'r') as f:
                file_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration file {path}: {e}") from e

        if file_config is None:
            raise ConfigurationError(f"Configuration file is empty: {path}")
        if not isinstance(file_config, dict):
            raise ConfigurationError("Configuration must be a mapping")

        self._update_config_recursive(self.config, file_config)
        logger.info(f"Configuration loaded from {path}")

    def _apply_environment(self) -> None:
        for env_name, key in ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                self.set(key, value)

    def _update_config_recursive(self, base: Dict[str, Any], update: Dict[str, Any]) -> None:
        """Update configuration recursively"""
        for key, value in update.items():
            if isinstance(value, dict) and key in base and isinstance(base[key], dict):
                self._update_config_recursive(base[key], value)
            else:
                base[key] = value


def worst_case_rate_limit_wait(config: BillexConfig) -> float:
    """Longest the rate limiter can hold one create call, summed over its attempts"""
    attempts = max(1, int(config.get('provider.retry.max_attempts', 1)))
    requests_per_minute = float(config.get('provider.rate_limit.requests_per_minute', 120))
    if requests_per_minute <= 0:
        raise ConfigurationError("provider.rate_limit.requests_per_minute must be positive")
    # Under the folio lock the tenant's bucket waits at most one refill per attempt
    return attempts * 60.0 / requests_per_minute


def worst_case_provider_latency(config: BillexConfig) -> float:
    """Upper bound in seconds for one provider create call, retries and rate limiting included"""
    timeout = float(config.get('provider.request_timeout_seconds', 20))
    attempts = max(1, int(config.get('provider.retry.max_attempts', 1)))
    base_delay = float(config.get('provider.retry.base_delay_seconds', 1.0))
    max_delay = float(config.get('provider.retry.max_delay_seconds', base_delay))

    backoff = sum(min(base_delay * (2 ** i), max_delay) for i in range(attempts - 1))
    return timeout * attempts + backoff + worst_case_rate_limit_wait(config)


def validate_timing(config: BillexConfig) -> None:
    """
    Reject a folio lock TTL that a slow provider call could outlive.

    If the lock expired mid-call a second caller for the same tenant would
    be let through while the first is still being numbered.

    Raises:
        ConfigurationError: If locks.folio_ttl_seconds is not greater than
            the worst-case provider latency.
    """
    ttl = float(config.get('locks.folio_ttl_seconds', 10))
    worst_case = worst_case_provider_latency(config)
    if ttl <= worst_case:
        raise ConfigurationError(
            f"locks.folio_ttl_seconds ({ttl:g}s) must exceed the worst-case provider "
            f"latency ({worst_case:g}s = request timeout x attempts + backoff + rate limit wait)"
        )
