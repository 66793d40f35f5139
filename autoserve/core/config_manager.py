"""
Configuration Manager for autoserve.

Reads runtime settings and API deployments from:
- Environment variables (.env files)
- YAML configuration files
- Environment-specific overrides

Configuration precedence (highest to lowest):
1. Environment variables
2. config.yaml environment-specific overrides
3. config.yaml base configuration
4. Default values
"""

import os
import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from dotenv import load_dotenv
import logging

from .config import (
    APISpec, ServingConfig, MetricsConfig, ControllerConfig,
    ReplicaConfig, ServerConfig
)
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "AUTOSERVE_"


class ConfigManager:
    """Unified configuration manager for the serving runtime."""

    def __init__(self,
                 env_file: Optional[Union[str, Path]] = None,
                 config_file: Optional[Union[str, Path]] = None,
                 config_dir: Optional[Union[str, Path]] = None,
                 environment: str = "development"):
        """
        Initialize the configuration manager.

        Args:
            env_file: Path to .env file (defaults to .env in config_dir or the working directory)
            config_file: Path to config.yaml file (defaults to config.yaml in config_dir or the working directory)
            config_dir: Base directory for config files
            environment: Current environment (development, staging, production)
        """
        self.environment = environment

        base_dir = Path(config_dir) if config_dir else Path.cwd()

        self.env_file = Path(env_file) if env_file else base_dir / ".env"
        self.config_file = Path(config_file) if config_file else base_dir / "config.yaml"

        self._env_config = self._load_env_config()
        self._yaml_config = self._load_yaml_config()

        logger.info(f"Configuration loaded for environment: {self.environment}")

    def _load_env_config(self) -> Dict[str, Any]:
        """Load environment variables from .env file."""
        if self.env_file.exists():
            load_dotenv(self.env_file, override=True)
            logger.debug(f"Loaded environment configuration from {self.env_file}")
        else:
            logger.debug(f"Environment file not found: {self.env_file}")

        return dict(os.environ)

    def _load_yaml_config(self) -> Dict[str, Any]:
        """Load YAML configuration file and apply environment overrides."""
        if not self.config_file.exists():
            logger.warning(f"YAML config file not found: {self.config_file}")
            return {}

        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError("config_file", f"invalid YAML in {self.config_file}: {e}", cause=e)

        environments = config.pop('environments', None) or {}
        if self.environment in environments:
            config = self._deep_merge(config, environments[self.environment])

        logger.debug(f"Loaded YAML configuration from {self.config_file}")
        return config

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get(self, key: str, default: Any = None, config_path: Optional[str] = None) -> Any:
        """
        Get configuration value with precedence: env > yaml > default.

        Args:
            key: Environment variable name without the AUTOSERVE_ prefix
            default: Default value if not found
            config_path: Dot-separated path for YAML config (e.g., 'server.port')
        """
        env_value = self._env_config.get(ENV_PREFIX + key)
        if env_value is not None:
            return self._convert_type(env_value, default)

        if config_path:
            yaml_value = self._get_nested_value(self._yaml_config, config_path)
            if yaml_value is not None:
                return yaml_value

        return default

    def _get_nested_value(self, config: Dict[str, Any], path: str) -> Any:
        """Get nested value from config using dot-separated path."""
        value = config

        try:
            for key in path.split('.'):
                value = value[key]
            return value
        except (KeyError, TypeError):
            return None

    def _convert_type(self, value: str, reference: Any) -> Any:
        """Convert string environment variable to the type of the default."""
        if reference is None:
            return value

        if isinstance(reference, bool):
            return value.lower() in ('true', '1', 'yes', 'on')
        elif isinstance(reference, int):
            try:
                return int(value)
            except ValueError:
                return reference
        elif isinstance(reference, float):
            try:
                return float(value)
            except ValueError:
                return reference

        return value

    def get_serving_config(self) -> ServingConfig:
        """Create ServingConfig from loaded configuration."""
        try:
            return ServingConfig(
                metrics=MetricsConfig(
                    window_seconds=float(self.get('METRICS_WINDOW', 60.0, 'metrics.window_seconds')),
                    prune_interval=float(self.get('METRICS_PRUNE_INTERVAL', 10.0, 'metrics.prune_interval'))
                ),
                controller=ControllerConfig(
                    control_interval=float(self.get('CONTROL_INTERVAL', 5.0, 'controller.control_interval')),
                    backoff_base=float(self.get('BACKOFF_BASE', 1.0, 'controller.backoff_base')),
                    backoff_max=float(self.get('BACKOFF_MAX', 60.0, 'controller.backoff_max')),
                    backoff_multiplier=float(self.get('BACKOFF_MULTIPLIER', 2.0, 'controller.backoff_multiplier')),
                    backoff_jitter=self.get('BACKOFF_JITTER', True, 'controller.backoff_jitter')
                ),
                replica=ReplicaConfig(
                    health_check_interval=float(self.get('HEALTH_CHECK_INTERVAL', 0.5, 'replica.health_check_interval')),
                    executor_workers=int(self.get('EXECUTOR_WORKERS', 8, 'replica.executor_workers'))
                ),
                server=ServerConfig(
                    host=self.get('HOST', '0.0.0.0', 'server.host'),
                    port=int(self.get('PORT', 8000, 'server.port')),
                    log_level=self.get('LOG_LEVEL', 'INFO', 'server.log_level'),
                    log_dir=self.get('LOG_DIR', 'logs', 'server.log_dir'),
                    file_logging=self.get('FILE_LOGGING', True, 'server.file_logging')
                ),
                environment=self.environment
            )
        except ValueError as e:
            raise ConfigurationError("serving", str(e), cause=e)

    def get_api_specs(self) -> List[APISpec]:
        """Build the APIs declared under ``apis:`` in config.yaml."""
        entries = self._yaml_config.get('apis') or []
        if not isinstance(entries, list):
            raise ConfigurationError("apis", "must be a list of API deployments")

        specs = [APISpec.from_dict(entry) for entry in entries]
        names = [spec.name for spec in specs]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ConfigurationError("apis", f"duplicate API names: {sorted(duplicates)}")
        return specs

    def reload_config(self):
        """Reload configuration from files."""
        self._env_config = self._load_env_config()
        self._yaml_config = self._load_yaml_config()
        logger.info("Configuration reloaded")


# Global configuration manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager(environment: str = None) -> ConfigManager:
    """Get the global configuration manager instance."""
    global _config_manager

    if _config_manager is None or (environment and _config_manager.environment != environment):
        if not environment:
            environment = os.getenv('ENVIRONMENT', 'development')

        _config_manager = ConfigManager(environment=environment)

    return _config_manager


def set_config_manager(config_manager: Optional[ConfigManager]):
    """Set the global configuration manager instance."""
    global _config_manager
    _config_manager = config_manager
