"""Configuration loader with YAML parsing and environment variable substitution."""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import yaml
from pydantic import ValidationError

from teamsync.clients.exceptions import ConfigurationError
from teamsync.config.models import SyncConfig
from teamsync.security.validation import (
    sanitize_log_input,
    validate_environment_variable_name,
)


class SecurityError(ConfigurationError):
    """Raised when a configuration references a disallowed environment variable."""
    pass


class EnvironmentVariableError(ConfigurationError):
    """Raised when environment variable substitution fails."""
    pass


# Allowlist of environment variables a configuration file may reference
ALLOWED_ENV_VARS: Set[str] = {
    # Grafana
    "GRAFANA_URL",
    "GRAFANA_ADMIN_USER",
    "GRAFANA_ADMIN_PASSWORD",
    "GRAFANA_ADMIN_TOKEN",
    "GRAFANA_INSECURE_TLS",
    "GRAFANA_RATE_LIMIT_PER_MINUTE",

    # Microsoft Entra ID
    "ENTRA_TENANT_ID",
    "ENTRA_CLIENT_ID",
    "ENTRA_CLIENT_SECRET",
    "ENTRA_AUTHORITY_BASE_URL",
    "ENTRA_MANAGED_GROUP_PATTERN",
    "ENTRA_RATE_LIMIT_PER_MINUTE",
    "GRAPH_API_BASE_URL",

    # Sync policy
    "DEFAULT_USER_ROLE",
    "ALLOW_CREATE_USERS",
    "ALLOW_REMOVE_TEAM_MEMBERS",

    # Scheduling
    "SYNC_INTERVAL_SECONDS",
    "SYNC_CYCLE_TIMEOUT_SECONDS",
    "SYNC_LOCK_TTL_SECONDS",
    "CACHE_TTL_SECONDS",

    # Storage
    "DATA_DIR",

    # Logging
    "LOG_LEVEL",
    "LOG_FORMAT",
}


def _validate_env_var_name(var_name: str) -> None:
    """Validate that an environment variable is allowed.

    Args:
        var_name: Environment variable name to validate

    Raises:
        SecurityError: If the environment variable is not in the allowlist
    """
    if not validate_environment_variable_name(var_name):
        raise SecurityError(
            f"Invalid environment variable name format: '{sanitize_log_input(var_name)}'"
        )

    if var_name not in ALLOWED_ENV_VARS:
        raise SecurityError(
            f"Unauthorized environment variable '{sanitize_log_input(var_name)}' is not in allowlist. "
            f"Allowed variables: {sorted(ALLOWED_ENV_VARS)}"
        )


class ConfigLoader:
    """Configuration loader with environment variable substitution.

    Substitution runs on parsed string values rather than on raw YAML text, so
    secrets containing YAML metacharacters load verbatim.
    """

    # ${VAR_NAME} or ${VAR_NAME:default_value}
    ENV_VAR_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*?)(?::([^}]*))?\}')

    def __init__(self, require_env_vars: bool = True) -> None:
        """Initialize the configuration loader.

        Args:
            require_env_vars: Whether to require all environment variables to exist
                            (if False, missing vars without defaults are left as-is)
        """
        self.require_env_vars = require_env_vars

    def load_config(self, config_path: Path) -> SyncConfig:
        """Load and validate configuration from YAML file.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            Validated SyncConfig instance

        Raises:
            ConfigurationError: If loading or validation fails
        """
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Configuration file must contain a YAML object")

        return self.load_dict(config_data)

    def load_dict(self, config_data: Dict[str, Any]) -> SyncConfig:
        """Substitute environment variables in a parsed mapping and validate it."""
        substituted = self._substitute_tree(config_data)
        try:
            return SyncConfig.model_validate(substituted)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}") from e

    def _substitute_tree(self, data: Any) -> Any:
        """Recursively substitute environment variables in every string value.

        Raises:
            SecurityError: If a disallowed variable is referenced
            EnvironmentVariableError: If required variables are missing
        """
        missing_vars: List[str] = []
        security_errors: List[str] = []

        def replace_env_var(match: re.Match) -> str:
            var_name = match.group(1)
            default_value = match.group(2)

            try:
                _validate_env_var_name(var_name)
            except SecurityError as e:
                security_errors.append(str(e))
                return match.group(0)

            env_value = os.getenv(var_name)
            if env_value is not None:
                return env_value.strip()
            if default_value is not None:
                return default_value
            if self.require_env_vars:
                missing_vars.append(var_name)
            return match.group(0)

        def walk(node: Any) -> Any:
            if isinstance(node, dict):
                return {key: walk(value) for key, value in node.items()}
            if isinstance(node, list):
                return [walk(item) for item in node]
            if isinstance(node, str):
                return self.ENV_VAR_PATTERN.sub(replace_env_var, node)
            return node

        result = walk(data)

        if security_errors:
            raise SecurityError(f"Security validation failed: {'; '.join(security_errors)}")

        if missing_vars:
            unique = sorted(set(missing_vars))
            if len(unique) == 1:
                raise EnvironmentVariableError(
                    f"Required environment variable '{unique[0]}' is not set"
                )
            raise EnvironmentVariableError(
                f"Required environment variables are not set: {', '.join(unique)}"
            )

        return result

    def validate_config_file(self, config_path: Path) -> tuple[bool, Optional[str]]:
        """Validate configuration file without keeping the result.

        Returns:
            Tuple of (is_valid, error_message)
        """
        try:
            self.load_config(config_path)
            return True, None
        except ConfigurationError as e:
            return False, str(e)

    def get_missing_env_vars(self, config_path: Path) -> list[str]:
        """Get list of missing environment variables referenced by a config file.

        Args:
            config_path: Path to the configuration file

        Returns:
            Sorted list of missing environment variable names
        """
        if not config_path.exists():
            return []

        content = config_path.read_text(encoding='utf-8')
        missing_vars = set()
        for match in self.ENV_VAR_PATTERN.finditer(content):
            var_name = match.group(1)
            default_value = match.group(2)
            if default_value is None and os.getenv(var_name) is None:
                missing_vars.add(var_name)
        return sorted(missing_vars)


def load_config_from_path(config_path: Path, require_env_vars: bool = True) -> SyncConfig:
    """Convenience function to load configuration from path.

    Raises:
        ConfigurationError: If loading fails
    """
    loader = ConfigLoader(require_env_vars=require_env_vars)
    return loader.load_config(config_path)


def load_config_from_dict(config_data: Dict[str, Any]) -> SyncConfig:
    """Load configuration from dictionary (for testing).

    Raises:
        ConfigurationError: If validation fails
    """
    return ConfigLoader().load_dict(config_data)


def find_config_file(start_path: Optional[Path] = None) -> Optional[Path]:
    """Find configuration file by searching up directory tree.

    Searches for the following files in order:
    1. sync-config.yaml
    2. sync-config.yml
    3. config.yaml
    4. config.yml

    Args:
        start_path: Directory to start search from (defaults to current directory)

    Returns:
        Path to configuration file if found, None otherwise
    """
    if start_path is None:
        start_path = Path.cwd()

    config_filenames = [
        "sync-config.yaml",
        "sync-config.yml",
        "config.yaml",
        "config.yml",
    ]

    current_path = start_path.resolve()

    while True:
        for filename in config_filenames:
            config_path = current_path / filename
            if config_path.exists():
                return config_path

        parent = current_path.parent
        if parent == current_path:
            break
        current_path = parent

    return None
