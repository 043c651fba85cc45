"""Configuration management for the chat relay."""

import os
import re
from typing import Any

import yaml
from dotenv import load_dotenv

from chat_relay.llm.exceptions import ConfigurationError

CONFIG_PATH_ENV = "CHAT_RELAY_CONFIG"

# Bearer tokens are sent verbatim in a header; anything with whitespace or
# control characters cannot be a usable credential.
_CREDENTIAL_PATTERN = re.compile(r"^[\x21-\x7e]+$")


class Configuration:
    """Manages configuration and environment variables for the relay."""

    def __init__(self, config_path: str | None = None) -> None:
        """Initialize configuration from YAML and environment variables.

        Args:
            config_path: Optional YAML path. Falls back to the
                CHAT_RELAY_CONFIG environment variable, then to the
                packaged config.yaml.
        """
        self.load_env()  # Load .env for API keys
        self._config = self._load_yaml_config(config_path)

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    def _load_yaml_config(self, config_path: str | None) -> dict[str, Any]:
        """Load configuration from YAML file."""
        path = config_path or os.getenv(CONFIG_PATH_ENV) or os.path.join(
            os.path.dirname(__file__), "config.yaml"
        )
        with open(path) as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError(
                    f"Config file must be YAML dict, got {type(config)}"
                )
            return config

    @staticmethod
    def _require(section: dict[str, Any], keys: list[str], prefix: str) -> None:
        for key in keys:
            if key not in section:
                raise ValueError(
                    f"{prefix}.{key} must be explicitly configured in config.yaml"
                )

    def get_upstream_config(self) -> dict[str, Any]:
        """Get upstream completion API configuration.

        Returns:
            Upstream configuration dictionary with validated values.

        Raises:
            ValueError: If required upstream parameters are missing.
        """
        upstream = self._config.get("upstream", {})
        self._require(
            upstream,
            ["base_url", "default_model", "app_title", "api_key_env", "timeouts"],
            "upstream",
        )
        self._require(
            upstream["timeouts"], ["connect", "read", "write", "pool"],
            "upstream.timeouts",
        )
        return upstream

    def get_gateway_config(self) -> dict[str, Any]:
        """Get gateway handler configuration.

        Returns:
            Gateway configuration dictionary with validated values.

        Raises:
            ValueError: If required gateway parameters are missing or invalid.
        """
        gateway = self._config.get("gateway", {})
        self._require(
            gateway,
            [
                "path", "require_streaming", "cors_enabled", "cors_origin",
                "relay_timeout", "host", "port",
            ],
            "gateway",
        )

        relay_timeout = gateway["relay_timeout"]
        if relay_timeout is not None and relay_timeout <= 0:
            raise ValueError("gateway.relay_timeout must be positive or null")
        if not str(gateway["path"]).startswith("/"):
            raise ValueError("gateway.path must start with '/'")

        return gateway

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration, defaulting to INFO console output."""
        logging_config = self._config.get("logging", {})
        return {
            "level": logging_config.get("level", "INFO"),
            "json": bool(logging_config.get("json", False)),
        }

    @property
    def llm_api_key(self) -> str:
        """Get the upstream API key.

        Read on every access so a credential rotated in the environment is
        picked up without a restart.

        Returns:
            The API key as a string.

        Raises:
            ConfigurationError: If the key is absent or malformed.
        """
        env_key = self.get_upstream_config()["api_key_env"]
        api_key = os.getenv(env_key)
        if not api_key:
            raise ConfigurationError(f"Missing {env_key}")
        if not _CREDENTIAL_PATTERN.match(api_key):
            raise ConfigurationError(f"Malformed {env_key}")
        return api_key
