"""Config Loader - Loads tester configuration and builds the HTTP client.

Configuration is YAML with ${ENV_VAR} substitution, so secrets such as
tokens stay out of the file:

    base_url: https://staging.example.com
    headers:
      Authorization: Bearer ${API_TOKEN}
    timeout: 10
"""

from __future__ import annotations

import os
import re
import ssl
from pathlib import Path
from typing import Any

import httpx
import yaml

from http_tester.models import TesterConfig

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


class ConfigError(Exception):
    """Raised when configuration loading fails."""


def load_config(config_path: Path) -> TesterConfig:
    """Load tester configuration from YAML with ${ENV_VAR} substitution."""
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}") from e

    if not isinstance(raw_config, dict):
        raise ConfigError("Config file must be a YAML mapping")

    raw_config = _substitute_env_vars(raw_config)

    try:
        return TesterConfig.model_validate(raw_config)
    except Exception as e:
        raise ConfigError(f"Invalid config structure: {e}") from e


def _substitute_env_vars(data: Any) -> Any:
    if isinstance(data, str):
        return _ENV_VAR_PATTERN.sub(_env_value, data)
    if isinstance(data, dict):
        return {k: _substitute_env_vars(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    return data


def _env_value(match: re.Match) -> str:
    name = match.group(1)
    value = os.environ.get(name)
    if value is None:
        raise ConfigError(f"Environment variable '{name}' is not set")
    return value


def build_client_kwargs(config: TesterConfig) -> dict[str, Any]:
    """Build httpx.Client kwargs: timeout, redirects and TLS.

    base_url and headers are deliberately not passed: builders concatenate
    the base URL themselves and apply default headers per request.
    """
    kwargs: dict[str, Any] = {
        "timeout": config.timeout,
        "follow_redirects": config.follow_redirects,
    }

    if config.cert and config.key:
        if config.key_password:
            kwargs["cert"] = (config.cert, config.key, config.key_password)
        else:
            kwargs["cert"] = (config.cert, config.key)

    # A cipher string needs an explicit SSLContext; verification settings
    # move onto that context.
    if config.ciphers:
        ssl_context = ssl.create_default_context()
        try:
            ssl_context.set_ciphers(config.ciphers)
        except ssl.SSLError as e:
            raise ConfigError(f"Invalid cipher string '{config.ciphers}': {e}") from e
        if config.ca_bundle:
            ssl_context.load_verify_locations(config.ca_bundle)
        elif not config.verify_ssl:
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
        kwargs["verify"] = ssl_context
    elif config.ca_bundle:
        kwargs["verify"] = config.ca_bundle
    elif not config.verify_ssl:
        kwargs["verify"] = False

    return kwargs


def create_client(config: TesterConfig, **overrides: Any) -> httpx.Client:
    """Create an httpx.Client for *config*; *overrides* win (e.g. transport=)."""
    kwargs = build_client_kwargs(config)
    kwargs.update(overrides)
    return httpx.Client(**kwargs)
