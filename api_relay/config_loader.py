"""Config Loader - Loads host settings and locates the secure config.

Host settings are YAML with ${ENV_VAR} substitution. The secure config
(``config.pkg``, JSON) is searched for in an ordered list of candidate
directories: app config dir, executable dir, resource dir.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import platformdirs
import yaml
from pydantic import ValidationError

from api_relay.models import RelaySettings, SecureConfig, SecureConfigResult


logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading fails."""


APP_NAME = "api-relay"
APP_AUTHOR = "api-relay"
SECURE_CONFIG_FILE_NAME = "config.pkg"

# Environment variables overriding candidate directories
ENV_CONFIG_DIR = "API_RELAY_CONFIG_DIR"
ENV_RESOURCE_DIR = "API_RELAY_RESOURCE_DIR"

DEFAULT_RESOURCE_DIR = Path(__file__).parent / "resources"

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


# =============================================================================
# Host Settings
# =============================================================================


def load_settings(config_path: Path) -> RelaySettings:
    """Load host settings from YAML with ${ENV_VAR} substitution."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8-sig") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}") from e

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ConfigError("Config file must be a YAML mapping")

    raw_config = _substitute_env_vars(raw_config)

    try:
        return RelaySettings.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(f"Invalid config structure: {e}") from e


def _substitute_env_vars(data: Any) -> Any:
    """Recursively substitute ${ENV_VAR} patterns in strings within data."""
    if isinstance(data, str):
        return _substitute_string(data)
    elif isinstance(data, dict):
        return {k: _substitute_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    return data


def _substitute_string(s: str) -> str:
    """Substitute ${ENV_VAR} patterns. Raises ConfigError if env var is not set."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(f"Environment variable '{var_name}' is not set")
        return value

    return _ENV_VAR_PATTERN.sub(replacer, s)


# =============================================================================
# Secure Config
# =============================================================================


@dataclass(frozen=True)
class ConfigCandidate:
    """One place the secure config may live."""

    label: str
    path: Path


CandidateResolver = Callable[[], "ConfigCandidate | None"]


def app_config_candidate() -> ConfigCandidate | None:
    env_dir = os.environ.get(ENV_CONFIG_DIR)
    if env_dir:
        config_dir = Path(env_dir)
    else:
        config_dir = platformdirs.user_config_path(APP_NAME, APP_AUTHOR)
    return ConfigCandidate("app config dir", config_dir / SECURE_CONFIG_FILE_NAME)


def executable_dir_candidate() -> ConfigCandidate | None:
    if not sys.executable:
        return None
    return ConfigCandidate(
        "executable dir", Path(sys.executable).resolve().parent / SECURE_CONFIG_FILE_NAME
    )


def resource_dir_candidate() -> ConfigCandidate | None:
    env_dir = os.environ.get(ENV_RESOURCE_DIR)
    resource_dir = Path(env_dir) if env_dir else DEFAULT_RESOURCE_DIR
    return ConfigCandidate("resource dir", resource_dir / SECURE_CONFIG_FILE_NAME)


# Priority order: first existing, parseable file wins.
DEFAULT_CANDIDATE_RESOLVERS: tuple[CandidateResolver, ...] = (
    app_config_candidate,
    executable_dir_candidate,
    resource_dir_candidate,
)


def read_secure_config(path: Path) -> SecureConfig:
    """Parse one secure config file. A UTF-8 byte-order mark is tolerated."""
    try:
        text = path.read_bytes().decode("utf-8-sig")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Failed to read {path}: {e}") from e

    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e

    try:
        return SecureConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid secure config structure in {path}: {e}") from e


def load_secure_config(
    resolvers: tuple[CandidateResolver, ...] | list[CandidateResolver] = DEFAULT_CANDIDATE_RESOLVERS,
) -> SecureConfigResult:
    """Return the first existing, parseable secure config in priority order.

    Candidates that exist but fail to parse are logged and skipped.

    Raises:
        ConfigError: If candidate files exist but none of them parses.
    """
    failures: list[str] = []

    for resolver in resolvers:
        candidate = resolver()
        if candidate is None:
            continue
        if not candidate.path.is_file():
            logger.debug("No secure config in %s (%s)", candidate.label, candidate.path)
            continue

        logger.info("Loading secure config from %s (%s)", candidate.path, candidate.label)
        try:
            config = read_secure_config(candidate.path)
        except ConfigError as e:
            logger.warning("Skipping secure config candidate: %s", e)
            failures.append(str(e))
            continue
        return SecureConfigResult(config=config, path=str(candidate.path))

    if failures:
        raise ConfigError("No usable secure config found: " + "; ".join(failures))
    return SecureConfigResult(config=None, path=None)
