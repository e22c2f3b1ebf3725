"""Configuration loader utility."""
import os
import re
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from utils.aws_utils import parse_region_list

# Environment variables consulted when neither CLI nor YAML set a value
ENV_VARS = {
    'log_group': 'TAIL_LOG_GROUP',
    'regions': 'TAIL_REGIONS',
    'profile': 'AWS_PROFILE',
    'filter_pattern': 'TAIL_FILTER',
    'since': 'TAIL_SINCE',
    'render_interval': 'TAIL_RENDER_INTERVAL',
    'debug': 'TAIL_DEBUG',
    'log_level': 'LOG_LEVEL',
}

TRUE_VALUES = {'1', 'true', 'yes', 'on'}

# Fractional seconds of any length; fromisoformat before 3.11 wants 3 or 6 digits
FRACTION_RE = re.compile(r"\.(\d+)")


class ConfigError(Exception):
    """Configuration is missing or malformed."""


@dataclass
class TailConfig:
    """Resolved settings for one tailing run."""
    log_group: str
    regions: List[str] = field(default_factory=list)
    profile: Optional[str] = None
    filter_pattern: Optional[str] = None
    since: Optional[datetime] = None
    render_interval: Optional[float] = None
    debug: bool = False
    poll_interval: float = 2.0
    buffer_size: int = 100
    max_retries: int = 0
    log_level: str = 'INFO'
    log_file: Optional[str] = None


def parse_since(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 / ISO 8601 starting point.

    Args:
        value: String such as '2024-05-01T12:00:00Z', a datetime, or None

    Returns:
        Timezone-aware datetime (naive input is taken as UTC), or None

    Raises:
        ConfigError: If the value can not be parsed
    """
    if value is None or value == '':
        return None

    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith(('Z', 'z')):
            text = text[:-1] + '+00:00'
        text = FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ConfigError(f"invalid time format, expected RFC 3339: {value!r}") from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ConfigLoader:
    """Load and merge tailing configuration from CLI, YAML and environment."""

    def __init__(self, env_file: Optional[str] = None):
        """Initialize config loader.

        Args:
            env_file: Optional .env file; the default lookup is used if None
        """
        load_dotenv(env_file)  # Load environment variables from .env

    def load_yaml(self, config_file: str) -> Dict[str, Any]:
        """Load YAML configuration file.

        Args:
            config_file: Path to the YAML file

        Returns:
            Dictionary containing configuration
        """
        config_path = Path(config_file)

        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Config file {config_path} is not valid YAML: {e}") from e

        if not isinstance(config, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping")

        # Replace environment variables
        return self._replace_env_vars(config)

    def _replace_env_vars(self, config: Any) -> Any:
        """Recursively replace ${VAR} with environment variable values.

        Args:
            config: Configuration dictionary or value

        Returns:
            Configuration with environment variables replaced
        """
        if isinstance(config, dict):
            return {k: self._replace_env_vars(v) for k, v in config.items()}
        elif isinstance(config, list):
            return [self._replace_env_vars(item) for item in config]
        elif isinstance(config, str) and config.startswith('${') and config.endswith('}'):
            env_var = config[2:-1]
            return os.getenv(env_var, config)
        else:
            return config

    def from_env(self) -> Dict[str, Any]:
        """Collect settings present in the environment."""
        return {
            key: os.environ[var]
            for key, var in ENV_VARS.items()
            if os.environ.get(var)
        }

    def build(
        self,
        cli_values: Dict[str, Any],
        config_file: Optional[str] = None
    ) -> TailConfig:
        """Merge sources into a validated TailConfig.

        Precedence: CLI values, then the YAML file, then environment.

        Args:
            cli_values: Values from the command line; None means unset
            config_file: Optional YAML file path

        Returns:
            TailConfig

        Raises:
            ConfigError: If a value is missing or malformed
        """
        merged = self.from_env()
        if config_file:
            merged.update(self.load_yaml(config_file))
        merged.update({k: v for k, v in cli_values.items() if v is not None})

        known = {f.name for f in fields(TailConfig)}
        unknown = sorted(set(merged) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

        if not merged.get('log_group'):
            raise ConfigError("log group name is required")

        regions = merged.get('regions')
        if isinstance(regions, str):
            regions = parse_region_list(regions)

        render_interval = _as_float(merged, 'render_interval')
        if render_interval is not None and render_interval < 0:
            raise ConfigError(f"render_interval must not be negative: {render_interval}")

        config = TailConfig(
            log_group=str(merged['log_group']),
            regions=list(regions or []),
            profile=merged.get('profile') or None,
            filter_pattern=merged.get('filter_pattern') or None,
            since=parse_since(merged.get('since')),
            render_interval=render_interval or None,
            debug=_as_bool(merged.get('debug', False)),
            poll_interval=_as_float(merged, 'poll_interval', TailConfig.poll_interval),
            buffer_size=_as_int(merged, 'buffer_size', TailConfig.buffer_size),
            max_retries=_as_int(merged, 'max_retries', TailConfig.max_retries),
            log_level=str(merged.get('log_level', TailConfig.log_level)).upper(),
            log_file=merged.get('log_file') or None,
        )

        if config.poll_interval <= 0:
            raise ConfigError(f"poll_interval must be positive: {config.poll_interval}")
        if config.buffer_size <= 0:
            raise ConfigError(f"buffer_size must be positive: {config.buffer_size}")
        if config.max_retries < 0:
            raise ConfigError(f"max_retries must not be negative: {config.max_retries}")

        return config


def _as_float(values: Dict[str, Any], key: str, default: Optional[float] = None) -> Optional[float]:
    value = values.get(key)
    if value is None or value == '':
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key} must be a number: {value!r}") from e


def _as_int(values: Dict[str, Any], key: str, default: int) -> int:
    value = values.get(key)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key} must be an integer: {value!r}") from e


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUE_VALUES
