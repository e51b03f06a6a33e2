"""Configuration management for pulsewatch.

Tracker configuration is merged from several sources, lowest priority first:
1. Package defaults
2. Configuration file (~/.config/pulsewatch/config.json)
3. Environment variables
4. Explicit options passed by the caller

Options may be spelled in snake_case (``report_url``) or with the camelCase
names used on the wire and in browser SDKs (``reportUrl``).
"""

from __future__ import annotations

import dataclasses
import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Pattern, Union

from .errors import ConfigurationError


# Default configuration values
DEFAULTS: Dict[str, Any] = {
    "project": None,  # Must be provided by the caller, env or config file
    "app_version": None,
    "report_url": None,
    "sample_rate": 1.0,
    "debug": False,
    "max_cache": 50,
    "report_immediately": False,
    "headers": {},
    "page_url": None,
    "device_info": None,
    "enabled": True,
    "timeout": 5.0,
}

# Config file location
CONFIG_DIR = Path.home() / ".config" / "pulsewatch"
CONFIG_FILE = CONFIG_DIR / "config.json"

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    """Convert a camelCase option name to snake_case."""
    return _CAMEL_RE.sub("_", key).lower()


def normalize_options(options: Mapping[str, Any], known: Any) -> Dict[str, Any]:
    """Convert option names to snake_case and reject unknown ones.

    Raises:
        ConfigurationError: If a name is not in ``known``.
    """
    result: Dict[str, Any] = {}
    for key, value in options.items():
        name = _snake(key)
        if name not in known:
            raise ConfigurationError(f"Unknown option: {key!r}")
        result[name] = value
    return result


@dataclass
class TrackerConfig:
    """Configuration for a tracker and its reporter.

    Instances are treated as immutable: runtime updates go through
    ``merge`` which returns a validated copy.
    """

    project: Optional[str] = None
    app_version: Optional[str] = None
    report_url: Optional[str] = None
    sample_rate: float = 1.0
    debug: bool = False
    max_cache: int = 50
    report_immediately: bool = False
    headers: Dict[str, str] = field(default_factory=dict)
    page_url: Optional[str] = None
    device_info: Optional[Dict[str, Any]] = None
    enabled: bool = True
    timeout: float = 5.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not self.project:
            raise ConfigurationError("project is required")
        if not 0.0 <= self.sample_rate <= 1.0:
            raise ConfigurationError(
                f"sample_rate must be between 0.0 and 1.0, got {self.sample_rate}"
            )
        if self.max_cache < 1:
            raise ConfigurationError(f"max_cache must be >= 1, got {self.max_cache}")
        if self.timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {self.timeout}")
        self.headers = dict(self.headers or {})

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "TrackerConfig":
        """Build a config from an options mapping (snake or camel case keys)."""
        return cls(**normalize_options(options, _TRACKER_FIELDS))

    def merge(self, **changes: Any) -> "TrackerConfig":
        """Return a copy with a partial update applied.

        Raises:
            ConfigurationError: If an option is unknown or a value invalid.
        """
        return dataclasses.replace(self, **normalize_options(changes, _TRACKER_FIELDS))

    def to_dict(self) -> Dict[str, Any]:
        """Return the configuration as a plain dictionary."""
        return dataclasses.asdict(self)


_TRACKER_FIELDS = frozenset(f.name for f in dataclasses.fields(TrackerConfig))


def default_business_code_parser(body: Any) -> Optional[Union[int, str]]:
    """Read a business status code from a parsed JSON body.

    Looks at ``code`` first, then ``status``, and falls back to ``1``.
    """
    if isinstance(body, dict):
        return body.get("code") or body.get("status") or 1
    return 1


@dataclass
class NetworkOptions:
    """Options for request classification and the network plugin."""

    ignore_self_report_requests: bool = True
    filter_urls: List[Union[str, Pattern[str]]] = field(default_factory=list)
    resource_allow_regex: Optional[Union[str, Pattern[str]]] = re.compile(
        r"^https?://", re.IGNORECASE
    )
    include_request_body: bool = False
    include_response_body: bool = False
    max_content_length: int = 10000
    sample: float = 1.0
    enable_duration_check: bool = False
    duration_threshold_ms: float = 2000
    enable_trace_correlation: bool = False
    ignore_forbidden_responses: bool = True
    auto_extract_business_code: bool = False
    business_code_parser: Callable[[Any], Any] = default_business_code_parser
    before_send: Optional[Callable[[Any], Any]] = None
    scrub_bodies: bool = True
    patch_global: bool = True

    def __post_init__(self) -> None:
        """Compile regexes and validate values."""
        self.filter_urls = [
            re.compile(pattern) if isinstance(pattern, str) else pattern
            for pattern in self.filter_urls
        ]
        if isinstance(self.resource_allow_regex, str):
            self.resource_allow_regex = re.compile(self.resource_allow_regex)
        if not 0.0 <= self.sample <= 1.0:
            raise ConfigurationError(f"sample must be between 0.0 and 1.0, got {self.sample}")
        if self.max_content_length < 0:
            raise ConfigurationError(
                f"max_content_length must be >= 0, got {self.max_content_length}"
            )

    @classmethod
    def from_options(cls, options: Optional[Mapping[str, Any]] = None) -> "NetworkOptions":
        """Build options from a mapping (snake or camel case keys)."""
        return cls(**normalize_options(options or {}, _NETWORK_FIELDS))


_NETWORK_FIELDS = frozenset(f.name for f in dataclasses.fields(NetworkOptions))


def _parse_bool(value: str) -> bool:
    """Parse a boolean from a string value."""
    return value.lower() in ("true", "1", "yes", "on")


def _load_config_file() -> Dict[str, Any]:
    """Load configuration from file if it exists."""
    if not CONFIG_FILE.exists():
        return {}

    try:
        with open(CONFIG_FILE) as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


def _get_env_config() -> Dict[str, Any]:
    """Get configuration from environment variables."""
    config: Dict[str, Any] = {}

    # Universal opt-out (DO_NOT_TRACK standard)
    if os.getenv("DO_NOT_TRACK", "").lower() in ("1", "true"):
        config["enabled"] = False

    enabled_env = os.getenv("PULSEWATCH_ENABLED", "")
    if enabled_env:
        config["enabled"] = _parse_bool(enabled_env)

    for key in ("project", "app_version", "report_url", "page_url"):
        value = os.getenv(f"PULSEWATCH_{key.upper()}")
        if value:
            config[key] = value

    for key in ("debug", "report_immediately"):
        value = os.getenv(f"PULSEWATCH_{key.upper()}")
        if value:
            config[key] = _parse_bool(value)

    sample_rate = os.getenv("PULSEWATCH_SAMPLE_RATE")
    if sample_rate:
        try:
            config["sample_rate"] = float(sample_rate)
        except ValueError:
            pass

    max_cache = os.getenv("PULSEWATCH_MAX_CACHE")
    if max_cache:
        try:
            config["max_cache"] = int(max_cache)
        except ValueError:
            pass

    return config


def load_config(**overrides: Any) -> TrackerConfig:
    """Load tracker configuration from all sources.

    Priority order (highest to lowest):
    1. Explicit overrides
    2. Environment variables
    3. Configuration file
    4. Package defaults

    Args:
        **overrides: Options passed by the caller, in snake or camel case.

    Returns:
        TrackerConfig: The merged configuration.

    Raises:
        ConfigurationError: If no project is configured or a value is invalid.
    """
    merged = dict(DEFAULTS)
    merged.update(normalize_options(_load_config_file(), _TRACKER_FIELDS))
    merged.update(_get_env_config())
    merged.update(
        {k: v for k, v in normalize_options(overrides, _TRACKER_FIELDS).items() if v is not None}
    )
    return TrackerConfig(**merged)


def save_config(config: TrackerConfig) -> None:
    """Save configuration to file.

    Args:
        config: The configuration to save.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    config_dict = {
        "project": config.project,
        "app_version": config.app_version,
        "report_url": config.report_url,
        "sample_rate": config.sample_rate,
        "debug": config.debug,
        "max_cache": config.max_cache,
        "report_immediately": config.report_immediately,
        "headers": config.headers,
        "enabled": config.enabled,
    }

    with open(CONFIG_FILE, "w") as f:
        json.dump(config_dict, f, indent=2)
