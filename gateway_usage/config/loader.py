"""
Panel configuration loading.

Reads the cache, refresh and fallback settings from a YAML file.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


class BackendKind(Enum):
    """Where usage queries are served from."""
    HTTP = "http"
    SQLITE = "sqlite"


@dataclass(frozen=True)
class BackendConfig:
    """Connection settings for the query backend."""
    kind: BackendKind = BackendKind.SQLITE
    base_url: Optional[str] = None
    db_path: str = "gateway_usage.db"
    timeout_s: float = 10.0

    def __post_init__(self):
        if self.kind == BackendKind.HTTP and not self.base_url:
            raise ValueError("base_url is required for the http backend")
        if self.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")


@dataclass(frozen=True)
class CacheConfig:
    """Bounds of the page, graph and daily caches."""
    page_size: int = 200
    graph_window: int = 120
    graph_providers: int = 3
    daily_window_days: int = 45

    def __post_init__(self):
        """Validate cache bounds are positive."""
        for name in ("page_size", "graph_window", "graph_providers", "daily_window_days"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.page_size > 1000:
            raise ValueError("page_size must be <= 1000")


@dataclass(frozen=True)
class RefreshConfig:
    """Cooldowns in seconds between background refreshes."""
    page_prefetch_cooldown_s: float = 4.0
    graph_refresh_cooldown_s: float = 15.0
    intent_prefetch_cooldown_s: float = 60.0
    activity_min_gap_s: float = 1.0

    def __post_init__(self):
        for name in (
            "page_prefetch_cooldown_s",
            "graph_refresh_cooldown_s",
            "intent_prefetch_cooldown_s",
            "activity_min_gap_s",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")


@dataclass(frozen=True)
class FallbackConfig:
    """Synthetic data used when the gateway cannot be reached."""
    enabled: bool = False
    row_count: int = 200

    def __post_init__(self):
        if self.row_count <= 0:
            raise ValueError("row_count must be > 0")


@dataclass(frozen=True)
class PanelConfig:
    """Complete panel configuration."""
    backend: BackendConfig = field(default_factory=BackendConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)


def default_panel_config() -> PanelConfig:
    return PanelConfig()


_SECTION_KEYS = {
    "backend": {"kind", "base_url", "db_path", "timeout_s"},
    "cache": {"page_size", "graph_window", "graph_providers", "daily_window_days"},
    "refresh": {
        "page_prefetch_cooldown_s",
        "graph_refresh_cooldown_s",
        "intent_prefetch_cooldown_s",
        "activity_min_gap_s",
    },
    "fallback": {"enabled", "row_count"},
}


def load_panel_config(path: str) -> PanelConfig:
    """Load and validate panel configuration from a YAML file.

    Every section is optional; unknown keys are rejected so a typo never
    silently falls back to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated PanelConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Panel config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return default_panel_config()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    backend_data = sections["backend"]
    kind_str = backend_data.pop("kind", BackendKind.SQLITE.value)
    try:
        kind = BackendKind(str(kind_str).lower())
    except ValueError:
        valid_kinds = [k.value for k in BackendKind]
        raise ValueError(f"'backend.kind' must be one of: {valid_kinds}")

    fallback_data = sections["fallback"]
    if "enabled" in fallback_data and not isinstance(fallback_data["enabled"], bool):
        raise ValueError("'fallback.enabled' must be a boolean")

    try:
        return PanelConfig(
            backend=BackendConfig(kind=kind, **backend_data),
            cache=CacheConfig(**{k: int(v) for k, v in sections["cache"].items()}),
            refresh=RefreshConfig(**{k: float(v) for k, v in sections["refresh"].items()}),
            fallback=FallbackConfig(**fallback_data),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid configuration in {path}: {e}")


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return a validated copy of one configuration section.

    Raises:
        ValueError: If the section is not a mapping or has unknown keys
    """
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return dict(data)
