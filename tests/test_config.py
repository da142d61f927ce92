"""
Unit tests for panel configuration loading and validation.
"""

import os
import shutil
import tempfile

import pytest
import yaml

from gateway_usage.config.loader import (
    BackendConfig,
    BackendKind,
    CacheConfig,
    FallbackConfig,
    PanelConfig,
    RefreshConfig,
    load_panel_config,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_path = self._write_config({
            "backend": {"kind": "http", "base_url": "http://127.0.0.1:8787", "timeout_s": 5},
            "cache": {"page_size": 100, "graph_window": 60},
            "refresh": {"graph_refresh_cooldown_s": 30},
            "fallback": {"enabled": True, "row_count": 50},
        })

        config = load_panel_config(config_path)

        assert config.backend.kind == BackendKind.HTTP
        assert config.backend.base_url == "http://127.0.0.1:8787"
        assert config.backend.timeout_s == 5
        assert config.cache.page_size == 100
        assert config.cache.graph_window == 60
        assert config.cache.daily_window_days == 45
        assert config.refresh.graph_refresh_cooldown_s == 30.0
        assert config.refresh.page_prefetch_cooldown_s == 4.0
        assert config.fallback == FallbackConfig(enabled=True, row_count=50)

    def test_empty_file_gives_defaults(self):
        """Test an empty file yields the default configuration."""
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()
        assert load_panel_config(config_path) == PanelConfig()

    def test_missing_file_raises(self):
        """Test missing config file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_panel_config(os.path.join(self.temp_dir, "nope.yaml"))

    def test_invalid_yaml_raises(self):
        """Test malformed YAML raises yaml.YAMLError."""
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("cache: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_panel_config(config_path)

    def test_root_must_be_mapping(self):
        """Test a list root is rejected."""
        with pytest.raises(ValueError, match="root must be a dictionary"):
            load_panel_config(self._write_config(["a", "b"]))

    def test_unknown_top_level_key(self):
        """Test unknown sections are rejected."""
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_panel_config(self._write_config({"budget": {}}))

    def test_unknown_section_key(self):
        """Test a typo inside a section is rejected."""
        with pytest.raises(ValueError, match="Unknown keys in cache"):
            load_panel_config(self._write_config({"cache": {"page_sise": 10}}))

    def test_invalid_backend_kind(self):
        """Test an unsupported backend kind is rejected."""
        with pytest.raises(ValueError, match="'backend.kind' must be one of"):
            load_panel_config(self._write_config({"backend": {"kind": "grpc"}}))

    def test_http_requires_base_url(self):
        """Test the http backend needs a base URL."""
        with pytest.raises(ValueError, match="base_url is required"):
            load_panel_config(self._write_config({"backend": {"kind": "http"}}))

    def test_fallback_enabled_must_be_bool(self):
        """Test fallback.enabled rejects strings."""
        with pytest.raises(ValueError, match="must be a boolean"):
            load_panel_config(self._write_config({"fallback": {"enabled": "yes"}}))

    def test_page_size_upper_bound(self):
        """Test page_size above the backend maximum is rejected."""
        with pytest.raises(ValueError, match="page_size must be <= 1000"):
            load_panel_config(self._write_config({"cache": {"page_size": 5000}}))


class TestConfigValidation:
    """Test dataclass validation."""

    def test_non_positive_cache_bound(self):
        """Test cache bounds must be positive."""
        with pytest.raises(ValueError, match="graph_window must be > 0"):
            CacheConfig(graph_window=0)

    def test_negative_cooldown(self):
        """Test cooldowns cannot be negative."""
        with pytest.raises(ValueError, match="cannot be negative"):
            RefreshConfig(activity_min_gap_s=-1)

    def test_timeout_positive(self):
        """Test the backend timeout must be positive."""
        with pytest.raises(ValueError, match="timeout_s must be > 0"):
            BackendConfig(timeout_s=0)

    def test_fallback_row_count(self):
        """Test the fallback row count must be positive."""
        with pytest.raises(ValueError, match="row_count must be > 0"):
            FallbackConfig(row_count=0)
