"""Tests for pipeline configuration loading."""

from pathlib import Path

import pytest

from landholdings.errors import ConfigError
from landholdings.models import DEFAULT_CONFIG_PATH, AggregationSettings, load_settings


def write_config(tmp_path, body):
    path = tmp_path / "aggregation.yaml"
    path.write_text(body, encoding="utf-8")
    return str(path)


# =============================================================================
# TestLoadSettings
# =============================================================================


class TestLoadSettings:
    def test_loads_yaml(self, tmp_path):
        path = write_config(tmp_path, (
            "excluded_counties: [harrison, ' polk ']\n"
            "adjacency_tolerance: 0.0002\n"
            "county_workers: 2\n"
            "tiles:\n"
            "  zoom_threshold: 12\n"
        ))
        settings = load_settings(path)

        assert settings.excluded_counties == ["HARRISON", "POLK"]
        assert settings.adjacency_tolerance == pytest.approx(0.0002)
        assert settings.county_workers == 2
        assert settings.tiles.zoom_threshold == 12
        assert settings.tiles.extent == 4096

    def test_empty_file_uses_defaults(self, tmp_path):
        settings = load_settings(write_config(tmp_path, ""))
        assert settings == AggregationSettings()

    def test_shipped_config_is_valid(self):
        assert Path(DEFAULT_CONFIG_PATH).exists()
        settings = load_settings(str(DEFAULT_CONFIG_PATH))
        assert settings.excluded_counties == ["HARRISON"]
        assert settings.tiles.zoom_threshold == 14

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(ConfigError):
            load_settings(str(tmp_path / "nope.yaml"))

    @pytest.mark.parametrize("body", [
        "adjacency_tolerance: -1\n",
        "owner_workers: 0\n",
        "unknown_option: true\n",
        "tiles:\n  cache_ttl_seconds: 0\n",
        "tiles:\n  zoom_threshold: 30\n",
    ])
    def test_invalid_values(self, tmp_path, body):
        with pytest.raises(ConfigError):
            load_settings(write_config(tmp_path, body))

    def test_config_error_is_value_error(self, tmp_path):
        with pytest.raises(ValueError):
            load_settings(write_config(tmp_path, "adjacency_tolerance: -1\n"))


# =============================================================================
# TestExclusion
# =============================================================================


class TestExclusion:
    def test_default_excludes_harrison(self):
        assert AggregationSettings().excluded_counties == ["HARRISON"]

    def test_is_excluded_case_insensitive(self):
        settings = AggregationSettings(excluded_counties=["Harrison"])
        assert settings.is_excluded("harrison")
        assert settings.is_excluded("HARRISON")
        assert not settings.is_excluded("POLK")
