"""
Unit tests for configuration loading and validation.

Tests strict validation, defaults and hot reload of governance configs.
"""

import os
import tempfile

import pytest
import yaml

from clinical_ai_guard.config.loader import (
    AdmissionConfig,
    CacheConfig,
    ConfigSource,
    GovernanceConfig,
    MonitorConfig,
    ThresholdBand,
    load_governance_config,
    parse_governance_config,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
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
            "admission": {
                "global_limit": 150,
                "task_limits": {"explain_triage": 10},
                "role_quotas": {"nurse": 50},
            },
            "cache": {
                "default_ttl": 600,
                "task_ttls": {"review_treatment": 900},
                "non_cacheable_tasks": ["emergency_assessment"],
            },
            "errors": {"clinical_tasks": ["explain_triage"]},
            "monitor": {
                "latency_ms": {"warning": 2000, "critical": 4000},
                "alert_history": 50,
            },
            "provider": {"base_url": "http://ollama:11434/v1", "model": "medgemma"},
        })

        config = load_governance_config(config_path)

        assert config.admission.global_limit == 150
        assert config.admission.task_limit("explain_triage") == 10
        assert config.admission.role_quota("nurse") == 50
        assert config.cache.ttl_for("review_treatment") == 900
        assert config.cache.ttl_for("unlisted") == 600
        assert config.cache.non_cacheable_tasks == ("emergency_assessment",)
        assert config.errors.clinical_tasks == ("explain_triage",)
        assert config.monitor.latency_ms == ThresholdBand(2000, 4000)
        assert config.monitor.alert_history == 50
        assert config.provider.model == "medgemma"

    def test_partial_tables_extend_defaults(self):
        """A partial limits table keeps the built-in entries."""
        config = parse_governance_config({"admission": {"task_limits": {"new_task": 5}}})

        assert config.admission.task_limit("new_task") == 5
        assert config.admission.task_limit("explain_triage") == 30
        assert config.admission.task_limit("unknown_task") == 20

    def test_missing_sections_use_defaults(self):
        """Test that omitted sections fall back to defaults."""
        config = parse_governance_config({"monitor": {}})

        assert config == GovernanceConfig()
        assert config.admission.global_limit == 200
        assert config.admission.role_quota("doctor") == 500
        assert config.admission.role_quota("visitor") == 100
        assert config.cache.ttl_for("imci_classification") == 7200
        assert config.monitor.error_rate == ThresholdBand(0.05, 0.15)

    def test_unknown_top_level_key_rejected(self):
        with pytest.raises(ValueError, match="Unknown keys in configuration"):
            parse_governance_config({"budget": {}})

    def test_unknown_section_key_rejected(self):
        with pytest.raises(ValueError, match="Unknown keys in admission"):
            parse_governance_config({"admission": {"global_limt": 10}})

    def test_non_positive_limit_rejected(self):
        with pytest.raises(ValueError, match="admission.task_limits.explain_triage"):
            parse_governance_config({"admission": {"task_limits": {"explain_triage": 0}}})

    def test_boolean_limit_rejected(self):
        with pytest.raises(ValueError):
            parse_governance_config({"admission": {"global_limit": True}})

    def test_inverted_threshold_band_rejected(self):
        with pytest.raises(ValueError, match="critical threshold"):
            parse_governance_config({"monitor": {"error_rate": {"warning": 0.5, "critical": 0.1}}})

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError, match="'cache' must be a dictionary"):
            parse_governance_config({"cache": ["default_ttl"]})

    def test_missing_file_raises(self):
        with pytest.raises(FileNotFoundError):
            load_governance_config(os.path.join(self.temp_dir, "nope.yaml"))

    def test_empty_file_raises(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()

        with pytest.raises(ValueError, match="empty"):
            load_governance_config(config_path)

    def test_invalid_yaml_raises(self):
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("admission: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            load_governance_config(config_path)


class TestConfigDataclasses:
    """Test validation on the config dataclasses themselves."""

    def test_admission_requires_default_entries(self):
        with pytest.raises(ValueError, match="default"):
            AdmissionConfig(task_limits={"explain_triage": 30})

    def test_version_ttl_must_outlive_cache_entries(self):
        with pytest.raises(ValueError, match="version_ttl"):
            CacheConfig(default_ttl=3600, version_ttl=3600)

    def test_monitor_sizes_positive(self):
        with pytest.raises(ValueError):
            MonitorConfig(latency_samples=0)

    def test_thresholds_mapping(self):
        thresholds = MonitorConfig().thresholds()
        assert thresholds["latency_ms"] == {"warning": 5000, "critical": 10000}
        assert thresholds["daily_requests"] == {"warning": 1000, "critical": 2000}


class TestConfigSource:
    """Test hot reload through ConfigSource."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_defaults_when_no_config_given(self):
        assert ConfigSource().current == GovernanceConfig()

    def test_update_swaps_config(self):
        source = ConfigSource()
        new_config = GovernanceConfig(admission=AdmissionConfig(global_limit=10))

        source.update(new_config)

        assert source.current.admission.global_limit == 10

    def test_update_rejects_wrong_type(self):
        with pytest.raises(ValueError):
            ConfigSource().update({"admission": {}})

    def test_reload_from_file(self):
        config_path = os.path.join(self.temp_dir, "config.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump({"admission": {"global_limit": 42}}, f)

        source = ConfigSource()
        config = source.reload(config_path)

        assert config.admission.global_limit == 42
        assert source.current is config

    def test_failed_reload_keeps_current_config(self):
        config_path = os.path.join(self.temp_dir, "config.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump({"admission": {"global_limit": -1}}, f)

        source = ConfigSource()
        with pytest.raises(ValueError):
            source.reload(config_path)

        assert source.current.admission.global_limit == 200
