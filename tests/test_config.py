"""
Configuration Tests
===================

INVARIANTS TESTED:
1. Defaults apply when no file exists
2. The .local file is deep-merged over the main file
3. Environment variables win over both files
4. Invalid files and unknown provider types raise ConfigurationError
"""

import json

import pytest

from moments.config import (
    AgentsConfig,
    ConfigurationError,
    MomentsConfig,
    deep_merge,
    load_config,
    local_override_path,
)


def write_json(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


class TestDefaults:

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.json", env={})
        assert config.analysis.temporal_window_days == 14
        assert config.analysis.correlation_threshold == 0.6
        assert config.provider.type == "anthropic"
        assert config.provider.fallback == "bedrock"
        assert config.failover.circuit_breaker.failure_threshold == 5

    def test_agent_defaults(self):
        agents = AgentsConfig()
        assert agents.classification_agent.model == "haiku"
        assert agents.content_analyzer.parallel_batch_size == 5
        assert agents.report_generator.enable_parallel_batches is False

    def test_partial_agent_section_keeps_defaults(self):
        agents = AgentsConfig(classification_agent={"temperature": 0.5})
        assert agents.classification_agent.model == "haiku"
        assert agents.classification_agent.temperature == 0.5


class TestFiles:

    def test_local_override_merged(self, tmp_path):
        path = write_json(tmp_path / "moments.json", {
            "analysis": {"temporal_window_days": 7, "max_parallel_requests": 2},
            "monitoring": {"alerts": {"cooldown_minutes": 5}},
        })
        write_json(local_override_path(path), {
            "analysis": {"temporal_window_days": 21},
            "monitoring": {"alerts": {"webhook_url": "https://hooks.example.com"}},
        })

        config = load_config(path, env={})

        assert config.analysis.temporal_window_days == 21
        assert config.analysis.max_parallel_requests == 2
        assert config.monitoring.alerts.cooldown_minutes == 5
        assert config.monitoring.alerts.webhook_url == "https://hooks.example.com"

    def test_local_override_path(self, tmp_path):
        assert local_override_path(tmp_path / "moments.json").name == "moments.local.json"

    def test_config_path_from_env(self, tmp_path):
        path = write_json(tmp_path / "custom.json", {"storage": {"data_dir": "elsewhere"}})
        config = load_config(env={"MOMENTS_CONFIG": str(path)})
        assert config.storage.data_dir == "elsewhere"

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "moments.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Invalid JSON"):
            load_config(path, env={})

    def test_non_object_document(self, tmp_path):
        path = write_json(tmp_path / "moments.json", [1, 2])
        with pytest.raises(ConfigurationError, match="JSON object"):
            load_config(path, env={})

    def test_unknown_keys_ignored(self, tmp_path):
        path = write_json(tmp_path / "moments.json", {"analysis": {"colour": "blue"}})
        assert load_config(path, env={}).analysis.temporal_window_days == 14

    def test_section_must_be_object(self):
        with pytest.raises(ConfigurationError, match="must be an object"):
            MomentsConfig.from_dict({"analysis": 3})


class TestEnvironment:

    def test_env_overrides(self, tmp_path):
        path = write_json(tmp_path / "moments.json", {"provider": {"type": "bedrock", "fallback": None}})

        config = load_config(path, env={
            "MOMENTS_DATA_DIR": "/var/moments",
            "MOMENTS_CATALOG_ROOT": "/srv/catalog",
            "MOMENTS_PROVIDER": "anthropic",
            "ANTHROPIC_API_KEY": "sk-test",
            "AWS_REGION": "eu-west-1",
            "AWS_PROFILE": "research",
        })

        assert config.storage.data_dir == "/var/moments"
        assert config.catalog.root == "/srv/catalog"
        assert config.provider.type == "anthropic"
        assert config.provider.anthropic.api_key == "sk-test"
        assert config.provider.bedrock.region == "eu-west-1"
        assert config.provider.bedrock.profile == "research"

    def test_empty_fallback_env_disables_fallback(self, tmp_path):
        config = load_config(tmp_path / "absent.json", env={"MOMENTS_FALLBACK_PROVIDER": ""})
        assert config.provider.fallback is None

    def test_unknown_provider_type(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Unknown provider type"):
            load_config(tmp_path / "absent.json", env={"MOMENTS_PROVIDER": "openai"})

    def test_fallback_equal_to_primary_dropped(self, tmp_path):
        config = load_config(tmp_path / "absent.json", env={"MOMENTS_PROVIDER": "bedrock"})
        assert config.provider.type == "bedrock"
        assert config.provider.fallback is None


class TestDeepMerge:

    def test_nested(self):
        merged = deep_merge({"a": {"b": 1, "c": 2}, "d": 1}, {"a": {"c": 3}, "e": 4})
        assert merged == {"a": {"b": 1, "c": 3}, "d": 1, "e": 4}

    def test_base_untouched(self):
        base = {"a": {"b": 1}}
        deep_merge(base, {"a": {"b": 2}})
        assert base == {"a": {"b": 1}}

    def test_non_mapping_replaces(self):
        assert deep_merge({"a": {"b": 1}}, {"a": [1]}) == {"a": [1]}
