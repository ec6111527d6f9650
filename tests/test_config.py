"""Tests for configuration loading."""

import json

import pytest
from pydantic import ValidationError

from chatvault.config.loader import (
    camel_to_snake,
    convert_keys,
    convert_to_camel,
    load_config,
    save_config,
    snake_to_camel,
)
from chatvault.config.schema import BudgetConfig, Config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in ("CHATVAULT_BUDGET__LIMIT", "CHATVAULT_COMPACTION__AUTO", "CHATVAULT_STORAGE__ROOT"):
        monkeypatch.delenv(key, raising=False)


class TestDefaults:
    def test_defaults(self):
        config = Config()
        assert config.budget.limit == 100_000
        assert config.budget.compaction_threshold == 0.9
        assert config.compaction.auto is True
        assert config.compaction.summary_token_limit == 1000
        assert config.storage_path.name == "features"

    def test_invalid_threshold(self):
        with pytest.raises(ValidationError):
            BudgetConfig(compaction_threshold=1.5)

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("CHATVAULT_BUDGET__LIMIT", "150000")
        monkeypatch.setenv("CHATVAULT_COMPACTION__AUTO", "false")
        config = Config()
        assert config.budget.limit == 150_000
        assert config.compaction.auto is False


class TestGetProvider:
    def test_matches_model(self):
        config = Config()
        config.providers.openai.api_key = "sk-openai"
        assert config.get_provider("openai/gpt-4o").api_key == "sk-openai"

    def test_default_model_is_anthropic(self):
        config = Config()
        assert config.get_provider() is config.providers.anthropic

    def test_unknown_model_falls_back_to_configured_key(self):
        config = Config()
        config.providers.gemini.api_key = "g-key"
        assert config.get_provider("mistral/large").api_key == "g-key"


class TestLoadSave:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "config.json")
        assert config.budget.limit == 100_000

    def test_camel_case_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "storage": {"root": str(tmp_path / "data")},
            "budget": {"limit": 50000, "compactionThreshold": 0.8},
            "compaction": {"summaryTokenLimit": 500},
            "providers": {"anthropic": {"apiKey": "sk-test"}},
        }))

        config = load_config(path)

        assert config.storage_path == tmp_path / "data"
        assert config.budget.limit == 50000
        assert config.budget.compaction_threshold == 0.8
        assert config.compaction.summary_token_limit == 500
        assert config.providers.anthropic.api_key == "sk-test"

    def test_broken_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{broken")
        assert load_config(path).budget.limit == 100_000

    def test_invalid_values_give_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"budget": {"limit": -1}}))
        assert load_config(path).budget.limit == 100_000

    def test_save_writes_camel_case(self, tmp_path):
        path = tmp_path / "nested" / "config.json"
        config = Config()
        config.budget.compaction_threshold = 0.75

        save_config(config, path)

        data = json.loads(path.read_text())
        assert data["budget"]["compactionThreshold"] == 0.75
        assert "summaryTokenLimit" in data["compaction"]
        assert load_config(path).budget.compaction_threshold == 0.75


class TestKeyConversion:
    def test_camel_to_snake(self):
        assert camel_to_snake("compactionThreshold") == "compaction_threshold"
        assert camel_to_snake("apiKey") == "api_key"

    def test_snake_to_camel(self):
        assert snake_to_camel("summary_token_limit") == "summaryTokenLimit"

    def test_nested(self):
        data = {"providers": {"openai": {"apiBase": "http://x"}}, "list": [{"aB": 1}]}
        assert convert_keys(data) == {"providers": {"openai": {"api_base": "http://x"}}, "list": [{"a_b": 1}]}
        assert convert_to_camel(convert_keys(data)) == data
