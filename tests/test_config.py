"""Tests for configuration loading."""

import copy
import json

import pytest

from arbiter.config import (
    DEFAULT_CONFIG,
    get_config,
    load_config,
    parse_config,
    reset_config,
    set_config,
)
from arbiter.schemas import BudgetPolicy, Capability, PhaseId
from arbiter.validation import ValidationError


class TestParseConfig:
    """Test validation of raw configuration."""

    def setup_method(self):
        self.data = copy.deepcopy(DEFAULT_CONFIG)

    def test_default_is_valid(self):
        config = parse_config(self.data)

        assert [b.backend_id for b in config.backends] == ["ripgrep", "mgrep"]
        assert config.budget_policy == BudgetPolicy.SOFT_WARN
        assert config.ceilings()[PhaseId.PLAN] == 50_000
        assert config.max_attempts is None

    def test_builds_components(self):
        config = parse_config(self.data)

        backends = config.build_backends()
        assert backends[0].tags == frozenset({Capability.EXACT})
        assert config.quota_tiers()["free"].limit == 100
        assert config.commands()["mgrep"] == ["mgrep", "{query}"]
        rules = {r.phase_id: r for r in config.phase_rules()}
        assert rules[PhaseId.BUILD].allows_write

    def test_duplicate_backend(self):
        self.data["backends"].append(dict(self.data["backends"][0]))
        with pytest.raises(ValidationError):
            parse_config(self.data)

    def test_unknown_tier(self):
        self.data["backends"][0]["quota_tier"] = "enterprise"
        with pytest.raises(ValidationError):
            parse_config(self.data)

    def test_missing_phase(self):
        del self.data["phases"]["review"]
        with pytest.raises(ValidationError):
            parse_config(self.data)

    def test_unknown_capability(self):
        self.data["backends"][0]["tags"] = ["fuzzy"]
        with pytest.raises(ValidationError):
            parse_config(self.data)

    def test_non_positive_ceiling(self):
        self.data["phases"]["plan"]["token_ceiling"] = 0
        with pytest.raises(ValidationError):
            parse_config(self.data)

    def test_not_a_mapping(self):
        with pytest.raises(ValidationError):
            parse_config(["nope"])


class TestLoadConfig:
    """Test load priority and the runtime default."""

    def teardown_method(self):
        reset_config()

    def test_explicit_path(self, tmp_path, monkeypatch):
        data = copy.deepcopy(DEFAULT_CONFIG)
        data["max_attempts"] = 2
        path = tmp_path / "arbiter.json"
        path.write_text(json.dumps(data))
        monkeypatch.setenv("ARBITER_CONFIG_JSON", json.dumps(DEFAULT_CONFIG))

        assert load_config(path).max_attempts == 2

    def test_json_env(self, monkeypatch):
        data = copy.deepcopy(DEFAULT_CONFIG)
        data["budget_policy"] = "hard_stop"
        monkeypatch.setenv("ARBITER_CONFIG_JSON", json.dumps(data))

        assert load_config().budget_policy == BudgetPolicy.HARD_STOP

    def test_malformed_json_env_ignored(self, monkeypatch):
        monkeypatch.setenv("ARBITER_CONFIG_JSON", "{not json")
        monkeypatch.delenv("ARBITER_CONFIG_PATH", raising=False)
        assert load_config().budget_policy == BudgetPolicy.SOFT_WARN

    def test_path_env(self, tmp_path, monkeypatch):
        data = copy.deepcopy(DEFAULT_CONFIG)
        data["attempt_timeout_seconds"] = 3
        path = tmp_path / "arbiter.json"
        path.write_text(json.dumps(data))
        monkeypatch.delenv("ARBITER_CONFIG_JSON", raising=False)
        monkeypatch.setenv("ARBITER_CONFIG_PATH", str(path))

        assert load_config().attempt_timeout_seconds == 3

    def test_invalid_file(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{")
        with pytest.raises(ValidationError):
            load_config(path)

    def test_set_config(self, monkeypatch):
        monkeypatch.delenv("ARBITER_CONFIG_JSON", raising=False)
        monkeypatch.delenv("ARBITER_CONFIG_PATH", raising=False)
        data = copy.deepcopy(DEFAULT_CONFIG)
        data["max_attempts"] = 1
        set_config(data)

        assert load_config().max_attempts == 1
        reset_config()
        assert load_config().max_attempts is None

    def test_get_config_returns_copy(self):
        config = get_config()
        config.max_attempts = 5
        assert get_config().max_attempts is None
