"""
Tests for judge configuration.

Tests:
- YAML loading with inheritance and overrides
- Environment variable substitution
- CLI override parsing
- Judge and panel factories
"""

import pytest

from judge_calibration import (
    ConfigLoader,
    InvalidArgumentError,
    JudgeConfig,
    MultiJudgeEvaluator,
    StatisticalJudge,
    create_evaluator,
    create_judge,
)
from judge_calibration.config import parse_cli_overrides, substitute_env


@pytest.fixture
def config_dir(tmp_path):
    (tmp_path / "base.yaml").write_text(
        "models:\n"
        "  - gpt-4o\n"
        "  - claude-sonnet-4-20250514\n"
        "criteria: Is the answer correct?\n"
        "temperature: 0.0\n"
        "max_attempts: 5\n"
    )
    (tmp_path / "strict.yaml").write_text(
        "extends: base\n"
        "default_strategy: unanimous\n"
        "temperature: 0.2\n"
    )
    return tmp_path


class TestJudgeConfig:
    """Tests for the JudgeConfig dataclass."""

    def test_defaults(self):
        config = JudgeConfig()

        assert config.models == ["gpt-4o"]
        assert config.default_strategy == "majority"
        assert config.threshold == pytest.approx(0.66)
        assert config.agreement_floor == pytest.approx(0.6)

    def test_single_model_string(self):
        assert JudgeConfig(models="gpt-4o").models == ["gpt-4o"]

    def test_requires_a_model(self):
        with pytest.raises(InvalidArgumentError):
            JudgeConfig(models=[])

    def test_policy(self):
        policy = JudgeConfig(timeout=10, max_attempts=2, max_workers=8).policy

        assert policy.timeout == 10
        assert policy.max_attempts == 2
        assert policy.max_workers == 8

    def test_from_dict_ignores_unknown_keys(self):
        config = JudgeConfig.from_dict({"temperature": "0.5", "unknown": 1})

        assert config.temperature == 0.5

    def test_from_dict_rejects_bad_values(self):
        with pytest.raises(InvalidArgumentError, match="max_attempts"):
            JudgeConfig.from_dict({"max_attempts": "many"})

    def test_save_and_load(self, tmp_path):
        config = JudgeConfig(models=["gpt-4o", "o3-mini"], criteria="Correct?", threshold=0.75)
        config.save(tmp_path / "saved" / "panel.yaml")

        loaded = ConfigLoader(tmp_path / "saved").load("panel")

        assert loaded == config


class TestConfigLoader:
    """Tests for ConfigLoader."""

    def test_load_by_name(self, config_dir):
        config = ConfigLoader(config_dir).load("base")

        assert config.models == ["gpt-4o", "claude-sonnet-4-20250514"]
        assert config.max_attempts == 5

    def test_load_by_path(self, config_dir):
        config = ConfigLoader().load(config_dir / "base.yaml")

        assert config.criteria == "Is the answer correct?"

    def test_extends(self, config_dir):
        """Child values win; everything else comes from the parent."""
        config = ConfigLoader(config_dir).load("strict")

        assert config.default_strategy == "unanimous"
        assert config.temperature == pytest.approx(0.2)
        assert config.max_attempts == 5
        assert config.extends is None

    def test_overrides(self, config_dir):
        config = ConfigLoader(config_dir).load("strict", overrides={"temperature": 0.7})

        assert config.temperature == pytest.approx(0.7)

    def test_circular_inheritance(self, tmp_path):
        (tmp_path / "a.yaml").write_text("extends: b\n")
        (tmp_path / "b.yaml").write_text("extends: a\n")

        with pytest.raises(InvalidArgumentError, match="Circular"):
            ConfigLoader(tmp_path).load("a")

    def test_missing_config(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigLoader(tmp_path).load("nope")

    def test_environment_substitution(self, tmp_path, monkeypatch):
        """Substituted strings are coerced to the field's type."""
        monkeypatch.setenv("JUDGE_TIMEOUT", "12.5")
        monkeypatch.delenv("JUDGE_WORKERS", raising=False)
        (tmp_path / "env.yaml").write_text(
            "timeout: ${JUDGE_TIMEOUT}\nmax_workers: ${JUDGE_WORKERS:6}\n"
        )

        config = ConfigLoader(tmp_path).load("env")

        assert config.timeout == pytest.approx(12.5)
        assert config.max_workers == 6


class TestSubstituteEnv:
    """Tests for substitute_env."""

    def test_nested_values(self, monkeypatch):
        monkeypatch.setenv("JUDGE_MODEL", "gpt-4o")

        data = substitute_env({"models": ["${JUDGE_MODEL}"], "inner": {"x": "${JUDGE_MODEL}-mini"}})

        assert data == {"models": ["gpt-4o"], "inner": {"x": "gpt-4o-mini"}}

    def test_unset_without_default_is_left(self, monkeypatch):
        monkeypatch.delenv("JUDGE_UNSET", raising=False)

        assert substitute_env("${JUDGE_UNSET}") == "${JUDGE_UNSET}"

    def test_non_strings_untouched(self):
        assert substitute_env(3) == 3


class TestParseCliOverrides:
    """Tests for parse_cli_overrides."""

    def test_parses_values(self):
        overrides = parse_cli_overrides(
            [
                "--temperature=0.5",
                "--max-workers=8",
                "--models=gpt-4o,o3-mini",
                "--criteria=Is it right?",
                "--min-positive=none",
                "--verbose",
                "positional",
            ]
        )

        assert overrides == {
            "temperature": 0.5,
            "max_workers": 8,
            "models": ["gpt-4o", "o3-mini"],
            "criteria": "Is it right?",
            "min_positive": None,
        }

    def test_booleans(self):
        assert parse_cli_overrides(["--flag=true", "--other=False"]) == {
            "flag": True,
            "other": False,
        }


class TestFactories:
    """Tests for create_judge and create_evaluator."""

    def test_create_judge(self, stub_backend):
        config = JudgeConfig(models=["gpt-4o-mini"], criteria="Correct?", max_attempts=4)

        judge = create_judge(config, backend=stub_backend(lambda i, o: True))

        assert isinstance(judge, StatisticalJudge)
        assert judge.model == "gpt-4o-mini"
        assert judge.criteria == "Correct?"
        assert judge.policy.max_attempts == 4
        assert judge.evaluate("q", "a").verdict is True

    def test_create_evaluator(self, stub_backend):
        config = JudgeConfig(
            models=["gpt-4o", "o3-mini", "claude-sonnet-4-20250514"],
            criteria="Correct?",
            default_strategy="threshold",
            threshold=0.5,
        )

        evaluator = create_evaluator(config, backend=stub_backend(lambda i, o: True))

        assert isinstance(evaluator, MultiJudgeEvaluator)
        assert evaluator.judge_names == config.models
        assert evaluator.evaluate("q", "a").strategy == "threshold"

    def test_create_evaluator_needs_two_models(self):
        with pytest.raises(InvalidArgumentError, match="at least 2 models"):
            create_evaluator(JudgeConfig(models=["gpt-4o"]))
