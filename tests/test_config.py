"""
Tests for configuration loading.
"""

import pytest

from scadsafe.config import LLMConfig, ScadSafeConfig, ValidatorConfig


@pytest.fixture(autouse=True)
def no_ambient_config(monkeypatch, tmp_path):
    monkeypatch.delenv("SCADSAFE_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)


class TestLoad:
    def test_defaults_without_file(self):
        config = ScadSafeConfig.load()
        assert config.orchestrator.max_attempts == 3
        assert config.validator == ValidatorConfig()
        assert config.sandbox.timeout == 30.0
        assert "BOSL2" in config.sandbox.libraries

    def test_reads_toml(self, tmp_path):
        path = tmp_path / "custom.toml"
        path.write_text(
            'output_dir = "./build"\n'
            "[orchestrator]\nmax_attempts = 5\n"
            "[validator]\nmax_hulls = 2\nunknown_key = 1\n"
            '[sandbox]\ncompiler_path = "/opt/openscad"\ntimeout = 12.5\n',
            encoding="utf-8",
        )
        config = ScadSafeConfig.load(str(path))
        assert config.output_dir == "./build"
        assert config.orchestrator.max_attempts == 5
        assert config.validator.max_hulls == 2
        assert config.validator.max_primitives == 30
        assert config.sandbox.compiler_path == "/opt/openscad"
        assert config.sandbox.timeout == 12.5

    def test_env_var_names_file(self, tmp_path, monkeypatch):
        path = tmp_path / "env.toml"
        path.write_text("[orchestrator]\nmax_attempts = 7\n", encoding="utf-8")
        monkeypatch.setenv("SCADSAFE_CONFIG", str(path))
        assert ScadSafeConfig.load().orchestrator.max_attempts == 7

    def test_overrides_win(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('[llm]\nmodel = "gpt-4o"\n', encoding="utf-8")
        config = ScadSafeConfig.load(str(path), **{"llm.model": "deepseek-chat",
                                                   "orchestrator.max_attempts": None})
        assert config.llm.model == "deepseek-chat"
        assert config.orchestrator.max_attempts == 3

    def test_round_trip(self, tmp_path):
        original = ScadSafeConfig()
        original.orchestrator.max_attempts = 4
        original.validator.max_scale_ratio = 3.5
        original.sandbox.compiler_path = "/usr/bin/openscad"
        path = tmp_path / "config.toml"
        path.write_text(original.to_toml_string(), encoding="utf-8")

        loaded = ScadSafeConfig.load(str(path))
        assert loaded.orchestrator == original.orchestrator
        assert loaded.validator == original.validator
        assert loaded.sandbox == original.sandbox
        assert loaded.llm.model == original.llm.model


class TestApiKey:
    def test_explicit_key(self):
        assert LLMConfig(api_key="k").resolve_api_key() == "k"

    def test_provider_env_preferred(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "openai")
        monkeypatch.setenv("DEEPSEEK_API_KEY", "deepseek")
        assert LLMConfig(model="deepseek-chat").resolve_api_key() == "deepseek"

    def test_missing(self, monkeypatch):
        for name in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "DEEPSEEK_API_KEY", "GEMINI_API_KEY"):
            monkeypatch.delenv(name, raising=False)
        assert LLMConfig().resolve_api_key() is None
