"""
Tests for settings loading.

Tests cover:
- Defaults when the config file is missing
- YAML sections merged over defaults
- Environment overrides for secrets and endpoints
"""

from commitloom.setting import AppSettings, load_settings


class TestLoadSettings:
    """Tests for load_settings."""

    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        monkeypatch.delenv("LLM_PROVIDER", raising=False)

        settings = load_settings(tmp_path / "missing.yaml")

        assert isinstance(settings, AppSettings)
        assert settings.scan.user_retries == 3
        assert settings.clustering.max_time_gap_hours == 8.0

    def test_yaml_sections(self, tmp_path, monkeypatch):
        monkeypatch.delenv("LLM_MODEL", raising=False)
        config = tmp_path / "commitloom.yaml"
        config.write_text("scan:\n  repo_concurrency: 2\nllm:\n  model: gpt-4o\n")

        settings = load_settings(config)

        assert settings.scan.repo_concurrency == 2
        assert settings.scan.commit_concurrency == 10
        assert settings.llm.model == "gpt-4o"

    def test_environment_overrides(self, tmp_path, monkeypatch):
        config = tmp_path / "commitloom.yaml"
        config.write_text("github:\n  token: from-yaml\n")
        monkeypatch.setenv("GITHUB_TOKEN", "from-env")
        monkeypatch.setenv("DATABASE_URL", "sqlite://")

        settings = load_settings(config)

        assert settings.github.token == "from-env"
        assert settings.database.url == "sqlite://"
