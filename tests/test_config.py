"""Tests for YAML configuration loading and validation"""

import textwrap

import pytest

from shelfbridge.config import DEFAULTS, Config, expand_env, merge_with_defaults

VALID = """
global:
  workers: 5
  timezone: "Europe/Berlin"
  delayed_updates:
    enabled: true
users:
  - id: alice
    abs_url: "https://abs.example.com"
    abs_token: "${ALICE_ABS_TOKEN}"
    hardcover_token: "hc-alice"
"""


@pytest.fixture
def write_config(tmp_path, monkeypatch):
    # Keep secrets.env/.env of the working copy out of the tests
    monkeypatch.chdir(tmp_path)

    def _write(text: str) -> str:
        path = tmp_path / "config.yaml"
        path.write_text(textwrap.dedent(text))
        return str(path)

    return _write


class TestLoading:
    """Test loading and defaults"""

    def test_defaults_are_merged(self, write_config, monkeypatch) -> None:
        """Missing settings come from DEFAULTS, nested sections merge key by key"""
        monkeypatch.setenv("ALICE_ABS_TOKEN", "abs-secret")
        config = Config(write_config(VALID))
        global_config = config.get_global()
        assert global_config["workers"] == 5
        assert global_config["min_progress_threshold"] == 5.0
        assert global_config["delayed_updates"]["enabled"] is True
        assert global_config["delayed_updates"]["session_timeout"] == 900
        assert config.get_cron_config() == {"schedule": "0 3 * * *", "timezone": "Europe/Berlin"}

    def test_env_references_are_expanded(self, write_config, monkeypatch) -> None:
        """${VAR} in user values is read from the environment"""
        monkeypatch.setenv("ALICE_ABS_TOKEN", "abs-secret")
        config = Config(write_config(VALID))
        assert config.get_user("alice")["abs_token"] == "abs-secret"

    def test_env_file_is_loaded(self, write_config, tmp_path, monkeypatch) -> None:
        """secrets.env in the working directory feeds ${VAR} references"""
        monkeypatch.delenv("ALICE_ABS_TOKEN", raising=False)
        (tmp_path / "secrets.env").write_text("ALICE_ABS_TOKEN=from-file\n")
        config = Config(write_config(VALID))
        assert config.get_user("alice")["abs_token"] == "from-file"

    def test_missing_file(self, tmp_path, monkeypatch) -> None:
        """A missing config file is reported"""
        monkeypatch.chdir(tmp_path)
        with pytest.raises(FileNotFoundError):
            Config(str(tmp_path / "missing.yaml"))

    def test_unknown_user(self, write_config, monkeypatch) -> None:
        """Looking up an unknown user raises KeyError"""
        monkeypatch.setenv("ALICE_ABS_TOKEN", "abs-secret")
        config = Config(write_config(VALID))
        with pytest.raises(KeyError):
            config.get_user("carol")


class TestValidation:
    """Test collected validation errors"""

    def test_all_errors_are_reported(self, write_config) -> None:
        """Every problem appears in one ValueError"""
        path = write_config(
            """
            global:
              min_progress_threshold: 150
              workers: 0
              sync_schedule: "not a cron"
              timezone: "Mars/Olympus"
              delayed_updates:
                session_timeout: 10
            users:
              - id: alice
                abs_url: "https://abs.example.com"
              - id: alice
                abs_url: "https://abs.example.com"
                abs_token: "x"
                hardcover_token: "y"
            """
        )
        with pytest.raises(ValueError) as exc_info:
            Config(path)
        message = str(exc_info.value)
        assert message.startswith("Configuration validation failed:")
        assert "min_progress_threshold must be between 0 and 100" in message
        assert "workers must be an integer between 1 and 10" in message
        assert "Invalid sync_schedule" in message
        assert "Unknown timezone" in message
        assert "session_timeout must be between 60 and 7200" in message
        assert "Missing user config: abs_token for user alice" in message
        assert "Duplicate user id: alice" in message

    def test_no_users(self, write_config) -> None:
        """At least one user is required"""
        with pytest.raises(ValueError, match="No users defined"):
            Config(write_config("global: {}\n"))

    def test_reread_thresholds_ordered(self, write_config) -> None:
        """The re-read threshold must sit below the high-progress threshold"""
        path = write_config(
            VALID.replace("  workers: 5", "  workers: 5\n  reread_detection:\n    reread_threshold: 90")
        )
        with pytest.raises(ValueError, match="reread_threshold must be lower"):
            Config(path)


class TestHelpers:
    """Test module helpers"""

    def test_merge_does_not_mutate_defaults(self) -> None:
        """Merged settings are independent copies"""
        merged = merge_with_defaults({"reread_detection": {"reread_threshold": 20}})
        merged["delayed_updates"]["enabled"] = True
        assert merged["reread_detection"]["high_progress_threshold"] == 85
        assert DEFAULTS["delayed_updates"]["enabled"] is False
        assert DEFAULTS["reread_detection"]["reread_threshold"] == 30

    def test_expand_env(self, monkeypatch) -> None:
        """Unknown variables expand to empty strings, non-strings pass through"""
        monkeypatch.setenv("SHELF_TOKEN", "abc")
        monkeypatch.delenv("SHELF_MISSING", raising=False)
        assert expand_env("Bearer ${SHELF_TOKEN}") == "Bearer abc"
        assert expand_env("${SHELF_MISSING}") == ""
        assert expand_env(5) == 5
