"""
Tests for configuration loading and saving
"""
import keyring.errors
import pytest

from kestrel.config import Config, ConfigError, OAuthConfig, get_xdg_config_home


class TestConfigFile:
    """Tests for config.toml handling"""

    def test_missing_file_gives_defaults(self, temp_dir):
        config = Config.load(temp_dir / "missing.toml")

        assert config.sync.mailbox_cache_ttl_minutes == 5
        assert config.sync.batch_size == 50
        assert config.imap.timeout_seconds == 30.0
        assert config.oauth.imap_url == "imap.gmail.com:993"

    def test_save_and_load(self, temp_dir):
        path = temp_dir / "sub" / "config.toml"
        config = Config()
        config.log_level = "DEBUG"
        config.sync.mailbox_interval_minutes = 15
        config.oauth.client_id = "client-123"
        config.save(path)

        loaded = Config.load(path)

        assert loaded.log_level == "DEBUG"
        assert loaded.sync.mailbox_interval_minutes == 15
        assert loaded.oauth.client_id == "client-123"
        assert "client_secret" not in path.read_text()

    def test_partial_file_fills_defaults(self, temp_dir):
        path = temp_dir / "config.toml"
        path.write_text("[sync]\npage_size = 25\n")

        config = Config.load(path)

        assert config.sync.page_size == 25
        assert config.sync.message_interval_minutes == 5

    def test_invalid_toml(self, temp_dir):
        path = temp_dir / "config.toml"
        path.write_text("[sync\n")

        with pytest.raises(ConfigError):
            Config.load(path)

    @pytest.mark.parametrize("line", [
        "mailbox_interval_minutes = 0",
        "batch_size = -5",
        'page_size = "ten"',
        "mailbox_cache_ttl_minutes = true",
    ])
    def test_rejects_bad_sync_values(self, temp_dir, line):
        path = temp_dir / "config.toml"
        path.write_text(f"[sync]\n{line}\n")

        with pytest.raises(ConfigError):
            Config.load(path)

    def test_xdg_override(self, temp_dir, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(temp_dir))
        assert get_xdg_config_home() == temp_dir / "kestrel"
        assert Config.config_file_path() == temp_dir / "kestrel" / "config.toml"


class TestClientSecret:
    """Tests for resolving the OAuth client secret"""

    def test_config_value_wins(self, monkeypatch):
        monkeypatch.setattr("kestrel.config.keyring.get_password", lambda *a: "from-keyring")
        assert OAuthConfig(client_id="id", client_secret="inline").resolve_client_secret() == "inline"

    def test_keyring_fallback(self, monkeypatch):
        calls = []

        def get_password(service, username):
            calls.append((service, username))
            return "from-keyring"

        monkeypatch.setattr("kestrel.config.keyring.get_password", get_password)

        assert OAuthConfig(client_id="id").resolve_client_secret() == "from-keyring"
        assert calls == [("kestrel-oauth", "id")]

    def test_keyring_unavailable(self, monkeypatch):
        def get_password(service, username):
            raise keyring.errors.NoKeyringError("no backend")

        monkeypatch.setattr("kestrel.config.keyring.get_password", get_password)

        assert OAuthConfig(client_id="id").resolve_client_secret() == ""
