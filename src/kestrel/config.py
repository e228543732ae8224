# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating Kestrel configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/kestrel/  (default: ~/.config/kestrel/)
#   - Data:    $XDG_DATA_HOME/kestrel/    (default: ~/.local/share/kestrel/)
#   - Cache:   $XDG_CACHE_HOME/kestrel/   (default: ~/.cache/kestrel/)
#   - State:   $XDG_STATE_HOME/kestrel/   (default: ~/.local/state/kestrel/)
#
# Files:
#   - config.toml: User configuration (sync intervals, OAuth client)
#   - kestrel.db:  SQLite mail cache (in data directory)
#
# Secrets: the OAuth client secret may be left out of config.toml, in which
# case it is read from the system keyring.
# =============================================================================

import logging
import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import keyring
import keyring.errors
import tomli_w  # For writing TOML (tomllib is read-only)


logger = logging.getLogger(__name__)


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "kestrel"

# Keyring service under which the OAuth client secret is stored
KEYRING_SERVICE = "kestrel-oauth"


def _xdg_dir(env_var: str, *default: str) -> Path:
    value = os.environ.get(env_var)
    base = Path(value) if value else Path.home().joinpath(*default)
    return base / APP_NAME


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for Kestrel.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/kestrel/
    """
    return _xdg_dir("XDG_CONFIG_HOME", ".config")


def get_xdg_data_home() -> Path:
    """
    Returns the XDG data directory for Kestrel.

    Respects $XDG_DATA_HOME if set, otherwise uses ~/.local/share/kestrel/
    This is where the SQLite cache lives.
    """
    return _xdg_dir("XDG_DATA_HOME", ".local", "share")


def get_xdg_cache_home() -> Path:
    """Returns the XDG cache directory (~/.cache/kestrel/ by default)."""
    return _xdg_dir("XDG_CACHE_HOME", ".cache")


def get_xdg_state_home() -> Path:
    """Returns the XDG state directory (~/.local/state/kestrel/ by default)."""
    return _xdg_dir("XDG_STATE_HOME", ".local", "state")


def ensure_directories() -> dict[str, Path]:
    """
    Create the config, data, cache and state directories for kestrel.

    Returns:
        {"config": ..., "data": ..., "cache": ..., "state": ...}
    """
    dirs = {
        "config": get_xdg_config_home(),
        "data": get_xdg_data_home(),
        "cache": get_xdg_cache_home(),
        "state": get_xdg_state_home(),
    }

    for dir_path in dirs.values():
        dir_path.mkdir(parents=True, exist_ok=True)

    return dirs


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class SyncConfig:
    """
    Configuration for background synchronization and cache freshness.

    Attributes:
        mailbox_interval_minutes: How often to re-sync the mailbox list.
        message_interval_minutes: How often to re-sync message UIDs for
                                  every cached mailbox.
        mailbox_cache_ttl_minutes: How old the cached mailbox list may be
                                   before a read goes to the server.
        batch_size: UIDs per envelope FETCH command.
        page_size: Default number of messages returned by one list read.
    """
    mailbox_interval_minutes: int = 5
    message_interval_minutes: int = 5
    mailbox_cache_ttl_minutes: int = 5
    batch_size: int = 50
    page_size: int = 10


@dataclass
class IMAPConfig:
    """
    IMAP connection settings.

    Attributes:
        timeout_seconds: Socket timeout for dial and every command.
    """
    timeout_seconds: float = 30.0


@dataclass
class OAuthConfig:
    """
    OAuth2 client settings. Defaults target Google's endpoints.

    Attributes:
        client_id: OAuth client ID registered with the provider.
        client_secret: OAuth client secret. If empty, looked up in the
                       system keyring (service "kestrel-oauth", key client_id).
        redirect_uri: Where the provider sends the browser after consent.
                      A local listener there hands the code to the engine.
        authorize_url: Provider's authorization endpoint.
        token_url: Provider's token endpoint (code exchange and refresh).
        userinfo_url: Endpoint returning the signed-in user's email.
        scopes: Requested scopes. Full IMAP access needs https://mail.google.com/.
        imap_url: IMAP server used for accounts created through OAuth.
    """
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = "http://localhost:9498/oauth2callback"
    authorize_url: str = "https://accounts.google.com/o/oauth2/auth"
    token_url: str = "https://oauth2.googleapis.com/token"
    userinfo_url: str = "https://www.googleapis.com/oauth2/v2/userinfo"
    scopes: list[str] = field(default_factory=lambda: [
        "https://mail.google.com/",
        "https://www.googleapis.com/auth/userinfo.email",
    ])
    imap_url: str = "imap.gmail.com:993"

    def resolve_client_secret(self) -> str:
        """
        Return the client secret from config, falling back to the keyring.

        Returns an empty string if neither has one.
        """
        if self.client_secret:
            return self.client_secret
        if not self.client_id:
            return ""
        try:
            secret = keyring.get_password(KEYRING_SERVICE, self.client_id)
        except keyring.errors.KeyringError as e:
            logger.warning(f"Could not read OAuth client secret from keyring: {e}")
            return ""
        return secret or ""


@dataclass
class Config:
    """
    Main configuration container for Kestrel.

    Attributes:
        log_level: Root log level used by the CLI ("DEBUG", "INFO", ...).
        sync: Synchronization configuration.
        imap: IMAP connection configuration.
        oauth: OAuth2 client configuration.

    Usage:
        >>> config = Config.load()
        >>> config.sync.mailbox_cache_ttl_minutes
        5
    """
    log_level: str = "INFO"

    sync: SyncConfig = field(default_factory=SyncConfig)
    imap: IMAPConfig = field(default_factory=IMAPConfig)
    oauth: OAuthConfig = field(default_factory=OAuthConfig)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Where config.toml lives."""
        return get_xdg_config_home() / "config.toml"

    @staticmethod
    def database_path() -> Path:
        """Where the SQLite cache lives."""
        return get_xdg_data_home() / "kestrel.db"

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Read config.toml into a Config.

        A missing file is not an error; every setting keeps its default.

        Args:
            path: Config file to read. Defaults to the XDG location.

        Raises:
            ConfigError: If the config file exists but is invalid.
        """
        config_path = path or cls.config_file_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file: {e}") from e

        return cls._from_dict(data)

    def save(self, path: Path | None = None) -> None:
        """Save configuration to the config file, creating its directory."""
        config_path = path or self.config_file_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Build a Config from parsed TOML, validating as it goes.

        Missing keys take their defaults; wrongly typed values raise ConfigError.
        """
        config = cls()

        general = data.get("general", {})
        config.log_level = str(general.get("log_level", "INFO")).upper()

        defaults = SyncConfig()
        sync = data.get("sync", {})
        config.sync = SyncConfig(
            mailbox_interval_minutes=_positive_int(
                sync, "mailbox_interval_minutes", defaults.mailbox_interval_minutes),
            message_interval_minutes=_positive_int(
                sync, "message_interval_minutes", defaults.message_interval_minutes),
            mailbox_cache_ttl_minutes=_positive_int(
                sync, "mailbox_cache_ttl_minutes", defaults.mailbox_cache_ttl_minutes),
            batch_size=_positive_int(sync, "batch_size", defaults.batch_size),
            page_size=_positive_int(sync, "page_size", defaults.page_size),
        )

        imap = data.get("imap", {})
        timeout = imap.get("timeout_seconds", IMAPConfig.timeout_seconds)
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigError(f"imap.timeout_seconds must be a positive number, got {timeout!r}")
        config.imap = IMAPConfig(timeout_seconds=float(timeout))

        oauth = data.get("oauth", {})
        oauth_defaults = OAuthConfig()
        scopes = oauth.get("scopes", oauth_defaults.scopes)
        if not isinstance(scopes, list):
            raise ConfigError("oauth.scopes must be a list of strings")
        config.oauth = OAuthConfig(
            client_id=oauth.get("client_id", ""),
            client_secret=oauth.get("client_secret", ""),
            redirect_uri=oauth.get("redirect_uri", oauth_defaults.redirect_uri),
            authorize_url=oauth.get("authorize_url", oauth_defaults.authorize_url),
            token_url=oauth.get("token_url", oauth_defaults.token_url),
            userinfo_url=oauth.get("userinfo_url", oauth_defaults.userinfo_url),
            scopes=[str(s) for s in scopes],
            imap_url=oauth.get("imap_url", oauth_defaults.imap_url),
        )

        return config

    def _to_dict(self) -> dict[str, Any]:
        """Convert Config to a dictionary for TOML serialization."""
        data: dict[str, Any] = {}

        data["general"] = {
            "log_level": self.log_level,
        }

        data["sync"] = {
            "mailbox_interval_minutes": self.sync.mailbox_interval_minutes,
            "message_interval_minutes": self.sync.message_interval_minutes,
            "mailbox_cache_ttl_minutes": self.sync.mailbox_cache_ttl_minutes,
            "batch_size": self.sync.batch_size,
            "page_size": self.sync.page_size,
        }

        data["imap"] = {
            "timeout_seconds": self.imap.timeout_seconds,
        }

        # The secret is written only if it was in the file to begin with;
        # keyring-held secrets stay in the keyring.
        data["oauth"] = {
            "client_id": self.oauth.client_id,
            "redirect_uri": self.oauth.redirect_uri,
            "authorize_url": self.oauth.authorize_url,
            "token_url": self.oauth.token_url,
            "userinfo_url": self.oauth.userinfo_url,
            "scopes": list(self.oauth.scopes),
            "imap_url": self.oauth.imap_url,
        }
        if self.oauth.client_secret:
            data["oauth"]["client_secret"] = self.oauth.client_secret

        return data


def _positive_int(section: dict[str, Any], key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{key} must be a positive integer, got {value!r}")
    return value


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """config.toml could not be parsed or holds an invalid value."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths() -> None:
    """
    Show where kestrel keeps its files (the --paths command).
    Paths are printed whether or not they exist yet.
    """
    print(f"Config:  {get_xdg_config_home()}")
    print(f"Data:    {get_xdg_data_home()}")
    print(f"Cache:   {get_xdg_cache_home()}")
    print(f"State:   {get_xdg_state_home()}")
    print()
    print(f"Config file:  {Config.config_file_path()}")
    print(f"Database:     {Config.database_path()}")
