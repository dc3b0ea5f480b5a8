import getpass
import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _default_data_dir() -> Path:
    appdata = os.environ.get("APPDATA")
    if appdata:
        return Path(appdata) / "ChatStore"
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return base / "chatstore"


def _default_identity() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "default"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=str(_PROJECT_ROOT / ".env"), env_prefix="CHATSTORE_")

    app_name: str = "ChatStore"

    # Per-user application data directory (database, wrapped key, logs).
    data_dir: Path = _default_data_dir()
    database_filename: str = "chats.db"
    key_filename: str = "db_key.dat"
    sqlite_echo: bool = False

    # Logging
    log_dir_name: str = "logs"
    log_level: str = "INFO"
    log_to_console: bool = False

    # Secret protection: keyring, master_key, or passphrase.
    secret_backend: str = "keyring"
    keyring_service: str = "chatstore"
    keyring_username: str = "content-key-wrap"
    # 32-byte AES key, base64url-encoded. Used when secret_backend=master_key.
    master_key: str = "CHANGE_ME"
    # Used when secret_backend=passphrase.
    passphrase_file: str | None = None
    salt_file: str | None = None
    # Wrapped keys are bound to this identity.
    profile_identity: str = _default_identity()

    # Conversations
    title_max_length: int = 200
    default_title: str = "New Chat"

    # Stored content without '=' and shorter than this is treated as pre-encryption plaintext.
    legacy_plaintext_max_length: int = 50

    @property
    def database_path(self) -> Path:
        return Path(self.data_dir) / self.database_filename

    @property
    def key_path(self) -> Path:
        return Path(self.data_dir) / self.key_filename

    @property
    def log_dir(self) -> Path:
        return Path(self.data_dir) / self.log_dir_name

    @property
    def database_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.database_path}"


settings = Settings()
