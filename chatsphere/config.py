"""Settings loaded from environment variables.

Environment Configuration:
    CHATSPHERE_DATA_DIR: Directory for local state and the sync journal
    CHATSPHERE_ACCESS_TOKEN: Bearer token for the remote drive (sync is
        unavailable without it)
    CHATSPHERE_GRAPH_API_BASE: Drive API base URL
    CHATSPHERE_REQUEST_TIMEOUT: Request timeout in seconds
    CHATSPHERE_ROOT_FOLDER / CHATSPHERE_CONVERSATIONS_FOLDER: Remote folders
    CHATSPHERE_METADATA_MODEL: Model used for conversation titles
    LOG_LEVEL: Logging level
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chatsphere.sync.metadata import DEFAULT_MODEL
from chatsphere.sync.store_client import GRAPH_API_BASE


class Settings(BaseSettings):
    """Sync configuration."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    data_dir: Path = Field(default=Path.home() / ".chatsphere", alias="CHATSPHERE_DATA_DIR")
    graph_api_base: str = Field(default=GRAPH_API_BASE, alias="CHATSPHERE_GRAPH_API_BASE")
    access_token: str | None = Field(default=None, alias="CHATSPHERE_ACCESS_TOKEN")
    request_timeout: float = Field(default=30, alias="CHATSPHERE_REQUEST_TIMEOUT")
    root_folder: str = Field(default=".chatsphere", alias="CHATSPHERE_ROOT_FOLDER")
    conversations_folder: str = Field(
        default="conversations", alias="CHATSPHERE_CONVERSATIONS_FOLDER"
    )
    metadata_model: str = Field(default=DEFAULT_MODEL, alias="CHATSPHERE_METADATA_MODEL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("data_dir")
    @classmethod
    def expand_data_dir(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @property
    def state_dir(self) -> Path:
        return self.data_dir / "state"

    @property
    def remote_folders(self) -> tuple[str, ...]:
        return (self.root_folder, self.conversations_folder)


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
