"""
Environment-driven configuration for the gateway and its OAuth subsystem.
"""

from typing import Annotated, Literal

from pydantic import AfterValidator, AliasChoices, BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from gitlab_mcp.server.auth.errors import stringify_pydantic_error


class ConfigurationError(ValueError):
    """Raised when the environment does not describe a runnable configuration."""


def _env(name: str, env_var: str) -> AliasChoices:
    return AliasChoices(name, env_var)


def normalize_gitlab_base_url(url: str) -> str:
    """Accept either the instance URL or its REST API root (``.../api/v4``)."""
    return url.rstrip("/").removesuffix("/api/v4").rstrip("/")


GitLabBaseUrl = Annotated[str, AfterValidator(normalize_gitlab_base_url)]


class MemoryStorageConfig(BaseModel):
    type: Literal["memory"] = "memory"


class FileStorageConfig(BaseModel):
    type: Literal["file"] = "file"
    path: str = "./data/oauth-sessions.json"
    # seconds between write-behind flushes of pending changes
    save_interval: float = 1.0
    pretty_print: bool = False


class SQLiteStorageConfig(BaseModel):
    type: Literal["sqlite"] = "sqlite"
    path: str = "./data/oauth-sessions.db"
    table_prefix: str = Field("oauth_", pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")


StorageConfig = Annotated[
    MemoryStorageConfig | FileStorageConfig | SQLiteStorageConfig,
    Field(discriminator="type"),
]


class OAuthConfig(BaseSettings):
    """OAuth settings, read from ``OAUTH_*`` and ``GITLAB_OAUTH_*`` variables."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    session_secret: str = Field(
        ..., min_length=32, validation_alias=_env("session_secret", "OAUTH_SESSION_SECRET")
    )
    gitlab_base_url: GitLabBaseUrl = Field(
        "https://gitlab.com",
        validation_alias=AliasChoices("gitlab_base_url", "GITLAB_BASE_URL", "GITLAB_API_URL"),
    )
    gitlab_client_id: str = Field(
        ..., min_length=1, validation_alias=_env("gitlab_client_id", "GITLAB_OAUTH_CLIENT_ID")
    )
    gitlab_client_secret: str | None = Field(
        None, validation_alias=_env("gitlab_client_secret", "GITLAB_OAUTH_CLIENT_SECRET")
    )
    gitlab_scopes: str = Field("api,read_user", validation_alias=_env("gitlab_scopes", "GITLAB_OAUTH_SCOPES"))
    token_ttl: int = Field(3600, gt=0, validation_alias=_env("token_ttl", "OAUTH_TOKEN_TTL"))
    refresh_token_ttl: int = Field(
        604800, gt=0, validation_alias=_env("refresh_token_ttl", "OAUTH_REFRESH_TOKEN_TTL")
    )
    device_poll_interval: float = Field(
        5, gt=0, validation_alias=_env("device_poll_interval", "OAUTH_DEVICE_POLL_INTERVAL")
    )
    device_timeout: float = Field(300, gt=0, validation_alias=_env("device_timeout", "OAUTH_DEVICE_TIMEOUT"))

    storage_type: Literal["memory", "file", "sqlite"] = Field(
        "memory", validation_alias=_env("storage_type", "OAUTH_STORAGE_TYPE")
    )
    storage_file_path: str = Field(
        "./data/oauth-sessions.json", validation_alias=_env("storage_file_path", "OAUTH_STORAGE_FILE_PATH")
    )
    storage_save_interval: float = Field(
        1.0, gt=0, validation_alias=_env("storage_save_interval", "OAUTH_STORAGE_SAVE_INTERVAL")
    )
    storage_pretty_print: bool = Field(
        False, validation_alias=_env("storage_pretty_print", "OAUTH_STORAGE_PRETTY_PRINT")
    )
    storage_sqlite_path: str = Field(
        "./data/oauth-sessions.db", validation_alias=_env("storage_sqlite_path", "OAUTH_STORAGE_SQLITE_PATH")
    )
    storage_table_prefix: str = Field(
        "oauth_", validation_alias=_env("storage_table_prefix", "OAUTH_STORAGE_TABLE_PREFIX")
    )

    @property
    def gitlab_url(self) -> str:
        return self.gitlab_base_url.rstrip("/")

    @property
    def scope_list(self) -> list[str]:
        return [s.strip() for s in self.gitlab_scopes.split(",") if s.strip()]

    def storage_config(self) -> MemoryStorageConfig | FileStorageConfig | SQLiteStorageConfig:
        match self.storage_type:
            case "file":
                return FileStorageConfig(
                    path=self.storage_file_path,
                    save_interval=self.storage_save_interval,
                    pretty_print=self.storage_pretty_print,
                )
            case "sqlite":
                return SQLiteStorageConfig(path=self.storage_sqlite_path, table_prefix=self.storage_table_prefix)
            case _:
                return MemoryStorageConfig()


class ServerSettings(BaseSettings):
    """Process-level settings, read from the environment."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    host: str = "localhost"
    port: int = 3002
    log_level: str = "INFO"
    oauth_enabled: bool = False
    gitlab_token: str | None = None
    gitlab_base_url: GitLabBaseUrl = Field(
        "https://gitlab.com",
        validation_alias=AliasChoices("gitlab_base_url", "GITLAB_BASE_URL", "GITLAB_API_URL"),
    )


class StaticTokenMode(BaseModel):
    kind: Literal["static"] = "static"
    gitlab_token: str
    gitlab_base_url: GitLabBaseUrl = "https://gitlab.com"


class OAuthMode(BaseModel):
    kind: Literal["oauth"] = "oauth"
    config: OAuthConfig


AuthMode = Annotated[StaticTokenMode | OAuthMode, Field(discriminator="kind")]


def load_oauth_config(**overrides) -> OAuthConfig:
    """
    Build the OAuth configuration from the environment.

    Raises:
        ConfigurationError: listing every missing or invalid setting.
    """
    try:
        return OAuthConfig(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid OAuth configuration:\n{stringify_pydantic_error(e)}") from e


def resolve_auth_mode(settings: ServerSettings) -> StaticTokenMode | OAuthMode:
    """Pick static-token or OAuth mode from the server settings."""
    if settings.oauth_enabled:
        return OAuthMode(config=load_oauth_config(gitlab_base_url=settings.gitlab_base_url))
    if not settings.gitlab_token:
        raise ConfigurationError("GITLAB_TOKEN is required when OAuth is disabled (set OAUTH_ENABLED=true to use OAuth)")
    return StaticTokenMode(gitlab_token=settings.gitlab_token, gitlab_base_url=settings.gitlab_base_url)
