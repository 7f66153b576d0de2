from functools import lru_cache
from pathlib import Path
from typing import Annotated, List, Literal

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_MEDIA_TYPES: tuple[str, ...] = (
    "image/jpeg",
    "image/webp",
    "image/svg",
    "image/svg+xml",
    "image/png",
    "image/gif",
    "video/mp4",
    "audio/mpeg",
    "application/pdf",
    "application/msword",
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Huddle API", description="Human readable service name")
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=True, description="Enable debug mode")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1",
        ],
        description="List of allowed CORS origins",
    )
    cors_allow_origin_regex: str | None = Field(
        default=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        description="Optional regular expression that matches allowed CORS origins",
    )

    database_user: str = Field(default="huddle", validation_alias="DB_USER")
    database_password: str = Field(default="huddle", validation_alias="DB_PASSWORD")
    database_host: str = Field(default="db", validation_alias="DB_HOST")
    database_port: int = Field(default=3306, validation_alias="DB_PORT")
    database_name: str = Field(default="huddle", validation_alias="DB_NAME")
    database_url_override: str | None = Field(
        default=None,
        validation_alias="DATABASE_URL",
        description="Full SQLAlchemy URL; takes precedence over the DB_* parts.",
    )

    jwt_secret_key: str = Field(default="changeme")
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60)

    chat_history_default_limit: int = Field(default=50)
    chat_history_max_limit: int = Field(default=100)
    chat_message_max_length: int = Field(default=4000)
    direct_room_preview_limit: int = Field(
        default=50,
        description="Number of recent messages embedded when a direct room is opened",
    )
    group_delete_policy: Literal["creator", "any-member"] = Field(
        default="creator",
        description="Who may delete a group room: its creator only, or any current member.",
    )
    notification_preview_length: int = Field(
        default=100,
        description="Characters of message content copied into a notification body",
    )

    media_root: Path = Field(default=Path("uploads/chat"))
    media_base_url: str = Field(default="/api/rooms")
    max_upload_size: int = Field(
        default=50 * 1024 * 1024, description="Maximum upload size in bytes"
    )
    media_allowed_types: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_MEDIA_TYPES),
        description="MIME types accepted for chat attachments; empty accepts anything",
    )

    websocket_keepalive_timeout_seconds: float = Field(default=25.0)
    websocket_keepalive_ping_interval_seconds: float = Field(default=25.0)
    realtime_typing_ttl_seconds: float = Field(
        default=8.0,
        description="Seconds after which an un-refreshed typing indicator expires",
    )
    realtime_redis_url: str | None = Field(
        default=None,
        description="Redis URL used to relay realtime events between API nodes.",
    )
    realtime_namespace: str = Field(default="huddle.realtime")
    realtime_node_id: str | None = Field(default=None)

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"mysql+pymysql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @field_validator("cors_origins", "media_allowed_types", mode="before")
    @classmethod
    def split_comma_separated(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator("media_root", mode="before")
    @classmethod
    def resolve_media_root(cls, value: str | Path) -> Path:
        if isinstance(value, Path):
            return value.resolve()
        return Path(value).resolve()


@lru_cache
def get_settings() -> Settings:
    return Settings()
