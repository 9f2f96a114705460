from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Amply Sync API", description="Human readable service name")
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://127.0.0.1",
            "http://127.0.0.1:3000",
        ],
        description="List of allowed CORS origins",
    )

    database_user: str = Field(default="amply", validation_alias="DB_USER")
    database_password: str = Field(default="amply", validation_alias="DB_PASSWORD")
    database_host: str = Field(default="db", validation_alias="DB_HOST")
    database_port: int = Field(default=3306, validation_alias="DB_PORT")
    database_name: str = Field(default="amply", validation_alias="DB_NAME")
    database_url_override: str | None = Field(
        default=None,
        validation_alias="DATABASE_URL",
        description="Full SQLAlchemy URL, takes precedence over the DB_* parts",
    )
    store_operation_timeout_seconds: float = Field(
        default=10.0,
        description="Upper bound for a single store round trip before it is reported as unavailable.",
    )

    jwt_secret_key: str = Field(default="changeme")
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=30)

    chat_message_max_length: int = Field(default=2000)
    notification_page_limit: int = Field(default=50)
    notification_auto_read_days: int = Field(
        default=30, description="Unread notifications older than this are marked read by the cleanup job."
    )
    notification_retention_days: int = Field(
        default=90, description="Read notifications older than this are deleted by the cleanup job."
    )
    cron_secret: str | None = Field(
        default=None, description="Bearer secret required by the notification cleanup endpoint."
    )

    media_root: Path = Field(default=Path("uploads"))
    media_base_url: str = Field(default="/api/media")
    max_upload_size: int = Field(
        default=10 * 1024 * 1024, description="Maximum attachment size in bytes"
    )
    allowed_media_families: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["image", "video", "audio"],
        description="Top-level MIME types accepted as message attachments.",
    )

    realtime_redis_url: str | None = Field(default=None)
    realtime_nats_url: str | None = Field(default=None)
    realtime_namespace: str = Field(default="amply.realtime")
    realtime_node_id: str | None = Field(default=None)
    realtime_backend_preference: str | None = Field(
        default=None, description="Force a transport backend (redis, nats or local)."
    )
    realtime_reconnect_base_delay_seconds: float = Field(default=0.5)
    realtime_reconnect_max_delay_seconds: float = Field(default=30.0)
    realtime_reconnect_max_attempts: int = Field(default=8)
    realtime_reconcile_interval_seconds: float = Field(
        default=60.0, description="Periodic unread/notification reconcile while connected."
    )

    websocket_keepalive_timeout_seconds: float = Field(default=30.0)
    websocket_keepalive_ping_interval_seconds: float = Field(default=25.0)

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

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Any) -> Any:
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator("allowed_media_families", mode="before")
    @classmethod
    def parse_media_families(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        return value

    @field_validator("media_root", mode="before")
    @classmethod
    def resolve_media_root(cls, value: str | Path) -> Path:
        if isinstance(value, Path):
            return value.resolve()
        return Path(value).resolve()


@lru_cache
def get_settings() -> Settings:
    return Settings()
