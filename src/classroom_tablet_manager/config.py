"""Configuration management for the classroom tablet manager.

The root AppConfig is loaded from a YAML file. Credentials and connection
settings are nested pydantic-settings sections read from environment variables
with their own prefixes (DIRECTORY_, REDIS_, DATABASE_).
"""

import pathlib

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from classroom_tablet_manager.schedule import TimeslotSettings


class DirectorySettings(BaseSettings):
    """Directory/device-management API credentials.

    Environment variables (with DIRECTORY_ prefix):
        DIRECTORY_BASE_URL: API root, e.g. https://school.example.com/api.
        DIRECTORY_API_KEY: Value of the Authorization header for admin calls.
        DIRECTORY_COMPANY_ID: Tenant id used when authenticating teachers.
        DIRECTORY_TIMEOUT: Request timeout in seconds (default: 20).
        DIRECTORY_PROTOCOL_VERSION: X-Server-Protocol-Version header (default: 2).
    """

    model_config = SettingsConfigDict(env_prefix="DIRECTORY_")

    base_url: str
    api_key: str
    company_id: int
    timeout: float = 20.0
    protocol_version: int = 2


class RedisSettings(BaseSettings):
    """Redis connection settings for session token caching.

    Environment variables (with REDIS_ prefix):
        REDIS_HOST: Redis server hostname (default: localhost).
        REDIS_PORT: Redis server port (default: 6379).
        REDIS_USERNAME: Redis ACL username (optional, default: None).
        REDIS_PASSWORD: Redis password (optional, default: None).
        REDIS_DB: Redis database number (default: 0).
    """

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = "localhost"
    port: int = 6379
    username: str | None = None
    password: str | None = None
    db: int = 0

    @property
    def url(self) -> str:
        """Build Redis connection URL from components."""
        if self.username and self.password:
            return f"redis://{self.username}:{self.password}@{self.host}:{self.port}/{self.db}"
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class DatabaseSettings(BaseSettings):
    """Schedule store database.

    Environment variables (with DATABASE_ prefix):
        DATABASE_URL: SQLAlchemy async URL (default: local SQLite file).
    """

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    url: str = "sqlite+aiosqlite:///./classroom_schedules.db"


class ReservedNames(BaseModel):
    """Names of the directory objects this system owns.

    Users must not edit objects carrying these names; bootstrap relies on them
    to find what it created on earlier runs.
    """

    picture_class: str = "**appi4PictureClass-NoModification**"
    teacher_user_prefix: str = "**appi4Teacher-NoModification**"
    teacher_group_prefix: str = "**appi4TeacherGroup-NoModification**"
    default_teacher_password: str = "123456"


class AppConfig(BaseModel):
    """Root configuration.

    Attributes:
        timeslots: Hour ranges for the AM, PM and HOME timeslots.
        batch_concurrency: Upper bound on concurrent device calls per batch.
        reserved_names: Sentinel names of system-owned directory objects.
        default_location_id: Location whose teacher account is used to authenticate.
        token_max_age_minutes: Age after which the session token counts as stale.
        log_level: Level for the package logger.
        directory: Directory API credentials.
        redis: Redis connection settings.
        database: Schedule store database settings.
    """

    timeslots: TimeslotSettings = Field(default_factory=TimeslotSettings)
    batch_concurrency: int = Field(default=4, ge=1, le=16)
    reserved_names: ReservedNames = Field(default_factory=ReservedNames)
    default_location_id: int = 0
    token_max_age_minutes: int = Field(default=720, ge=1)
    log_level: str = "INFO"

    # AIDEV-NOTE: Using default_factory to delay instantiation until AppConfig is created,
    # avoiding import-time validation errors when env vars are not yet set.
    directory: DirectorySettings = Field(default_factory=lambda: DirectorySettings())  # type: ignore[call-arg]
    redis: RedisSettings = Field(default_factory=lambda: RedisSettings())
    database: DatabaseSettings = Field(default_factory=lambda: DatabaseSettings())


def load_config(config_path: pathlib.Path) -> AppConfig:
    """Load and validate the YAML configuration file.

    Args:
        config_path: Path to the YAML file. An empty file yields defaults.

    Returns:
        Validated AppConfig.
    """
    with config_path.open("r") as file:
        config_data = yaml.safe_load(file) or {}
    return AppConfig.model_validate(config_data)
