import os
import tempfile
import tomllib
from typing import Any, Dict, List, Mapping, Optional

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from sentinel.backup.compression import create_codec
from sentinel.backup.storage import DEFAULT_MAX_CONCURRENCY, DEFAULT_PART_SIZE


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'sentinel-dev-key'

    # Backup settings file (TOML)
    SENTINEL_CONFIG = os.environ.get('SENTINEL_CONFIG') or 'config.toml'

    # Optional bearer token protecting the trigger/cancel endpoints
    API_TOKEN = os.environ.get('API_TOKEN')

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Scheduler
    SCHEDULER_ENABLED = True
    SCHEDULER_TIMEZONE = 'UTC'

    # Seconds before a running backup is cancelled (None = no deadline)
    BACKUP_TIMEOUT = int(os.environ['BACKUP_TIMEOUT']) if os.environ.get('BACKUP_TIMEOUT') else None


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SCHEDULER_ENABLED = False
    LOG_DIR = os.path.join(tempfile.gettempdir(), 'sentinel-test-logs')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


class ConfigError(ValueError):
    """Raised when backup settings are missing or invalid."""
    pass


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra='forbid')


class CompressionSettings(_Section):
    format: str = 'zstd'
    level: int = 0

    @field_validator('format')
    @classmethod
    def _default_format(cls, value: str) -> str:
        return value or 'zstd'


class MySQLSettings(_Section):
    enabled: bool = False
    host: str = 'localhost'
    port: int = Field(default=3306, ge=1, le=65535)
    user: str = ''
    password: str = ''
    database: str = ''
    docker_container: str = ''


class FilesystemSettings(_Section):
    enabled: bool = False
    base_path: str = ''
    include_patterns: List[str] = Field(default_factory=list)
    exclude_patterns: List[str] = Field(default_factory=list)


class SSHSettings(_Section):
    enabled: bool = False
    host: str = ''
    port: int = Field(default=22, ge=1, le=65535)
    username: str = ''
    password: str = ''
    private_key: str = ''
    paths: List[str] = Field(default_factory=list)


class S3Settings(_Section):
    bucket: str = ''
    region: str = ''
    endpoint: str = ''
    access_key_id: str = ''
    secret_access_key: str = ''
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    part_size: int = DEFAULT_PART_SIZE

    @field_validator('max_concurrency', 'part_size')
    @classmethod
    def _zero_means_default(cls, value: int, info: ValidationInfo) -> int:
        if value <= 0:
            return cls.model_fields[info.field_name].default
        return value


class S3Environment(BaseSettings):
    """S3_* variables overriding the [s3] section."""

    model_config = SettingsConfigDict(env_prefix='S3_', env_ignore_empty=True, extra='ignore')

    endpoint: Optional[str] = None
    region: Optional[str] = None
    bucket: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None


class MySQLEnvironment(BaseSettings):
    """DB_* variables overriding the [mysql] section."""

    model_config = SettingsConfigDict(env_prefix='DB_', env_ignore_empty=True, extra='ignore')

    host: Optional[str] = None
    port: Optional[int] = None
    user: Optional[str] = None
    password: Optional[str] = None
    database: Optional[str] = Field(default=None, validation_alias='DB_NAME')


# Environment models and the section each one overrides
ENVIRONMENT_SOURCES = {
    's3': S3Environment,
    'mysql': MySQLEnvironment,
}


class BackupSettings(BaseSettings):
    """
    Complete configuration of the backup pipeline.

    Built once by load_settings() and passed explicitly to the executor,
    producers and uploader. Construction runs the cross-section checks, so
    an instance is always usable for a run.
    """

    model_config = SettingsConfigDict(frozen=True, extra='forbid')

    schedule: str = ''
    temp_dir: str = ''
    debug: bool = False
    compression: CompressionSettings = Field(default_factory=CompressionSettings)
    mysql: MySQLSettings = Field(default_factory=MySQLSettings)
    filesystem: FilesystemSettings = Field(default_factory=FilesystemSettings)
    ssh: SSHSettings = Field(default_factory=SSHSettings)
    s3: S3Settings = Field(default_factory=S3Settings)

    @property
    def workspace_root(self) -> str:
        return self.temp_dir or tempfile.gettempdir()

    @field_validator('schedule')
    @classmethod
    def _strip_schedule(cls, value: str) -> str:
        return value.strip()

    @model_validator(mode='after')
    def _check_pipeline(self) -> 'BackupSettings':
        """Reject settings a run could not start with."""
        try:
            codec = create_codec(self.compression.format)
            if codec is not None:
                codec.resolve_level(self.compression.level)
        except ValueError as e:
            raise ConfigError(str(e))

        if not self.s3.bucket:
            raise ConfigError("s3.bucket is required")

        if self.mysql.enabled and not self.mysql.database:
            raise ConfigError("mysql.database is required when MySQL backup is enabled")

        if self.filesystem.enabled and not self.filesystem.base_path:
            raise ConfigError("filesystem.base_path is required when filesystem backup is enabled")

        if self.ssh.enabled:
            if not self.ssh.host or not self.ssh.paths:
                raise ConfigError("ssh.host and ssh.paths are required when SSH backup is enabled")
            if not self.ssh.password and not self.ssh.private_key:
                raise ConfigError("Either ssh.password or ssh.private_key must be provided")

        if not (self.mysql.enabled or self.filesystem.enabled or self.ssh.enabled):
            raise ConfigError("No backup source enabled")

        if self.schedule:
            try:
                CronTrigger.from_crontab(self.schedule, timezone='UTC')
            except ValueError as e:
                raise ConfigError(f"Invalid schedule '{self.schedule}': {e}")

        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Only the settings document; overrides are merged in by settings_from_dict."""
        return (init_settings,)


def _config_error(error: ValidationError, section: str = '') -> ConfigError:
    """Turn the first validation error into a ConfigError naming the key."""
    first = error.errors()[0]

    cause = (first.get('ctx') or {}).get('error')
    if isinstance(cause, ConfigError):
        return cause

    location = '.'.join(str(part) for part in (section, *first['loc']) if part != '')
    if first['type'] == 'extra_forbidden':
        return ConfigError(f"Unknown key '{location}'")
    return ConfigError(f"Invalid value for '{location}': {first['msg']}")


def environment_overrides() -> Dict[str, Dict[str, Any]]:
    """
    Read the S3_* and DB_* variables set in the environment.

    Returns:
        Section name -> values to merge over the settings document

    Raises:
        ConfigError: If a variable cannot be parsed (e.g. non-numeric DB_PORT)
    """
    overrides = {}
    for section, source in ENVIRONMENT_SOURCES.items():
        try:
            values = source().model_dump(exclude_none=True)
        except ValidationError as e:
            raise _config_error(e, section)
        if values:
            overrides[section] = values
    return overrides


def settings_from_dict(data: Mapping) -> BackupSettings:
    """
    Build and validate BackupSettings from parsed TOML data.

    Environment overrides win over values from the document.

    Raises:
        ConfigError: If the settings are invalid
    """
    merged = dict(data)
    for section, values in environment_overrides().items():
        current = merged.get(section) or {}
        if isinstance(current, Mapping):
            merged[section] = {**current, **values}

    try:
        return BackupSettings(**merged)
    except ValidationError as e:
        raise _config_error(e)


def load_settings(path: str) -> BackupSettings:
    """
    Load backup settings from a TOML file.

    Args:
        path: Path to the settings file

    Returns:
        Validated BackupSettings

    Raises:
        ConfigError: If the file cannot be read or the settings are invalid
    """
    try:
        with open(path, 'rb') as f:
            data = tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Settings file not found: {path}")
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Failed to decode settings file {path}: {e}")

    return settings_from_dict(data)
