"""
Pydantic model for application configuration.
Provides robust validation for all settings.
"""

import logging
from typing import Optional

from pathvalidate import ValidationError as PathValidationError
from pathvalidate import validate_filepath
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from qb_cloud_sync.models.rules import ArchivingRule

log = logging.getLogger(__name__)

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)


class QBittorrentSettings(_Section):
    """Connection settings for the qBittorrent WebUI."""

    url: str
    username: str = ""
    password: str = Field("", repr=False)
    verify_ssl: bool = False
    request_timeout: float = 15.0

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v:
            raise ValueError("qBittorrent URL cannot be empty.")
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"qBittorrent URL must start with http:// or https://: {v}")
        return v.rstrip("/")

    @field_validator("request_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Request timeout must be positive.")
        return v

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


class RcloneSettings(_Section):
    """How rclone is invoked and where uploads land on the remote."""

    remote_name: str
    upload_path: str = "/"
    config_path: str = ""
    binary: str = "rclone"
    upload_timeout: int = 3 * 60 * 60
    verify_timeout: int = 30 * 60
    extra_flags: tuple[str, ...] = ()

    @field_validator("remote_name")
    @classmethod
    def validate_remote_name(cls, v: str) -> str:
        v = v.rstrip(":")
        if not v:
            raise ValueError("Rclone remote name cannot be empty.")
        return v

    @field_validator("upload_path")
    @classmethod
    def validate_upload_path(cls, v: str) -> str:
        v = v.replace("\\", "/") or "/"
        if ".." in v.split("/"):
            raise ValueError("Upload path cannot contain '..' segments.")
        if stripped := v.strip("/"):
            try:
                validate_filepath(stripped, platform="posix")
            except PathValidationError as e:
                raise ValueError(f"Invalid upload path '{v}': {e}") from e
        return v

    @field_validator("upload_timeout", "verify_timeout")
    @classmethod
    def validate_timeouts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Rclone timeouts must be at least 1 second.")
        return v


class TaskProcessorSettings(_Section):
    """Polling cadence, concurrency and retry ceilings."""

    poll_interval_ms: int = 300_000
    max_concurrent_uploads: int = 2
    max_upload_attempts: int = 5
    max_verification_attempts: int = 3

    @field_validator("poll_interval_ms")
    @classmethod
    def validate_interval(cls, v: int) -> int:
        if v < 1000:
            raise ValueError("Poll interval must be at least 1000 ms.")
        return v

    @field_validator("max_concurrent_uploads")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        """Ensures a reasonable number of concurrent tasks."""
        if v < 1 or v > 32:
            raise ValueError("Max concurrent uploads must be between 1 and 32.")
        return v

    @field_validator("max_upload_attempts", "max_verification_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Attempt ceilings must be at least 1.")
        return v

    @property
    def poll_interval_s(self) -> float:
        return self.poll_interval_ms / 1000


class BehaviorSettings(_Section):
    """What happens after an upload has been verified."""

    delete_local_files: bool = True
    cleanup_empty_dirs: bool = True
    delete_qb_task: bool = True


class MailerSettings(_Section):
    """SMTP settings for completion notifications."""

    host: str = ""
    port: int = 587
    secure: bool = False
    user: str = ""
    password: str = Field("", repr=False)
    sender: str = ""
    recipients: tuple[str, ...] = ()

    @property
    def enabled(self) -> bool:
        return bool(self.host and self.recipients)


class AppConfig(_Section):
    """A validated configuration model for the application."""

    qbittorrent: QBittorrentSettings
    rclone: RcloneSettings
    task_processor: TaskProcessorSettings = Field(default_factory=TaskProcessorSettings)
    behavior: BehaviorSettings = Field(default_factory=BehaviorSettings)
    mailer: MailerSettings = Field(default_factory=MailerSettings)
    archiving_rules: tuple[ArchivingRule, ...] = ()

    database_path: str
    log_level: str = "INFO"
    json_log_dir: Optional[str] = None

    # Internal fields not loaded from INI file
    config_path: str = Field(..., repr=False)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in LOG_LEVELS:
            raise ValueError(f"Log level must be one of {', '.join(LOG_LEVELS)}.")
        return v

    @model_validator(mode="after")
    def warn_on_insecure_https(self) -> "AppConfig":
        """Flags https connections that skip certificate checks."""
        if self.qbittorrent.url.startswith("https://") and not self.qbittorrent.verify_ssl:
            log.warning(
                "[yellow]qBittorrent URL uses HTTPS with certificate verification "
                "disabled. Only do this for local or self-signed setups.[/yellow]"
            )
        return self
