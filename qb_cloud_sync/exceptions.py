"""
Defines custom exceptions for the application to allow for more specific error handling.

Each exception carries the process exit code the CLI ends with when it
escapes a command.
"""

EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_BUSY = 3
EXIT_SOURCE = 4
EXIT_INTERRUPTED = 130


class QbCloudSyncError(Exception):
    """Base exception for all application-specific errors."""

    exit_code = EXIT_FAILURE


class ConfigurationError(QbCloudSyncError):
    """Raised for issues related to configuration loading or validation."""

    exit_code = EXIT_CONFIG


class RuleValidationError(ConfigurationError):
    """Raised when an archiving rule list does not have the expected structure."""


class AuthenticationError(QbCloudSyncError):
    """Raised when qBittorrent rejects the configured credentials."""

    exit_code = EXIT_SOURCE


class SourceUnavailableError(QbCloudSyncError):
    """Raised when the qBittorrent WebUI cannot be reached after retrying."""

    exit_code = EXIT_SOURCE


class StoreError(QbCloudSyncError):
    """Raised when the task database cannot be opened or queried."""


class TaskNotFoundError(QbCloudSyncError):
    """Raised when an operation targets a hash with no stored task."""


class ProcessorBusyError(QbCloudSyncError):
    """Raised when another process is already running cycles on the task database."""

    exit_code = EXIT_BUSY
