"""
Manages loading and validation of the INI configuration file.
"""

import configparser
import json
import logging
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import ValidationError

from qb_cloud_sync.exceptions import ConfigurationError, RuleValidationError
from qb_cloud_sync.models.config import AppConfig
from qb_cloud_sync.models.rules import ArchivingRule, parse_rules

log = logging.getLogger(__name__)

DEFAULT_DATABASE_NAME = "tasks.sqlite"

EXAMPLE_RULES = """[
    {"if": {"category": "TV"}, "then": {"remotePath": "TV/{torrentName}"}},
    {"if": {"name_matches": "\\\\(\\\\d{4}\\\\)"}, "then": {"remotePath": "Movies/{year}/{torrentName}"}},
    {"if": "default", "then": {"remotePath": "{category}/{torrentName}"}}
    ]"""

# Order and content of a freshly written config file
TEMPLATE: dict[str, dict[str, str]] = {
    "qbittorrent": {
        "url": "http://localhost:8080",
        "username": "admin",
        "password": "",
        "verify_ssl": "false",
        "request_timeout": "15",
    },
    "rclone": {
        "remote_name": "gdrive",
        "upload_path": "/",
        "config_path": "",
        "binary": "rclone",
        "upload_timeout": "10800",
        "verify_timeout": "1800",
        "extra_flags": "",
    },
    "task_processor": {
        "poll_interval_ms": "300000",
        "max_concurrent_uploads": "2",
        "max_upload_attempts": "5",
        "max_verification_attempts": "3",
    },
    "behavior": {
        "delete_local_files": "true",
        "cleanup_empty_dirs": "true",
        "delete_qb_task": "true",
    },
    "mailer": {
        "host": "",
        "port": "587",
        "secure": "false",
        "user": "",
        "password": "",
        "from": "",
        "to": "",
    },
    "archiving": {
        "rules_path": "",
        "rules_json": EXAMPLE_RULES,
    },
    "storage": {
        "database_path": "",
    },
    "logging": {
        "level": "INFO",
        "json_log_dir": "",
    },
}


def _split(value: str, separator: Optional[str] = None) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(separator) if part.strip())


def _to_bool(value: str) -> bool:
    try:
        return configparser.ConfigParser.BOOLEAN_STATES[value.lower()]
    except KeyError:
        raise ValueError(f"Not a boolean: {value!r}") from None


def _optional(
    section: configparser.SectionProxy, key: str, convert: Callable[[str], Any]
) -> Any:
    """Converts a value, treating a blank entry like a missing one."""
    raw = section.get(key, "").strip()
    if not raw:
        return None
    try:
        return convert(raw)
    except ValueError as e:
        raise ValueError(f"[{section.name}] {key}: {e}") from e


def _without_empty(values: dict[str, Any]) -> dict[str, Any]:
    """Drops keys left blank in the file so the model defaults apply."""
    return {key: value for key, value in values.items() if value not in (None, "")}


class ConfigManager:
    """Handles all operations related to the application's INI config file."""

    def __init__(self, config_file_path: Path):
        self.config_file_path = Path(config_file_path)
        self.config_dir = self.config_file_path.parent
        # Rules JSON and rclone flags may legitimately contain '%'
        self._parser = configparser.ConfigParser(interpolation=None)

    def _read(self) -> None:
        if not self.config_file_path.is_file():
            raise ConfigurationError(
                f"Configuration file not found at '{self.config_file_path}'. "
                "Please run 'qb-cloud-sync init' first."
            )
        try:
            self._parser.read(self.config_file_path, encoding="utf-8")
        except configparser.Error as e:
            raise ConfigurationError(f"Error parsing configuration file: {e}") from e

        for section in TEMPLATE:
            if not self._parser.has_section(section):
                self._parser.add_section(section)

    def raw_sections(self) -> dict[str, dict[str, str]]:
        """Returns the file's values as written, section by section."""
        self._read()
        return {
            section: dict(self._parser[section]) for section in self._parser.sections()
        }

    def load_config(self, cli_options: dict[str, Any] | None = None) -> AppConfig:
        """
        Loads configuration from the INI file, applies CLI overrides, and validates it.

        Args:
            cli_options: Top-level settings given on the command line, such as
                `log_level`.

        Returns:
            A validated AppConfig object.

        Raises:
            ConfigurationError: If the config file is missing, invalid, or validation
            fails.
        """
        self._read()
        config_from_file = self._get_config_as_dict()
        config_from_file["archiving_rules"] = tuple(self.load_archiving_rules())

        if cli_options:
            config_from_file.update(
                {key: value for key, value in cli_options.items() if value is not None}
            )

        try:
            return AppConfig(**config_from_file, config_path=str(self.config_file_path))
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    def _get_config_as_dict(self) -> dict[str, Any]:
        """Maps the INI sections onto the nested shape of AppConfig."""
        try:
            return self._collect_sections()
        except ValueError as e:
            raise ConfigurationError(f"Invalid value in configuration file: {e}") from e

    def _collect_sections(self) -> dict[str, Any]:
        qb = self._parser["qbittorrent"]
        rclone = self._parser["rclone"]
        processor = self._parser["task_processor"]
        behavior = self._parser["behavior"]
        mailer = self._parser["mailer"]
        storage = self._parser["storage"]
        logging_section = self._parser["logging"]

        database_path = storage.get("database_path", "").strip()
        if database_path:
            database_path = str(self._resolve_relative(database_path))
        else:
            database_path = str(self.config_dir / DEFAULT_DATABASE_NAME)

        json_log_dir = logging_section.get("json_log_dir", "").strip()

        return {
            "qbittorrent": _without_empty(
                {
                    "url": qb.get("url"),
                    "username": qb.get("username"),
                    "password": qb.get("password"),
                    "verify_ssl": _optional(qb, "verify_ssl", _to_bool),
                    "request_timeout": _optional(qb, "request_timeout", float),
                }
            ),
            "rclone": _without_empty(
                {
                    "remote_name": rclone.get("remote_name"),
                    "upload_path": rclone.get("upload_path"),
                    "config_path": rclone.get("config_path"),
                    "binary": rclone.get("binary"),
                    "upload_timeout": _optional(rclone, "upload_timeout", int),
                    "verify_timeout": _optional(rclone, "verify_timeout", int),
                    "extra_flags": _split(rclone.get("extra_flags", "")),
                }
            ),
            "task_processor": _without_empty(
                {
                    key: _optional(processor, key, int)
                    for key in (
                        "poll_interval_ms",
                        "max_concurrent_uploads",
                        "max_upload_attempts",
                        "max_verification_attempts",
                    )
                }
            ),
            "behavior": _without_empty(
                {
                    key: _optional(behavior, key, _to_bool)
                    for key in ("delete_local_files", "cleanup_empty_dirs", "delete_qb_task")
                }
            ),
            "mailer": _without_empty(
                {
                    "host": mailer.get("host"),
                    "port": _optional(mailer, "port", int),
                    "secure": _optional(mailer, "secure", _to_bool),
                    "user": mailer.get("user"),
                    "password": mailer.get("password"),
                    "sender": mailer.get("from"),
                    "recipients": _split(mailer.get("to", ""), ","),
                }
            ),
            "database_path": database_path,
            "log_level": logging_section.get("level", "").strip() or "INFO",
            "json_log_dir": (
                str(self._resolve_relative(json_log_dir)) if json_log_dir else None
            ),
        }

    def _resolve_relative(self, value: str) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else self.config_dir / path

    def load_archiving_rules(self) -> list[ArchivingRule]:
        """
        Reads the archiving rules from `rules_json` or, failing that, `rules_path`.

        Rules that cannot be read, parsed or validated are reported and
        replaced by an empty list; the resolver then uses its fallback path.
        """
        section = self._parser["archiving"]
        inline = section.get("rules_json", "").strip()
        rules_path = section.get("rules_path", "").strip()

        if inline:
            if rules_path:
                log.debug("Both rules_json and rules_path are set; using rules_json.")
            source, text = "rules_json", inline
        elif rules_path:
            path = self._resolve_relative(rules_path)
            source = str(path)
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as e:
                log.warning(f"[yellow]Could not read archiving rules from '{path}': {e}[/yellow]")
                return []
        else:
            log.info("No archiving rules configured; the fallback path pattern will be used.")
            return []

        try:
            raw_rules = json.loads(text)
        except json.JSONDecodeError as e:
            log.warning(f"[yellow]Archiving rules in {source} are not valid JSON: {e}[/yellow]")
            return []

        try:
            rules = parse_rules(raw_rules)
        except RuleValidationError as e:
            log.warning(f"[yellow]Ignoring archiving rules from {source}: {e}[/yellow]")
            return []

        log.debug(f"Loaded {len(rules)} archiving rule(s) from {source}.")
        return rules

    def save_new_config(self, settings: dict[str, dict[str, str]] | None = None) -> None:
        """
        Creates and saves a new configuration file.

        Args:
            settings: Values per section that replace the template defaults.
        """
        config = configparser.ConfigParser(interpolation=None)
        for section, defaults in TEMPLATE.items():
            values = dict(defaults)
            values.update((settings or {}).get(section, {}))
            config[section] = values

        try:
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file_path, "w", encoding="utf-8") as configfile:
                config.write(configfile)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration file: {e}") from e
