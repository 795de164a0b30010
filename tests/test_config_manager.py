"""Tests for INI configuration loading and the settings models."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from qb_cloud_sync.exceptions import ConfigurationError
from qb_cloud_sync.models.config import AppConfig, QBittorrentSettings, RcloneSettings
from qb_cloud_sync.models.rules import ConditionalRule, DefaultRule
from qb_cloud_sync.storage.config_manager import TEMPLATE, ConfigManager


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "conf" / "config.ini"


def _write_config(path: Path, **sections: dict[str, str]) -> ConfigManager:
    manager = ConfigManager(path)
    manager.save_new_config(sections)
    return manager


class TestLoadConfig:
    """Reading a config file into AppConfig."""

    def test_template_loads_with_defaults(self, config_path: Path) -> None:
        config = _write_config(config_path).load_config()

        assert config.qbittorrent.url == "http://localhost:8080"
        assert config.rclone.remote_name == "gdrive"
        assert config.task_processor.poll_interval_ms == 300000
        assert config.task_processor.max_concurrent_uploads == 2
        assert config.behavior.delete_local_files is True
        assert config.mailer.enabled is False
        assert config.log_level == "INFO"
        assert config.database_path == str(config_path.parent / "tasks.sqlite")
        assert len(config.archiving_rules) == 3
        assert isinstance(config.archiving_rules[-1], DefaultRule)

    def test_values_are_converted(self, config_path: Path) -> None:
        manager = _write_config(
            config_path,
            qbittorrent={"url": "https://qb.example:8443/", "verify_ssl": "yes"},
            rclone={"remote_name": "b2:", "extra_flags": "--transfers=8 --fast-list"},
            task_processor={"poll_interval_ms": "60000", "max_upload_attempts": "7"},
            behavior={"delete_qb_task": "off"},
            mailer={"host": "smtp.example", "to": "a@example.com, b@example.com"},
            logging={"level": "debug"},
        )
        config = manager.load_config()

        assert config.qbittorrent.url == "https://qb.example:8443"
        assert config.qbittorrent.verify_ssl is True
        assert config.rclone.remote_name == "b2"
        assert config.rclone.extra_flags == ("--transfers=8", "--fast-list")
        assert config.task_processor.poll_interval_s == 60
        assert config.task_processor.max_upload_attempts == 7
        assert config.behavior.delete_qb_task is False
        assert config.mailer.recipients == ("a@example.com", "b@example.com")
        assert config.mailer.enabled is True
        assert config.log_level == "DEBUG"

    def test_blank_values_fall_back_to_defaults(self, config_path: Path) -> None:
        manager = _write_config(
            config_path,
            task_processor={"max_concurrent_uploads": "", "poll_interval_ms": ""},
            logging={"level": ""},
        )
        config = manager.load_config()

        assert config.task_processor.max_concurrent_uploads == 2
        assert config.task_processor.poll_interval_ms == 300000
        assert config.log_level == "INFO"

    def test_relative_database_path_is_anchored_to_config_dir(self, config_path: Path) -> None:
        manager = _write_config(config_path, storage={"database_path": "data/db.sqlite"})
        config = manager.load_config()
        assert config.database_path == str(config_path.parent / "data" / "db.sqlite")

    def test_cli_overrides_win(self, config_path: Path) -> None:
        config = _write_config(config_path).load_config({"log_level": "WARNING", "x": None})
        assert config.log_level == "WARNING"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="init"):
            ConfigManager(tmp_path / "absent.ini").load_config()

    def test_unparsable_value(self, config_path: Path) -> None:
        manager = _write_config(config_path, task_processor={"max_upload_attempts": "many"})
        with pytest.raises(ConfigurationError, match="max_upload_attempts"):
            manager.load_config()

    def test_out_of_range_value(self, config_path: Path) -> None:
        manager = _write_config(config_path, task_processor={"max_concurrent_uploads": "0"})
        with pytest.raises(ConfigurationError, match="validation failed"):
            manager.load_config()

    def test_missing_sections_are_tolerated(self, config_path: Path) -> None:
        config_path.parent.mkdir(parents=True)
        config_path.write_text(
            "[qbittorrent]\nurl = http://qb:8080\n[rclone]\nremote_name = drive\n",
            encoding="utf-8",
        )
        config = ConfigManager(config_path).load_config()
        assert config.rclone.remote_name == "drive"
        assert config.archiving_rules == ()

    def test_raw_sections(self, config_path: Path) -> None:
        sections = _write_config(config_path).raw_sections()
        assert set(TEMPLATE) <= set(sections)
        assert sections["rclone"]["remote_name"] == "gdrive"


class TestArchivingRules:
    """Loading rules from inline JSON or a rules file."""

    def test_rules_file(self, config_path: Path) -> None:
        rules_file = config_path.parent / "rules.json"
        manager = _write_config(
            config_path, archiving={"rules_json": "", "rules_path": "rules.json"}
        )
        rules_file.write_text(
            json.dumps(
                [{"if": {"tags": ["anime", "4k"]}, "then": {"remotePath": "Anime/{torrentName}"}}]
            ),
            encoding="utf-8",
        )

        config = manager.load_config()

        assert config.archiving_rules == (
            ConditionalRule(remote_path="Anime/{torrentName}", tags=("anime", "4k")),
        )

    def test_inline_json_wins_over_file(self, config_path: Path) -> None:
        manager = _write_config(
            config_path,
            archiving={
                "rules_path": "missing.json",
                "rules_json": '[{"if": "default", "then": {"remotePath": "All"}}]',
            },
        )
        assert manager.load_config().archiving_rules == (DefaultRule(remote_path="All"),)

    def test_invalid_json_means_no_rules(self, config_path: Path) -> None:
        manager = _write_config(config_path, archiving={"rules_json": "[{oops"})
        assert manager.load_config().archiving_rules == ()

    def test_schema_violation_means_no_rules(self, config_path: Path) -> None:
        manager = _write_config(
            config_path, archiving={"rules_json": '[{"if": {"category": "TV"}}]'}
        )
        assert manager.load_config().archiving_rules == ()

    def test_unreadable_rules_file_means_no_rules(self, config_path: Path) -> None:
        manager = _write_config(
            config_path, archiving={"rules_json": "", "rules_path": "nowhere.json"}
        )
        assert manager.load_config().archiving_rules == ()


class TestSettingsModels:
    def test_url_needs_scheme(self) -> None:
        with pytest.raises(ValidationError):
            QBittorrentSettings(url="localhost:8080")

    def test_credentials(self) -> None:
        assert not QBittorrentSettings(url="http://qb", username="admin").has_credentials
        assert QBittorrentSettings(url="http://qb", username="a", password="b").has_credentials

    def test_upload_path_rejects_parent_segments(self) -> None:
        with pytest.raises(ValidationError):
            RcloneSettings(remote_name="drive", upload_path="/media/../etc")

    def test_empty_remote_name(self) -> None:
        with pytest.raises(ValidationError):
            RcloneSettings(remote_name=":")

    def test_invalid_log_level(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError):
            AppConfig(
                qbittorrent={"url": "http://qb"},
                rclone={"remote_name": "drive"},
                database_path=str(tmp_path / "db.sqlite"),
                config_path=str(tmp_path / "config.ini"),
                log_level="LOUD",
            )

    def test_settings_are_immutable(self) -> None:
        settings = RcloneSettings(remote_name="drive")
        with pytest.raises(ValidationError):
            settings.binary = "other"  # type: ignore[misc]
