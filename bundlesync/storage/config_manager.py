"""
Manages loading, validation, and migration of the INI configuration file.
"""

import configparser
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from bundlesync.exceptions import ConfigurationError
from bundlesync.models.config import PackageConfig

log = logging.getLogger(__name__)


def default_config_path() -> Path:
    """`$XDG_CONFIG_HOME/bundlesync/config.ini`, falling back to `~/.config`."""
    base = os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config"
    return Path(base) / "bundlesync" / "config.ini"


def _to_ini_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if hasattr(value, "value"):  # enums
        return str(value.value)
    return str(value)


class ConfigManager:
    """Handles all operations related to the application's INI config file."""

    def __init__(self, config_file_path: Path):
        self.config_file_path = config_file_path
        self._parser = configparser.ConfigParser(interpolation=None)

    def load_config(self, cli_options: dict[str, Any] | None = None) -> PackageConfig:
        """
        Loads configuration from the INI file, applies CLI overrides, and validates it.

        Args:
            cli_options: A dictionary of options provided via the command line.

        Returns:
            A validated PackageConfig object.

        Raises:
            ConfigurationError: If the config file is missing, invalid, or validation
            fails.
        """
        if not self.config_file_path.is_file():
            raise ConfigurationError(
                f"Configuration file not found at '{self.config_file_path}'. "
                "Please run 'bundlesync init' first."
            )

        try:
            self._parser.read(self.config_file_path, encoding="utf-8")
        except configparser.Error as e:
            raise ConfigurationError(f"Error parsing configuration file: {e}") from e

        if self._migrate_if_needed():
            log.info(
                "[yellow]Configuration file was updated with new default values."
                "[/yellow]"
            )

        try:
            config_from_file = self._get_config_as_dict()
        except ValueError as e:
            raise ConfigurationError(f"Invalid value in configuration file: {e}") from e

        # Override with CLI options
        if cli_options:
            config_from_file.update(
                {k: v for k, v in cli_options.items() if v is not None}
            )

        try:
            config_dir = self.config_file_path.parent
            return PackageConfig(**config_from_file, config_path=str(config_dir))
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    def save_new_config(self, settings: dict[str, Any]) -> None:
        """
        Creates and saves a new configuration file.

        Args:
            settings: A dictionary of settings to save. Validated before writing.
        """
        try:
            validated = PackageConfig(**settings)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

        config = configparser.ConfigParser(interpolation=None)
        config["DEFAULT"] = {}
        for key in sorted(PackageConfig.get_ini_keys()):
            config["DEFAULT"][key] = _to_ini_value(getattr(validated, key))

        try:
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file_path, "w", encoding="utf-8") as configfile:
                config.write(configfile)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration file: {e}") from e

    def _get_config_as_dict(self) -> dict[str, Any]:
        """Reads the 'DEFAULT' section of the INI file into a dictionary."""
        section = self._parser["DEFAULT"]
        return {
            "package_name": section.get("package_name", ""),
            "play_mode": section.get("play_mode", "host"),
            "host_server": section.get("host_server", ""),
            "fallback_host_server": section.get("fallback_host_server", ""),
            "append_time_ticks": section.getboolean("append_time_ticks", True),
            "buildin_root": section.get("buildin_root", "buildin"),
            "sandbox_root": section.get("sandbox_root", "sandbox"),
            "simulate_manifest_path": section.get("simulate_manifest_path", ""),
            "verify_level": section.get("verify_level", "middle"),
            "max_concurrency": section.getint("max_concurrency", 10),
            "max_retry": section.getint("max_retry", 3),
            "timeout": section.getint("timeout", 60),
            "auto_save_version": section.getboolean("auto_save_version", True),
        }

    def _migrate_if_needed(self) -> bool:
        """Adds missing default values to an existing config file."""
        config_section = self._parser["DEFAULT"]
        needs_saving = False

        for key in sorted(PackageConfig.get_ini_keys()):
            if key in config_section:
                continue
            field = PackageConfig.model_fields[key]
            if field.is_required():
                continue
            config_section[key] = _to_ini_value(field.default)
            needs_saving = True
            log.debug(
                f"Migrating config: added missing key '{key}' with "
                f"value '{config_section[key]}'."
            )

        if needs_saving:
            try:
                with open(self.config_file_path, "w", encoding="utf-8") as f:
                    self._parser.write(f)
            except OSError as e:
                log.error(f"Could not save migrated configuration file: {e}")
                return False

        return needs_saving
