"""
Earshot Settings Manager
Handles dynamic configuration management using settings.json
"""

import json
import os
import shutil
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from logging_config import get_logger

logger = get_logger(__name__)

# Allow overriding the settings file location via environment variable
if getattr(sys, 'frozen', False):
    ROOT_DIR = Path(sys.executable).parent
else:
    ROOT_DIR = Path(__file__).parent

SETTINGS_FILE = Path(os.getenv("EARSHOT_SETTINGS_FILE", str(ROOT_DIR / "settings.json")))


@dataclass
class Setting:
    """Represents a single configurable setting"""
    name: str
    type: type
    default: Any
    requires_restart: bool = False
    category: Optional[str] = None
    description: Optional[str] = None
    widget_type: str = "text"  # text, number, slider, switch, select, list
    options: Optional[list] = None  # For select
    min_val: Optional[float] = None  # For slider/number
    max_val: Optional[float] = None  # For slider/number
    advanced: bool = False

    def validate_and_convert(self, value: Any) -> Any:
        # Optional numeric settings (e.g. device id) accept blanks as "unset"
        if value is None or (isinstance(value, str) and value.strip() == "" and self.type is not str):
            return self.default
        try:
            if self.type == bool and isinstance(value, str):
                return value.lower() in ('true', '1', 'yes', 'on')

            converted = self.type(value)
            if self.options and converted not in self.options:
                logger.warning(f"Invalid value for {self.name}: {converted!r} (expected one of {self.options})")
                return self.default
            return converted
        except (ValueError, TypeError):
            return self.default


class SettingsManager:
    def __init__(self, settings_file: Path = SETTINGS_FILE):
        self._file = Path(settings_file)
        self._settings: Dict[str, Any] = {}

        # Define all available settings
        self._definitions = {
            # Debug
            "debug.log_file": Setting("Log File", str, "earshot.log", True, "Debug", "Log file name"),
            "debug.log_level": Setting("Log Level", str, "INFO", True, "Debug", "Console logging verbosity", "select", options=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
            "debug.log_to_console": Setting("Log to Console", bool, False, True, "Debug", "Print logs to terminal", "switch"),
            "debug.log_detailed": Setting("Detailed Logging", bool, False, True, "Debug", "Write DEBUG records to the log file", "switch"),
            "debug.log_rotation.max_bytes": Setting("Max Log Size", int, 1048576, True, "Debug", "Max log file size (bytes)", "number", advanced=True),
            "debug.log_rotation.backup_count": Setting("Log Backups", int, 10, True, "Debug", "Number of backups to keep", "number", advanced=True),

            # Audio Recognition
            "audio_recognition.provider": Setting("Provider", str, "audd", False, "Audio Recognition", "Recognition service", "select", options=["audd", "shazam"]),
            "audio_recognition.device_id": Setting("Device ID", int, None, False, "Audio Recognition", "Input device index (blank = system default)", "number"),
            "audio_recognition.listen_timeout": Setting("Listen Duration", float, 10.0, False, "Audio Recognition", "Seconds to record before recognizing", "slider", min_val=3.0, max_val=30.0),
            "audio_recognition.stop_timeout": Setting("Stop Timeout", float, 2.0, False, "Audio Recognition", "Max wait for the input stream to close (s)", "number", advanced=True),

            # AudD
            "audd.base_url": Setting("AudD Endpoint", str, "https://api.audd.io/", False, "AudD", "Recognition endpoint", advanced=True),
            "audd.timeout": Setting("AudD Timeout", int, 30, False, "AudD", "Request timeout (s)", "number", min_val=5, max_val=120),

            # Shazam
            "shazam.language": Setting("Shazam Language", str, "en-US", False, "Shazam", "Metadata language"),
            "shazam.endpoint_country": Setting("Shazam Country", str, "GB", False, "Shazam", "Endpoint country code", advanced=True),
        }

        self.load_settings()

    @property
    def path(self) -> Path:
        return self._file

    def load_settings(self) -> None:
        """Load settings from JSON, fall back to defaults"""
        self._settings = {}

        # 1. Load defaults first
        for key, definition in self._definitions.items():
            self._settings[key] = definition.default

        # 2. Load from JSON if exists
        if self._file.exists():
            try:
                with open(self._file, 'r', encoding='utf-8') as f:
                    saved = json.load(f)
                for key, val in saved.items():
                    if key in self._definitions:
                        self._settings[key] = self._definitions[key].validate_and_convert(val)
                    else:
                        # Keep unknown keys so newer versions don't lose data
                        self._settings[key] = val
            except (OSError, ValueError, AttributeError) as e:
                logger.error(f"Failed to load {self._file.name}: {e} - resetting to defaults")
                backup_path = self._file.with_suffix('.json.corrupted')
                try:
                    shutil.copy2(self._file, backup_path)
                    logger.info(f"Backed up corrupted settings to {backup_path}")
                except OSError as copy_error:
                    logger.warning(f"Could not back up corrupted settings: {copy_error}")
                self.save_to_config()
        else:
            logger.info(f"Creating default settings file at {self._file}")
            self.save_to_config()

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a setting value.
        Priority:
        1. Loaded value (from JSON or Schema Default)
        2. Schema Default (if key in definitions but not in settings dict yet)
        3. Provided 'default' argument (if key unknown)
        """
        if key in self._settings and self._settings[key] is not None:
            return self._settings[key]

        if key in self._definitions and self._definitions[key].default is not None:
            return self._definitions[key].default

        return default

    def convert(self, key: str, value: Any) -> Any:
        """Coerce a raw value (e.g. from the environment) to the type of a known setting."""
        if key in self._definitions:
            return self._definitions[key].validate_and_convert(value)
        return value

    def set(self, key: str, value: Any) -> bool:
        """Set a known setting in memory. Returns whether a restart is needed."""
        if key not in self._definitions:
            raise KeyError(f"Unknown setting: {key}")

        setting = self._definitions[key]
        self._settings[key] = setting.validate_and_convert(value)
        return setting.requires_restart

    def save_to_config(self) -> None:
        """Save current memory settings to JSON file"""
        temp_path = self._file.parent / f"settings_{uuid.uuid4().hex}.json.tmp"
        try:
            self._file.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(self._settings, f, indent=4, sort_keys=True)

            # Atomic replace (works on both Windows and Unix)
            os.replace(temp_path, self._file)
        except OSError as e:
            logger.error(f"Failed to save settings: {e}")
            if temp_path.exists():
                try:
                    os.remove(temp_path)
                except OSError:
                    pass
            raise

    def get_all(self) -> Dict[str, Dict[str, Any]]:
        """Return settings grouped by category"""
        result: Dict[str, Dict[str, Any]] = {}
        for key, val in self._settings.items():
            defin = self._definitions.get(key)
            if not defin:
                continue

            cat = defin.category or "Misc"
            result.setdefault(cat, {})[key] = {
                "value": val,
                "name": defin.name,
                "description": defin.description,
                "type": defin.type.__name__,
                "requires_restart": defin.requires_restart,
                "widget_type": defin.widget_type,
                "options": defin.options,
                "min": defin.min_val,
                "max": defin.max_val,
                "advanced": defin.advanced,
            }
        return result

    def reset_to_defaults(self) -> None:
        if self._file.exists():
            os.remove(self._file)
        self.load_settings()


settings = SettingsManager()


def get_preferred_device_id() -> Optional[int]:
    """Preferred input device index, or None for the system default."""
    return settings.get("audio_recognition.device_id")


def set_preferred_device_id(device_id: Optional[int]) -> None:
    """Persist the preferred input device index (None clears it)."""
    settings.set("audio_recognition.device_id", device_id)
    settings.save_to_config()
    logger.info(f"Preferred input device set to {device_id if device_id is not None else 'system default'}")
