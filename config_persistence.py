import json
import os
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from config import (
    Config,
    apply_dict_to_dataclass,
    migrate_config,
)
from logging_utils import log_event
from signature import ClickSignature


def get_config_dir() -> Path:
    """Get config directory - $PENCLICK_HOME when set, ~/.penclick otherwise."""
    override = os.environ.get('PENCLICK_HOME')
    config_dir = Path(override) if override else Path.home() / '.penclick'
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_file() -> Path:
    """Get config file path."""
    return get_config_dir() / 'config.json'


def get_signature_file() -> Path:
    return get_config_dir() / 'click_signature.json'


def save_config(config: Config) -> bool:
    """Save config to JSON file."""
    try:
        config_file = get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(config_file, 'w', encoding='utf-8') as f:
            json.dump(asdict(config), f, indent=2)
        log_event("INFO", "Config", "Saved", path=config_file)
        return True
    except (OSError, TypeError, ValueError) as e:
        log_event("ERROR", "Config", "Failed to save", error=e)
        return False


def load_config() -> Config:
    """Load config from JSON file, returns default if not found."""
    try:
        config_file = get_config_file()
        if config_file.exists():
            with open(config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("config root must be an object")

            config = Config()
            apply_dict_to_dataclass(config, data)
            loaded_version = data.get('version')
            migrate_config(config, loaded_version, data)

            log_event("INFO", "Config", "Loaded", path=config_file, version=config.version)

            if loaded_version != config.version:
                save_config(config)
            return config

        log_event("INFO", "Config", "No saved config found, using defaults")
        return Config()
    except (OSError, ValueError) as e:
        log_event("WARNING", "Config", "Failed to load, using defaults", error=e)
        return Config()


class SignatureStore:
    """Single stored click signature, kept as one JSON file."""

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path is not None else None

    @property
    def path(self) -> Path:
        return self._path if self._path is not None else get_signature_file()

    def load(self) -> Optional[ClickSignature]:
        path = self.path
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                signature = ClickSignature.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            log_event("WARNING", "Signature", "Failed to load signature", path=path, error=e)
            return None
        log_event("INFO", "Signature", "Loaded", samples=signature.sample_count, created=signature.created_at)
        return signature

    def save(self, signature: ClickSignature) -> bool:
        path = self.path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(signature.to_dict(), f, indent=2)
        except OSError as e:
            log_event("ERROR", "Signature", "Failed to save signature", path=path, error=e)
            return False
        log_event("INFO", "Signature", "Saved", path=path, samples=signature.sample_count)
        return True

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
        log_event("INFO", "Signature", "Cleared")
