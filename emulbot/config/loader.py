"""Configuration loading utilities."""

import json
from pathlib import Path

from loguru import logger

from emulbot.config.schema import Config


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".emulbot" / "config.json"


def get_data_dir() -> Path:
    """Get the emulbot data directory."""
    from emulbot.utils.helpers import get_data_path
    return get_data_path()


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file or create default.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            data = _migrate_config(data)
            return Config.model_validate(data)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            logger.warning("Using default configuration.")

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """
    Save configuration to file.

    Args:
        config: Configuration to save.
        config_path: Optional path to save to. Uses default if not provided.
    """
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(by_alias=True)

    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def _migrate_config(data: dict) -> dict:
    """Migrate old config formats to current."""
    # Flat adminNick -> admin.initial
    if "adminNick" in data:
        admin = data.setdefault("admin", {})
        legacy = data.pop("adminNick")
        if isinstance(admin, dict) and "initial" not in admin:
            admin["initial"] = legacy
    # Flat interjectChance -> interjection.chancePerMessage
    if "interjectChance" in data:
        section = data.setdefault("interjection", {})
        legacy = data.pop("interjectChance")
        if isinstance(section, dict) and "chancePerMessage" not in section:
            section["chancePerMessage"] = legacy
    return data
