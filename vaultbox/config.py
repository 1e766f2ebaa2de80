"""
Configuration management for vaultbox stores.

The configuration is stored as a TOML file in the store directory.
It names the database file and the defaults for paging, the entry
picker and cover images.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# tomli_w for writing TOML (tomllib is read-only)
try:
    import tomli_w
except ImportError:
    tomli_w = None  # type: ignore

from .images import MAX_IMAGE_SIZE


CONFIG_FILENAME = "vaultbox.toml"
CONFIG_VERSION = 1
DEFAULT_DATABASE = "vaultbox.db"
DEFAULT_PAGE_SIZE = 20
DEFAULT_PICKER_LIMIT = 20

STORE_PATH_ENV = "VAULTBOX_STORE_PATH"


def get_default_store_path() -> Path:
    """Store directory from VAULTBOX_STORE_PATH, else ~/.vaultbox."""
    env = os.environ.get(STORE_PATH_ENV)
    if env:
        return Path(env).expanduser()
    return Path.home() / ".vaultbox"


def resolve_store_path(store: Optional[Path] = None) -> Path:
    """An explicit store directory wins over the environment default."""
    if store is not None:
        return Path(store).expanduser()
    return get_default_store_path()


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    database: str = DEFAULT_DATABASE

    page_size: int = DEFAULT_PAGE_SIZE
    picker_limit: int = DEFAULT_PICKER_LIMIT
    max_image_size: int = MAX_IMAGE_SIZE

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def database_path(self) -> Path:
        """Path to the SQLite database, relative names resolved in the store."""
        return self.path / self.database

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def _positive_int(section: dict, key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"Config value {key} must be a positive integer, got {value!r}")
    return value


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid config {config_path}: {e}")

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    return StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        database=store.get("database", DEFAULT_DATABASE),
        page_size=_positive_int(data.get("search", {}), "page_size", DEFAULT_PAGE_SIZE),
        picker_limit=_positive_int(data.get("picker", {}), "limit", DEFAULT_PICKER_LIMIT),
        max_image_size=_positive_int(data.get("images", {}), "max_size", MAX_IMAGE_SIZE),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    if tomli_w is None:
        raise RuntimeError("tomli_w is required to save config. Install with: pip install tomli-w")

    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
            "database": config.database,
        },
        "search": {"page_size": config.page_size},
        "picker": {"limit": config.picker_limit},
        "images": {"max_size": config.max_image_size},
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    else:
        config = StoreConfig(path=store_path)
        save_config(config)
        return config
