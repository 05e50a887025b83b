"""Configuration management for the PostgreSQL clone tool."""
import os
import sys
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, Any, Optional, Union

import yaml

from .exceptions import ConfigError
from .logging import LoggingConfig

DEFAULT_CONFIG_FILE = "config/config.yaml"
DEFAULT_CONFIG_DIRS = [
    "~/.pgclone",
    "/etc/pgclone",
]

APP_DIR_NAME = "pgclone"


@dataclass
class ToolsConfig:
    """Explicit paths of the PostgreSQL client tools (empty = auto-detect)."""
    psql: str = ""
    pg_dump: str = ""
    pg_restore: str = ""


@dataclass
class CloneConfig:
    """Clone pipeline configuration."""
    parallel_jobs: Union[str, int] = "auto"  # int, "NN%" or "auto"
    compression_level: int = 1  # pg_dump -Z for the custom format
    disable_triggers: bool = True  # pg_dump --disable-triggers for data-only clones
    backup_dir: str = ""  # Empty = <data_dir>/backups
    temp_dir: str = ""  # Empty = system temp directory
    verify_sample_size: int = 5  # Tables whose exact row counts are compared


@dataclass
class StorageConfig:
    """App data storage configuration."""
    data_dir: str = ""  # Empty = per-user data directory
    history_limit: int = 50


@dataclass
class UIConfig:
    """Console interface configuration."""
    interface: str = "rich"  # "rich" or "ascii"
    show_logs: bool = True


@dataclass
class Config:
    """Main configuration class."""
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    clone: CloneConfig = field(default_factory=CloneConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    ui: UIConfig = field(default_factory=UIConfig)

    @property
    def data_dir(self) -> Path:
        if self.storage.data_dir:
            return Path(self.storage.data_dir).expanduser()
        return default_data_dir()

    @property
    def backup_dir(self) -> Path:
        if self.clone.backup_dir:
            return Path(self.clone.backup_dir).expanduser()
        return self.data_dir / "backups"

    @property
    def temp_dir(self) -> Optional[Path]:
        return Path(self.clone.temp_dir).expanduser() if self.clone.temp_dir else None


def default_data_dir() -> Path:
    """Per-user local data directory for the application."""
    if sys.platform == "win32":
        base = os.environ.get("LOCALAPPDATA") or os.path.expanduser("~\\AppData\\Local")
    elif sys.platform == "darwin":
        base = os.path.expanduser("~/Library/Application Support")
    else:
        base = os.environ.get("XDG_DATA_HOME") or os.path.expanduser("~/.local/share")
    return Path(base) / APP_DIR_NAME


def load_config(config_file: Optional[Union[Path, str]] = None) -> Config:
    """Load configuration from a file.

    Args:
        config_file: Path to the configuration file. When omitted the default
            locations are searched and built-in defaults are used if none exists.

    Returns:
        Config object with loaded settings

    Raises:
        ConfigError: If an explicit file is missing or the file is invalid
    """
    if config_file is None:
        config_file = _find_config_file()
        if config_file is None:
            return Config()

    if isinstance(config_file, str):
        config_file = Path(config_file)

    if not config_file.exists():
        raise ConfigError(f"Configuration file not found: {config_file}")

    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            config_dict = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_file}: {str(e)}")

    if not isinstance(config_dict, dict):
        raise ConfigError(f"Configuration root must be a mapping: {config_file}")

    return config_from_dict(config_dict)


def config_from_dict(config_dict: Dict[str, Any]) -> Config:
    """Build a Config from a parsed YAML mapping.

    Raises:
        ConfigError: If a value has the wrong type
    """
    tools_config = config_dict.get('tools') or {}
    tools = ToolsConfig(
        psql=tools_config.get('psql') or '',
        pg_dump=tools_config.get('pg_dump') or '',
        pg_restore=tools_config.get('pg_restore') or ''
    )

    clone_config = config_dict.get('clone') or {}
    try:
        clone = CloneConfig(
            parallel_jobs=clone_config.get('parallel_jobs', 'auto'),
            compression_level=int(clone_config.get('compression_level', 1)),
            disable_triggers=bool(clone_config.get('disable_triggers', True)),
            backup_dir=clone_config.get('backup_dir') or '',
            temp_dir=clone_config.get('temp_dir') or '',
            verify_sample_size=int(clone_config.get('verify_sample_size', 5))
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid clone configuration: {str(e)}")

    if not 0 <= clone.compression_level <= 9:
        raise ConfigError(f"clone.compression_level must be between 0 and 9, got {clone.compression_level}")

    storage_config = config_dict.get('storage') or {}
    try:
        storage = StorageConfig(
            data_dir=storage_config.get('data_dir') or '',
            history_limit=int(storage_config.get('history_limit', 50))
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid storage configuration: {str(e)}")

    logging_config = config_dict.get('logging') or {}
    logging = LoggingConfig(
        level=str(logging_config.get('level', 'INFO')).upper(),
        file=logging_config.get('file') or '',
        format=logging_config.get('format', '%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    ui_config = config_dict.get('ui') or {}
    ui = UIConfig(
        interface=str(ui_config.get('interface', 'rich')).lower(),
        show_logs=bool(ui_config.get('show_logs', True))
    )
    if ui.interface not in ('rich', 'ascii'):
        raise ConfigError(f"ui.interface must be 'rich' or 'ascii', got '{ui.interface}'")

    return Config(
        tools=tools,
        clone=clone,
        storage=storage,
        logging=logging,
        ui=ui
    )


def _find_config_file() -> Optional[Path]:
    """Find the configuration file in the default locations.

    Returns:
        Path to the configuration file, or None if not found
    """
    if os.path.exists(DEFAULT_CONFIG_FILE):
        return Path(DEFAULT_CONFIG_FILE)

    for directory in DEFAULT_CONFIG_DIRS:
        expanded_dir = os.path.expanduser(directory)
        config_path = os.path.join(expanded_dir, "config.yaml")
        if os.path.exists(config_path):
            return Path(config_path)

    return None


def save_config(config: Config, file_path: Union[Path, str]) -> None:
    """Save the configuration to a file.

    Args:
        config: Configuration object
        file_path: Path to the file

    Raises:
        ConfigError: If the configuration cannot be saved
    """
    file_path = Path(file_path)
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(_config_to_dict(config), f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigError(f"Failed to save configuration: {str(e)}")


def _config_to_dict(config: Config) -> Dict[str, Any]:
    """Convert a configuration object to a dictionary."""
    return {
        'tools': asdict(config.tools),
        'clone': asdict(config.clone),
        'storage': asdict(config.storage),
        'logging': asdict(config.logging),
        'ui': asdict(config.ui)
    }
