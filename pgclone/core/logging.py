"""Global logging configuration for the application."""
import logging
import sys
from pathlib import Path
from dataclasses import dataclass


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"      # Logging level (DEBUG, INFO, etc.)
    file: str = ""           # Path to log file (optional)
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(config: LoggingConfig) -> None:
    """Set up global logging configuration.

    Args:
        config: Logging configuration
    """
    # Detailed format goes to the file, the console stays readable
    detailed_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s\n'
        '  Location: %(pathname)s:%(lineno)d\n'
        '  Function: %(funcName)s\n'
        '  Thread: %(threadName)s'
    )
    simple_formatter = logging.Formatter(config.format)

    handlers = []

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(simple_formatter)
    handlers.append(console_handler)

    if config.file:
        log_file = Path(config.file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(detailed_formatter)
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(config.level.upper())

    # Remove any existing handlers to avoid duplicate log entries
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    for handler in handlers:
        root_logger.addHandler(handler)

    root_logger.debug("Logging system initialized")
    root_logger.debug(f"Log level: {config.level}")
    if config.file:
        root_logger.debug(f"Log file: {config.file}")

    sys.excepthook = _global_exception_handler


def _global_exception_handler(exc_type, exc_value, exc_traceback):
    """Global exception handler to ensure all unhandled exceptions are logged."""
    if not issubclass(exc_type, KeyboardInterrupt):
        logger = get_logger("exception_handler")
        logger.error(
            "Unhandled exception",
            exc_info=(exc_type, exc_value, exc_traceback)
        )

    sys.__excepthook__(exc_type, exc_value, exc_traceback)


def get_logger(name: str = None) -> logging.Logger:
    """Get a logger instance with the specified name.

    This is the preferred way to get a logger in this application.
    The logger will inherit the root logger's configuration.

    Args:
        name: The name for the logger. If None, returns the root logger.

    Returns:
        A configured logger instance
    """
    return logging.getLogger(name) if name else logging.getLogger()


def log_config(config) -> None:
    """Log configuration settings.

    Args:
        config: Loaded Config object
    """
    logger = get_logger(__name__)

    logger.debug("Tools Configuration:")
    logger.debug(f"  psql: {config.tools.psql or '(auto-detect)'}")
    logger.debug(f"  pg_dump: {config.tools.pg_dump or '(auto-detect)'}")
    logger.debug(f"  pg_restore: {config.tools.pg_restore or '(auto-detect)'}")

    logger.debug("Clone Configuration:")
    logger.debug(f"  Parallel Jobs: {config.clone.parallel_jobs}")
    logger.debug(f"  Compression Level: {config.clone.compression_level}")
    logger.debug(f"  Disable Triggers: {config.clone.disable_triggers}")
    logger.debug(f"  Backup Directory: {config.clone.backup_dir or '(default)'}")
    logger.debug(f"  Temp Directory: {config.clone.temp_dir or '(system)'}")
    logger.debug(f"  Verify Sample Size: {config.clone.verify_sample_size}")

    logger.debug("Storage Configuration:")
    logger.debug(f"  Data Directory: {config.storage.data_dir or '(default)'}")
    logger.debug(f"  History Limit: {config.storage.history_limit}")

    logger.debug("Logging Configuration:")
    logger.debug(f"  Level: {config.logging.level}")
    logger.debug(f"  File: {config.logging.file}")

    logger.debug("UI Configuration:")
    logger.debug(f"  Interface: {config.ui.interface}")
    logger.debug(f"  Show Logs: {config.ui.show_logs}")
