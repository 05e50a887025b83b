"""Main entry point for the PostgreSQL clone tool."""
import argparse
import logging
import signal
import sys
from typing import List, Optional

from pgclone.cli.commands import COMMANDS, EXIT_CANCELLED
from pgclone.core.config import load_config
from pgclone.core.exceptions import (
    Cancelled,
    CatalogError,
    ConfigError,
    EngineBusy,
    ProcessFailed,
    SpawnFailed,
    StorageError,
    ToolNotFound,
    ValidationError,
)
from pgclone.core.logging import log_config, setup_logging
from pgclone.domain.models import CloneType
from pgclone.infrastructure.storage import JSONAppStore
from pgclone.services.engine import CloneEngine
from pgclone.ui.factory import create_interface

# Engine of the running command, used by the signal handler
engine = None


def signal_handler(sig, frame):
    """Handle SIGINT (Ctrl+C): cancel the active run, or exit when idle.

    Args:
        sig: Signal number
        frame: Current stack frame
    """
    if engine is not None and engine.cancel():
        logging.info("Received interrupt signal. Cancelling the running operation.")
        return
    raise KeyboardInterrupt


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Clone PostgreSQL databases and export schemas")
    parser.add_argument("--config", help="Path to configuration file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")
    parser.add_argument("--interface", choices=["rich", "ascii"], help="Console interface (overrides config)")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Clone command
    clone_parser = subparsers.add_parser("clone", help="Clone one database into another")
    clone_parser.add_argument("--source", help="Source connection profile id")
    clone_parser.add_argument("--destination", help="Destination connection profile id")
    clone_parser.add_argument("--type", choices=[t.value for t in CloneType], help="What to clone (default: both)")
    clone_parser.add_argument("--clean", dest="clean", action="store_true", help="Clean the destination first")
    clone_parser.add_argument("--no-clean", dest="clean", action="store_false", help="Do not clean the destination")
    clone_parser.add_argument("--backup", dest="backup", action="store_true", help="Back up the destination first (default)")
    clone_parser.add_argument("--no-backup", dest="backup", action="store_false", help="Skip the pre-clone backup")
    clone_parser.add_argument("--exclude-table", action="append", metavar="SCHEMA.TABLE", help="Table to skip (repeatable)")
    clone_parser.add_argument("--operation", metavar="NAME_OR_ID", help="Start from a saved operation")
    clone_parser.add_argument("--save-as", metavar="NAME", help="Save these options as a named operation")
    clone_parser.set_defaults(clean=None, backup=None)

    # Schema command
    schema_parser = subparsers.add_parser("schema", help="Export the schema of a database as SQL")
    schema_parser.add_argument("--profile", required=True, help="Connection profile id")
    schema_parser.add_argument("--schema", action="append", help="Schema to include (repeatable, default: all)")
    schema_parser.add_argument("--table", action="append", metavar="SCHEMA.TABLE", help="Table to include (repeatable)")
    schema_parser.add_argument("--no-comments", action="store_true", help="Leave out comments")
    schema_parser.add_argument("--no-indexes", action="store_true", help="Leave out indexes")
    schema_parser.add_argument("--no-constraints", action="store_true", help="Leave out constraints")
    schema_parser.add_argument("--no-triggers", action="store_true", help="Leave out triggers")
    schema_parser.add_argument("--no-sequences", action="store_true", help="Leave out sequences")
    schema_parser.add_argument("--no-types", action="store_true", help="Leave out custom types and domains")
    schema_parser.add_argument("--no-functions", action="store_true", help="Leave out functions and procedures")
    schema_parser.add_argument("--no-views", action="store_true", help="Leave out views")
    schema_parser.add_argument("--output", "-o", help="Output file (default: standard output)")

    # Catalog commands
    structure_parser = subparsers.add_parser("structure", help="Show schemas and tables of a database")
    structure_parser.add_argument("--profile", required=True, help="Connection profile id")
    info_parser = subparsers.add_parser("info", help="Test a connection")
    info_parser.add_argument("--profile", required=True, help="Connection profile id")

    # History and stored data
    history_parser = subparsers.add_parser("history", help="Show clone history")
    history_parser.add_argument("--id", help="Show one entry with its full log")
    history_parser.add_argument("--clear", action="store_true", help="Delete all history entries")
    subparsers.add_parser("tools", help="Show the detected PostgreSQL client tools")
    subparsers.add_parser("profiles", help="List connection profiles")
    operations_parser = subparsers.add_parser("operations", help="List saved operations")
    operations_parser.add_argument("--delete", metavar="NAME_OR_ID", help="Delete a saved operation")

    args = parser.parse_args(argv)

    # Show help if no command is specified
    if not args.command:
        parser.print_help()
        sys.exit(0)

    return args


def main(argv: Optional[List[str]] = None) -> int:
    """Run the PostgreSQL clone tool.

    Returns:
        int: Exit code
    """
    global engine
    try:
        args = parse_args(argv)

        # Load configuration first so we can access logging settings
        config = load_config(args.config)
        if args.verbose:
            config.logging.level = 'DEBUG'
        setup_logging(config.logging)
        log_config(config)

        store = JSONAppStore(config.data_dir, history_limit=config.storage.history_limit)
        engine = CloneEngine(config, store)

        signal.signal(signal.SIGINT, signal_handler)

        # SQL on stdout must not be mixed with progress output
        to_stderr = args.command == "schema" and not args.output
        ui = create_interface(args.interface or config.ui.interface, config.ui, stderr=to_stderr)

        return COMMANDS[args.command](args, engine, ui)

    except ConfigError as e:
        logging.error(f"Configuration error: {str(e)}")
        return 1
    except ValidationError as e:
        logging.error(f"Invalid request: {str(e)}")
        return 1
    except EngineBusy as e:
        logging.error(str(e))
        return 1
    except (ToolNotFound, SpawnFailed) as e:
        logging.error(str(e))
        return 1
    except ProcessFailed as e:
        logging.error(str(e))
        return 1
    except CatalogError as e:
        logging.error(f"Catalog error: {str(e)}")
        return 1
    except StorageError as e:
        logging.error(f"Storage error: {str(e)}")
        return 1
    except Cancelled as e:
        logging.warning(str(e))
        return EXIT_CANCELLED
    except KeyboardInterrupt:
        logging.info("Interrupted")
        return EXIT_CANCELLED
    except Exception as e:
        logging.exception(f"Unexpected error: {str(e)}")
        return 1
    finally:
        engine = None


if __name__ == "__main__":
    sys.exit(main())
