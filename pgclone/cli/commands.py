"""Command-line interface commands."""
import sys
from pathlib import Path

from ..core.exceptions import ValidationError
from ..core.logging import get_logger
from ..domain.models import CloneOptions, CloneStatus, CloneType, SchemaExportOptions

logger = get_logger(__name__)

# Exit code of a run stopped with Ctrl+C, as shells report SIGINT
EXIT_CANCELLED = 130


def build_clone_options(args, engine) -> CloneOptions:
    """Clone options from a saved operation and/or command line flags.

    Flags given on the command line override the saved operation.

    Raises:
        ValidationError: If the saved operation does not exist or source and
            destination are missing
    """
    options = None
    if args.operation:
        operation = engine.get_saved_operation(args.operation)
        if operation is None:
            raise ValidationError(f"Saved operation not found: {args.operation}")
        logger.info(f"Using saved operation '{operation.name}'")
        options = operation.to_options()

    source_id = args.source or (options.source_id if options else None)
    destination_id = args.destination or (options.destination_id if options else None)
    if not source_id or not destination_id:
        raise ValidationError("Both --source and --destination are required (or use --operation)")

    clone_type = args.type or (options.clone_type.value if options else CloneType.BOTH.value)
    clean = args.clean if args.clean is not None else (options.clean_destination if options else False)
    backup = args.backup if args.backup is not None else (options.create_backup if options else True)
    exclude = list(options.exclude_tables) if options else []
    exclude.extend(args.exclude_table or [])

    return CloneOptions(
        source_id=source_id,
        destination_id=destination_id,
        clean_destination=clean,
        create_backup=backup,
        clone_type=clone_type,
        exclude_tables=exclude
    )


def clone_command(args, engine, ui) -> int:
    """Run a clone and follow its progress."""
    options = build_clone_options(args, engine)

    if args.save_as:
        operation = engine.save_operation(args.save_as, options)
        ui.display_message(f"Saved operation '{operation.name}' ({operation.id})")

    handle = engine.start_clone(options)
    ui.follow_run(handle)
    entry = handle.result()

    if entry.status is CloneStatus.SUCCESS:
        return 0
    if entry.status is CloneStatus.CANCELLED:
        return EXIT_CANCELLED
    if entry.backup_path:
        logger.info(f"Pre-clone backup kept at {entry.backup_path}")
    return 1


def schema_command(args, engine, ui) -> int:
    """Export a database schema to a file or standard output."""
    options = SchemaExportOptions(
        profile_id=args.profile,
        schemas=args.schema or [],
        tables=args.table or [],
        include_comments=not args.no_comments,
        include_indexes=not args.no_indexes,
        include_constraints=not args.no_constraints,
        include_triggers=not args.no_triggers,
        include_sequences=not args.no_sequences,
        include_types=not args.no_types,
        include_functions=not args.no_functions,
        include_views=not args.no_views
    )
    handle = engine.download_schema(options)
    ui.follow_run(handle)
    schema = handle.result()

    if args.output:
        output = Path(args.output).expanduser()
        output.parent.mkdir(parents=True, exist_ok=True)
        with open(output, 'w', encoding='utf-8') as f:
            f.write(schema)
        ui.display_schema_saved(str(output), len(schema.encode('utf-8')))
    else:
        sys.stdout.write(schema)
        sys.stdout.flush()
    return 0


def structure_command(args, engine, ui) -> int:
    ui.display_structure(engine.get_database_structure(args.profile))
    return 0


def info_command(args, engine, ui) -> int:
    ui.display_database_info(engine.test_connection(args.profile))
    return 0


def history_command(args, engine, ui) -> int:
    """List, show or clear clone history."""
    if args.clear:
        engine.clear_history()
        ui.display_message("Clone history cleared.")
        return 0
    if args.id:
        entry = engine.get_history_entry(args.id)
        if entry is None:
            ui.display_error(f"History entry not found: {args.id}")
            return 1
        ui.display_history_entry(entry)
        return 0
    ui.display_history(engine.get_history())
    return 0


def tools_command(args, engine, ui) -> int:
    tools = engine.tools()
    ui.display_tools(tools, engine.client_version())
    return 0 if tools.all_available else 1


def profiles_command(args, engine, ui) -> int:
    ui.display_profiles(engine.store.list_profiles())
    return 0


def operations_command(args, engine, ui) -> int:
    """List saved operations or delete one."""
    if args.delete:
        if not engine.delete_saved_operation(args.delete):
            ui.display_error(f"Saved operation not found: {args.delete}")
            return 1
        ui.display_message(f"Deleted saved operation {args.delete}")
        return 0
    ui.display_operations(engine.list_saved_operations())
    return 0


COMMANDS = {
    "clone": clone_command,
    "schema": schema_command,
    "structure": structure_command,
    "info": info_command,
    "history": history_command,
    "tools": tools_command,
    "profiles": profiles_command,
    "operations": operations_command,
}
