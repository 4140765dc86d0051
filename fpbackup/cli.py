"""Command-line interface for fpbackup.

This module provides the CLI for fpbackup, supporting commands for:
- run: Take a Full or Incremental backup
- verify: Check a backup against its recorded fingerprints
- restore: Rebuild the latest backed-up state into a directory
- cleanup: Expire backups older than the retention window
- list: List backups
- init: Create default config
- mcp-server: Serve the engine over MCP

Results are printed as JSON. The exit code is non-zero only for structural
failures; a backup that fails verification still exits 0 with its findings
in the output.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

from fpbackup import __version__
from fpbackup.backup import (
    EXIT_BACKUP_ERROR,
    EXIT_CONFIG_ERROR,
    EXIT_NOT_FOUND,
    EXIT_PARSE_ERROR,
    EXIT_RESTORE_ERROR,
    EXIT_SUCCESS,
    list_backups,
    run_backup,
    run_cleanup,
    run_restore,
    run_verify,
)
from fpbackup.config import (
    DEFAULT_CONFIG_PATH,
    Configuration,
    ConfigurationError,
    ValidationError,
    create_default_config,
    parse_config,
)
from fpbackup.errors import NotFoundError, ParseError
from fpbackup.logger import (
    LoggingError,
    get_error_guidance,
    get_logger,
    map_exception_to_error_code,
    setup_logging,
)


EXIT_GENERAL_ERROR = 1


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog='fpbackup',
        description='Content-fingerprint backups with verification and restore'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Path to config file (default: ~/.config/fpbackup/config.toml)',
        metavar='PATH'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Log to the console as well as the log files'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    run_parser = subparsers.add_parser(
        'run',
        help='Run a backup now'
    )
    run_parser.add_argument(
        '--type', '-t',
        dest='backup_type',
        default='incremental',
        help='full or incremental (default: incremental)'
    )
    run_parser.add_argument(
        '--name',
        help='Backup name (default: <prefix>_<Type>_<timestamp>)'
    )

    verify_parser = subparsers.add_parser(
        'verify',
        help='Verify a backup against its recorded fingerprints'
    )
    verify_parser.add_argument(
        'backup',
        nargs='?',
        help='Backup name (default: the newest backup)'
    )

    restore_parser = subparsers.add_parser(
        'restore',
        help='Restore the latest state into a directory'
    )
    restore_parser.add_argument(
        'target',
        type=Path,
        help='Directory to restore into'
    )

    cleanup_parser = subparsers.add_parser(
        'cleanup',
        help='Delete backups older than the retention window'
    )
    cleanup_parser.add_argument(
        '--days',
        type=int,
        help='Override retention.days'
    )
    cleanup_parser.add_argument(
        '--filter',
        dest='name_filter',
        help='Only consider backups whose name matches (substring or glob)'
    )

    subparsers.add_parser(
        'list',
        help='List backups'
    )

    init_parser = subparsers.add_parser(
        'init',
        help='Create default config'
    )
    init_parser.add_argument(
        '--force', '-f',
        action='store_true',
        help='Overwrite existing config file'
    )

    subparsers.add_parser(
        'mcp-server',
        help='Start MCP server'
    )

    return parser


def load_config(config_path: Optional[Path], verbose: bool = False) -> Optional[Configuration]:
    """
    Load configuration from file and set up logging.

    Returns None and prints error on failure.
    """
    try:
        config = parse_config(config_path)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        print(get_error_guidance(map_exception_to_error_code(e)), file=sys.stderr)
        return None
    except ValidationError as e:
        print(f"Validation error: {e}", file=sys.stderr)
        return None

    try:
        setup_logging(config.logging, console=verbose)
    except LoggingError as e:
        # Fall back to whatever logging is already configured
        get_logger().warning(f"Failed to set up logging: {e}")

    if verbose:
        print(f"Loaded config from: {config_path or DEFAULT_CONFIG_PATH}", file=sys.stderr)
    return config


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


def _print_error(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)


def cmd_run(args: argparse.Namespace) -> int:
    """Execute the 'run' command - take a backup now."""
    config = load_config(args.config, args.verbose)
    if config is None:
        return EXIT_CONFIG_ERROR

    result = run_backup(config, backup_type=args.backup_type, name=args.name)
    _print_json(result.to_dict())
    if not result.success:
        _print_error(f"Backup failed: {result.error_message}")
    return result.exit_code


def cmd_verify(args: argparse.Namespace) -> int:
    """Execute the 'verify' command - verify backup integrity."""
    config = load_config(args.config, args.verbose)
    if config is None:
        return EXIT_CONFIG_ERROR

    try:
        result = run_verify(config, args.backup)
    except NotFoundError as e:
        _print_error(str(e))
        return EXIT_NOT_FOUND
    except ParseError as e:
        _print_error(str(e))
        return EXIT_PARSE_ERROR

    _print_json(result.to_dict())
    return EXIT_SUCCESS


def cmd_restore(args: argparse.Namespace) -> int:
    """Execute the 'restore' command - restore the latest state."""
    config = load_config(args.config, args.verbose)
    if config is None:
        return EXIT_CONFIG_ERROR

    try:
        result = run_restore(config, args.target)
    except NotFoundError as e:
        _print_error(str(e))
        return EXIT_NOT_FOUND
    except (ParseError, ValidationError) as e:
        _print_error(str(e))
        return EXIT_PARSE_ERROR

    _print_json(result.to_dict())
    if not result.success:
        _print_error(f"Restore failed: {result.error_message}")
        return EXIT_RESTORE_ERROR
    return EXIT_SUCCESS


def cmd_cleanup(args: argparse.Namespace) -> int:
    """Execute the 'cleanup' command - expire old backups."""
    config = load_config(args.config, args.verbose)
    if config is None:
        return EXIT_CONFIG_ERROR

    if args.days is not None and args.days < 0:
        _print_error("--days must be >= 0")
        return EXIT_CONFIG_ERROR

    result = run_cleanup(config, retention_days=args.days, name_filter=args.name_filter)
    _print_json(result.to_dict())
    return EXIT_SUCCESS


def cmd_list(args: argparse.Namespace) -> int:
    """Execute the 'list' command - list backups oldest first."""
    config = load_config(args.config, args.verbose)
    if config is None:
        return EXIT_CONFIG_ERROR

    try:
        backups = list_backups(config)
    except NotFoundError:
        backups = []
    except ParseError as e:
        _print_error(str(e))
        return EXIT_PARSE_ERROR

    _print_json([backup.to_dict() for backup in backups])
    return EXIT_SUCCESS


def cmd_init(args: argparse.Namespace) -> int:
    """Execute the 'init' command - create default config."""
    config_path = args.config or DEFAULT_CONFIG_PATH

    if config_path.exists() and not args.force:
        print(f"Config file already exists: {config_path}", file=sys.stderr)
        print("Use --force to overwrite.", file=sys.stderr)
        return EXIT_GENERAL_ERROR

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(create_default_config())

    print(f"Created default config: {config_path}")
    print("Edit this file to configure your backup settings.")
    return EXIT_SUCCESS


def cmd_mcp_server(args: argparse.Namespace) -> int:
    """Execute the 'mcp-server' command - start MCP server."""
    from fpbackup.mcp_server import run_server

    try:
        run_server(config_path=args.config)
        return EXIT_SUCCESS
    except KeyboardInterrupt:
        return EXIT_SUCCESS
    except Exception as e:
        print(f"MCP server error: {e}", file=sys.stderr)
        return EXIT_GENERAL_ERROR


COMMANDS = {
    'run': cmd_run,
    'verify': cmd_verify,
    'restore': cmd_restore,
    'cleanup': cmd_cleanup,
    'list': cmd_list,
    'init': cmd_init,
    'mcp-server': cmd_mcp_server,
}


def main(argv: list = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_SUCCESS

    handler = COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return EXIT_GENERAL_ERROR

    try:
        return handler(args)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130  # Standard exit code for SIGINT
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_BACKUP_ERROR


if __name__ == "__main__":
    sys.exit(main())
