"""Main CLI entry point for proxrestore."""

import argparse
import json
import sys
import logging
from typing import Dict, Any, List

from . import __version__
from .config.settings import Config
from .operations.decrypt import DecryptOperation
from .operations.restore import RestoreOperation
from .operations.safety_backup import restore_safety_backup
from .storage.discovery import build_source_options, discover_option, filter_encrypted
from .storage.remote import remote_client_for
from .ui.cli import CLIWorkflowUI
from .utils.deps import CommandRunner, Deps
from .utils.errors import BundleError, CommandError, is_abort
from .utils.logger import setup_logging
from .utils.progress import log_report
from .utils.temp_registry import TempDirRegistry


logger = logging.getLogger(__name__)

EXIT_ABORTED = 130

SOURCE_LABELS = {
    'local': 'Local',
    'secondary': 'Secondary',
    'cloud': 'Cloud',
}


def print_json_output(data: Dict[str, Any]):
    """Print formatted JSON output."""
    print(json.dumps(data, indent=2, default=str))


def build_config(args) -> Config:
    overrides = {}
    if args.dry_run:
        overrides['DRY_RUN'] = True
    config = Config(config_path=args.config, overrides=overrides)
    logger.debug(f"Configuration: {config.as_dict()}")
    return config


def build_deps(config: Config) -> Deps:
    runner = CommandRunner()
    return Deps(
        config=config,
        runner=runner,
        ui=CLIWorkflowUI(),
        remote=remote_client_for(config, runner) if config.cloud_enabled else None,
    )


def fail(operation: str, err: BaseException):
    """Report a failed operation as JSON and exit (130 for operator aborts)."""
    if is_abort(err):
        logger.warning(f"{operation} aborted: {err}")
        print_json_output({"Operation": operation, "Status": "Aborted", "Error": str(err)})
        sys.exit(EXIT_ABORTED)
    logger.error(f"{operation} failed: {err}")
    print_json_output({"Operation": operation, "Status": "Failed", "Error": str(err)})
    sys.exit(1)


def handle_decrypt(args):
    """Handle decrypt command."""
    try:
        config = build_config(args)
        deps = build_deps(config)
        result = DecryptOperation(deps, version=__version__).run()

        output = {"Operation": "Decrypt", "Status": "Success"}
        output.update(result.to_dict())
        print_json_output(output)

    except (Exception, KeyboardInterrupt) as e:
        fail("Decrypt", e)


def handle_restore(args):
    """Handle restore command."""
    try:
        config = build_config(args)
        deps = build_deps(config)
        summary = RestoreOperation(deps, version=__version__).run()

        output = {"Operation": "Restore"}
        if config.dry_run:
            output["Operation"] = "Restore (Dry Run)"
        output["Restore Summary"] = summary.to_dict()
        print_json_output(output)

        if summary.status != "Success":
            sys.exit(1)

    except (Exception, KeyboardInterrupt) as e:
        fail("Restore", e)


def selected_options(config: Config, source: str) -> List:
    options = build_source_options(config)
    if source:
        prefix = SOURCE_LABELS[source]
        options = [o for o in options if o.label.startswith(prefix)]
    return options


def handle_list(args):
    """Handle list command."""
    try:
        config = build_config(args)
        deps = build_deps(config)

        sources = []
        for option in selected_options(config, args.source):
            entry = {"Source": option.label, "Path": option.path}
            try:
                candidates = discover_option(deps, option, log_report(logger))
            except (OSError, BundleError, CommandError) as e:
                logger.warning(f"Failed to inspect {option.path}: {e}")
                entry["Error"] = str(e)
                sources.append(entry)
                continue
            if args.encrypted_only:
                candidates = filter_encrypted(candidates)
            entry["Backups"] = [c.to_dict() for c in candidates]
            sources.append(entry)

        print_json_output({"Operation": "List", "Sources": sources})

        if not sources:
            sys.exit(1)

    except (Exception, KeyboardInterrupt) as e:
        fail("List", e)


def handle_cleanup_temp(args):
    """Handle cleanup-temp command."""
    try:
        config = build_config(args)
        registry = TempDirRegistry.from_config(config)
        ttl = args.ttl_hours * 3600 if args.ttl_hours is not None else config.temp_dir_ttl_seconds

        cleaned = registry.cleanup_orphaned(ttl)

        print_json_output({
            "Operation": "CleanupTemp",
            "Registry": registry.registry_path,
            "Removed": cleaned,
        })

    except (Exception, KeyboardInterrupt) as e:
        fail("CleanupTemp", e)


def handle_rollback(args):
    """Handle rollback command."""
    try:
        config = build_config(args)
        deps = Deps(config=config)

        if config.dry_run:
            print_json_output({
                "Operation": "Rollback (Dry Run)",
                "Backup": args.backup,
                "Destination": args.dest,
                "Actions": [f"Would restore files from {args.backup} onto {args.dest}"],
            })
            return

        restored = restore_safety_backup(deps, args.backup, args.dest)

        print_json_output({
            "Operation": "Rollback",
            "Backup": args.backup,
            "Destination": args.dest,
            "FilesRestored": restored,
        })

    except (Exception, KeyboardInterrupt) as e:
        fail("Rollback", e)


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog='proxrestore',
        description='Decrypts and restores Proxmox VE / Proxmox Backup Server configuration backups.'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default='INFO',
        help='Set logging level (default: INFO)'
    )
    parser.add_argument(
        '--log-file',
        help='Log to file in addition to console'
    )
    parser.add_argument(
        '--config',
        help='Path to a YAML configuration file (default: $PROXRESTORE_CONFIG)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help="Don't write to the live system, just report what would happen"
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Decrypt command
    decrypt_parser = subparsers.add_parser(
        'decrypt',
        help='Decrypt an encrypted backup',
        description='Select an encrypted backup and write a plain <archive>.decrypted.bundle.tar to a chosen directory.'
    )
    decrypt_parser.set_defaults(func=handle_decrypt)

    # Restore command
    restore_parser = subparsers.add_parser(
        'restore',
        help='Restore a backup onto this host',
        description='Interactively restore configuration categories from a backup onto this Proxmox host.'
    )
    restore_parser.set_defaults(func=handle_restore)

    # List command
    list_parser = subparsers.add_parser(
        'list',
        help='List available backups',
        description='Scan the configured backup sources and print the backups found in each.'
    )
    list_parser.add_argument(
        '--encrypted-only',
        action='store_true',
        help='Only list encrypted backups'
    )
    list_parser.add_argument(
        '--source',
        choices=sorted(SOURCE_LABELS),
        help='Only scan one source (default: all configured sources)'
    )
    list_parser.set_defaults(func=handle_list)

    # Cleanup command
    cleanup_parser = subparsers.add_parser(
        'cleanup-temp',
        help='Remove orphaned scratch directories',
        description='Remove registered scratch directories whose owner exited or that outlived the TTL.'
    )
    cleanup_parser.add_argument(
        '--ttl-hours',
        type=int,
        help='Override TEMP_DIR_TTL_HOURS for this run'
    )
    cleanup_parser.set_defaults(func=handle_cleanup_temp)

    # Rollback command
    rollback_parser = subparsers.add_parser(
        'rollback',
        help='Restore a safety backup',
        description='Unpack a safety backup taken before a restore back over the destination root.'
    )
    rollback_parser.add_argument('backup', help='Path to the safety backup .tar.gz')
    rollback_parser.add_argument(
        '--dest',
        default='/',
        help='Destination root (default: /)'
    )
    rollback_parser.set_defaults(func=handle_rollback)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.log_level, args.log_file)

    args.func(args)


if __name__ == '__main__':
    main()
