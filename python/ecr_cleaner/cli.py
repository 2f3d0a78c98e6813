import argparse
import logging
import os
import sys
import threading
from typing import List, Optional

from ecr_cleaner import __version__
from ecr_cleaner.app import App, Options
from ecr_cleaner.config_manager import ConfigManager
from ecr_cleaner.errors import CleanerError, UserAbort
from ecr_cleaner.logging_utils import get_logger, log_exception, parse_log_level, setup_logging

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_DELETE_FAILURES = 2
EXIT_INTERRUPTED = 130

EPILOG = """
Commands:
  scan    - Scan ECS/Lambda/EKS resources and output the image references in use
  plan    - Scan resources and find unused ECR images that can be deleted safely
  delete  - Scan resources and delete unused ECR images

Configuration:
  The tool reads a YAML configuration (see config-example.yaml). Environment variables:
  - ECR_CLEANER_CONFIG: Configuration file path
  - ECR_CLEANER_LOG_LEVEL: debug, info, notice, warning or error
  - ECR_CLEANER_REGION / AWS_REGION: AWS region
  - ECR_CLEANER_PROFILE: AWS profile
  - ECR_CLEANER_MAX_WORKERS: Concurrent API workers during scans

Examples:
  # Review what would be deleted
  ecr-cleaner plan -c config.yaml

  # Save the scan result of another account, then plan with it
  ecr-cleaner scan -o in-use.json
  ecr-cleaner plan --scanned-files in-use.json

  # Delete without the confirmation prompt
  ecr-cleaner delete --force
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ecr-cleaner",
        description="Find and delete Amazon ECR images that no workload uses",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )
    parser.add_argument(
        '-c', '--config',
        default=os.environ.get("ECR_CLEANER_CONFIG", "config.yaml"),
        help="Load configuration from FILE (default: config.yaml)"
    )
    parser.add_argument(
        '--log-level',
        default=os.environ.get("ECR_CLEANER_LOG_LEVEL", "info"),
        help="Set log level (debug, info, notice, warning, error)"
    )
    parser.add_argument(
        '--show-config',
        action='store_true',
        help="Show current configuration and exit"
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command")

    scan = subparsers.add_parser('scan', help="Scan resources and output the image references in use")
    _add_output_argument(scan)

    for name, help_text in (
        ('plan', "Scan resources and find unused ECR images that can be deleted safely"),
        ('delete', "Scan resources and delete unused ECR images"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        _add_output_argument(sub)
        sub.add_argument(
            '--format',
            choices=['table', 'json'],
            default=None,
            help="Output format of the plan summary (default: output.format from config, or table)"
        )
        sub.add_argument(
            '--no-scan',
            dest='scan',
            action='store_false',
            help="Do not scan resources; rely on --scanned-files only"
        )
        sub.add_argument(
            '--scanned-files',
            nargs='+',
            default=[],
            metavar='FILE',
            help="Files of a previous scan result. Images in these files are never deleted"
        )
        sub.add_argument(
            '-r', '--repository',
            help="Only plan/delete images in this repository"
        )
        if name == 'delete':
            sub.add_argument(
                '--force',
                action='store_true',
                help="Delete images without confirmation"
            )
    return parser


def _add_output_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '-o', '--output',
        default=None,
        help="File name of the output. The default is STDOUT (-)"
    )


def build_options(args: argparse.Namespace, config: ConfigManager) -> Options:
    return Options(
        scan_only=args.command == 'scan',
        scan=getattr(args, 'scan', True),
        delete=args.command == 'delete',
        force=getattr(args, 'force', False),
        repository=getattr(args, 'repository', None),
        output_file=args.output or config.get_output_file(),
        output_format=getattr(args, 'format', None) or config.get_output_format(),
        scanned_files=list(getattr(args, 'scanned_files', [])),
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        level = parse_log_level(args.log_level)
    except ValueError as e:
        parser.error(str(e))
    setup_logging(level=level)
    logging.getLogger().setLevel(level)
    logger = get_logger("ecr_cleaner")

    if not args.command and not args.show_config:
        parser.print_help()
        return EXIT_ERROR

    cancel = threading.Event()
    try:
        config = ConfigManager(args.config)
        if args.show_config:
            config.print_config()
            return EXIT_OK

        app = App(config, cancel=cancel)
        try:
            result = app.run(build_options(args, config))
        finally:
            app.clients.close()
    except UserAbort as e:
        logger.error(e.message)
        return EXIT_ERROR
    except CleanerError as e:
        logger.error(e.format_message())
        return EXIT_ERROR
    except KeyboardInterrupt:
        cancel.set()
        logger.error("Interrupted")
        return EXIT_INTERRUPTED
    except Exception as e:
        log_exception(logger, "Unexpected error", e)
        return EXIT_ERROR

    if result.failures:
        logger.error(f"{result.failures} image(s) could not be deleted")
        return EXIT_DELETE_FAILURES
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
