#!/usr/bin/env python3
"""CLI entry point for manifest-sync.

Noun-action subcommands:
- sync run: point the manifest repository at a freshly built image
- sync preflight: check git and repository access only
- image resolve: print the image reference for a build

Parameters come from the CI job environment (REGISTRY_HOST, PROJECT_PATH,
COMMIT_ID, MANIFEST_REPO_URL, MANIFEST_BRANCH, MANIFEST_FILE_PATH,
CONTAINER_SELECTOR, CREDENTIAL); flags override everything except the
credential.

Exit codes:
    0  deployed, or already deployed (no-op)
    1  configuration or authentication error
    2  concurrent updates outlasted the push attempts
    3  git operation timed out
    4  manifest validation error (selector not found/ambiguous)
"""

import argparse
import json
import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from common import redact_url
from config import SyncConfig, load_config
from errors import ConfigurationError, SyncError
from image_ref import resolve_image_reference
from preflight import format_preflight_results, run_preflight_checks
from synchronizer import Synchronizer, SyncReport

NOUN_COMMANDS = {
    "sync": "Manifest repository synchronization (run/preflight)",
    "image": "Image reference utilities (resolve)",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version() -> str:
    """Installed distribution version, or 'dev' from a source checkout."""
    try:
        return version('manifest-sync')
    except PackageNotFoundError:
        return 'dev'


def _common_parser(prog: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with the run parameters shared by all verbs."""
    parser = argparse.ArgumentParser(prog=prog, description=description)
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='YAML settings file (default: $MANIFEST_SYNC_CONFIG)',
    )
    parser.add_argument('--registry-host', help='Registry host[:port] (env: REGISTRY_HOST)')
    parser.add_argument('--project-path', help='Image path in the registry (env: PROJECT_PATH)')
    parser.add_argument('--commit-id', help='Build commit identifier (env: COMMIT_ID)')
    parser.add_argument('--repo-url', help='Manifest repository URL (env: MANIFEST_REPO_URL)')
    parser.add_argument('--branch', '-b', help='Manifest branch (env: MANIFEST_BRANCH)')
    parser.add_argument('--file', '-f', dest='file_path',
                        help='Manifest path in the repository (env: MANIFEST_FILE_PATH)')
    parser.add_argument('--selector', '-s', dest='container_selector',
                        help='<container> or <Kind>/<name>/<container> (env: CONTAINER_SELECTOR)')
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _load_config(args) -> SyncConfig:
    """Resolve config from settings file, environment and flags."""
    overrides = {
        'registry_host': args.registry_host,
        'project_path': args.project_path,
        'commit_id': args.commit_id,
        'repo_url': args.repo_url,
        'branch': args.branch,
        'file_path': args.file_path,
        'container_selector': args.container_selector,
    }
    return load_config(settings_file=args.config, overrides=overrides)


def _print_error(error: SyncError, config: SyncConfig | None = None) -> None:
    """Operator-facing failure message naming kind, repository, branch and selector."""
    print(f"Error: {error.kind} error ({error.code})", file=sys.stderr)
    print(f"  {error.message}", file=sys.stderr)
    if config is None:
        return
    if config.repo_url:
        print(f"  repository: {redact_url(config.repo_url)}", file=sys.stderr)
        print(f"  branch:     {config.branch}", file=sys.stderr)
    if error.kind == 'validation':
        print(f"  file:       {config.file_path}", file=sys.stderr)
        print(f"  selector:   {config.container_selector}", file=sys.stderr)


def _print_report(report: SyncReport) -> None:
    """Human-readable summary of a run."""
    if report.status == 'deployed':
        replacing = f"replacing {report.previous_tag}, " if report.previous_tag else ''
        print(f"Deployed {report.image} ({replacing}{report.revision[:12]}, "
              f"{len(report.attempts)} attempt{'s' if len(report.attempts) != 1 else ''})")
    elif report.status == 'noop':
        print(f"Already deployed: {report.file_path} references {report.image}; no commit created")
    elif report.status == 'dry_run':
        print(f"Dry run: would deploy {report.image} (was {report.previous_image})")
        if report.diff:
            print(report.diff, end='' if report.diff.endswith('\n') else '\n')


def sync_run_main(argv: list) -> int:
    """Handle 'sync run'."""
    parser = _common_parser('manifest-sync sync run',
                            'Point the manifest repository at a freshly built image')
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show the manifest change without committing or pushing',
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip the git and repository access checks',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
    except ConfigurationError as e:
        _print_error(e)
        return e.exit_code

    report = Synchronizer(
        config,
        dry_run=args.dry_run,
        preflight=not (args.skip_preflight or args.dry_run),
    ).run()

    if args.json_output:
        print(json.dumps(report.to_dict(), indent=2))
    elif report.error is None:
        _print_report(report)

    if report.error is not None:
        _print_error(report.error, config)
    return report.exit_code


def sync_preflight_main(argv: list) -> int:
    """Handle 'sync preflight'."""
    parser = _common_parser('manifest-sync sync preflight',
                            'Check git and manifest repository access')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        config.validate()
    except ConfigurationError as e:
        _print_error(e)
        return e.exit_code

    errors = run_preflight_checks(config)
    if args.json_output:
        print(json.dumps({
            'ready': not errors,
            'repository': redact_url(config.repo_url),
            'errors': [{'kind': e.kind, 'code': e.code, 'message': e.message} for e in errors],
        }, indent=2))
    else:
        print(format_preflight_results(config, errors))
    return errors[0].exit_code if errors else 0


def image_resolve_main(argv: list) -> int:
    """Handle 'image resolve'."""
    parser = _common_parser('manifest-sync image resolve',
                            'Print the image reference for a build')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        ref = resolve_image_reference(config.registry_host, config.project_path, config.commit_id)
    except SyncError as e:
        _print_error(e)
        return e.exit_code

    if args.json_output:
        print(json.dumps({
            'registry_host': ref.registry_host,
            'project_path': ref.project_path,
            'tag': ref.tag,
            'image': str(ref),
        }, indent=2))
    else:
        print(ref)
    return 0


def dispatch_sync(argv: list) -> int:
    """Dispatch 'sync' noun to action-specific handler."""
    if not argv or argv[0].startswith('-'):
        print("Usage: manifest-sync sync <action> [options]")
        print()
        print("Actions:")
        print("  run        Update the manifest repository for a build")
        print("  preflight  Check git and repository access only")
        print()
        print("Run 'manifest-sync sync <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action, rest = argv[0], argv[1:]
    if action == "run":
        return sync_run_main(rest)
    if action == "preflight":
        return sync_preflight_main(rest)

    print(f"Error: Unknown sync action '{action}'")
    print("Available actions: run, preflight")
    return 1


def dispatch_image(argv: list) -> int:
    """Dispatch 'image' noun to action-specific handler."""
    if not argv or argv[0].startswith('-'):
        print("Usage: manifest-sync image resolve [options]")
        return 1 if not argv else 0

    if argv[0] == "resolve":
        return image_resolve_main(argv[1:])

    print(f"Error: Unknown image action '{argv[0]}'")
    print("Available actions: resolve")
    return 1


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"manifest-sync {get_version()}")
    print()
    print("Usage: manifest-sync <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Examples:")
    print("  manifest-sync sync run")
    print("  manifest-sync sync run --dry-run --selector Deployment/web/api")
    print("  manifest-sync sync preflight")
    print("  manifest-sync image resolve --commit-id abc1234")


def main(argv: list | None = None) -> int:
    """CLI entry point: dispatch to noun-action handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv:
        print_usage()
        return 0

    noun, rest = argv[0], argv[1:]
    if noun in ('--version', '-V'):
        print(f"manifest-sync {get_version()}")
        return 0
    if noun in ('--help', '-h'):
        print_usage()
        return 0
    if noun == "sync":
        return dispatch_sync(rest)
    if noun == "image":
        return dispatch_image(rest)

    print(f"Error: Unknown command '{noun}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
