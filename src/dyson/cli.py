"""CLI for the ECR image cleaner."""

import argparse
import sys
from pathlib import Path

import structlog

from .config import DEFAULT_CONFIG_PATH, DysonConfig
from .exceptions import AuthenticationError, CatalogError, ConfigurationError
from .factory import Factory
from .services.dyson import Dyson, configure_logging

EXIT_OK = 0
EXIT_CATALOG = 1
EXIT_CONFIG = 2
EXIT_AUTH = 3
EXIT_INTERRUPTED = 130


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="dyson",
        description="Remove unused images from an ECR registry.",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="cleaner config file",
        default=DEFAULT_CONFIG_PATH,
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Enable debug logging",
        default=False,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init = subparsers.add_parser("init", help="Write an example config file")
    init.add_argument(
        "--stdout",
        action="store_true",
        help="Print the example config instead of writing it",
        default=False,
    )
    subparsers.add_parser(
        "plan", help="Show which images would be deleted, and why"
    )
    subparsers.add_parser(
        "apply", help="Delete the images the plan marks for deletion"
    )
    dump = subparsers.add_parser(
        "dump", help="Write the registry catalog to a snapshot file"
    )
    dump.add_argument(
        "-o",
        "--output",
        type=Path,
        required=True,
        help="snapshot file to write",
    )
    return parser.parse_args(argv)


def _init(args: argparse.Namespace) -> int:
    text = DysonConfig.example().to_yaml()
    if args.stdout:
        print(text, end="")
        return EXIT_OK
    path: Path = args.config
    if path.exists():
        print(f"{path} already exists; not overwriting it", file=sys.stderr)
        return EXIT_OK
    path.write_text(text)
    print(f"Wrote example configuration to {path}")
    return EXIT_OK


def _run(args: argparse.Namespace, dyson: Dyson) -> int:
    if args.command == "dump":
        count = dyson.dump(args.output)
        print(f"Wrote {count} image(s) to {args.output}")
        return EXIT_OK
    if args.command == "apply":
        plan, result = dyson.apply()
    else:
        plan, result = dyson.plan(), None
    summary = dyson.report(plan, result)
    print(summary.render(), end="")
    dyson.notify(summary)
    return EXIT_INTERRUPTED if summary.interrupted else EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Run the cleaner; return the process exit status."""
    args = _parse_args(argv)
    configure_logging(debug=args.debug)
    logger = structlog.get_logger(__name__)
    if args.command == "init":
        return _init(args)
    try:
        cfg = DysonConfig.from_file(args.config)
        with Factory.standalone(cfg) as factory:
            return _run(args, Dyson(factory))
    except ConfigurationError as e:
        logger.error("Invalid configuration", error=str(e))
        return EXIT_CONFIG
    except AuthenticationError as e:
        logger.error("Registry credentials failed", error=str(e))
        return EXIT_AUTH
    except CatalogError as e:
        logger.error("Cannot read registry catalog", error=str(e))
        return EXIT_CATALOG
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED
