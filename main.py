"""Command-line interface for the user management service."""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Sequence

from dotenv import find_dotenv, load_dotenv

from usersapi.config import ServiceSettings, load_settings
from usersapi.database import Database, StorageError

logger = logging.getLogger("usersapi.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="User management service")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML configuration file (defaults to USERS_CONFIG or config/service.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    init_parser = subparsers.add_parser("init-db", help="Create the users table and exit")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP service")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=None, help="Listen port (default: 8080)")
    for subparser in (init_parser, serve_parser):
        subparser.add_argument("--config", default=argparse.SUPPRESS, help=argparse.SUPPRESS)

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db"}

    # Global options may precede the subcommand; anything else defaults to ``serve``.
    index = 0
    while index < len(args_list):
        if args_list[index] == "--config":
            index += 2
        elif args_list[index].startswith("--config="):
            index += 1
        else:
            break
    remainder = args_list[index:]

    if not remainder:
        args_list = [*args_list, "serve"]
    else:
        first = remainder[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in remainder for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = [*args_list[:index], "serve", *remainder]

    return parser.parse_args(args_list)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )


def _initialise_database(settings: ServiceSettings) -> Database:
    database = Database(settings.database_path)
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return database


def _serve(*, database: Database, settings: ServiceSettings) -> None:
    from usersapi.api import create_app
    import uvicorn

    logger.info("Starting user service on http://%s:%s", settings.host, settings.port)

    app = create_app(database=database, settings=settings)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    load_dotenv(find_dotenv(usecwd=True))

    args = _parse_args(argv)
    try:
        settings = load_settings(Path(args.config) if args.config else None)
    except ValueError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    if args.command == "serve":
        overrides = {}
        if args.host:
            overrides["host"] = args.host
        if args.port is not None:
            overrides["port"] = args.port
        if overrides:
            settings = replace(settings, **overrides)

    _configure_logging(settings.log_level)

    try:
        database = _initialise_database(settings)
    except StorageError as exc:
        raise SystemExit(f"Failed to initialise database: {exc}") from exc

    if args.command == "serve":
        _serve(database=database, settings=settings)
    elif args.command == "init-db":
        print("Database initialisation complete.")


if __name__ == "__main__":
    main()
