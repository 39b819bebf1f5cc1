"""AI Memory command line entry point."""

from __future__ import annotations

import argparse
import json
import os
import sys

from .errors import MemoryBankError, MigrationError
from .service.config import MemoryConfig
from .service.logging import configure_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ai-memory",
        description="AI Memory - durable memory bank and budgeted context retrieval",
    )
    parser.add_argument(
        "--db",
        default=None,
        help="Database path (default: $AI_MEMORY_DB_PATH or AI-Memory/memory.db)",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error", "critical"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Force JSON log output (default: auto-detect)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None, help="Host to bind to (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=None, help="Port to listen on (default: 4949)")
    serve.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    sub.add_parser("migrate", help="Bring the database schema up to date")

    select = sub.add_parser("select", help="Print the context selected for a query")
    select.add_argument("query")
    select.add_argument("--budget", type=int, default=None, help="Token budget")
    select.add_argument("--semantic", action="store_true", help="Blend in vector similarity")

    sub.add_parser("stats", help="Print entry counts and schema status")
    return parser


def _serve(args: argparse.Namespace, config: MemoryConfig) -> int:
    import uvicorn

    uvicorn.run(
        "ai_memory.service.app:create_app_from_env",
        host=args.host or config.host,
        port=args.port or config.port,
        reload=args.reload,
        log_level=args.log_level,
        factory=True,
    )
    return 0


def _with_service(config: MemoryConfig, command: str, args: argparse.Namespace) -> int:
    from .service.core import MemoryService

    service = MemoryService(config)
    if not service.open():
        print(f"Error: store unavailable: {service.state()['inactive_reason']}", file=sys.stderr)
        return 1
    try:
        if command == "migrate":
            result = service.store.last_migration
            applied = result.migrations_applied if result else 0
            print(f"Schema at version {service.store.schema_version} ({applied} applied)")
            if result and result.backup_path:
                print(f"Backup: {result.backup_path}")
        elif command == "select":
            options = service.default_selection_options(use_semantic_search=args.semantic)
            result = service.select_context(args.query, args.budget, options)
            print(result.text)
            print(f"-- {result.coverage}", file=sys.stderr)
        elif command == "stats":
            print(json.dumps({"state": service.state(), "counts": service.entry_counts()}, indent=2))
    finally:
        service.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the ai-memory command."""
    args = _build_parser().parse_args(argv)

    configure_logging(
        level=args.log_level.upper(),
        json_output=True if args.json_logs else None,
    )

    if args.db:
        os.environ["AI_MEMORY_DB_PATH"] = args.db
    config = MemoryConfig.from_env()

    try:
        if args.command == "serve":
            return _serve(args, config)
        return _with_service(config, args.command, args)
    except MigrationError as e:
        print(f"Error: {e}", file=sys.stderr)
        if e.backup_path:
            print(f"Pre-migration backup kept at {e.backup_path}", file=sys.stderr)
        return 1
    except MemoryBankError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
