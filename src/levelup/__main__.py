"""Command line entry point."""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from levelup.app import LevelUpApp
from levelup.config import ensure_directories
from levelup.logging_config import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(prog="levelup", description="LevelUp storage tools")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    commands = parser.add_subparsers(dest="command", required=True)

    export = commands.add_parser("export", help="Export all progress to a JSON file")
    export.add_argument("path", type=Path)

    import_ = commands.add_parser("import", help="Import progress from a JSON file")
    import_.add_argument("path", type=Path)
    import_.add_argument("--merge", action="store_true", help="Merge with existing progress")
    import_.add_argument(
        "--language", action="append", dest="languages", help="Only import this language"
    )

    commands.add_parser("health", help="Show storage health")
    commands.add_parser("analytics", help="Show storage analytics")
    return parser


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def run(args: argparse.Namespace) -> int:
    """Run one command against a started application."""
    app = LevelUpApp()
    await app.start()
    try:
        if args.command == "export":
            result = await app.data_transfer.export_to_file(args.path)
            _print({"success": result.success, "path": result.data, "error": result.error})
            return 0 if result.success else 1

        if args.command == "import":
            outcome = await app.data_transfer.import_from_file(
                args.path, args.merge, args.languages
            )
            _print(outcome.__dict__)
            return 0 if outcome.success else 1

        if args.command == "health":
            result = await app.storage.get_storage_health()
            _print(result.data)
            return 0 if result.data["status"] != "unhealthy" else 1

        result = await app.storage.get_storage_analytics()
        _print(result.data)
        return 0
    finally:
        await app.stop()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    ensure_directories()
    setup_logging("Starting LevelUp storage tools ...", args.log_level)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        exit_code = loop.run_until_complete(run(args))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
        exit_code = 130
    finally:
        loop.close()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
