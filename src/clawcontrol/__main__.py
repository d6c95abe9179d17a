"""Claw Control Center entry point.

Commands:
  clawcontrol serve    Start the HTTP bridge and notification dispatcher (default)
  clawcontrol prune    Mark stale agents offline and drop expired notifications
  clawcontrol stats    Print board counts as JSON
"""

import argparse
import asyncio
import json
import logging

from clawcontrol import __version__
from clawcontrol.config import get_settings
from clawcontrol.logging_setup import setup_logging

logger = logging.getLogger(__name__)


async def _prune() -> dict:
    from clawcontrol.board.manager import get_board_manager

    return await get_board_manager().prune()


async def _stats() -> dict:
    from clawcontrol.board.manager import get_board_manager

    return await get_board_manager().stats()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="clawcontrol",
        description="Claw Control Center - task board for agent teams",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  clawcontrol                        Start the server (same as 'serve')
  clawcontrol serve --port 9000      Start on another port
  clawcontrol serve --no-dispatcher  Serve the API without pushing notifications
  clawcontrol prune                  Housekeeping pass
  clawcontrol stats                  Print board statistics
""",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=["serve", "prune", "stats"],
        help="What to run (default: serve)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind (default: CLAW_HOST or 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        "-p",
        type=int,
        default=None,
        help="Port to bind (default: CLAW_PORT or 8787)",
    )
    parser.add_argument(
        "--no-dispatcher",
        action="store_true",
        help="Do not push notifications to agent endpoints",
    )
    parser.add_argument(
        "--version",
        "-v",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    args = parser.parse_args()

    settings = get_settings()
    setup_logging(level=settings.log_level)

    try:
        if args.command == "prune":
            result = asyncio.run(_prune())
            logger.info(
                f"Pruned: {len(result['staleAgents'])} agents marked offline, "
                f"{len(result['notifications'])} notifications removed"
            )
        elif args.command == "stats":
            print(json.dumps(asyncio.run(_stats()), indent=2))
        else:
            from clawcontrol.serve import run_server

            run_server(
                host=args.host,
                port=args.port,
                dispatcher_enabled=False if args.no_dispatcher else None,
            )
    except KeyboardInterrupt:
        logger.info("Claw Control Center stopped.")


if __name__ == "__main__":
    main()
