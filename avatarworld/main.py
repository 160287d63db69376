"""Main entry point for the avatar world scheduler."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .config import Config, apply_env_overrides, load_config
from .services import init_db_service
from .world import AvatarWorld


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def read_config(config_path: str, logger: logging.Logger) -> Config:
    """Load the YAML config, or fall back to defaults plus env overrides."""
    if Path(config_path).exists():
        logger.info("Loading configuration from %s", config_path)
        return load_config(config_path)
    logger.info("No config file at %s, using defaults", config_path)
    return Config(**apply_env_overrides({}))


async def serve_api(world: AvatarWorld, port: int, verbose: bool, logger: logging.Logger) -> None:
    """Run the status API until it exits."""
    import uvicorn

    from .api import create_app

    logger.info("Starting status API on port %d...", port)
    uvicorn_config = uvicorn.Config(
        create_app(world),
        host=world.config.api.host,
        port=port,
        log_level="info" if verbose else "warning",
    )
    server = uvicorn.Server(uvicorn_config)
    await server.serve()


async def async_main(args, logger) -> int:
    """Async main function."""
    world = None
    db = None
    try:
        config = read_config(args.config, logger)

        logger.info("Initializing database at %s", config.database.path)
        db = await init_db_service(config.database.path)
        logger.info("Database initialized successfully")

        world = AvatarWorld(config, db)
        port = args.port or config.api.port

        if args.once:
            logger.info("Running single pass of scheduled tasks...")
            await world.start()
            await world.run_once()
        elif args.mode == "api":
            await serve_api(world, port, args.verbose, logger)
        elif args.mode == "combined":
            await world.start()
            await serve_api(world, port, args.verbose, logger)
        else:
            await world.run()

        return 0

    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 1
    except asyncio.CancelledError:
        logger.info("Interrupted")
        return 0
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1
    finally:
        if world is not None:
            await world.close()
        if db is not None:
            await db.close()
            logger.info("Database connection closed")


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Assignment, conversation thread and video job scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                              # Run background workers with config.yaml
  %(prog)s -c myconfig.yaml             # Run with custom config
  %(prog)s -v                           # Run with verbose logging
  %(prog)s --once                       # Run every task once and exit
  %(prog)s --mode api                   # Serve the status API only
  %(prog)s --mode combined --port 8081  # Workers plus status API
        """,
    )

    parser.add_argument(
        "-c",
        "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run every scheduled task once and exit",
    )
    parser.add_argument(
        "--mode",
        choices=["worker", "api", "combined"],
        default="worker",
        help="Run mode: worker (default), api only, or combined",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for the status API (default: from config, 8080)",
    )

    args = parser.parse_args()

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        return asyncio.run(async_main(args, logger))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0


if __name__ == "__main__":
    sys.exit(main())
