#!/usr/bin/env python3
"""
todo-sync server - Main entry point for python -m todo_sync
"""

import asyncio
import sys

from todo_sync.utils.config import load_config
from todo_sync.utils.logging import setup_logging, get_logger
from todo_sync.websocket import create_server


async def serve(config_paths=None) -> None:
    """Load configuration and serve until cancelled."""
    config = await load_config(config_paths)
    setup_logging(
        config.app_name,
        log_level=config.logging.level,
        log_dir=config.logging.directory,
        enable_json=config.logging.format == "json",
        enable_console=config.logging.enable_console,
        max_bytes=config.logging.max_size,
        backup_count=config.logging.backup_count,
    )
    logger = get_logger("todo-sync.main")

    core, transport = await create_server(config)
    try:
        await asyncio.Event().wait()
    finally:
        logger.info("shutting_down")
        await transport.stop()
        await core.stop()


def main():
    """Main entry point for python -m todo_sync"""
    try:
        asyncio.run(serve(sys.argv[1:] or None))
    except KeyboardInterrupt:
        print("\ntodo-sync server stopped by user", file=sys.stderr)
        sys.exit(0)
    except Exception as e:
        print(f"todo-sync server error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
