#!/usr/bin/env python3
# ridenotify/infra/migrate.py
"""
Standalone migration runner:
    python -m ridenotify.infra.migrate

Run it before deploying; the service itself never migrates on startup.
"""
import asyncio
import sys

from ridenotify.config import settings
from ridenotify.infra.db_async import close_pool, init_pool
from ridenotify.infra.logging_config import get_logger, setup_logging
from ridenotify.infra.migrations_async import apply_migrations

logger = get_logger(__name__)


async def main() -> int:
    setup_logging(level="INFO", use_json=settings.is_production)
    logger.info(f"Migration runner: env={settings.app_env}, db={settings.pghost}:{settings.pgport}/{settings.pgdatabase}")

    try:
        await init_pool()
        result = await apply_migrations()
    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()

    if result["applied"]:
        for name in result["applied"]:
            logger.info(f"  applied {name}")
    else:
        logger.info("No new migrations to apply")
    return 0 if result["ok"] else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
