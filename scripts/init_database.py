#!/usr/bin/env python3
"""
Database initialization script

Creates every indexer table and index, and checks the optional Redis tier.
"""

import argparse
import logging
import sys
from pathlib import Path

from berry_indexer.config import init_config
from berry_indexer.database import Base, init_database, init_redis

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main(argv=None):
    """Create the schema for the configured database"""
    parser = argparse.ArgumentParser(description='Create indexer tables')
    parser.add_argument('--config', type=Path, default=Path('config.yaml'))
    args = parser.parse_args(argv)

    try:
        logger.info(f"Loading configuration from {args.config}...")
        config = init_config(args.config)

        logger.info("Creating tables...")
        db_manager = init_database(config.database)

        if not db_manager.health_check():
            logger.error("✗ Database health check failed")
            return 1
        logger.info(
            f"✓ {db_manager.dialect} database ready: {', '.join(sorted(Base.metadata.tables))}"
        )

        if config.redis.enabled:
            redis_manager = init_redis(config.redis)
            if redis_manager.health_check():
                logger.info("✓ Redis connection verified")
            else:
                logger.warning("⚠ Redis unreachable, identity cache will use in-memory fallback")

        return 0

    except Exception as e:
        logger.error(f"Initialization failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
