from __future__ import annotations

import logging

from ..config import Settings
from .base import BaseDBManager
from .memory import InMemoryDBManager

logger = logging.getLogger(__name__)


def create_db_manager(settings: Settings) -> BaseDBManager:
    """
    Build the storage manager selected by ``settings.database_backend``.

    Drivers are imported lazily so a memory-only deployment does not need
    asyncpg or motor at import time. Call ``connect()`` on the result before
    first use.
    """
    backend = settings.database_backend
    if backend == "postgres":
        if not settings.postgres_dsn:
            raise ValueError("METERING_POSTGRES_DSN is required for the postgres backend")
        from .postgres import PostgresDBManager

        logger.info("Using PostgreSQL metering storage")
        return PostgresDBManager(
            dsn=settings.postgres_dsn,
            min_size=settings.postgres_pool_min_size,
            max_size=settings.postgres_pool_max_size,
        )
    if backend == "mongo":
        if not settings.mongo_uri:
            raise ValueError("METERING_MONGO_URI is required for the mongo backend")
        from .mongo import MongoDBManager

        logger.info("Using MongoDB metering storage")
        return MongoDBManager.from_client_uri(
            settings.mongo_uri,
            settings.mongo_db,
            use_transactions=settings.mongo_use_transactions,
        )
    logger.warning("Using in-memory metering storage; data is lost on restart")
    return InMemoryDBManager()
