"""Process wiring shared by the worker and scheduler entrypoints."""

import importlib
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import asyncpg
import boto3
import redis.asyncio as redis_async

from conn_jobs.config import ConnJobsConfig
from conn_jobs.idempotency import CommandStore, EventDeduplicator
from conn_jobs.locks import ConnectionLockManager
from conn_jobs.orchestrator import Orchestrator
from conn_jobs.queue import SqsDurableQueue
from conn_jobs.registry import ExecutorRegistry, executor_registry
from conn_jobs.store import JobStore, SyncStateStore


def setup_logging():
    """Setup logging configuration."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def create_db_pool(config: ConnJobsConfig):
    """Create database connection pool."""
    return await asyncpg.create_pool(config.db_dsn, min_size=2, max_size=10)


def create_redis_client(config: ConnJobsConfig):
    return redis_async.from_url(config.redis_url, decode_responses=True)


def create_sqs_client():
    return boto3.client("sqs")


def load_handlers(handlers_module: Optional[str] = None, logger: Optional[logging.Logger] = None):
    """
    Import the module that registers executors, the config loader and the
    connection source. Defaults to ``CONN_JOBS_HANDLERS_MODULE``.
    """
    logger = logger or logging.getLogger(__name__)
    handlers_module = handlers_module or os.getenv("CONN_JOBS_HANDLERS_MODULE")
    if not handlers_module:
        logger.warning("CONN_JOBS_HANDLERS_MODULE not set, no executors will be available")
        return
    importlib.import_module(handlers_module)
    logger.info(f"Loaded handlers from {handlers_module}")


def build_orchestrator(
    config: ConnJobsConfig,
    db_pool: Any,
    redis_client: Any,
    sqs_client: Any,
    registry: Optional[ExecutorRegistry] = None,
    logger: Optional[logging.Logger] = None,
) -> Orchestrator:
    """Assemble an Orchestrator from already-open clients."""
    return Orchestrator(
        config=config,
        job_store=JobStore(db_pool),
        locks=ConnectionLockManager(
            redis_client,
            default_ttl=config.lock_ttl,
            key_prefix=config.lock_key_prefix,
            logger=logger,
        ),
        queue=SqsDurableQueue(
            sqs_client,
            config.sqs_queue_url,
            dead_letter_queue_url=config.sqs_dead_letter_queue_url,
            logger=logger,
        ),
        commands=CommandStore(db_pool, logger),
        events=EventDeduplicator(db_pool, logger),
        sync_state=SyncStateStore(db_pool),
        registry=registry or executor_registry,
        logger=logger,
    )


@asynccontextmanager
async def open_orchestrator(
    config: ConnJobsConfig,
    registry: Optional[ExecutorRegistry] = None,
    logger: Optional[logging.Logger] = None,
    sqs_client: Any = None,
) -> AsyncIterator[Orchestrator]:
    """Open the database pool and Redis client, yield an Orchestrator, close both."""
    logger = logger or logging.getLogger(__name__)
    if sqs_client is None:
        sqs_client = create_sqs_client()

    logger.info("Creating database connection pool...")
    db_pool = await create_db_pool(config)
    redis_client = create_redis_client(config)
    try:
        yield build_orchestrator(config, db_pool, redis_client, sqs_client, registry, logger)
    finally:
        logger.info("Closing database connection pool and Redis client...")
        await redis_client.aclose()
        await db_pool.close()
