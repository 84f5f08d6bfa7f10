"""Process entry point: ``python -m domadao_indexer``."""

import asyncio
import contextlib
import logging
import signal
import sys

from redis.asyncio import Redis

from domadao_indexer.config import Settings, get_settings
from domadao_indexer.consumer import BackoffPolicy, ConsumerService
from domadao_indexer.indexer import EventIndexer
from domadao_indexer.ingestor import AuthError, PollClient
from domadao_indexer.lock import ConsumerLock, ConsumerLockError
from domadao_indexer.storage import DatabaseManager
from domadao_indexer.storage.cursor import SqlCursorStore

logger = logging.getLogger("domadao_indexer")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


async def run_consumer(settings: Settings) -> int:
    """Run the poll consumer until SIGINT/SIGTERM or a fatal error.

    Returns:
        Process exit code.
    """
    db = DatabaseManager(settings.database.url, pool_size=settings.database.pool_size)
    redis: Redis | None = None
    lock: ConsumerLock | None = None
    if settings.consumer_lock.enabled:
        redis = Redis.from_url(settings.redis.url)
        lock = ConsumerLock(
            redis,
            key=settings.consumer_lock.key,
            ttl_seconds=settings.consumer_lock.ttl_seconds,
        )

    api_key = settings.doma_api.api_key.get_secret_value() if settings.doma_api.api_key else ""
    poll_client = PollClient(
        settings.doma_api.base_url,
        api_key=api_key,
        timeout=settings.doma_api.timeout_seconds,
        event_types=settings.poll.event_type_list,
        finalized_only=settings.poll.finalized_only,
    )
    consumer = ConsumerService(
        cursor_store=SqlCursorStore(db.session_factory),
        poll_client=poll_client,
        indexer=EventIndexer(db.session_factory, max_attempts=settings.indexer.max_attempts),
        batch_size=settings.poll.batch_size,
        poll_interval_seconds=settings.poll.interval_seconds,
        backoff=BackoffPolicy(
            base_seconds=settings.poll.backoff_base_seconds,
            max_seconds=settings.poll.backoff_max_seconds,
            multiplier=settings.poll.backoff_multiplier,
        ),
        lock=lock,
        lock_renew_seconds=settings.consumer_lock.ttl_seconds / 3,
        shutdown_timeout_seconds=settings.shutdown_timeout_seconds,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, consumer.request_stop)

    try:
        await consumer.run()
    except AuthError as e:
        logger.error("Doma API rejected the API key, operator action required: %s", e)
        return 1
    except ConsumerLockError as e:
        logger.error("Consumer lock unavailable: %s", e)
        return 1
    finally:
        await poll_client.aclose()
        if redis is not None:
            await redis.aclose()
        await db.dispose_async()

    return 0


def main() -> int:
    settings = get_settings()
    logging.basicConfig(level=settings.get_logging_level(), format=LOG_FORMAT)

    if not settings.poll.enabled:
        logger.info("POLL_ENABLED is false, nothing to do")
        return 0

    try:
        settings.validate_requirements()
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    logger.info("Starting DomaDAO indexer with settings: %s", settings.redacted_summary())
    return asyncio.run(run_consumer(settings))


if __name__ == "__main__":
    sys.exit(main())
