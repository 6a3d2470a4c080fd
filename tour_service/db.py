"""MongoDB client lifecycle, index management, and resilience utilities."""

import asyncio

from pymongo import ASCENDING, DESCENDING, GEOSPHERE, AsyncMongoClient
from pymongo.errors import ConnectionFailure, PyMongoError

from .config import settings
from .logger import logger

# ==================== Collections ====================

USERS = "users"
TOURS = "tours"
REVIEWS = "reviews"

# ==================== Client Setup ====================

# Set by connect(); tests swap ``database`` for an in-memory implementation
client: AsyncMongoClient | None = None
database = None


def connect() -> None:
    """Create the client and bind the application database.

    The driver connects lazily, so this performs no network I/O.
    """
    global client, database
    if client is not None:
        return
    client = AsyncMongoClient(
        settings.MONGO_URL,
        tz_aware=True,
        maxPoolSize=settings.MONGO_MAX_POOL_SIZE,
        serverSelectionTimeoutMS=settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
        connectTimeoutMS=settings.MONGO_CONNECT_TIMEOUT_MS,
    )
    database = client[settings.MONGO_DB_NAME]
    logger.info(
        f"MongoDB client configured: db={settings.MONGO_DB_NAME} "
        f"max_pool_size={settings.MONGO_MAX_POOL_SIZE}"
    )


def get_database():
    if database is None:
        connect()
    return database


def get_collection(name: str):
    return get_database()[name]


async def ensure_indexes() -> None:
    """Create the indexes the data model relies on (idempotent)."""
    users = get_collection(USERS)
    tours = get_collection(TOURS)
    reviews = get_collection(REVIEWS)

    await users.create_index([("email", ASCENDING)], unique=True)
    await tours.create_index([("name", ASCENDING)], unique=True)
    await tours.create_index([("price", ASCENDING), ("ratingsAverage", DESCENDING)])
    await tours.create_index([("slug", ASCENDING)])
    await tours.create_index([("startLocation", GEOSPHERE)])
    await reviews.create_index([("tour", ASCENDING), ("user", ASCENDING)], unique=True)
    logger.info("MongoDB indexes ensured")

# ==================== Database Resilience ====================


async def retry_on_db_error(func, max_retries: int = 3, base_delay: float = 0.5):
    """Retry database operations with exponential backoff.

    Only connection-level failures are retried; command errors such as
    duplicate keys surface immediately.

    Args:
        func: Async function to retry
        max_retries: Maximum number of retry attempts
        base_delay: Base delay in seconds (doubles each retry)

    Returns:
        Result of the function call

    Raises:
        Last exception if all retries fail
    """
    last_exception = None

    for attempt in range(max_retries):
        try:
            return await func()
        except PyMongoError as e:
            last_exception = e

            if not isinstance(e, ConnectionFailure) or attempt == max_retries - 1:
                logger.error(
                    f"Database operation failed (attempt {attempt + 1}/{max_retries}): {str(e)}",
                    exc_info=True
                )
                raise

            delay = base_delay * (2 ** attempt)  # Exponential backoff
            logger.warning(
                f"Database error on attempt {attempt + 1}/{max_retries}, "
                f"retrying in {delay}s: {str(e)}"
            )
            await asyncio.sleep(delay)

    raise last_exception


async def check_db_connection() -> bool:
    """Check if database connection is healthy.

    Returns:
        True if the server answers a ping, False otherwise
    """
    try:
        async def _check():
            await get_database().command("ping")

        await retry_on_db_error(
            _check,
            max_retries=settings.DB_RETRY_MAX_ATTEMPTS,
            base_delay=settings.DB_RETRY_BASE_DELAY,
        )
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {str(e)}")
        return False

# ==================== Cleanup ====================


async def dispose_client() -> None:
    """Close all pooled connections during application shutdown."""
    global client, database
    if client is None:
        return
    logger.info("Closing MongoDB client and pooled connections")
    try:
        await client.close()
        logger.info("MongoDB connections closed successfully")
    except Exception as e:
        logger.error(f"Error closing MongoDB client: {str(e)}", exc_info=True)
    finally:
        client = None
        database = None
