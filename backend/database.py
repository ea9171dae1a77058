"""
MongoDB client and store wiring.

MONGO_URL and DB_NAME are checked when the client is first needed, so the
billing modules import cleanly in tests and scripts that never connect.
"""
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

REQUIRED_ENV_VARS = {
    "MONGO_URL": "MongoDB connection string, e.g. mongodb://localhost:27017 (a replica set is needed for transactions)",
    "DB_NAME": "Database name, e.g. agenda_billing"
}

_client = None
_store = None


def validate_required_env_vars():
    """Raise ValueError listing every missing connection variable."""
    missing = [
        f"  - {name}: {hint}"
        for name, hint in REQUIRED_ENV_VARS.items()
        if not os.environ.get(name)
    ]
    if missing:
        raise ValueError(
            "Missing database environment variables:\n"
            + "\n".join(missing)
            + "\nSet them in backend/.env or the process environment."
        )


def get_client() -> AsyncIOMotorClient:
    """MongoDB client with connection pool configuration (created once)."""
    global _client
    if _client is None:
        validate_required_env_vars()
        try:
            _client = AsyncIOMotorClient(
                os.environ['MONGO_URL'],
                maxPoolSize=50,
                minPoolSize=10,
                connectTimeoutMS=5000,
                serverSelectionTimeoutMS=5000,
                retryWrites=True
            )
        except Exception as e:
            raise ValueError(f"Failed to create MongoDB client: {e}")
    return _client


def get_db():
    return get_client()[os.environ['DB_NAME']]


def get_store():
    """Shared MongoStore for request handlers."""
    global _store
    if _store is None:
        from message_wallet.mongo_store import MongoStore
        _store = MongoStore(get_client(), get_db())
    return _store


async def check_db_connection():
    """
    Ping the server and list collections of DB_NAME.

    Returns:
        (ok, error_message)
    """
    try:
        await get_client().admin.command('ping')
        collections = await get_db().list_collection_names()
    except Exception as e:
        logger.error(f"MongoDB health check failed: {e}")
        return False, str(e)

    logger.info(f"MongoDB reachable: {os.environ['DB_NAME']} ({len(collections)} collections)")
    return True, None
