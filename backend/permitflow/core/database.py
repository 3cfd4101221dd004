import logging
from pymongo import AsyncMongoClient
from beanie import init_beanie
from typing import Optional

from ..core.config import settings
from ..models import DOCUMENT_MODELS

logger = logging.getLogger(__name__)


class Database:
    client: Optional[AsyncMongoClient] = None
    database = None


database = Database()


async def init_models(db):
    """Initialize Beanie with the models (creates the unique and partial indexes)"""
    await init_beanie(
        database=db,
        document_models=DOCUMENT_MODELS
    )


async def connect_to_mongo():
    """Create database connection"""
    database.client = AsyncMongoClient(settings.MONGODB_URL, tz_aware=False)
    database.database = database.client[settings.MONGODB_DB_NAME]

    await init_models(database.database)

    logger.info("Connected to MongoDB: %s", settings.MONGODB_URL)


async def close_mongo_connection():
    """Close database connection"""
    if database.client:
        await database.client.close()
        database.client = None
        logger.info("Disconnected from MongoDB")
