# backend/studysync/db/mongo.py
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from studysync.core.config import settings
from studysync.core.logging import get_logger

logger = get_logger(__name__)

client: Optional[AsyncIOMotorClient] = None
db: Optional[AsyncIOMotorDatabase] = None


async def connect_to_mongo(uri: Optional[str] = None, db_name: Optional[str] = None) -> AsyncIOMotorDatabase:
    global client, db
    # tz_aware so start/end times come back as aware UTC datetimes
    client = AsyncIOMotorClient(uri or settings.MONGO_URI, tz_aware=True, serverSelectionTimeoutMS=5000)
    db = client[db_name or settings.MONGO_DB_NAME]
    logger.info(f"MongoDB connected: {db.name}")
    return db


async def close_mongo_connection() -> None:
    global client, db
    if client:
        client.close()
        logger.info("MongoDB connection closed")
    client = None
    db = None


def get_db() -> AsyncIOMotorDatabase:
    if db is None:
        raise RuntimeError("MongoDB not initialized. Did you call connect_to_mongo()?")
    return db
