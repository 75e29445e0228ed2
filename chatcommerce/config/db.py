from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING

from chatcommerce.config.settings import Settings

logger = logging.getLogger(__name__)


class Mongo:
    client: Optional[AsyncIOMotorClient] = None
    db: Optional[AsyncIOMotorDatabase] = None


mongo = Mongo()


async def ensure_indexes(db: AsyncIOMotorDatabase):
    await db.sessions.create_index([("user_address", ASCENDING)], unique=True)
    await db.merchants.create_index([("code", ASCENDING)], unique=True)
    await db.merchants.create_index([("whatsapp", ASCENDING)])
    await db.products.create_index([("merchant_id", ASCENDING), ("sku", ASCENDING)], unique=True)
    await db.products.create_index([("merchant_id", ASCENDING), ("category", ASCENDING)])
    await db.customers.create_index([("whatsapp", ASCENDING)], unique=True)
    await db.orders.create_index([("merchant_code", ASCENDING), ("reference", ASCENDING)], unique=True)
    await db.messages.create_index([("message_sid", ASCENDING)], sparse=True)


async def connect_to_mongo(app: FastAPI, settings: Settings):
    mongo.client = AsyncIOMotorClient(settings.mongo_uri)
    mongo.db = mongo.client.get_default_database()
    app.state.mongo = mongo
    await ensure_indexes(mongo.db)
    logger.info("Connected to MongoDB database %s", mongo.db.name)


async def close_mongo_connection(app: FastAPI):
    if mongo.client:
        mongo.client.close()


def require_db() -> AsyncIOMotorDatabase:
    if mongo.db is None:
        raise RuntimeError("Mongo client not initialized")
    return mongo.db
