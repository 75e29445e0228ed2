from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING

from chatcommerce.models.session import Session

logger = logging.getLogger(__name__)


class KeyedLock:
    """One asyncio.Lock per key, released from memory once nobody holds or waits on it."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def __call__(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


class SessionStore:
    """Durable per-user conversation sessions in the `sessions` collection.

    Callers serialize work on one user with `async with store.lock(address)`;
    the store itself does not lock.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.lock = KeyedLock()

    async def get(self, user_address: str) -> Optional[Session]:
        doc = await self.db.sessions.find_one({"user_address": user_address})
        return Session(**doc) if doc else None

    async def find_or_create(self, user_address: str, channel_id: str) -> Session:
        session = await self.get(user_address)
        if session:
            if session.channel_id != channel_id:
                logger.info("Session %s moved from channel %s to %s", user_address, session.channel_id, channel_id)
                session.channel_id = channel_id
                await self.save(session)
            return session

        session = Session(user_address=user_address, channel_id=channel_id)
        await self.db.sessions.insert_one(session.dict())
        logger.debug("Created session for %s", user_address)
        return session

    async def save(self, session: Session):
        session.updated_at = datetime.utcnow()
        await self.db.sessions.replace_one({"user_address": session.user_address}, session.dict(), upsert=True)

    async def list(self, limit: int = 50) -> List[Session]:
        docs = await self.db.sessions.find().sort("updated_at", DESCENDING).limit(limit).to_list(length=limit)
        return [Session(**d) for d in docs]

    async def delete(self, user_address: str) -> int:
        result = await self.db.sessions.delete_one({"user_address": user_address})
        return result.deleted_count

    async def delete_all(self) -> int:
        result = await self.db.sessions.delete_many({})
        return result.deleted_count
