from __future__ import annotations

import logging

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from chatcommerce.models.schemas import Order
from chatcommerce.services.exceptions import OrderPersistenceError

logger = logging.getLogger(__name__)


class OrderLedger:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def next_reference(self, merchant_code: str) -> str:
        """Take the next `<CODE>-<NNN>` from the merchant's counter document.

        The `$inc` is atomic, so concurrent checkouts never share a number.
        """
        code = merchant_code.upper()
        doc = await self.db.order_counters.find_one_and_update(
            {"_id": code},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return f"{code}-{doc['seq']:03d}"

    async def create(self, order: Order) -> Order:
        try:
            if not order.reference:
                order.reference = await self.next_reference(order.merchant_code)
            result = await self.db.orders.insert_one(order.dict(exclude={"id"}))
        except PyMongoError as e:
            raise OrderPersistenceError(f"Could not store order for merchant {order.merchant_code}: {e}") from e
        order.id = str(result.inserted_id)
        logger.info("Order %s stored for merchant %s (total %.2f)", order.reference, order.merchant_code, order.total)
        return order
