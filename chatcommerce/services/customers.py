from __future__ import annotations

from typing import Any, Dict

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from chatcommerce.models.schemas import Customer


def customer_from_doc(doc: Dict[str, Any]) -> Customer:
    data = {k: v for k, v in doc.items() if k != "_id"}
    data["id"] = str(doc["_id"])
    return Customer(**data)


class CustomerDirectory:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def find_or_create_by_address(self, address: str) -> Customer:
        doc = await self.db.customers.find_one_and_update(
            {"whatsapp": address},
            {"$setOnInsert": {"whatsapp": address}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return customer_from_doc(doc)

    async def save(self, customer: Customer) -> Customer:
        fields = customer.dict(exclude={"id"})
        await self.db.customers.update_one({"whatsapp": customer.whatsapp}, {"$set": fields}, upsert=True)
        return customer
