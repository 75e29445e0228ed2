from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument

from chatcommerce.models.schemas import Merchant, Presentation, Product
from chatcommerce.utils.phone import normalize_phone

logger = logging.getLogger(__name__)


@dataclass
class StockDecrement:
    sku: str
    presentation: Optional[str]
    requested: int
    before: int
    after: int

    @property
    def clamped(self) -> bool:
        return self.requested > self.before


def merchant_from_doc(doc: Dict[str, Any]) -> Merchant:
    data = {k: v for k, v in doc.items() if k != "_id"}
    data["id"] = str(doc["_id"])
    return Merchant(**data)


def product_from_doc(doc: Dict[str, Any]) -> Product:
    """Map a stored product onto the typed model.

    Presentations are stored as an ordered array of {name, price, stock} so a
    single one can be decremented atomically.
    """
    data = {k: v for k, v in doc.items() if k not in ("_id", "presentations")}
    data["id"] = str(doc["_id"])
    data["presentations"] = [Presentation(**p) for p in doc.get("presentations") or []]
    return Product(**data)


def _clamped_subtract(field: str, qty: int) -> Dict[str, Any]:
    return {"$max": [0, {"$subtract": [field, qty]}]}


def stock_decrement_pipeline(qty: int, presentation: Optional[str] = None) -> List[Dict[str, Any]]:
    """Aggregation-pipeline update applying max(0, stock - qty) in one server-side step."""
    if presentation is None:
        return [{"$set": {"stock": _clamped_subtract("$stock", qty)}}]
    return [
        {
            "$set": {
                "presentations": {
                    "$map": {
                        "input": "$presentations",
                        "as": "p",
                        "in": {
                            "$cond": [
                                {"$eq": ["$$p.name", presentation]},
                                {"$mergeObjects": ["$$p", {"stock": _clamped_subtract("$$p.stock", qty)}]},
                                "$$p",
                            ]
                        },
                    }
                }
            }
        }
    ]


class CatalogGateway:
    """Read access to merchants and products plus the atomic stock decrement."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def find_merchant_by_name(self, name: str) -> Optional[Merchant]:
        name = (name or "").strip()
        if not name:
            return None
        doc = await self.db.merchants.find_one({"name": {"$regex": f"^{re.escape(name)}$", "$options": "i"}})
        return merchant_from_doc(doc) if doc else None

    async def find_merchant_by_code(self, code: str) -> Optional[Merchant]:
        doc = await self.db.merchants.find_one({"code": code})
        return merchant_from_doc(doc) if doc else None

    async def find_merchant_by_whatsapp(self, number: str) -> Optional[Merchant]:
        normalized = normalize_phone(number)
        if not normalized:
            return None
        doc = await self.db.merchants.find_one({"whatsapp": normalized})
        return merchant_from_doc(doc) if doc else None

    async def list_merchants(self) -> List[Merchant]:
        docs = await self.db.merchants.find().sort("name", ASCENDING).to_list(length=200)
        return [merchant_from_doc(d) for d in docs]

    async def list_categories(self, merchant_id: str) -> List[str]:
        values = await self.db.products.distinct(
            "category", {"merchant_id": merchant_id, "category": {"$nin": [None, ""]}}
        )
        return sorted(values, key=str.lower)

    async def list_products(self, merchant_id: str) -> List[Product]:
        docs = await self.db.products.find({"merchant_id": merchant_id}).sort("short_name", ASCENDING).to_list(length=1000)
        return [product_from_doc(d) for d in docs]

    async def list_products_by_category(self, merchant_id: str, category: str) -> List[Product]:
        docs = (
            await self.db.products.find({"merchant_id": merchant_id, "category": category})
            .sort("short_name", ASCENDING)
            .to_list(length=1000)
        )
        return [product_from_doc(d) for d in docs]

    async def find_product_by_sku(self, merchant_id: str, sku: str) -> Optional[Product]:
        doc = await self.db.products.find_one({"merchant_id": merchant_id, "sku": sku})
        return product_from_doc(doc) if doc else None

    async def decrease_stock(
        self, merchant_id: str, sku: str, qty: int, presentation: Optional[str] = None
    ) -> Optional[StockDecrement]:
        """Atomically decrement stock, clamping at zero.

        Returns None when the product (or presentation) no longer exists.
        """
        before_doc = await self.db.products.find_one_and_update(
            {"merchant_id": merchant_id, "sku": sku},
            stock_decrement_pipeline(qty, presentation),
            return_document=ReturnDocument.BEFORE,
        )
        if not before_doc:
            logger.debug("No product %s for merchant %s", sku, merchant_id)
            return None
        if presentation is None:
            before = int(before_doc.get("stock") or 0)
        else:
            match = next((p for p in before_doc.get("presentations") or [] if p.get("name") == presentation), None)
            if match is None:
                logger.debug("No presentation %s on product %s", presentation, sku)
                return None
            before = int(match.get("stock") or 0)
        return StockDecrement(
            sku=sku, presentation=presentation, requested=qty, before=before, after=max(0, before - qty)
        )
