"""
Gateway tests against a tiny stand-in for the motor collections.
"""
import pytest
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from chatcommerce.models.schemas import Order
from chatcommerce.services.catalog import (
    CatalogGateway,
    StockDecrement,
    product_from_doc,
    stock_decrement_pipeline,
)
from chatcommerce.services.exceptions import OrderPersistenceError
from chatcommerce.services.orders import OrderLedger


class RecordingCollection:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def find_one(self, query):
        self.calls.append(("find_one", query))
        return self.result

    async def find_one_and_update(self, query, update, **kwargs):
        if self.error:
            raise self.error
        self.calls.append(("find_one_and_update", query, update, kwargs))
        return self.result

    async def insert_one(self, doc):
        if self.error:
            raise self.error
        self.calls.append(("insert_one", doc))
        return type("InsertResult", (), {"inserted_id": ObjectId("64b000000000000000000001")})()


class FakeDb:
    def __init__(self, **collections):
        for name, coll in collections.items():
            setattr(self, name, coll)


class TestStockPipeline:
    def test_flat_stock_clamps_at_zero(self):
        assert stock_decrement_pipeline(3) == [{"$set": {"stock": {"$max": [0, {"$subtract": ["$stock", 3]}]}}}]

    def test_presentation_stock_targets_one_entry(self):
        stage = stock_decrement_pipeline(2, "Grande")[0]["$set"]["presentations"]["$map"]
        assert stage["input"] == "$presentations"
        cond = stage["in"]["$cond"]
        assert cond[0] == {"$eq": ["$$p.name", "Grande"]}
        assert cond[1]["$mergeObjects"][1] == {"stock": {"$max": [0, {"$subtract": ["$$p.stock", 2]}]}}
        assert cond[2] == "$$p"

    def test_clamped_flag(self):
        assert StockDecrement("SKU1", None, requested=5, before=3, after=0).clamped
        assert not StockDecrement("SKU1", None, requested=3, before=3, after=0).clamped


def test_product_from_doc():
    doc = {
        "_id": ObjectId("64b000000000000000000002"),
        "merchant_id": "m1",
        "sku": "SKU3",
        "short_name": "Camiseta",
        "presentations": [{"name": "S", "price": 20, "stock": 1}, {"name": "L", "price": 22, "stock": 0}],
    }
    product = product_from_doc(doc)

    assert product.id == "64b000000000000000000002"
    assert [p.name for p in product.presentations] == ["S", "L"]
    assert product.in_stock
    assert product.find_presentation("l").price == 22


class TestCatalogGateway:
    @pytest.mark.asyncio
    async def test_merchant_name_is_escaped_and_anchored(self):
        merchants = RecordingCollection(result=None)
        gateway = CatalogGateway(FakeDb(merchants=merchants))

        assert await gateway.find_merchant_by_name("A+B (centro)") is None
        query = merchants.calls[0][1]
        assert query == {"name": {"$regex": r"^A\+B\ \(centro\)$", "$options": "i"}}

    @pytest.mark.asyncio
    async def test_blank_name_skips_query(self):
        merchants = RecordingCollection()
        gateway = CatalogGateway(FakeDb(merchants=merchants))

        assert await gateway.find_merchant_by_name("  ") is None
        assert merchants.calls == []

    @pytest.mark.asyncio
    async def test_merchant_by_whatsapp_is_normalized(self):
        merchants = RecordingCollection(result={"_id": ObjectId(), "code": "ACME", "name": "Acme", "whatsapp": "+15550001111"})
        gateway = CatalogGateway(FakeDb(merchants=merchants))

        merchant = await gateway.find_merchant_by_whatsapp("whatsapp:+1 555 000 1111")
        assert merchant.code == "ACME"
        assert merchants.calls[0][1] == {"whatsapp": "+15550001111"}

    @pytest.mark.asyncio
    async def test_decrease_flat_stock(self):
        products = RecordingCollection(result={"sku": "SKU1", "stock": 1})
        gateway = CatalogGateway(FakeDb(products=products))

        result = await gateway.decrease_stock("m1", "SKU1", 2)

        assert result == StockDecrement("SKU1", None, requested=2, before=1, after=0)
        assert result.clamped
        _, query, update, kwargs = products.calls[0]
        assert query == {"merchant_id": "m1", "sku": "SKU1"}
        assert update == stock_decrement_pipeline(2)
        assert kwargs["return_document"] is ReturnDocument.BEFORE

    @pytest.mark.asyncio
    async def test_decrease_presentation_stock(self):
        products = RecordingCollection(
            result={"sku": "SKU3", "presentations": [{"name": "S", "stock": 4}, {"name": "L", "stock": 1}]}
        )
        gateway = CatalogGateway(FakeDb(products=products))

        result = await gateway.decrease_stock("m1", "SKU3", 3, "S")

        assert (result.before, result.after, result.clamped) == (4, 1, False)

    @pytest.mark.asyncio
    async def test_decrease_missing_product(self):
        gateway = CatalogGateway(FakeDb(products=RecordingCollection(result=None)))
        assert await gateway.decrease_stock("m1", "NOPE", 1) is None


class TestOrderLedger:
    def make_order(self):
        return Order(merchant_id="m1", merchant_code="acme", customer_id="c1", total=10.0)

    @pytest.mark.asyncio
    async def test_create_assigns_reference_and_id(self):
        orders = RecordingCollection()
        counters = RecordingCollection(result={"_id": "ACME", "seq": 7})
        ledger = OrderLedger(FakeDb(orders=orders, order_counters=counters))

        order = await ledger.create(self.make_order())

        assert order.reference == "ACME-007"
        assert order.id == "64b000000000000000000001"
        assert "id" not in orders.calls[0][1]

    @pytest.mark.asyncio
    async def test_reference_comes_from_atomic_counter(self):
        counters = RecordingCollection(result={"_id": "ACME", "seq": 12})
        ledger = OrderLedger(FakeDb(order_counters=counters))

        assert await ledger.next_reference("acme") == "ACME-012"
        _, query, update, kwargs = counters.calls[0]
        assert query == {"_id": "ACME"}
        assert update == {"$inc": {"seq": 1}}
        assert kwargs == {"upsert": True, "return_document": ReturnDocument.AFTER}

    @pytest.mark.asyncio
    async def test_counter_errors_are_wrapped(self):
        counters = RecordingCollection(error=PyMongoError("not primary"))
        ledger = OrderLedger(FakeDb(orders=RecordingCollection(), order_counters=counters))

        with pytest.raises(OrderPersistenceError):
            await ledger.create(self.make_order())

    @pytest.mark.asyncio
    async def test_storage_errors_are_wrapped(self):
        ledger = OrderLedger(
            FakeDb(
                orders=RecordingCollection(error=PyMongoError("timeout")),
                order_counters=RecordingCollection(result={"_id": "ACME", "seq": 1}),
            )
        )

        with pytest.raises(OrderPersistenceError):
            await ledger.create(self.make_order())
