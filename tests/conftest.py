"""
In-memory collaborators for the conversation engine.

They mirror the Mongo-backed gateways closely enough that the engine cannot
tell the difference: every read returns a fresh copy, like a database would.
"""
from collections import namedtuple
from typing import Dict, List, Optional

import pytest
from pymongo.errors import PyMongoError

from chatcommerce.models.schemas import Customer, InboundMessage, Merchant, Order, Presentation, Product
from chatcommerce.models.session import Session
from chatcommerce.services.catalog import StockDecrement
from chatcommerce.services.conversation import ConversationEngine
from chatcommerce.services.exceptions import DeliveryError, OrderPersistenceError
from chatcommerce.services.sessions import KeyedLock
from chatcommerce.utils.phone import normalize_phone

BOT_NUMBER = "+14155238886"
CUSTOMER = "+573001234567"
ACME_WHATSAPP = "+15550001111"

Sent = namedtuple("Sent", "channel_id address text")


class FakeCatalog:
    def __init__(self, merchants: List[Merchant], products: List[Product]):
        self.merchants = {m.id: m for m in merchants}
        self.products: Dict[tuple, Product] = {(p.merchant_id, p.sku): p for p in products}
        self.fail_decrement = False

    async def find_merchant_by_name(self, name):
        for m in self.merchants.values():
            if m.name.lower() == (name or "").strip().lower():
                return m.copy()
        return None

    async def find_merchant_by_code(self, code):
        return next((m.copy() for m in self.merchants.values() if m.code == code), None)

    async def find_merchant_by_whatsapp(self, number):
        wanted = normalize_phone(number)
        return next((m.copy() for m in self.merchants.values() if m.whatsapp == wanted), None)

    async def list_merchants(self):
        return sorted((m.copy() for m in self.merchants.values()), key=lambda m: m.name)

    async def list_categories(self, merchant_id):
        cats = {p.category for p in self.products.values() if p.merchant_id == merchant_id and p.category}
        return sorted(cats, key=str.lower)

    async def list_products(self, merchant_id):
        found = [p.copy(deep=True) for p in self.products.values() if p.merchant_id == merchant_id]
        return sorted(found, key=lambda p: p.short_name)

    async def list_products_by_category(self, merchant_id, category):
        return [p for p in await self.list_products(merchant_id) if p.category == category]

    async def find_product_by_sku(self, merchant_id, sku):
        p = self.products.get((merchant_id, sku))
        return p.copy(deep=True) if p else None

    async def decrease_stock(self, merchant_id, sku, qty, presentation=None):
        if self.fail_decrement:
            raise PyMongoError("connection reset")
        product = self.products.get((merchant_id, sku))
        if product is None:
            return None
        target = product.find_presentation(presentation) if presentation else product
        if target is None:
            return None
        before = target.stock
        target.stock = max(0, before - qty)
        return StockDecrement(sku=sku, presentation=presentation, requested=qty, before=before, after=target.stock)

    def stock_of(self, merchant_id, sku, presentation=None) -> int:
        product = self.products[(merchant_id, sku)]
        return product.find_presentation(presentation).stock if presentation else product.stock


class FakeCustomers:
    def __init__(self):
        self.records: Dict[str, Customer] = {}

    async def find_or_create_by_address(self, address):
        if address not in self.records:
            self.records[address] = Customer(id=f"c{len(self.records) + 1}", whatsapp=address)
        return self.records[address].copy()

    async def save(self, customer):
        self.records[customer.whatsapp] = customer.copy()
        return customer


class FakeOrders:
    def __init__(self):
        self.created: List[Order] = []
        self.fail = False

    async def create(self, order):
        if self.fail:
            raise OrderPersistenceError("write concern timeout")
        count = sum(1 for o in self.created if o.merchant_code == order.merchant_code) + 1
        order.reference = order.reference or f"{order.merchant_code}-{count:03d}"
        order.id = f"o{len(self.created) + 1}"
        self.created.append(order.copy(deep=True))
        return order


class FakeSessionStore:
    def __init__(self):
        self.docs: Dict[str, dict] = {}
        self.lock = KeyedLock()
        self.saves = 0

    async def get(self, user_address) -> Optional[Session]:
        doc = self.docs.get(user_address)
        return Session(**doc) if doc else None

    async def find_or_create(self, user_address, channel_id):
        session = await self.get(user_address)
        if session:
            if session.channel_id != channel_id:
                session.channel_id = channel_id
                await self.save(session)
            return session
        session = Session(user_address=user_address, channel_id=channel_id)
        self.docs[user_address] = session.dict()
        return session

    async def save(self, session):
        self.saves += 1
        self.docs[session.user_address] = session.dict()

    async def list(self, limit=50):
        return [Session(**d) for d in list(self.docs.values())[:limit]]

    async def delete(self, user_address):
        return 1 if self.docs.pop(user_address, None) else 0

    async def delete_all(self):
        count = len(self.docs)
        self.docs.clear()
        return count


class FakeMessenger:
    supports_buttons = False

    def __init__(self):
        self.sent: List[Sent] = []
        self.logs = []
        self.fail_for = set()
        self.bodies: Dict[str, str] = {}

    async def send_text(self, channel_id, address, text):
        if address in self.fail_for:
            raise DeliveryError(f"cannot reach {address}", user_address=address)
        self.sent.append(Sent(channel_id, address, text))
        return f"SM{len(self.sent):04d}"

    async def send_buttons(self, channel_id, address, text, footer, buttons):
        return await self.send_text(channel_id, address, text)

    async def log_message(self, log):
        self.logs.append(log)

    async def find_body_by_sid(self, message_sid):
        return self.bodies.get(message_sid)

    def texts_to(self, address) -> List[str]:
        return [s.text for s in self.sent if s.address == address]


def build_merchants():
    return [
        Merchant(
            id="m1",
            code="ACME",
            name="Acme",
            whatsapp=ACME_WHATSAPP,
            address="Calle 5 # 10-20",
            welcome_greeting="Bienvenido a Acme, ¿qué deseas hoy?",
            farewell_greeting="Gracias por comprar en Acme.",
        ),
        Merchant(id="m2", code="BETA", name="Beta Foods"),
    ]


def build_products():
    return [
        Product(merchant_id="m1", sku="SKU1", short_name="Widget", long_name="Widget de acero", category="Tools", price=10.0, stock=5),
        Product(merchant_id="m1", sku="SKU2", short_name="Gadget", category="Tools", price=3.5, stock=1),
        Product(merchant_id="m1", sku="SKU4", short_name="Martillo", category="Tools", price=8.0, stock=0),
        Product(
            merchant_id="m1",
            sku="SKU3",
            short_name="Camiseta",
            category="Ropa",
            presentations=[
                Presentation(name="Pequeña", price=20.0, stock=2),
                Presentation(name="Grande", price=25.0, stock=3),
                Presentation(name="XL", price=27.0, stock=0),
            ],
        ),
        Product(merchant_id="m2", sku="B1", short_name="Pan", price=2.0, stock=10),
    ]


@pytest.fixture
def catalog():
    return FakeCatalog(build_merchants(), build_products())


@pytest.fixture
def customers():
    return FakeCustomers()


@pytest.fixture
def orders():
    return FakeOrders()


@pytest.fixture
def sessions():
    return FakeSessionStore()


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def engine(catalog, customers, orders, sessions, messenger):
    return ConversationEngine(catalog, customers, orders, sessions, messenger, numbered_list_limit=15, currency="$")


@pytest.fixture
def chat(engine, messenger):
    """Send one message as a user and return the texts that user received."""

    async def _chat(text, address=CUSTOMER, quoted_text=None):
        start = len(messenger.sent)
        await engine.handle_message(
            InboundMessage(from_address=address, text=text, channel_id=BOT_NUMBER, quoted_text=quoted_text)
        )
        return [s.text for s in messenger.sent[start:] if s.address == address]

    return _chat
