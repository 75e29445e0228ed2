from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    pending = "pending"
    closed = "closed"


class MessageDirection(str, Enum):
    inbound = "in"
    outbound = "out"


class Merchant(BaseModel):
    id: Optional[str] = None
    code: str
    name: str
    whatsapp: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    welcome_greeting: Optional[str] = None
    farewell_greeting: Optional[str] = None


class Presentation(BaseModel):
    """A named variant of a product with its own price and stock."""

    name: str
    price: float
    stock: int = 0


class Product(BaseModel):
    id: Optional[str] = None
    merchant_id: Optional[str] = None
    sku: str
    short_name: str
    long_name: Optional[str] = None
    category: Optional[str] = None
    price: float = 0.0
    stock: int = 0
    presentations: List[Presentation] = Field(default_factory=list)
    photos: List[str] = Field(default_factory=list)

    @property
    def has_presentations(self) -> bool:
        return len(self.presentations) > 0

    @property
    def in_stock(self) -> bool:
        if self.has_presentations:
            return any(p.stock > 0 for p in self.presentations)
        return self.stock > 0

    def find_presentation(self, name: str) -> Optional[Presentation]:
        wanted = name.strip().lower()
        for p in self.presentations:
            if p.name.lower() == wanted:
                return p
        return None


class Customer(BaseModel):
    id: Optional[str] = None
    whatsapp: str
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None


class OrderItem(BaseModel):
    sku: str
    short_name: str
    quantity: int
    unit_price: float
    presentation: Optional[str] = None

    @property
    def subtotal(self) -> float:
        return self.quantity * self.unit_price


class DeliveryInfo(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None


class Order(BaseModel):
    id: Optional[str] = None
    reference: Optional[str] = None
    merchant_id: str
    merchant_code: str
    customer_id: str
    items: List[OrderItem] = Field(default_factory=list)
    total: float = 0.0
    status: OrderStatus = OrderStatus.pending
    delivery: DeliveryInfo = Field(default_factory=DeliveryInfo)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class InboundMessage(BaseModel):
    """Transport-neutral inbound chat message."""

    from_address: str
    text: str
    channel_id: str
    quoted_text: Optional[str] = None
    # SID of the message this one replies to, even when its body could not be found
    replied_sid: Optional[str] = None
    message_sid: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class MessageLog(BaseModel):
    phone: str
    direction: MessageDirection
    body: str
    channel_id: Optional[str] = None
    message_sid: Optional[str] = None
    state_before: Optional[str] = None
    state_after: Optional[str] = None
    ts: datetime = Field(default_factory=datetime.utcnow)


class MessageStatusLog(BaseModel):
    message_sid: str
    status: str
    to: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    ts: datetime = Field(default_factory=datetime.utcnow)
    raw: Dict[str, Any] = Field(default_factory=dict)
