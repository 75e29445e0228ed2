from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from chatcommerce.models.schemas import Presentation, Product


class ConversationState(str, Enum):
    SELECTING_COMPANY = "selecting_company"
    SELECTING_CATEGORY = "selecting_category"
    BROWSING_PRODUCTS = "browsing_products"
    AWAITING_PRODUCT_ACTION = "awaiting_product_action"
    AWAITING_QUANTITY_FOR_PRODUCT = "awaiting_quantity_for_product"
    AWAITING_CUSTOMER_DATA = "awaiting_customer_data"
    CHATTING = "chatting"


INITIAL_STATE = ConversationState.SELECTING_COMPANY


class CompanyRef(BaseModel):
    code: str
    id: str
    name: str


class CartItem(BaseModel):
    sku: str
    short_name: str
    quantity: int
    unit_price: float
    presentation: Optional[str] = None

    @property
    def subtotal(self) -> float:
        return self.quantity * self.unit_price

    @property
    def display_name(self) -> str:
        if self.presentation:
            return f"{self.short_name} ({self.presentation})"
        return self.short_name


class PendingProduct(BaseModel):
    sku: str
    short_name: str
    price: float
    stock: int
    presentations: List[Presentation] = Field(default_factory=list)

    @classmethod
    def from_product(cls, product: Product) -> "PendingProduct":
        return cls(
            sku=product.sku,
            short_name=product.short_name,
            price=product.price,
            stock=product.stock,
            presentations=[p.copy() for p in product.presentations],
        )

    @property
    def has_presentations(self) -> bool:
        return len(self.presentations) > 0

    def find_presentation(self, name: str) -> Optional[Presentation]:
        wanted = name.strip().lower()
        for p in self.presentations:
            if p.name.lower() == wanted:
                return p
        return None


class PendingOrder(BaseModel):
    sku: str
    quantity: int


class Session(BaseModel):
    """Persisted conversation state for one chat address.

    `state` is kept as a plain string so that a document carrying a value
    this version does not know still loads; the engine treats such a value as
    a corrupted session and resets it.
    """

    user_address: str
    channel_id: str
    state: str = INITIAL_STATE.value
    company: Optional[CompanyRef] = None
    available_categories: List[str] = Field(default_factory=list)
    current_category: Optional[str] = None
    listed_skus: List[str] = Field(default_factory=list)
    numbered_options: Dict[str, str] = Field(default_factory=dict)
    pending_product: Optional[PendingProduct] = None
    pending_order: Optional[PendingOrder] = None
    cart: List[CartItem] = Field(default_factory=list)
    previous_state: Optional[str] = None
    last_activity: datetime = Field(default_factory=datetime.utcnow)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def cart_total(self) -> float:
        return sum(item.subtotal for item in self.cart)

    def find_cart_item(self, sku: str, presentation: Optional[str] = None) -> Optional[CartItem]:
        for item in self.cart:
            if item.sku == sku and item.presentation == presentation:
                return item
        return None

    def add_to_cart(
        self,
        sku: str,
        short_name: str,
        quantity: int,
        unit_price: float,
        presentation: Optional[str] = None,
    ) -> CartItem:
        """Merge into the (sku, presentation) line or append a new one.

        Re-adding increments the quantity; the unit price of an existing line
        keeps its original snapshot.
        """
        existing = self.find_cart_item(sku, presentation)
        if existing:
            existing.quantity += quantity
            return existing
        item = CartItem(
            sku=sku,
            short_name=short_name,
            quantity=quantity,
            unit_price=unit_price,
            presentation=presentation,
        )
        self.cart.append(item)
        return item

    def reset(self):
        self.state = INITIAL_STATE.value
        self.company = None
        self.cart = []
        self.available_categories = []
        self.current_category = None
        self.listed_skus = []
        self.numbered_options = {}
        self.pending_product = None
        self.pending_order = None
        self.previous_state = None
