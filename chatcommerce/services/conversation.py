"""
Conversation engine: the per-user ordering state machine.

One call to `handle_message` is one turn. The turn runs under the user's
session lock, mutates the in-memory session, buffers its replies, sends them
in order and persists the session exactly once at the end.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

from pymongo.errors import PyMongoError

from chatcommerce.models.schemas import (
    Customer,
    DeliveryInfo,
    InboundMessage,
    Merchant,
    MessageDirection,
    MessageLog,
    Order,
    OrderItem,
    Product,
)
from chatcommerce.models.session import CompanyRef, ConversationState, PendingOrder, PendingProduct, Session
from chatcommerce.services import prompts
from chatcommerce.services.commands import RESET_COMMANDS, Command, lookup, mnemonic, resolve
from chatcommerce.services.exceptions import CorruptSessionError, DeliveryError, OrderPersistenceError
from chatcommerce.utils.reference import extract_reference, make_reference_tag

if TYPE_CHECKING:
    from chatcommerce.services.catalog import CatalogGateway
    from chatcommerce.services.customers import CustomerDirectory
    from chatcommerce.services.inactivity import InactivitySupervisor
    from chatcommerce.services.messenger import TwilioMessenger
    from chatcommerce.services.orders import OrderLedger
    from chatcommerce.services.sessions import SessionStore

logger = logging.getLogger(__name__)

S = ConversationState

GENERIC_APOLOGY = "Lo sentimos, ocurrió un error procesando tu mensaje. Por favor, intenta de nuevo."
CORRUPT_SESSION_NOTICE = (
    "Tuvimos un problema con tu sesión y tuvimos que reiniciarla. "
    "Escribe el nombre de una empresa o cualquier mensaje para empezar de nuevo."
)
DEFAULT_FAREWELL = "¡Gracias por tu compra! Pronto la empresa se pondrá en contacto contigo."
NOTHING_TO_GO_BACK = "No hay un menú anterior al que volver."

_QUANTITY_RE = re.compile(r"[0-9]+")

_CUSTOMER_FIELD_LABELS = {
    "nombre": "name",
    "name": "name",
    "dirección": "address",
    "direccion": "address",
    "address": "address",
    "teléfono": "phone",
    "telefono": "phone",
    "celular": "phone",
    "phone": "phone",
}

# Answers that reuse the delivery data already on file
_CONFIRM_STORED = {"ok", "si", "sí"}


def parse_quantity(token: str) -> Optional[int]:
    if not _QUANTITY_RE.fullmatch(token or ""):
        return None
    qty = int(token)
    return qty if qty > 0 else None


def parse_customer_data(text: str) -> DeliveryInfo:
    """Extract `Label: value` lines; unknown labels are ignored."""
    data: Dict[str, str] = {}
    for line in (text or "").splitlines():
        label, sep, value = line.partition(":")
        if not sep:
            continue
        key = _CUSTOMER_FIELD_LABELS.get(label.strip().strip("*").lower())
        if key and value.strip():
            data[key] = value.strip()
    return DeliveryInfo(**data)


@dataclass
class Turn:
    session: Session
    raw_text: str
    text: str = ""
    command: Optional[Command] = None
    replies: List[str] = field(default_factory=list)

    def say(self, message: str):
        if message:
            self.replies.append(message)


class ConversationEngine:
    def __init__(
        self,
        catalog: "CatalogGateway",
        customers: "CustomerDirectory",
        orders: "OrderLedger",
        sessions: "SessionStore",
        messenger: "TwilioMessenger",
        numbered_list_limit: int = 15,
        currency: str = "$",
        supervisor: Optional["InactivitySupervisor"] = None,
    ):
        self.catalog = catalog
        self.customers = customers
        self.orders = orders
        self.sessions = sessions
        self.messenger = messenger
        self.numbered_list_limit = numbered_list_limit
        self.currency = currency
        self.supervisor = supervisor

    # ---- turn boundary -------------------------------------------------

    async def handle_message(self, message: InboundMessage):
        """Process one inbound message to completion."""
        async with self.sessions.lock(message.from_address):
            try:
                is_reply = bool(message.quoted_text or message.replied_sid)
                if is_reply and await self._relay_vendor_reply(message):
                    return
                session = await self.sessions.find_or_create(message.from_address, message.channel_id)
            except Exception:
                logger.exception(
                    "Error loading session for %s on %s: %r", message.from_address, message.channel_id, message.text
                )
                await self._send_quietly(message.channel_id, message.from_address, GENERIC_APOLOGY)
                return
            await self._run_turn(message, session)

    async def _run_turn(self, message: InboundMessage, session: Session):
        address = message.from_address
        if self.supervisor:
            self.supervisor.cancel(address)

        state_before = session.state
        session.last_activity = datetime.utcnow()
        turn = Turn(session=session, raw_text=(message.text or "").strip())

        try:
            await self._dispatch(turn)
        except CorruptSessionError as e:
            logger.warning("Resetting corrupted session %s (state=%s): %s", address, session.state, e.message)
            session.reset()
            turn.replies = [CORRUPT_SESSION_NOTICE]
        except OrderPersistenceError:
            logger.exception("Order for %s on %s was not stored; cart kept for retry", address, message.channel_id)
            turn.say("No pudimos registrar tu pedido. Tu carrito sigue guardado, por favor envía tus datos de nuevo.")
        except Exception:
            logger.exception("Error handling message from %s on %s: %r", address, message.channel_id, turn.raw_text)
            turn.say(GENERIC_APOLOGY)

        try:
            await self._flush(session, turn.replies)
        finally:
            await self.sessions.save(session)
            await self._log_inbound(message, state_before, session.state)
            self._schedule_inactivity(session)

    async def _flush(self, session: Session, replies: Sequence[str]):
        for text in replies:
            try:
                await self.messenger.send_text(session.channel_id, session.user_address, text)
            except DeliveryError:
                # later replies would arrive out of context
                logger.exception("Could not deliver reply to %s, dropping the rest of the turn", session.user_address)
                break

    async def _log_inbound(self, message: InboundMessage, state_before: Optional[str], state_after: Optional[str]):
        try:
            await self.messenger.log_message(
                MessageLog(
                    phone=message.from_address,
                    direction=MessageDirection.inbound,
                    body=message.text,
                    channel_id=message.channel_id,
                    message_sid=message.message_sid,
                    state_before=state_before,
                    state_after=state_after,
                )
            )
        except PyMongoError:
            logger.exception("Could not log inbound message from %s", message.from_address)

    def _schedule_inactivity(self, session: Session):
        if not self.supervisor:
            return
        # nothing to lose on a fresh session
        if session.company is None and not session.cart:
            self.supervisor.cancel(session.user_address)
        else:
            self.supervisor.touch(session.user_address, session.channel_id)

    def _state(self, session: Session) -> ConversationState:
        try:
            return ConversationState(session.state)
        except ValueError:
            raise CorruptSessionError(f"unknown state {session.state!r}", session.user_address) from None

    def _require_company(self, session: Session) -> CompanyRef:
        if session.company is None:
            raise CorruptSessionError(f"state {session.state} without a company", session.user_address)
        return session.company

    def _require_pending(self, session: Session) -> PendingProduct:
        if session.pending_product is None:
            raise CorruptSessionError(f"state {session.state} without a pending product", session.user_address)
        return session.pending_product

    async def _dispatch(self, turn: Turn):
        session = turn.session
        state = self._state(session)

        # chat mode forwards everything except its exit commands
        if state is S.CHATTING:
            await self._handle_chatting(turn)
            return

        # only the product action menu binds numerals to commands
        resolution = resolve(
            turn.raw_text, session.numbered_options, options_are_commands=state is S.AWAITING_PRODUCT_ACTION
        )
        turn.text = resolution.text
        turn.command = resolution.command
        command = resolution.command

        if command in RESET_COMMANDS:
            await self._reset_with_prompt(turn, command)
        elif command is Command.GO_BACK:
            await self._go_back(turn, state)
        elif command is Command.REPEAT_MENU:
            await self._repeat_menu(turn, state)
        elif command is Command.CHAT:
            await self._start_chat(turn)
        elif command is Command.STOP_CHATTING:
            turn.say("No tienes un chat activo con ninguna empresa.")
        elif command is Command.RETURN_TO_COMPANIES:
            session.reset()
            await self._show_companies(turn)
        else:
            handler = {
                S.SELECTING_COMPANY: self._handle_selecting_company,
                S.SELECTING_CATEGORY: self._handle_selecting_category,
                S.BROWSING_PRODUCTS: self._handle_browsing_products,
                S.AWAITING_PRODUCT_ACTION: self._handle_product_action,
                S.AWAITING_QUANTITY_FOR_PRODUCT: self._handle_quantity,
                S.AWAITING_CUSTOMER_DATA: self._handle_customer_data,
            }[state]
            await handler(turn)

    # ---- universal transitions ----------------------------------------

    async def _reset_with_prompt(self, turn: Turn, command: Command):
        turn.session.reset()
        if command is Command.CANCEL:
            turn.say("Tu pedido fue cancelado y el carrito quedó vacío.")
        else:
            turn.say("¡Gracias por escribirnos! Cuando quieras, empezamos de nuevo.")
        await self._show_companies(turn)

    async def _go_back(self, turn: Turn, state: ConversationState):
        session = turn.session
        if state is S.SELECTING_COMPANY:
            turn.say(NOTHING_TO_GO_BACK)
        elif state is S.SELECTING_CATEGORY:
            session.reset()
            await self._show_companies(turn)
        elif state is S.BROWSING_PRODUCTS:
            self._require_company(session)
            if session.available_categories:
                self._show_categories(turn)
            else:
                await self._show_listing(turn, None)
        elif state is S.AWAITING_PRODUCT_ACTION:
            await self._show_listing(turn, session.current_category)
        elif state is S.AWAITING_QUANTITY_FOR_PRODUCT:
            self._show_product_actions(turn)
        elif state is S.AWAITING_CUSTOMER_DATA:
            await self._show_listing(turn, session.current_category)

    async def _repeat_menu(self, turn: Turn, state: ConversationState):
        session = turn.session
        if state is S.SELECTING_COMPANY:
            await self._show_companies(turn)
        elif state is S.SELECTING_CATEGORY:
            self._require_company(session)
            self._show_categories(turn)
        elif state is S.BROWSING_PRODUCTS:
            await self._show_listing(turn, session.current_category)
        elif state is S.AWAITING_PRODUCT_ACTION:
            self._show_product_actions(turn)
        elif state is S.AWAITING_QUANTITY_FOR_PRODUCT:
            self._prompt_quantity(turn)
        elif state is S.AWAITING_CUSTOMER_DATA:
            await self._begin_checkout(turn)

    async def _return_to_categories(self, turn: Turn):
        self._require_company(turn.session)
        if turn.session.available_categories:
            self._show_categories(turn)
        else:
            turn.say("Esta empresa no tiene categorías, este es el catálogo completo.")
            await self._show_listing(turn, None)

    # ---- menus ----------------------------------------------------------

    async def _show_companies(self, turn: Turn):
        session = turn.session
        merchants = await self.catalog.list_merchants()
        session.state = S.SELECTING_COMPANY.value
        if not merchants:
            session.numbered_options = {}
            turn.say("Por ahora no hay empresas disponibles. Intenta más tarde.")
            return
        session.numbered_options = {str(i): m.name for i, m in enumerate(merchants, start=1)}
        turn.say(prompts.build_company_list_prompt(merchants))

    def _show_categories(self, turn: Turn):
        session = turn.session
        session.state = S.SELECTING_CATEGORY.value
        session.current_category = None
        session.pending_product = None
        session.pending_order = None
        session.listed_skus = []
        session.numbered_options = {str(i): c for i, c in enumerate(session.available_categories, start=1)}
        turn.say(prompts.build_category_list_prompt(session.available_categories))
        turn.say(
            prompts.build_options_prompt(
                [
                    (Command.VIEW_CART, None),
                    (Command.CHAT, None),
                    (Command.GO_BACK, "Volver a empresas"),
                    (Command.CANCEL, None),
                ]
            )
        )

    def _bind_listing(self, session: Session):
        if session.listed_skus and len(session.listed_skus) <= self.numbered_list_limit:
            session.numbered_options = {str(i): sku for i, sku in enumerate(session.listed_skus, start=1)}
        else:
            session.numbered_options = {}

    def _browsing_options(self, session: Session) -> str:
        options: List[prompts.MenuOption] = [
            (Command.VIEW_CART, None),
            (Command.FINALIZE_ORDER, None),
            (Command.DETAIL, f"Ver detalle (ej: *{mnemonic(Command.DETAIL)} 1*)"),
        ]
        if session.available_categories:
            options.append((Command.RETURN_TO_CATEGORIES, None))
        options += [(Command.CHAT, None), (Command.GO_BACK, None), (Command.CANCEL, None)]
        return prompts.build_options_prompt(options)

    async def _show_listing(self, turn: Turn, category: Optional[str]):
        session = turn.session
        company = self._require_company(session)
        if category:
            products = await self.catalog.list_products_by_category(company.id, category)
        else:
            products = await self.catalog.list_products(company.id)
        products = [p for p in products if p.in_stock]

        session.state = S.BROWSING_PRODUCTS.value
        session.current_category = category
        session.pending_product = None
        session.pending_order = None
        session.listed_skus = [p.sku for p in products]
        self._bind_listing(session)

        if not products:
            turn.say("No hay productos disponibles en este momento.")
        else:
            numbered = len(products) <= self.numbered_list_limit
            title = f"Productos de *{category}*:" if category else None
            turn.say(prompts.build_product_list_prompt(products, numbered=numbered, title=title, currency=self.currency))
        turn.say(self._browsing_options(session))

    def _resume_browsing(self, turn: Turn):
        session = turn.session
        session.state = S.BROWSING_PRODUCTS.value
        session.pending_product = None
        session.pending_order = None
        self._bind_listing(session)
        turn.say(self._browsing_options(session))

    def _show_detail(self, turn: Turn, product: Product):
        session = turn.session
        session.pending_product = PendingProduct.from_product(product)
        session.pending_order = None
        turn.say(prompts.build_product_detail_prompt(product, currency=self.currency))
        self._show_product_actions(turn)

    def _show_product_actions(self, turn: Turn):
        session = turn.session
        pending = self._require_pending(session)
        session.state = S.AWAITING_PRODUCT_ACTION.value
        actions = [Command.ADD_TO_CART, Command.VIEW_CART, Command.FINALIZE_ORDER, Command.GO_BACK]
        options = [(str(i), cmd) for i, cmd in enumerate(actions, start=1)]
        session.numbered_options = {token: mnemonic(cmd) for token, cmd in options}
        turn.say(prompts.build_product_action_prompt(pending.short_name, options))
        turn.say(prompts.build_options_prompt([(Command.CHAT, None), (Command.CANCEL, None)]))

    def _prompt_quantity(self, turn: Turn):
        session = turn.session
        pending = self._require_pending(session)
        session.state = S.AWAITING_QUANTITY_FOR_PRODUCT.value
        if pending.has_presentations:
            session.numbered_options = {str(i): p.name for i, p in enumerate(pending.presentations, start=1)}
            turn.say(
                prompts.build_presentation_choice_prompt(
                    pending.short_name, pending.presentations, currency=self.currency
                )
            )
        else:
            session.numbered_options = {}
            turn.say(prompts.build_quantity_prompt(pending.short_name))
        turn.say(prompts.build_options_prompt([(Command.GO_BACK, None), (Command.CANCEL, None)]))

    # ---- state handlers -------------------------------------------------

    async def _handle_selecting_company(self, turn: Turn):
        merchant = await self.catalog.find_merchant_by_name(turn.text) if turn.text else None
        if merchant is None:
            await self._show_companies(turn)
            return
        await self._enter_company(turn, merchant)

    async def _enter_company(self, turn: Turn, merchant: Merchant):
        session = turn.session
        session.company = CompanyRef(code=merchant.code, id=merchant.id, name=merchant.name)
        turn.say(merchant.welcome_greeting or f"¡Bienvenido a *{merchant.name}*!")
        session.available_categories = await self.catalog.list_categories(merchant.id)
        if session.available_categories:
            self._show_categories(turn)
        else:
            await self._show_listing(turn, None)

    async def _handle_selecting_category(self, turn: Turn):
        session = turn.session
        self._require_company(session)
        if turn.command is Command.VIEW_CART:
            turn.say(prompts.build_cart_prompt(session.cart, currency=self.currency))
            return
        if turn.command is Command.FINALIZE_ORDER:
            await self._begin_checkout(turn)
            return
        if turn.command is Command.RETURN_TO_CATEGORIES:
            self._show_categories(turn)
            return

        match = next((c for c in session.available_categories if c.lower() == turn.text), None)
        if match is None:
            turn.say(f"No encontramos la categoría *{turn.raw_text}*.")
            self._show_categories(turn)
            return
        await self._show_listing(turn, match)

    async def _resolve_product(self, session: Session, identifier: str) -> Optional[Product]:
        company = self._require_company(session)
        sku = session.numbered_options.get(identifier, identifier)
        return await self.catalog.find_product_by_sku(company.id, sku.upper())

    async def _handle_browsing_products(self, turn: Turn):
        session = turn.session
        command = turn.command
        if command is Command.VIEW_CART:
            turn.say(prompts.build_cart_prompt(session.cart, currency=self.currency))
            turn.say(self._browsing_options(session))
            return
        if command is Command.FINALIZE_ORDER:
            await self._begin_checkout(turn)
            return
        if command is Command.RETURN_TO_CATEGORIES:
            await self._return_to_categories(turn)
            return
        if command in (Command.DETAIL, Command.ADD_TO_CART):
            turn.say("Envía el SKU o número del producto y la cantidad (ej: *1 2*).")
            return

        tokens = turn.text.split()
        if not tokens:
            turn.say("No entendimos tu mensaje.")
            turn.say(self._browsing_options(session))
            return

        if lookup(tokens[0]) is Command.DETAIL and len(tokens) >= 2:
            product = await self._resolve_product(session, tokens[1])
            if product is None:
                turn.say(f"No encontramos el producto *{tokens[1].upper()}*.")
                return
            self._show_detail(turn, product)
            return

        identifier = tokens[0]
        product = await self._resolve_product(session, identifier)
        if product is None:
            turn.say(f"No encontramos el producto *{identifier.upper()}*. Revisa el SKU o número e intenta de nuevo.")
            return
        if len(tokens) == 1:
            self._show_detail(turn, product)
            return

        quantity = parse_quantity(tokens[-1])
        if quantity is None:
            turn.say("La cantidad debe ser un número entero mayor que cero (ej: *1 2*).")
            return
        presentation_name = " ".join(tokens[1:-1])

        if product.has_presentations:
            if not presentation_name:
                turn.say(f"*{product.short_name}* tiene varias presentaciones, elige una para continuar.")
                self._show_detail(turn, product)
                session.pending_order = PendingOrder(sku=product.sku, quantity=quantity)
                return
            presentation = product.find_presentation(presentation_name)
            if presentation is None:
                turn.say(f"La presentación *{presentation_name}* no existe para *{product.short_name}*.")
                return
            added = self._add_to_cart(
                turn, product.sku, product.short_name, quantity, presentation.price, presentation.stock, presentation.name
            )
        else:
            if presentation_name:
                turn.say(f"*{product.short_name}* no tiene presentaciones. Envía solo el SKU y la cantidad.")
                return
            added = self._add_to_cart(turn, product.sku, product.short_name, quantity, product.price, product.stock)

        if added:
            turn.say(self._browsing_options(session))

    def _add_to_cart(
        self,
        turn: Turn,
        sku: str,
        short_name: str,
        quantity: int,
        unit_price: float,
        available: int,
        presentation: Optional[str] = None,
    ) -> bool:
        if quantity > available:
            name = f"{short_name} ({presentation})" if presentation else short_name
            turn.say(f"No hay suficiente stock de *{name}*. Disponibles: {available}.")
            return False
        turn.session.add_to_cart(sku, short_name, quantity, unit_price, presentation)
        turn.say(prompts.build_added_to_cart_prompt(quantity, short_name, presentation))
        return True

    async def _handle_product_action(self, turn: Turn):
        self._require_pending(turn.session)
        command = turn.command
        if command is Command.ADD_TO_CART:
            self._prompt_quantity(turn)
        elif command is Command.VIEW_CART:
            turn.say(prompts.build_cart_prompt(turn.session.cart, currency=self.currency))
            self._show_product_actions(turn)
        elif command is Command.FINALIZE_ORDER:
            await self._begin_checkout(turn)
        elif command is Command.RETURN_TO_CATEGORIES:
            await self._return_to_categories(turn)
        else:
            turn.say("Opción no válida.")
            self._show_product_actions(turn)

    def _split_quantity_input(self, turn: Turn) -> Tuple[Optional[str], Optional[int]]:
        tokens = turn.text.split()
        if not tokens:
            return None, None
        quantity = parse_quantity(tokens[-1])
        name = " ".join(tokens[:-1]) if quantity is not None else " ".join(tokens)
        if name:
            name = turn.session.numbered_options.get(name, name)
        return name or None, quantity

    async def _handle_quantity(self, turn: Turn):
        session = turn.session
        company = self._require_company(session)
        pending = self._require_pending(session)
        name, quantity = self._split_quantity_input(turn)

        remembered = session.pending_order
        if pending.has_presentations and remembered is not None and remembered.sku == pending.sku:
            if quantity is None or name is None:
                # quantity came with the earlier "SKU quantity" message
                name = session.numbered_options.get(turn.text, turn.text) or None
                quantity = remembered.quantity
        if pending.has_presentations and name is None:
            turn.say("Indica la presentación y la cantidad (ej: *1 2*).")
            return
        if quantity is None:
            if pending.has_presentations:
                turn.say(f"Indica también la cantidad (ej: *{name} 2*).")
            else:
                turn.say("La cantidad debe ser un número entero mayor que cero.")
            return

        product = await self.catalog.find_product_by_sku(company.id, pending.sku)
        if product is None:
            turn.say(f"*{pending.short_name}* ya no está disponible.")
            await self._show_listing(turn, session.current_category)
            return

        if pending.has_presentations:
            presentation = product.find_presentation(name)
            if presentation is None:
                turn.say(f"La presentación *{name}* no existe para *{pending.short_name}*.")
                return
            added = self._add_to_cart(
                turn, product.sku, product.short_name, quantity, presentation.price, presentation.stock, presentation.name
            )
        else:
            if name is not None:
                turn.say("Envía solo la cantidad (ej: *2*).")
                return
            added = self._add_to_cart(turn, product.sku, product.short_name, quantity, product.price, product.stock)

        if added:
            self._resume_browsing(turn)

    # ---- checkout -------------------------------------------------------

    async def _begin_checkout(self, turn: Turn):
        session = turn.session
        self._require_company(session)
        if not session.cart:
            turn.say("Tu carrito está vacío. Agrega productos antes de finalizar el pedido.")
            return
        customer = await self.customers.find_or_create_by_address(session.user_address)
        session.state = S.AWAITING_CUSTOMER_DATA.value
        session.pending_product = None
        session.pending_order = None
        session.numbered_options = {"1": "ok"} if (customer.name or customer.address) else {}
        turn.say(prompts.build_cart_prompt(session.cart, currency=self.currency))
        turn.say(prompts.build_customer_data_prompt(customer))
        turn.say(prompts.build_options_prompt([(Command.GO_BACK, "Seguir comprando"), (Command.CANCEL, None)]))

    async def _handle_customer_data(self, turn: Turn):
        session = turn.session
        self._require_company(session)
        if turn.command is Command.VIEW_CART:
            turn.say(prompts.build_cart_prompt(session.cart, currency=self.currency))
            return

        customer = await self.customers.find_or_create_by_address(session.user_address)
        if turn.text in _CONFIRM_STORED and (customer.name or customer.address):
            delivery = DeliveryInfo(name=customer.name, address=customer.address, phone=customer.phone)
        else:
            parsed = parse_customer_data(turn.raw_text)
            if not (parsed.name or parsed.address):
                turn.say("No pudimos leer tus datos.")
                turn.say(prompts.build_customer_data_prompt(customer))
                return
            customer.name = parsed.name or customer.name
            customer.address = parsed.address or customer.address
            customer.phone = parsed.phone or customer.phone
            customer = await self.customers.save(customer)
            delivery = DeliveryInfo(name=customer.name, address=customer.address, phone=customer.phone)

        await self._place_order(turn, customer, delivery)

    async def _place_order(self, turn: Turn, customer: Customer, delivery: DeliveryInfo):
        session = turn.session
        company = self._require_company(session)
        if not session.cart:
            turn.say("Tu carrito está vacío. Agrega productos antes de finalizar el pedido.")
            return

        merchant = await self.catalog.find_merchant_by_code(company.code)
        order = Order(
            merchant_id=company.id,
            merchant_code=company.code,
            customer_id=customer.id or customer.whatsapp,
            items=[OrderItem(**item.dict()) for item in session.cart],
            total=session.cart_total,
            delivery=delivery,
        )
        # raises OrderPersistenceError; the turn boundary keeps the cart
        order = await self.orders.create(order)

        # from here on the order exists: log problems, never undo it
        await self._decrement_stock(company, order)
        await self._notify_merchant(session, merchant, order, customer)

        turn.say(
            f"✅ Tu pedido *{order.reference}* fue registrado. "
            f"Total: *{prompts.format_currency(order.total, self.currency)}*"
        )
        turn.say((merchant.farewell_greeting if merchant else None) or DEFAULT_FAREWELL)
        session.reset()

    async def _decrement_stock(self, company: CompanyRef, order: Order):
        for item in order.items:
            try:
                result = await self.catalog.decrease_stock(company.id, item.sku, item.quantity, item.presentation)
            except PyMongoError:
                logger.exception("Stock decrement failed for %s in order %s", item.sku, order.reference)
                continue
            if result is None:
                logger.warning(
                    "Stock not decremented for order %s: %s %s no longer exists",
                    order.reference,
                    item.sku,
                    item.presentation or "",
                )
            elif result.clamped:
                logger.warning(
                    "Stock integrity: order %s took %s of %s %s but only %s were left; clamped to 0",
                    order.reference,
                    item.quantity,
                    item.sku,
                    item.presentation or "",
                    result.before,
                )

    async def _notify_merchant(self, session: Session, merchant: Optional[Merchant], order: Order, customer: Customer):
        if merchant is None or not merchant.whatsapp:
            logger.warning("Order %s: merchant %s has no WhatsApp number to notify", order.reference, order.merchant_code)
            return
        notice = prompts.build_merchant_order_notice(
            order, customer, session.user_address, make_reference_tag(session.user_address), currency=self.currency
        )
        try:
            await self.messenger.send_text(session.channel_id, merchant.whatsapp, notice)
        except DeliveryError:
            logger.exception("Could not notify merchant %s about order %s", merchant.code, order.reference)

    # ---- vendor chat ----------------------------------------------------

    async def _start_chat(self, turn: Turn):
        session = turn.session
        if session.company is None:
            turn.say("Primero elige una empresa para poder chatear con ella.")
            return
        merchant = await self.catalog.find_merchant_by_code(session.company.code)
        if merchant is None or not merchant.whatsapp:
            turn.say("Esta empresa no tiene un WhatsApp disponible para chatear.")
            return
        session.previous_state = session.state
        session.state = S.CHATTING.value
        session.numbered_options = {}
        turn.say(prompts.build_chat_started_prompt(merchant.name))

    async def _stop_chat(self, turn: Turn):
        session = turn.session
        session.state = session.previous_state or S.SELECTING_COMPANY.value
        session.previous_state = None
        turn.say("Chat finalizado.")
        await self._repeat_menu(turn, self._state(session))

    async def _handle_chatting(self, turn: Turn):
        session = turn.session
        command = lookup(turn.raw_text)
        if command is Command.STOP_CHATTING:
            await self._stop_chat(turn)
            return
        if command in RESET_COMMANDS:
            await self._reset_with_prompt(turn, command)
            return

        company = self._require_company(session)
        merchant = await self.catalog.find_merchant_by_code(company.code)
        if merchant is None or not merchant.whatsapp:
            turn.say("La empresa ya no está disponible para chatear.")
            await self._stop_chat(turn)
            return
        relay = prompts.build_chat_relay_message(
            session.user_address, turn.raw_text, make_reference_tag(session.user_address)
        )
        try:
            await self.messenger.send_text(session.channel_id, merchant.whatsapp, relay)
        except DeliveryError:
            logger.exception("Could not relay chat message from %s to merchant %s", session.user_address, merchant.code)

    async def _relay_vendor_reply(self, message: InboundMessage) -> bool:
        """Forward a merchant's quoted reply to the customer it refers to.

        Returns False when the sender is not a merchant, in which case the
        message is an ordinary customer turn.
        """
        merchant = await self.catalog.find_merchant_by_whatsapp(message.from_address)
        if merchant is None:
            return False

        customer_address = extract_reference(message.quoted_text)
        if customer_address is None:
            logger.info("Merchant %s replied to a message without a resolvable reference tag", merchant.code)
            await self._send_quietly(
                message.channel_id,
                message.from_address,
                "Este mensaje no corresponde a ningún cliente. Responde citando un pedido o un mensaje de chat.",
            )
            return True

        customer_session = await self.sessions.get(customer_address)
        channel_id = customer_session.channel_id if customer_session else message.channel_id
        await self._send_quietly(
            channel_id, customer_address, prompts.build_vendor_reply_message(merchant.name, message.text)
        )
        logger.info("Relayed reply from merchant %s to %s", merchant.code, customer_address)
        return True

    async def _send_quietly(self, channel_id: str, address: str, text: str):
        try:
            await self.messenger.send_text(channel_id, address, text)
        except DeliveryError:
            logger.exception("Could not deliver message to %s", address)

    # ---- inactivity -----------------------------------------------------

    async def warn_inactive(self, user_address: str, channel_id: str):
        minutes = max(1, round(self.supervisor.termination_timeout / 60)) if self.supervisor else 1
        await self._send_quietly(
            channel_id,
            user_address,
            f"¿Sigues ahí? Tu sesión se cerrará en {minutes} minuto(s) por inactividad.",
        )

    async def expire_session(self, user_address: str, channel_id: str):
        async with self.sessions.lock(user_address):
            session = await self.sessions.get(user_address)
            if session is None:
                return
            session.reset()
            await self.sessions.save(session)
            await self._send_quietly(
                session.channel_id or channel_id,
                user_address,
                "Tu sesión se cerró por inactividad. Escríbenos cuando quieras para empezar de nuevo.",
            )
