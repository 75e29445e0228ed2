"""Text rendering for every message the bot sends."""
from __future__ import annotations

from typing import Iterable, Optional, Sequence, Tuple

from chatcommerce.models.schemas import Customer, Merchant, Order, Presentation, Product
from chatcommerce.models.session import CartItem
from chatcommerce.services.commands import COMMANDS, Command

# (command, custom description)
MenuOption = Tuple[Command, Optional[str]]


def format_currency(amount: float, symbol: str = "$") -> str:
    return f"{symbol}{amount:,.2f}"


def build_company_list_prompt(merchants: Sequence[Merchant]) -> str:
    blocks = []
    for index, m in enumerate(merchants, start=1):
        details = f"*{index}*. {m.name}"
        if m.whatsapp:
            details += f"\n  Celular: {m.whatsapp}"
        if m.address:
            details += f"\n  Dirección: {m.address}"
        blocks.append(details)
    company_list = "\n\n".join(blocks)
    return f"Hola, bienvenido. Por favor, elige una de nuestras empresas:\n\n{company_list}"


def build_category_list_prompt(categories: Sequence[str]) -> str:
    category_list = "\n".join(f"*{i}*. {c}" for i, c in enumerate(categories, start=1))
    return f"Por favor, elige una categoría:\n{category_list}"


def _product_line(identifier: str, product: Product, currency: str) -> str:
    line = f"{identifier}. {product.short_name}"
    available = [p for p in product.presentations if p.stock > 0]
    if available:
        rows = "\n".join(f"  {p.name} - {format_currency(p.price, currency)}" for p in available)
        return f"{line}\n{rows}"
    return f"{line} - {format_currency(product.price, currency)}"


def build_product_list_prompt(
    products: Sequence[Product],
    numbered: bool = False,
    title: Optional[str] = None,
    currency: str = "$",
) -> str:
    """Render an in-stock listing; callers filter out sold-out products first."""
    lines = []
    for index, product in enumerate(products, start=1):
        identifier = f"*{index}*" if numbered else f"*{product.sku}*"
        lines.append(_product_line(identifier, product, currency))
    header = title or "Nuestro catálogo es:"
    if numbered:
        instruction = "Para ordenar, envía: *Número Cantidad* o *SKU Cantidad* (ej: *1 2*)"
    else:
        instruction = "Para ordenar, envía: *SKU Cantidad* (ej: *PROD01 2*)"
    return f"{header}\n" + "\n\n".join(lines) + f"\n\n{instruction}"


def build_product_detail_prompt(product: Product, currency: str = "$") -> str:
    detail = f"*{product.long_name or product.short_name}*"
    if product.has_presentations:
        rows = []
        for p in product.presentations:
            suffix = "" if p.stock > 0 else " (Agotado)"
            rows.append(f"  {p.name} - {format_currency(p.price, currency)}{suffix}")
        detail += "\n" + "\n".join(rows)
    else:
        detail += f"\nPrecio: {format_currency(product.price, currency)}"
        detail += f"\nDisponibles: {product.stock}"
    if product.photos:
        detail += "\n\nFotos del producto:\n" + "\n".join(product.photos)
    return detail


def build_product_action_prompt(short_name: str, options: Sequence[Tuple[str, Command]]) -> str:
    rows = "\n".join(f"*{token}*. {COMMANDS[cmd].name}" for token, cmd in options)
    return f"¿Qué deseas hacer con *{short_name}*?\n\n{rows}"


def build_presentation_choice_prompt(
    product_name: str, presentations: Sequence[Presentation], currency: str = "$"
) -> str:
    rows = []
    for index, p in enumerate(presentations, start=1):
        line = f"*{index}*. {p.name} - {format_currency(p.price, currency)}"
        rows.append(line if p.stock > 0 else f"~{line}~ (Agotado)")
    return (
        f"El producto *{product_name}* tiene varias presentaciones. "
        "Por favor, elige una y la cantidad (ej: *1 2* o *Grande 2*):\n" + "\n".join(rows)
    )


def build_quantity_prompt(short_name: str) -> str:
    return f"¿Qué cantidad de *{short_name}* deseas agregar?"


def build_cart_prompt(cart: Sequence[CartItem], currency: str = "$") -> str:
    if not cart:
        return "Tu carrito está vacío."
    rows = [
        f"{item.quantity} x {item.display_name} (*{item.sku}*) - {format_currency(item.subtotal, currency)}"
        for item in cart
    ]
    total = sum(item.subtotal for item in cart)
    return "🛒 *Tu Carrito:*\n" + "\n".join(rows) + f"\n\n*Total: {format_currency(total, currency)}*"


def build_added_to_cart_prompt(quantity: int, short_name: str, presentation: Optional[str] = None) -> str:
    suffix = f" ({presentation})" if presentation else ""
    return f"✅ Añadido: {quantity} x {short_name}{suffix}."


def build_options_prompt(options: Iterable[MenuOption]) -> str:
    rows = []
    for command, custom in options:
        spec = COMMANDS[command]
        rows.append(f"*{spec.mnemonic}*. {custom or spec.name}")
    return "Opciones:\n" + "\n".join(rows)


def build_customer_data_prompt(customer: Optional[Customer] = None) -> str:
    lines = [
        "Para completar tu pedido envía tus datos de entrega en un solo mensaje, así:",
        "",
        "Nombre: Juan Pérez",
        "Dirección: Calle 10 # 20-30",
        "Teléfono: 3001234567",
    ]
    if customer and (customer.name or customer.address):
        lines += [
            "",
            "Tenemos estos datos guardados:",
            f"Nombre: {customer.name or '-'}",
            f"Dirección: {customer.address or '-'}",
            f"Teléfono: {customer.phone or '-'}",
            "",
            "Responde *1* para usarlos.",
        ]
    return "\n".join(lines)


def build_merchant_order_notice(
    order: Order, customer: Customer, customer_address: str, reference_tag: str, currency: str = "$"
) -> str:
    rows = []
    for item in order.items:
        name = f"{item.short_name} ({item.presentation})" if item.presentation else item.short_name
        rows.append(f"• {item.quantity} x {name} [{item.sku}] - {format_currency(item.subtotal, currency)}")
    contact = [
        f"Cliente: {order.delivery.name or customer.name or '-'}",
        f"WhatsApp: {customer_address}",
        f"Teléfono: {order.delivery.phone or customer.phone or '-'}",
        f"Dirección: {order.delivery.address or customer.address or '-'}",
    ]
    title = f"🧾 *Nuevo pedido {order.reference}*" if order.reference else "🧾 *Nuevo pedido*"
    return (
        title
        + "\n\n"
        + "\n".join(contact)
        + "\n\n"
        + "\n".join(rows)
        + f"\n\n*Total: {format_currency(order.total, currency)}*"
        + "\n\nResponde citando este mensaje para escribirle al cliente."
        + f"\n{reference_tag}"
    )


def build_chat_relay_message(customer_address: str, text: str, reference_tag: str) -> str:
    return f"💬 Mensaje de {customer_address}:\n{text}\n\n{reference_tag}"


def build_vendor_reply_message(merchant_name: str, text: str) -> str:
    return f"*{merchant_name}*: {text}"


def build_chat_started_prompt(merchant_name: str) -> str:
    stop = COMMANDS[Command.STOP_CHATTING]
    return (
        f"Estás chateando con *{merchant_name}*. Todo lo que escribas se le enviará.\n"
        f"Escribe *{stop.mnemonic}* para terminar el chat."
    )
