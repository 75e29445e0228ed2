"""
Universal chat commands and the resolver that maps user text onto them.

Every command has one short mnemonic (shown in the options footers), a
display name and, for a few of them, long-form aliases kept from the first
keyword-driven version of the bot ("pedido", "ver carrito", ...).
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple


class Command(str, Enum):
    CANCEL = "CANCEL"
    FINISH = "FINISH"
    END = "END"
    GO_BACK = "GO_BACK"
    REPEAT_MENU = "REPEAT_MENU"
    VIEW_CART = "VIEW_CART"
    FINALIZE_ORDER = "FINALIZE_ORDER"
    DETAIL = "DETAIL"
    CHAT = "CHAT"
    STOP_CHATTING = "STOP_CHATTING"
    RETURN_TO_CATEGORIES = "RETURN_TO_CATEGORIES"
    RETURN_TO_COMPANIES = "RETURN_TO_COMPANIES"
    ADD_TO_CART = "ADD_TO_CART"


@dataclass(frozen=True)
class CommandSpec:
    command: Command
    mnemonic: str
    name: str
    description: str
    aliases: Tuple[str, ...] = ()


COMMANDS: Dict[Command, CommandSpec] = {
    spec.command: spec
    for spec in (
        CommandSpec(Command.CANCEL, "x", "Cancelar", "Reinicia la sesión y vacía el carrito", ("cancelar",)),
        CommandSpec(Command.FINISH, "t", "Terminar", "Termina la conversación", ("terminar",)),
        CommandSpec(Command.END, "s", "Salir", "Sale de la conversación", ("salir",)),
        CommandSpec(Command.GO_BACK, "v", "Volver", "Regresa al menú anterior", ("volver",)),
        CommandSpec(Command.REPEAT_MENU, "m", "Repetir menú", "Muestra de nuevo el menú actual", ("menu", "menú")),
        CommandSpec(Command.VIEW_CART, "vc", "Ver carrito", "Muestra el carrito", ("ver carrito", "carrito")),
        CommandSpec(Command.FINALIZE_ORDER, "p", "Finalizar pedido", "Confirma y envía el pedido", ("pedido",)),
        CommandSpec(Command.DETAIL, "d", "Ver detalle", "Muestra el detalle de un producto", ("detalle",)),
        CommandSpec(Command.CHAT, "ch", "Chatear con el vendedor", "Abre un chat con la empresa", ("chat",)),
        CommandSpec(Command.STOP_CHATTING, "fc", "Terminar chat", "Cierra el chat con la empresa", ("fin chat",)),
        CommandSpec(
            Command.RETURN_TO_CATEGORIES, "ca", "Volver a categorías", "Muestra las categorías", ("categorias", "categorías")
        ),
        CommandSpec(Command.RETURN_TO_COMPANIES, "e", "Volver a empresas", "Muestra las empresas", ("empresas",)),
        CommandSpec(Command.ADD_TO_CART, "a", "Agregar al carrito", "Agrega el producto al carrito", ("agregar",)),
    )
}

RESET_COMMANDS = frozenset({Command.CANCEL, Command.FINISH, Command.END})

_LOOKUP: Dict[str, Command] = {}
for _spec in COMMANDS.values():
    _LOOKUP[_spec.mnemonic] = _spec.command
    for _alias in _spec.aliases:
        _LOOKUP[_alias] = _spec.command


def mnemonic(command: Command) -> str:
    return COMMANDS[command].mnemonic


def lookup(token: str) -> Optional[Command]:
    """Exact, case-insensitive match against mnemonics and aliases."""
    return _LOOKUP.get(token.strip().lower())


@dataclass(frozen=True)
class Resolution:
    text: str
    command: Optional[Command] = None


def resolve(
    text: str, numbered_options: Optional[Mapping[str, str]] = None, options_are_commands: bool = False
) -> Resolution:
    """Resolve normalized text against the current menu bindings and the command table.

    A key of `numbered_options` is substituted exactly once and never looked
    up again. The substituted value is matched against the command table only
    when `options_are_commands` is set, so a listed SKU or category such as
    "P" or "Menu" stays an item rather than turning into a command. Typed
    mnemonics always win over catalog values.
    """
    normalized = text.strip().lower()
    if numbered_options and normalized in numbered_options:
        value = numbered_options[normalized].strip().lower()
        return Resolution(text=value, command=lookup(value) if options_are_commands else None)
    return Resolution(text=normalized, command=lookup(normalized))
