from typing import Optional


class ChatCommerceError(Exception):
    """Base class for errors raised by the ordering bot."""

    def __init__(self, message: str, user_address: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.user_address = user_address


class CorruptSessionError(ChatCommerceError):
    """The session lacks context its current state requires.

    The engine answers this by resetting the session and telling the user why.
    """


class OrderPersistenceError(ChatCommerceError):
    """The order ledger could not store the order; the cart stays intact."""


class DeliveryError(ChatCommerceError):
    """An outbound message could not be handed to the transport."""
