from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from chatcommerce.config.settings import Settings
from chatcommerce.models.schemas import MessageDirection, MessageLog
from chatcommerce.services.exceptions import DeliveryError
from chatcommerce.utils.phone import strip_channel_prefix, to_whatsapp

logger = logging.getLogger(__name__)


def render_buttons_as_text(text: str, footer: Optional[str], buttons: Sequence[str]) -> str:
    """Text fallback for transports without interactive buttons."""
    rows = "\n".join(f"*{i}*. {label}" for i, label in enumerate(buttons, start=1))
    parts = [text, rows]
    if footer:
        parts.append(f"_{footer}_")
    return "\n\n".join(p for p in parts if p)


class TwilioMessenger:
    """Outbound WhatsApp delivery through the Twilio Messages API.

    `channel_id` is the WhatsApp sender the conversation arrived on; it falls
    back to the configured `TWILIO_FROM_NUMBER`.
    """

    supports_buttons = False

    def __init__(self, db: Optional[AsyncIOMotorDatabase], settings: Settings, client: Optional[Client] = None):
        self.db = db
        self.settings = settings
        self.twilio = client or Client(settings.twilio_account_sid, settings.twilio_auth_token)

    def _status_callback(self) -> Optional[str]:
        cb = self.settings.twilio_status_callback_url
        if cb and isinstance(cb, str) and cb.lower() != "none" and cb.startswith("http"):
            return cb
        return None

    async def log_message(self, log: MessageLog):
        if self.db is None:
            return
        await self.db.messages.insert_one(log.dict())

    async def send_text(self, channel_id: Optional[str], address: str, text: str) -> str:
        params = {
            "from_": to_whatsapp(channel_id or self.settings.twilio_from_number),
            "to": to_whatsapp(address),
            "body": text,
        }
        cb = self._status_callback()
        if cb:
            params["status_callback"] = cb
        try:
            # twilio-python is synchronous; keep the event loop free while it talks HTTP
            resp = await asyncio.to_thread(self.twilio.messages.create, **params)
        except TwilioRestException as e:
            raise DeliveryError(f"Twilio rejected message to {address}: {e.msg}", user_address=address) from e

        logger.debug("Sent %s to %s via %s", resp.sid, address, params["from_"])
        # already accepted by Twilio, logging is best-effort
        try:
            await self.log_message(
                MessageLog(
                    phone=strip_channel_prefix(address),
                    direction=MessageDirection.outbound,
                    body=text,
                    channel_id=channel_id,
                    message_sid=resp.sid,
                )
            )
        except PyMongoError:
            logger.exception("Could not log outbound message %s to %s", resp.sid, address)
        return resp.sid

    async def send_buttons(
        self,
        channel_id: Optional[str],
        address: str,
        text: str,
        footer: Optional[str],
        buttons: Sequence[str],
    ) -> str:
        # Twilio only offers buttons through pre-approved content templates
        return await self.send_text(channel_id, address, render_buttons_as_text(text, footer, buttons))

    async def find_body_by_sid(self, message_sid: str) -> Optional[str]:
        """Body of a message we sent, used to resolve quoted replies."""
        if not message_sid:
            return None
        if self.db is not None:
            try:
                doc = await self.db.messages.find_one({"message_sid": message_sid})
            except PyMongoError:
                logger.exception("Message log lookup for %s failed, asking Twilio", message_sid)
                doc = None
            if doc:
                return doc.get("body")
        try:
            msg = await asyncio.to_thread(self.twilio.messages(message_sid).fetch)
        except TwilioRestException as e:
            logger.warning("Could not fetch quoted message %s: %s", message_sid, e.msg)
            return None
        return msg.body
