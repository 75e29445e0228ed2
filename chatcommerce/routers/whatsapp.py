import logging
from typing import Any, Mapping, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, Response
from twilio.twiml.messaging_response import MessagingResponse

from chatcommerce.config.db import require_db
from chatcommerce.config.settings import Settings, get_settings
from chatcommerce.models.schemas import InboundMessage, MessageStatusLog
from chatcommerce.services.dispatcher import InboundDispatcher
from chatcommerce.services.messenger import TwilioMessenger
from chatcommerce.utils.phone import normalize_phone
from chatcommerce.utils.twilio import verify_twilio_signature

logger = logging.getLogger(__name__)

router = APIRouter()


def get_dispatcher(request: Request) -> InboundDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise RuntimeError("Inbound dispatcher not initialized")
    return dispatcher


def get_messenger(request: Request) -> TwilioMessenger:
    messenger = getattr(request.app.state, "messenger", None)
    if messenger is None:
        raise RuntimeError("Messenger not initialized")
    return messenger


def inbound_from_form(
    form: Mapping[str, Any],
    default_channel: str,
    quoted_text: Optional[str] = None,
    replied_sid: Optional[str] = None,
) -> Optional[InboundMessage]:
    """Normalize a Twilio webhook form; None when there is no sender."""
    from_address = normalize_phone(form.get("From"))
    if not from_address:
        return None
    body = (form.get("Body") or "").strip()
    # Button clicks carry the label in ButtonText
    button_text = (form.get("ButtonText") or "").strip()
    if button_text:
        body = button_text
    return InboundMessage(
        from_address=from_address,
        text=body,
        channel_id=normalize_phone(form.get("To")) or normalize_phone(default_channel),
        quoted_text=quoted_text,
        replied_sid=replied_sid or None,
        message_sid=form.get("MessageSid"),
        raw={k: v for k, v in form.items() if isinstance(v, str)},
    )


def empty_twiml() -> Response:
    # replies go out through the REST API once the engine has run
    return Response(str(MessagingResponse()), media_type="text/xml")


@router.post("/webhook", dependencies=[Depends(verify_twilio_signature)])
async def whatsapp_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    dispatcher: InboundDispatcher = Depends(get_dispatcher),
    messenger: TwilioMessenger = Depends(get_messenger),
):
    form = await request.form()

    quoted_text = None
    replied_sid = (form.get("OriginalRepliedMessageSid") or "").strip()
    if replied_sid:
        quoted_text = await messenger.find_body_by_sid(replied_sid)

    message = inbound_from_form(form, settings.twilio_from_number, quoted_text, replied_sid)
    if message is None:
        logger.warning("Ignoring webhook without sender")
        return empty_twiml()

    await dispatcher.enqueue(message)
    return empty_twiml()


@router.post("/status", response_class=PlainTextResponse, dependencies=[Depends(verify_twilio_signature)])
async def whatsapp_status_webhook(request: Request, db=Depends(require_db)):
    form = await request.form()
    log = MessageStatusLog(
        message_sid=form.get("MessageSid") or "",
        status=form.get("MessageStatus") or "",
        to=form.get("To"),
        error_code=form.get("ErrorCode"),
        error_message=form.get("ErrorMessage"),
        raw={k: v for k, v in form.items() if isinstance(v, str)},
    )
    if log.error_code:
        logger.warning("Delivery of %s to %s failed: %s %s", log.message_sid, log.to, log.error_code, log.error_message)
    await db.message_status.insert_one(log.dict())
    return PlainTextResponse("ok")
