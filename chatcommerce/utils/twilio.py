from typing import Optional
from urllib.parse import urljoin

from fastapi import Depends, HTTPException, Request, status
from twilio.request_validator import RequestValidator

from chatcommerce.config.settings import Settings, get_settings


def signed_url(request: Request, public_base_url: Optional[str] = None) -> str:
    """URL Twilio signed: the public one when we sit behind a proxy."""
    if not public_base_url:
        return str(request.url)
    url = urljoin(public_base_url.rstrip("/") + "/", request.url.path.lstrip("/"))
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


async def verify_twilio_signature(request: Request, settings: Settings = Depends(get_settings)):
    if not settings.twilio_validate_signature:
        return

    sig = request.headers.get("x-twilio-signature")
    if not sig:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing X-Twilio-Signature header",
        )

    form_data = dict(await request.form())
    validator = RequestValidator(settings.twilio_auth_token)
    if not validator.validate(signed_url(request, settings.public_base_url), form_data, sig):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Twilio signature",
        )
