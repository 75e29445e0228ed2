from typing import Optional

WHATSAPP_PREFIX = "whatsapp:"


def strip_channel_prefix(value: str) -> str:
    """'whatsapp:+57300...' -> '+57300...'"""
    value = (value or "").strip()
    if value.lower().startswith(WHATSAPP_PREFIX):
        value = value[len(WHATSAPP_PREFIX):]
    return value.strip()


def normalize_phone(value: Optional[str]) -> str:
    """Canonical '+<digits>' form used as the chat address and for merchant matching."""
    digits = "".join(c for c in strip_channel_prefix(value or "") if c.isdigit())
    return f"+{digits}" if digits else ""


def to_whatsapp(value: str) -> str:
    if value.lower().startswith(WHATSAPP_PREFIX):
        return value
    return f"{WHATSAPP_PREFIX}{normalize_phone(value) or value}"

