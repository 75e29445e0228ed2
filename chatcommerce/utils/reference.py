"""
Reference tag embedded in messages sent to a merchant so that a quoted reply
can be routed back to the customer it concerns.
"""
import re
from typing import Optional

from chatcommerce.utils.phone import normalize_phone

_TAG_PREFIX = "🔖 ref:"
_TAG_RE = re.compile(r"ref:(\+\d{6,15})")


def make_reference_tag(customer_address: str) -> str:
    return f"{_TAG_PREFIX}{normalize_phone(customer_address)}"


def extract_reference(text: Optional[str]) -> Optional[str]:
    """Return the customer address carried by the last tag in `text`, if any."""
    if not text:
        return None
    matches = _TAG_RE.findall(text)
    return matches[-1] if matches else None
