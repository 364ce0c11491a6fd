"""
Utility functions for the SMS relay.
"""

import base64
import hashlib
import hmac
import logging
import re
from typing import Mapping, Optional

from fastapi import Request

logger = logging.getLogger(__name__)

_NAME_PATTERNS = (
    re.compile(r"(?:this is|my name is|i'm|i am)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)", re.IGNORECASE),
    re.compile(r"^([A-Z][a-z]+)\s+here", re.IGNORECASE),
)

# Words that follow "I'm"/"I am" without being a name
_NOT_NAMES = {
    "looking", "interested", "planning", "hosting", "getting", "having", "trying",
    "wondering", "organizing", "organising", "just", "not", "so", "the", "a", "an",
    "here", "good", "fine", "available", "calling", "texting", "writing", "reaching",
}


def compute_twilio_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """
    Compute the X-Twilio-Signature value for a request.

    The signed payload is the full request URL followed by every POST
    parameter name and value, sorted by name, hashed with HMAC-SHA1 and
    base64 encoded.
    """
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_twilio_signature(auth_token: str, signature: Optional[str], url: str, params: Mapping[str, str]) -> bool:
    """
    Verify a Twilio webhook signature.

    Args:
        auth_token: shared account auth token
        signature: X-Twilio-Signature header value
        url: full public URL the provider posted to
        params: form parameters of the request

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not auth_token:
        logger.warning("Missing Twilio signature or auth token")
        return False

    expected = compute_twilio_signature(auth_token, url, params)

    # Use constant-time comparison to prevent timing attacks
    return hmac.compare_digest(expected.encode(), signature.encode())


def sanitize_phone_number(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a phone number to E.164.
    Ten digit numbers are assumed North American.
    """
    if not phone:
        return None

    cleaned = re.sub(r"[^\d+]", "", phone)
    if not cleaned.startswith("+"):
        if len(cleaned) == 10:
            cleaned = "+1" + cleaned
        elif len(cleaned) == 11 and cleaned.startswith("1"):
            cleaned = "+" + cleaned
    return cleaned


def extract_client_name(body: Optional[str]) -> Optional[str]:
    """Pick a sender name out of phrases like "this is Sarah" or "Mike here"."""
    if not body:
        return None

    for pattern in _NAME_PATTERNS:
        match = pattern.search(body)
        if not match:
            continue
        name = match.group(1).strip()
        first = name.split()[0].lower()
        if first in _NOT_NAMES:
            continue
        # "this is Sarah and ..." should not capture "Sarah And"
        parts = [part for part in name.split() if part.lower() not in {"and", "from", "with"}]
        return " ".join(part.capitalize() for part in parts[:2]) or None

    return None


def escape_html(text: Optional[str]) -> str:
    """Escape the characters Telegram's HTML parse mode reserves."""
    if not text:
        return ""
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def get_request_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def verify_api_key(request: Request, expected: str) -> bool:
    """Accept the key from x-api-key or a Bearer Authorization header."""
    if not expected:
        return False
    provided = request.headers.get("x-api-key", "")
    if not provided:
        auth = request.headers.get("authorization", "")
        if auth.lower().startswith("bearer "):
            provided = auth[7:].strip()
    return bool(provided) and hmac.compare_digest(provided.encode(), expected.encode())
