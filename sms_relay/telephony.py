"""Twilio SMS delivery and inbound webhook parsing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional
from xml.sax.saxutils import escape

import httpx

from sms_relay.schemas import InboundSms, MediaItem

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    success: bool
    sid: Optional[str] = None
    error: Optional[str] = None


class TwilioClient:
    """Sends SMS through the Twilio REST API."""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        status_callback_url: Optional[str] = None,
        api_base_url: str = "https://api.twilio.com",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._account_sid = account_sid.strip()
        self._auth_token = auth_token.strip()
        self._from_number = from_number.strip()
        self._status_callback_url = status_callback_url
        self._api_base_url = api_base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._account_sid and self._auth_token and self._from_number)

    async def send_sms(self, to: str, body: str) -> SendResult:
        if not self.configured:
            return SendResult(success=False, error="Twilio not configured")

        url = f"{self._api_base_url}/2010-04-01/Accounts/{self._account_sid}/Messages.json"
        data = {"To": to, "From": self._from_number, "Body": body}
        if self._status_callback_url:
            data["StatusCallback"] = self._status_callback_url

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                res = await client.post(url, data=data, auth=(self._account_sid, self._auth_token))
            payload = res.json() if res.content else {}
            if res.status_code >= 400:
                error = payload.get("message") or f"Twilio error {res.status_code}"
                logger.error(f"Failed to send SMS to {to}: {error}")
                return SendResult(success=False, error=error)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(f"Failed to send SMS to {to}: {exc}")
            return SendResult(success=False, error=str(exc) or exc.__class__.__name__)

        sid = payload.get("sid")
        logger.info(f"SMS sent successfully: sid={sid}, to={to}")
        return SendResult(success=True, sid=sid)


def parse_incoming_message(form: Mapping[str, str]) -> InboundSms:
    """Build an InboundSms from a Twilio webhook form body."""
    return InboundSms(
        message_sid=form.get("MessageSid") or None,
        from_number=form.get("From", ""),
        to_number=form.get("To", ""),
        body=form.get("Body", "") or "",
        media=_parse_media(form),
    )


def _parse_media(form: Mapping[str, str]) -> list[MediaItem]:
    try:
        num_media = int(form.get("NumMedia") or "0")
    except ValueError:
        num_media = 0

    media = []
    for i in range(num_media):
        url = form.get(f"MediaUrl{i}")
        if url:
            media.append(MediaItem(url=url, content_type=form.get(f"MediaContentType{i}")))
    return media


def empty_twiml() -> str:
    return '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def dial_twiml(number: str) -> str:
    return f'<?xml version="1.0" encoding="UTF-8"?><Response><Dial>{escape(number)}</Dial></Response>'


def say_twiml(text: str) -> str:
    return f'<?xml version="1.0" encoding="UTF-8"?><Response><Say>{escape(text)}</Say></Response>'
