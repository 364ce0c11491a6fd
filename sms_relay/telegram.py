"""Telegram Bot API client for reviewer notifications."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from sms_relay.utils import escape_html

logger = logging.getLogger(__name__)


def format_approval_message(
    *,
    display_name: str,
    phone_number: str,
    incoming_body: str,
    draft_reply: str,
    approval_url: str,
    calendar_context: Optional[str] = None,
    action_summary: Optional[str] = None,
) -> str:
    text = f"<b>📱 SMS from {escape_html(display_name)}</b>\n"
    text += f"<code>{escape_html(phone_number)}</code>\n\n"
    text += f"<blockquote>{escape_html(incoming_body)}</blockquote>\n\n"
    if calendar_context:
        text += f"<b>📅 Calendar:</b>\n{escape_html(calendar_context)}\n\n"
    if action_summary:
        text += f"<b>🛠 Pending action:</b>\n{escape_html(action_summary)}\n\n"
    text += "<b>💬 Draft reply:</b>\n"
    text += f"<i>\"{escape_html(draft_reply)}\"</i>\n\n"
    text += f'<a href="{approval_url}">Click to review, edit, or approve</a>'
    return text


def build_approval_keyboard(message_id: int, approval_url: str) -> dict[str, Any]:
    return {
        "inline_keyboard": [
            [
                {"text": "✅ Approve", "callback_data": f"approve:{message_id}"},
                {"text": "❌ Reject", "callback_data": f"reject:{message_id}"},
            ],
            [{"text": "✏️ Edit", "url": approval_url}],
        ]
    }


def parse_callback_data(data: Optional[str]) -> tuple[Optional[str], Optional[int]]:
    """Split "approve:42" into ("approve", 42); anything malformed gives (None, None)."""
    parts = (data or "").split(":", 1)
    if len(parts) != 2:
        return None, None
    action, raw_id = parts
    if action not in {"approve", "reject"}:
        return None, None
    try:
        return action, int(raw_id)
    except ValueError:
        return None, None


class TelegramNotifier:
    """Delivers approval requests and status notes to the reviewer chat."""

    def __init__(
        self,
        *,
        bot_token: str,
        chat_id: str,
        public_base_url: str,
        api_base_url: str = "https://api.telegram.org",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._bot_token = bot_token.strip()
        self._chat_id = chat_id.strip()
        self._public_base_url = public_base_url.rstrip("/")
        self._api_base_url = api_base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._bot_token and self._chat_id)

    def approval_url(self, message_id: int) -> str:
        return f"{self._public_base_url}/approval/{message_id}"

    async def _call(self, method: str, payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        url = f"{self._api_base_url}/bot{self._bot_token}/{method}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                res = await client.post(url, json=payload)
            data = res.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(f"Telegram {method} failed: {exc}")
            return None
        if not data.get("ok"):
            logger.error(f"Telegram API error on {method}: {data.get('description')}")
            return None
        return data

    async def send_approval_request(
        self,
        *,
        message_id: int,
        phone_number: str,
        client_name: Optional[str],
        incoming_body: str,
        draft_reply: str,
        calendar_context: Optional[str] = None,
        action_summary: Optional[str] = None,
    ) -> Optional[int]:
        """
        Send the approval card.

        Returns:
            The Telegram message id, or None if delivery failed.
        """
        if not self.configured:
            return None

        approval_url = self.approval_url(message_id)
        text = format_approval_message(
            display_name=client_name or "Unknown",
            phone_number=phone_number,
            incoming_body=incoming_body,
            draft_reply=draft_reply,
            approval_url=approval_url,
            calendar_context=calendar_context,
            action_summary=action_summary,
        )
        data = await self._call(
            "sendMessage",
            {
                "chat_id": self._chat_id,
                "text": text,
                "parse_mode": "HTML",
                "reply_markup": build_approval_keyboard(message_id, approval_url),
            },
        )
        if data is None:
            return None
        telegram_id = data.get("result", {}).get("message_id")
        logger.info(f"Approval request sent: message_id={message_id}, telegram_id={telegram_id}")
        return telegram_id

    async def send_message(self, text: str) -> Optional[int]:
        if not self.configured:
            return None
        data = await self._call("sendMessage", {"chat_id": self._chat_id, "text": text, "parse_mode": "HTML"})
        return data.get("result", {}).get("message_id") if data else None

    async def edit_message(self, telegram_message_id: int, text: str) -> bool:
        if not self.configured:
            return False
        data = await self._call(
            "editMessageText",
            {"chat_id": self._chat_id, "message_id": telegram_message_id, "text": text, "parse_mode": "HTML"},
        )
        return data is not None

    async def answer_callback(self, callback_query_id: str, text: str = "") -> None:
        if not self.configured:
            return
        await self._call("answerCallbackQuery", {"callback_query_id": callback_query_id, "text": text})
