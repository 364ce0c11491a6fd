"""
Scheduled reminder calls.

A periodic checker picks up due reminders, claims each one with a
conditional pending -> calling update and places the call through Vapi.
A reminder that cannot be claimed is being handled elsewhere and is left
alone. Failed calls go back to pending until MAX_ATTEMPTS is reached.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sms_relay import storage
from sms_relay.metrics import record_reminder_call
from sms_relay.telegram import TelegramNotifier
from sms_relay.utils import escape_html

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
MAX_MESSAGE_LENGTH = 500


class ReminderValidationError(ValueError):
    pass


@dataclass
class CallResult:
    success: bool
    call_id: Optional[str] = None
    error: Optional[str] = None


class VapiClient:
    """Places outbound assistant calls to the owner's phone."""

    def __init__(
        self,
        *,
        api_key: str,
        assistant_id: str,
        phone_number_id: str,
        owner_number: str,
        api_base_url: str = "https://api.vapi.ai",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self._assistant_id = assistant_id
        self._phone_number_id = phone_number_id
        self._owner_number = owner_number
        self._api_base_url = api_base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._owner_number)

    async def place_call(self, message: str) -> CallResult:
        payload = {
            "assistantId": self._assistant_id,
            "assistantOverrides": {
                "firstMessage": f"Hey, just a heads up: {message}.",
                "model": {
                    "provider": "anthropic",
                    "model": "claude-3-7-sonnet-20250219",
                    "messages": [
                        {
                            "role": "system",
                            "content": (
                                "You are Max, the assistant at MTL Craft Cocktails. You just called the owner "
                                f'to deliver a reminder: "{message}". Keep the tone casual and be helpful '
                                "if they want to talk about anything else."
                            ),
                        }
                    ],
                },
            },
            "customer": {"number": self._owner_number},
            "phoneNumberId": self._phone_number_id,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                res = await client.post(
                    f"{self._api_base_url}/call",
                    json=payload,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                )
            data = res.json() if res.content else {}
        except (httpx.HTTPError, ValueError) as exc:
            return CallResult(success=False, error=str(exc) or exc.__class__.__name__)

        if res.status_code >= 400 or not data.get("id"):
            return CallResult(success=False, error=str(data.get("message") or f"Vapi error {res.status_code}"))
        return CallResult(success=True, call_id=data["id"])


class ReminderScheduler:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        vapi: VapiClient,
        notifier: TelegramNotifier,
        interval_seconds: int = 60,
    ) -> None:
        self._session_factory = session_factory
        self._vapi = vapi
        self._notifier = notifier
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._unconfigured_warned = False

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def create(self, db: Session, message: str, scheduled_for: datetime, now: Optional[datetime] = None):
        """
        Raises:
            ReminderValidationError: empty or too long message, or a time
                that is not in the future
        """
        message = (message or "").strip()
        if not message:
            raise ReminderValidationError("Message is required and must be a non-empty string")
        if len(message) > MAX_MESSAGE_LENGTH:
            raise ReminderValidationError(f"Message must be {MAX_MESSAGE_LENGTH} characters or fewer")
        if scheduled_for.tzinfo is None:
            scheduled_for = scheduled_for.replace(tzinfo=timezone.utc)
        scheduled_for = scheduled_for.astimezone(timezone.utc)
        if scheduled_for <= (now or datetime.now(timezone.utc)):
            raise ReminderValidationError("scheduled_for must be in the future")
        return storage.create_reminder(db, message, scheduled_for)

    def list_pending(self, db: Session) -> list:
        return storage.list_pending_reminders(db)

    def cancel(self, db: Session, reminder_id: str):
        return storage.cancel_reminder(db, reminder_id)

    # -------------------------------------------------------------------------
    # Checker
    # -------------------------------------------------------------------------

    async def check_due(self, now: Optional[datetime] = None) -> int:
        """Process every due reminder once. Returns the number found due."""
        if not self._vapi.configured:
            if not self._unconfigured_warned:
                logger.warning("Vapi or owner phone number not configured, skipping reminder checks")
                self._unconfigured_warned = True
            return 0

        with self._session_factory() as db:
            due = [(r.id, r.message, r.retry_count or 0) for r in storage.list_due_reminders(db, now)]
        if not due:
            return 0

        logger.info(f"Found due reminders: count={len(due)}")
        for reminder_id, message, retry_count in due:
            await self.process(reminder_id, message, retry_count)
        return len(due)

    async def process(self, reminder_id: str, message: str, retry_count: int) -> bool:
        """
        Claim and call one reminder.

        Returns:
            False if the claim was lost, True otherwise.
        """
        with self._session_factory() as db:
            claimed = storage.claim_reminder(db, reminder_id)
        if not claimed:
            logger.info(f"Reminder already being processed, skipping: id={reminder_id}")
            return False

        result = await self._vapi.place_call(message)
        if result.success:
            with self._session_factory() as db:
                storage.update_reminder(
                    db,
                    reminder_id,
                    status="completed",
                    call_id=result.call_id,
                    completed_at=datetime.now(timezone.utc),
                )
            record_reminder_call("completed")
            await self._notifier.send_message(f"📞 Reminder call placed: {escape_html(message)}")
            logger.info(f"Reminder call placed: id={reminder_id}, call_id={result.call_id}")
            return True

        attempts = retry_count + 1
        logger.error(f"Reminder call failed: id={reminder_id}, attempt={attempts}, error={result.error}")
        if attempts >= MAX_ATTEMPTS:
            with self._session_factory() as db:
                storage.update_reminder(db, reminder_id, status="failed", retry_count=attempts)
            record_reminder_call("failed")
            await self._notifier.send_message(
                f"⚠️ Reminder call failed after {MAX_ATTEMPTS} attempts: {escape_html(message)}"
            )
        else:
            with self._session_factory() as db:
                storage.update_reminder(db, reminder_id, status="pending", retry_count=attempts)
            record_reminder_call("retry")
            logger.info(f"Reminder will retry next cycle: id={reminder_id}, retry_count={attempts}")
        return True

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def _run(self) -> None:
        logger.info(f"Starting reminder checker ({self._interval}s interval)")
        while True:
            try:
                await self.check_due()
            except (SQLAlchemyError, httpx.HTTPError) as exc:
                logger.error(f"Reminder check failed: {exc}")
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self._task is not None:
            logger.warning("Reminder checker already running")
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
