"""
Approval state machine shared by the Telegram callback and the web form.

    pending_approval --approve/edit--> approved --send ok--> sent
                                                --action or send fails--> failed
    pending_approval --reject--> rejected

The first transition is a conditional write on the stored status, so any
number of concurrent decisions on one message produce exactly one set of
side effects; the others observe "already_processed".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sms_relay import storage
from sms_relay.actions import ActionEvaluator
from sms_relay.corrections import CorrectionLearner
from sms_relay.menu_api import MenuApiClient
from sms_relay.metrics import record_approval_decision
from sms_relay.pending_actions import PendingActionRegistry
from sms_relay.telegram import TelegramNotifier
from sms_relay.telephony import TwilioClient
from sms_relay.utils import escape_html

logger = logging.getLogger(__name__)

APPROVE = "approve"
EDIT = "edit"
REJECT = "reject"
DECISIONS = (APPROVE, EDIT, REJECT)

# Outcome statuses
SENT = "sent"
SEND_FAILED = "send_failed"
ACTION_FAILED = "action_failed"
REJECTED = "rejected"
ALREADY_PROCESSED = "already_processed"
NOT_FOUND = "not_found"
INVALID = "invalid"


@dataclass
class ApprovalOutcome:
    status: str
    message_id: int
    phone_number: Optional[str] = None
    body: Optional[str] = None
    error: Optional[str] = None
    action_summary: Optional[str] = None
    current_status: Optional[str] = None


@dataclass
class _DraftSnapshot:
    draft_body: str
    status: str
    phone_number: str
    client_name: Optional[str]
    conversation_id: int
    incoming_context: Optional[str]


class ApprovalService:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        telephony: TwilioClient,
        notifier: TelegramNotifier,
        evaluator: ActionEvaluator,
        menu_api: MenuApiClient,
        pending_actions: PendingActionRegistry,
        learner: CorrectionLearner,
        from_number: str = "",
    ) -> None:
        self._session_factory = session_factory
        self._telephony = telephony
        self._notifier = notifier
        self._evaluator = evaluator
        self._menu_api = menu_api
        self._pending_actions = pending_actions
        self._learner = learner
        self._from_number = from_number

    def _snapshot(self, message_id: int) -> Optional[_DraftSnapshot]:
        with self._session_factory() as db:
            message = storage.get_message(db, message_id)
            if message is None or message.direction != "outbound":
                return None
            conversation = message.conversation
            return _DraftSnapshot(
                draft_body=message.draft_body or "",
                status=message.status,
                phone_number=conversation.phone_number,
                client_name=conversation.client_name,
                conversation_id=conversation.id,
                incoming_context=storage.get_last_inbound_body(db, conversation.id),
            )

    async def decide(
        self,
        message_id: int,
        decision: str,
        edited_body: Optional[str] = None,
        telegram_message_id: Optional[int] = None,
        source: str = "web",
    ) -> ApprovalOutcome:
        """
        Apply a reviewer decision to a pending draft.

        Args:
            message_id: outbound message id
            decision: approve, edit or reject
            edited_body: replacement text for an edit
            telegram_message_id: approval card to update in place, if any
            source: telegram, web or auto (recorded on corrections)
        """
        outcome = await self._decide(message_id, decision, edited_body, telegram_message_id, source)
        record_approval_decision(decision, outcome.status)
        return outcome

    async def _decide(
        self,
        message_id: int,
        decision: str,
        edited_body: Optional[str],
        telegram_message_id: Optional[int],
        source: str,
    ) -> ApprovalOutcome:
        if decision not in DECISIONS:
            return ApprovalOutcome(status=INVALID, message_id=message_id, error="Unknown action")

        snapshot = self._snapshot(message_id)
        if snapshot is None:
            return ApprovalOutcome(status=NOT_FOUND, message_id=message_id)
        if snapshot.status != "pending_approval":
            logger.info(f"Decision ignored, already processed: message_id={message_id}, status={snapshot.status}")
            return ApprovalOutcome(
                status=ALREADY_PROCESSED,
                message_id=message_id,
                phone_number=snapshot.phone_number,
                current_status=snapshot.status,
            )

        if decision == REJECT:
            return await self._reject(message_id, snapshot, telegram_message_id, source)

        final_body = snapshot.draft_body
        if decision == EDIT:
            final_body = (edited_body or "").strip()
            if not final_body:
                return ApprovalOutcome(status=INVALID, message_id=message_id, error="Cannot send an empty message")
        return await self._approve(message_id, snapshot, final_body, telegram_message_id, source)

    def _lost_claim(self, message_id: int, snapshot: _DraftSnapshot) -> ApprovalOutcome:
        """Another decision won the conditional write; report the status it left behind."""
        current = self._snapshot(message_id)
        logger.info(f"Decision lost the claim: message_id={message_id}")
        return ApprovalOutcome(
            status=ALREADY_PROCESSED,
            message_id=message_id,
            phone_number=snapshot.phone_number,
            current_status=current.status if current else None,
        )

    async def _reject(
        self,
        message_id: int,
        snapshot: _DraftSnapshot,
        telegram_message_id: Optional[int],
        source: str,
    ) -> ApprovalOutcome:
        with self._session_factory() as db:
            claimed = storage.reject_message(db, message_id)
        if not claimed:
            return self._lost_claim(message_id, snapshot)

        self._pending_actions.clear(message_id)
        await self._record_correction("reject", message_id, snapshot, None, source)
        await self._notify("Message rejected (not sent)", telegram_message_id)
        logger.info(f"SMS rejected: message_id={message_id}")
        return ApprovalOutcome(status=REJECTED, message_id=message_id, phone_number=snapshot.phone_number)

    async def _approve(
        self,
        message_id: int,
        snapshot: _DraftSnapshot,
        final_body: str,
        telegram_message_id: Optional[int],
        source: str,
    ) -> ApprovalOutcome:
        with self._session_factory() as db:
            claimed = storage.approve_message(db, message_id, final_body)
        if not claimed:
            return self._lost_claim(message_id, snapshot)

        edited = final_body != snapshot.draft_body
        if edited:
            await self._record_correction("edit", message_id, snapshot, final_body, source)

        action_summary = None
        pending = self._pending_actions.get(message_id)
        if pending is not None:
            applied = await self._evaluator.apply(pending)
            if not applied.applied:
                self._pending_actions.clear(message_id)
                error = f"Failed to apply action: {applied.error}"
                with self._session_factory() as db:
                    storage.mark_message_failed(db, message_id, error)
                await self._notify(escape_html(error), telegram_message_id, edited)
                return ApprovalOutcome(
                    status=ACTION_FAILED,
                    message_id=message_id,
                    phone_number=snapshot.phone_number,
                    body=final_body,
                    error=error,
                )
            self._pending_actions.clear(message_id)
            action_summary = applied.summary

        result = await self._telephony.send_sms(snapshot.phone_number, final_body)
        if not result.success:
            with self._session_factory() as db:
                storage.mark_message_failed(db, message_id, result.error or "Send failed")
            await self._mirror_outbound(snapshot.phone_number, final_body, "failed", message_id, error=result.error)
            await self._notify(f"Failed to send SMS: {escape_html(result.error)}", telegram_message_id, edited)
            logger.error(f"SMS send failed: message_id={message_id}, error={result.error}")
            return ApprovalOutcome(
                status=SEND_FAILED,
                message_id=message_id,
                phone_number=snapshot.phone_number,
                body=final_body,
                error=result.error,
                action_summary=action_summary,
            )

        with self._session_factory() as db:
            storage.mark_message_sent(db, message_id, result.sid)
        await self._mirror_outbound(snapshot.phone_number, final_body, "sent", message_id, provider_sid=result.sid)

        label = "Sent edited message to" if edited else "Sent to"
        note = f"{label} {escape_html(snapshot.phone_number)}:\n\"{escape_html(final_body)}\""
        if action_summary:
            note += f"\n\n✅ {escape_html(action_summary)}"
        await self._notify(note, telegram_message_id, edited)
        logger.info(f"SMS approved and sent: message_id={message_id}, edited={edited}")
        return ApprovalOutcome(
            status=SENT,
            message_id=message_id,
            phone_number=snapshot.phone_number,
            body=final_body,
            action_summary=action_summary,
        )

    async def _record_correction(
        self,
        action: str,
        message_id: int,
        snapshot: _DraftSnapshot,
        corrected_text: Optional[str],
        source: str,
    ) -> None:
        try:
            await self._learner.record(
                action=action,
                original_draft=snapshot.draft_body,
                corrected_text=corrected_text,
                incoming_context=snapshot.incoming_context,
                incoming_from=snapshot.phone_number,
                source_message_id=message_id,
                metadata={
                    "client_name": snapshot.client_name,
                    "conversation_id": snapshot.conversation_id,
                    "source": source,
                },
            )
        except SQLAlchemyError as exc:
            logger.warning(f"Correction storage failed: message_id={message_id}, error={exc}")

    async def _notify(self, text: str, telegram_message_id: Optional[int], new_message: bool = False) -> None:
        """Update the approval card in place, or post a new note when there is no card or the text was edited."""
        if telegram_message_id and not new_message:
            await self._notifier.edit_message(telegram_message_id, text)
        else:
            await self._notifier.send_message(text)

    async def _mirror_outbound(
        self,
        to: str,
        body: str,
        status: str,
        message_id: int,
        provider_sid: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        if not self._menu_api.configured:
            return
        result = await self._menu_api.mirror_inbound(
            {
                "from": self._from_number,
                "to": to,
                "body": body,
                "provider": "twilio",
                "providerMessageId": provider_sid,
                "direction": "outbound",
                "status": status,
                "receivedAt": datetime.now(timezone.utc).isoformat(),
                "data": {"sourceMessageId": message_id, "error": error},
            }
        )
        if not result.ok:
            logger.warning(f"Outbound SMS mirror failed: {result.error}")
