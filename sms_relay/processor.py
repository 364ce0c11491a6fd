"""
Inbound SMS pipeline.

dedup -> store -> (context aggregation || action evaluation) -> draft ->
persist draft -> register pending action -> notify reviewer
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from sms_relay import storage
from sms_relay.actions import NO_ACTION, ActionEvaluator, build_action_context
from sms_relay.approval import APPROVE, ApprovalService
from sms_relay.context import ContextAggregator
from sms_relay.drafts import DraftGenerator
from sms_relay.menu_api import MenuApiClient
from sms_relay.metrics import record_draft, record_webhook_outcome
from sms_relay.pending_actions import PendingActionRegistry
from sms_relay.schemas import InboundSms, ProcessResult
from sms_relay.telegram import TelegramNotifier
from sms_relay.utils import extract_client_name, sanitize_phone_number

logger = logging.getLogger(__name__)


class MessageProcessor:
    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        aggregator: ContextAggregator,
        evaluator: ActionEvaluator,
        drafts: DraftGenerator,
        pending_actions: PendingActionRegistry,
        notifier: TelegramNotifier,
        approval: ApprovalService,
        menu_api: MenuApiClient,
    ) -> None:
        self._session_factory = session_factory
        self._aggregator = aggregator
        self._evaluator = evaluator
        self._drafts = drafts
        self._pending_actions = pending_actions
        self._notifier = notifier
        self._approval = approval
        self._menu_api = menu_api

    def _is_duplicate(self, message_sid: str) -> bool:
        """A failed lookup is treated as "not a duplicate"."""
        try:
            with self._session_factory() as db:
                return storage.message_exists(db, message_sid)
        except SQLAlchemyError as exc:
            logger.warning(f"Duplicate check failed, processing anyway: sid={message_sid}, error={exc}")
            return False

    async def process(self, message: InboundSms, send_approval: bool = True) -> ProcessResult:
        try:
            result = await self._process(message, send_approval)
        except Exception as exc:
            logger.exception(f"Failed to process incoming message: sid={message.message_sid}")
            record_webhook_outcome("error")
            return ProcessResult(success=False, error=str(exc) or exc.__class__.__name__)

        record_webhook_outcome("duplicate" if result.duplicate else "processed")
        return result

    async def _process(self, message: InboundSms, send_approval: bool) -> ProcessResult:
        if message.message_sid and self._is_duplicate(message.message_sid):
            logger.info(f"Duplicate message skipped: sid={message.message_sid}")
            return ProcessResult(success=True, duplicate=True)

        phone = sanitize_phone_number(message.from_number) or message.from_number
        client_name = extract_client_name(message.body)

        with self._session_factory() as db:
            conversation = storage.get_or_create_conversation(db, phone, client_name)
            conversation_id = conversation.id
            client_name = conversation.client_name or client_name
            try:
                storage.store_incoming_message(
                    db, conversation_id, message.message_sid, message.body, message.media_urls
                )
            except IntegrityError:
                logger.info(f"Duplicate message skipped on insert: sid={message.message_sid}")
                return ProcessResult(success=True, duplicate=True)

        await self._mirror_inbound(message)

        bundle, evaluation = await asyncio.gather(
            self._aggregator.gather(message.body, phone, conversation_id),
            self._evaluator.evaluate(phone, message.body),
        )

        action_context = build_action_context(evaluation)
        draft = await self._drafts.generate(
            message.body,
            client_name,
            bundle,
            action_context,
            action_summary=evaluation.summary if evaluation.is_ready else None,
        )
        record_draft(draft.mode)

        action_summary = evaluation.display_summary if evaluation.status != NO_ACTION else None
        with self._session_factory() as db:
            draft_message = storage.store_draft_reply(
                db,
                conversation_id,
                draft.text,
                calendar_context=bundle.calendar_context,
                action_summary=action_summary,
            )
            draft_id = draft_message.id

        if evaluation.is_ready:
            self._pending_actions.set(draft_id, evaluation.action_type, evaluation.payload, evaluation.summary or "")

        result = ProcessResult(
            success=True,
            draft_id=draft_id,
            draft_reply=draft.text,
            draft_mode=draft.mode,
            action=evaluation.action_type.value if evaluation.is_ready else None,
            action_status=evaluation.status,
            action_summary=evaluation.summary,
            action_message=evaluation.message,
        )

        if send_approval and self._notifier.configured:
            telegram_id = await self._notifier.send_approval_request(
                message_id=draft_id,
                phone_number=phone,
                client_name=client_name,
                incoming_body=message.body,
                draft_reply=draft.text,
                calendar_context=bundle.calendar_context,
                action_summary=action_summary,
            )
            if telegram_id is not None:
                result.approval_sent = True
            else:
                logger.warning(f"Approval notification failed, auto-approving draft: draft_id={draft_id}")
                await self._approval.decide(draft_id, APPROVE, source="auto")
                result.auto_approved = True

        logger.info(
            f"SMS processed: conversation_id={conversation_id}, draft_id={draft_id}, "
            f"approval_sent={result.approval_sent}, auto_approved={result.auto_approved}"
        )
        return result

    async def _mirror_inbound(self, message: InboundSms) -> None:
        if not self._menu_api.configured:
            return
        result = await self._menu_api.mirror_inbound(
            {
                "from": message.from_number,
                "to": message.to_number,
                "body": message.body,
                "provider": "twilio",
                "providerMessageId": message.message_sid,
                "direction": "inbound",
                "status": "received",
                "receivedAt": datetime.now(timezone.utc).isoformat(),
                "data": {"numMedia": len(message.media), "mediaUrls": message.media_urls},
            }
        )
        if not result.ok:
            logger.warning(f"Inbound SMS mirror failed: {result.error}")
