"""
Dry-run classification of inbound messages against the menu system, and
application of approved menu changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sms_relay.menu_api import MenuApiClient
from sms_relay.pending_actions import ActionType, PendingAction

logger = logging.getLogger(__name__)

NO_ACTION = "no_action"
READY = "ready"
AMBIGUOUS = "ambiguous"
NOT_FOUND = "not_found"
EVALUATION_STATUSES = (NO_ACTION, READY, AMBIGUOUS, NOT_FOUND)


@dataclass
class ActionEvaluation:
    status: str = NO_ACTION
    action_type: ActionType = ActionType.NONE
    payload: dict[str, Any] = field(default_factory=dict)
    summary: Optional[str] = None
    options: list[dict[str, Any]] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self.status == READY and self.action_type.is_menu_change

    @property
    def display_summary(self) -> Optional[str]:
        return self.summary or self.message


@dataclass
class ApplyResult:
    applied: bool
    summary: Optional[str] = None
    error: Optional[str] = None


def build_apply_payload(data: dict[str, Any], phone: str) -> dict[str, Any]:
    """
    Payload replayed on approval. Display names are preferred over the
    normalised keys so the downstream system sees what the client wrote.
    """
    old = data.get("oldCocktailDisplay") or data.get("oldCocktail")
    new = data.get("newCocktailDisplay") or data.get("newCocktail")
    return {
        "action": data.get("action"),
        "phone": phone,
        "eventId": data.get("eventId"),
        "oldCocktail": old,
        "newCocktail": new,
        "addCocktail": new,
        "removeCocktail": old,
    }


def build_action_context(evaluation: ActionEvaluation) -> str:
    """Prompt-ready description of the evaluation, empty when nothing applies."""
    if evaluation.is_ready:
        return f"Action available: {evaluation.summary}. If approved, confirm the change in your reply."

    if evaluation.status == AMBIGUOUS and evaluation.options:
        option_list = ", ".join(
            f"{opt.get('clientName')}" + (f" ({opt['eventDate']})" if opt.get("eventDate") else "")
            for opt in evaluation.options
        )
        return f"Need clarification: multiple events match. Ask which one: {option_list}."

    if evaluation.status == NOT_FOUND:
        return "No matching event found. Ask which event this refers to."

    if evaluation.status == NO_ACTION:
        return ""

    return f"Note: {evaluation.message}" if evaluation.message else ""


class ActionEvaluator:
    def __init__(self, menu_api: MenuApiClient) -> None:
        self._menu_api = menu_api

    async def evaluate(self, phone: str, text: str, event_identifier: Optional[str] = None) -> ActionEvaluation:
        """
        Classify a message as no_action, ready, ambiguous or not_found.

        Any downstream failure reads as no_action.
        """
        if not self._menu_api.configured:
            return ActionEvaluation()

        result = await self._menu_api.evaluate_menu_change(phone, text, event_identifier)
        if not result.ok:
            logger.warning(f"Menu evaluation unavailable: {result.error}")
            return ActionEvaluation()

        data = result.data
        status = data.get("status") or NO_ACTION
        if status not in EVALUATION_STATUSES:
            status = NO_ACTION

        evaluation = ActionEvaluation(
            status=status,
            summary=data.get("summary"),
            options=[opt for opt in data.get("options") or [] if isinstance(opt, dict)],
            message=data.get("message"),
        )
        if status == READY:
            action_type = ActionType.parse(data.get("action"))
            if not action_type.is_menu_change:
                logger.warning(f"Menu evaluation returned unknown action: {data.get('action')}")
                return ActionEvaluation(message=evaluation.message)
            evaluation.action_type = action_type
            evaluation.payload = build_apply_payload(data, phone)
            evaluation.summary = evaluation.summary or "Menu update"

        logger.info(f"Action evaluated: status={evaluation.status}, action={evaluation.action_type.value}")
        return evaluation

    async def apply(self, action: PendingAction) -> ApplyResult:
        """Replay the approved payload with apply=true; only an "applied" status counts as success."""
        result = await self._menu_api.apply_menu_change(action.payload)
        if not result.ok or result.data.get("status") != "applied":
            error = result.error or result.data.get("error") or "Menu update failed"
            logger.error(f"Pending action failed: type={action.type.value}, error={error}")
            return ApplyResult(applied=False, error=error)

        summary = result.data.get("summary") or action.summary
        logger.info(f"Pending action applied: type={action.type.value}")
        return ApplyResult(applied=True, summary=summary)
