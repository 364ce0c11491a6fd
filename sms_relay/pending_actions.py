"""
Deferred side-effecting actions awaiting approval of their outbound message.

An entry is written once when the draft is stored, consumed at most once
when the draft is approved, and silently expires after the TTL. Expired
entries read as absent and are purged lazily on read.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 6 * 60 * 60


class ActionType(str, enum.Enum):
    NONE = "none"
    UPDATE_MENU = "update_menu"
    ADD_MENU = "add_menu"
    REMOVE_MENU = "remove_menu"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ActionType":
        try:
            return cls(value)
        except ValueError:
            return cls.NONE

    @property
    def is_menu_change(self) -> bool:
        return self in (ActionType.UPDATE_MENU, ActionType.ADD_MENU, ActionType.REMOVE_MENU)


@dataclass
class PendingAction:
    type: ActionType
    payload: dict[str, Any]
    summary: str
    created_at: float = field(default_factory=time.monotonic)


class PendingActionRegistry:
    """In-memory, TTL-bound map of outbound message id -> PendingAction."""

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[int, PendingAction] = {}
        self._lock = Lock()

    def set(self, message_id: int, action_type: ActionType, payload: dict[str, Any], summary: str) -> PendingAction:
        entry = PendingAction(type=action_type, payload=dict(payload), summary=summary, created_at=self._clock())
        with self._lock:
            self._entries[message_id] = entry
        logger.info(f"Pending action registered: message_id={message_id}, type={action_type.value}")
        return entry

    def get(self, message_id: int) -> Optional[PendingAction]:
        with self._lock:
            entry = self._entries.get(message_id)
            if entry is None:
                return None
            if self._clock() - entry.created_at > self._ttl:
                del self._entries[message_id]
                logger.info(f"Pending action expired: message_id={message_id}")
                return None
            return entry

    def clear(self, message_id: int) -> None:
        with self._lock:
            self._entries.pop(message_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
