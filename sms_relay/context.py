"""
Context aggregation for draft generation.

All lookups run concurrently and are isolated from each other: a lookup
that raises or exceeds its timeout contributes an empty value, is logged
and counted, and never affects the other lookups.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.orm import Session

from sms_relay import storage
from sms_relay.calendar_context import CalendarLookup
from sms_relay.memory import SemanticMemory
from sms_relay.metrics import record_lookup_failure

logger = logging.getLogger(__name__)

BUSINESS_QUERY = "pricing services packages cocktails events workshops syrups bar open bar mixologist"


@dataclass
class HistoryTurn:
    direction: str
    body: str


@dataclass
class ContextBundle:
    business_context: str = ""
    client_context: Optional[str] = None
    calendar_context: Optional[str] = None
    history: list[HistoryTurn] = field(default_factory=list)
    correction_rules: list[str] = field(default_factory=list)
    failed_lookups: list[str] = field(default_factory=list)


class ContextAggregator:
    def __init__(
        self,
        *,
        memory: SemanticMemory,
        calendar: CalendarLookup,
        session_factory: Callable[[], Session],
        rules_lookup: Callable[[str], Awaitable[list[str]]],
        business_fallback: str,
        history_limit: int = 10,
        timeout: float = 15.0,
    ) -> None:
        self._memory = memory
        self._calendar = calendar
        self._session_factory = session_factory
        self._rules_lookup = rules_lookup
        self._business_fallback = business_fallback
        self._history_limit = history_limit
        self._timeout = timeout

    async def _client_context(self, text: str, phone: str) -> Optional[str]:
        hits = await self._memory.search(text, scope=f"phone:{phone}", limit=5)
        if not hits:
            return None
        logger.info(f"Found client context: count={len(hits)}")
        return "\n".join(f"- {hit.content}" for hit in hits)

    async def _business_context(self) -> str:
        hits = await self._memory.search(BUSINESS_QUERY, limit=15)
        if not hits:
            return self._business_fallback
        return "\n".join(hit.content for hit in hits)

    def _load_history(self, conversation_id: int) -> list[HistoryTurn]:
        with self._session_factory() as db:
            rows = storage.get_conversation_history(db, conversation_id, limit=self._history_limit)
            return [HistoryTurn(direction=row.direction, body=row.body or "") for row in rows]

    async def _history(self, conversation_id: int) -> list[HistoryTurn]:
        return await asyncio.to_thread(self._load_history, conversation_id)

    async def _guarded(self, name: str, awaitable: Awaitable[Any], default: Any, failed: list[str]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Context lookup timed out: lookup={name}")
        except Exception as exc:
            logger.warning(f"Context lookup failed: lookup={name}, error={exc}")
        record_lookup_failure(name)
        failed.append(name)
        return default

    async def gather(self, text: str, phone: str, conversation_id: int) -> ContextBundle:
        """Run every lookup concurrently and wait for all of them to settle."""
        failed: list[str] = []
        client_context, business_context, calendar_context, history, rules = await asyncio.gather(
            self._guarded("client_memory", self._client_context(text, phone), None, failed),
            self._guarded("business_facts", self._business_context(), self._business_fallback, failed),
            self._guarded("calendar", self._calendar.get_context(text), None, failed),
            self._guarded("history", self._history(conversation_id), [], failed),
            self._guarded("correction_rules", self._rules_lookup(text), [], failed),
        )
        return ContextBundle(
            business_context=business_context,
            client_context=client_context,
            calendar_context=calendar_context,
            history=history,
            correction_rules=rules,
            failed_lookups=failed,
        )
