"""
Calendar availability for dates mentioned in an inbound message.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import date, datetime, time, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo

import httpx

logger = logging.getLogger(__name__)

MONTH_NAMES = (
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
)

_MONTH_DAY = re.compile(r"\b(" + "|".join(MONTH_NAMES) + r")\s+(\d{1,2})(?:st|nd|rd|th)?\b", re.IGNORECASE)
_SLASH_DATE = re.compile(r"\b(\d{1,2})/(\d{1,2})\b")

_LEAD_WORDS = ("lead", "pending")
_BOOKING_WORDS = ("wedding", "event", "party", "booking")


def extract_date_reference(text: str, today: Optional[date] = None) -> Optional[date]:
    """
    Find the first date expression in text.

    Recognises "June 15"/"June 15th", "6/15", today, tomorrow, this weekend,
    next saturday and next sunday. Month-day dates that already passed this
    year resolve to next year.
    """
    if not text:
        return None
    today = today or date.today()
    lower = text.lower()

    match = _MONTH_DAY.search(text)
    if match:
        return _resolve(today, MONTH_NAMES.index(match.group(1).lower()) + 1, int(match.group(2)))

    match = _SLASH_DATE.search(text)
    if match:
        return _resolve(today, int(match.group(1)), int(match.group(2)))

    if "today" in lower:
        return today
    if "tomorrow" in lower:
        return today + timedelta(days=1)
    if "this weekend" in lower or "next saturday" in lower:
        return today + timedelta(days=(5 - today.weekday()) % 7 or 7)
    if "next sunday" in lower:
        return today + timedelta(days=(6 - today.weekday()) % 7 or 7)
    return None


def _resolve(today: date, month: int, day: int) -> Optional[date]:
    try:
        candidate = date(today.year, month, day)
    except ValueError:
        return None
    if candidate < today:
        try:
            candidate = date(today.year + 1, month, day)
        except ValueError:
            return None
    return candidate


def format_date_for_display(day: date) -> str:
    return f"{day:%A}, {day:%B} {day.day}"


def _parse_when(value: Optional[dict[str, Any]]) -> Optional[datetime]:
    if not value:
        return None
    raw = value.get("dateTime") or value.get("date")
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


def _format_clock(moment: datetime) -> str:
    return moment.strftime("%I:%M %p").lstrip("0")


def format_event_time(event: dict[str, Any]) -> Optional[str]:
    start = _parse_when(event.get("start"))
    if start is None or "dateTime" not in (event.get("start") or {}):
        return None
    end = _parse_when(event.get("end"))
    if end is None:
        return _format_clock(start)
    return f"{_format_clock(start)}-{_format_clock(end)}"


def merge_events(groups: list[list[dict[str, Any]]]) -> list[dict[str, Any]]:
    """Flatten per-calendar results, dropping duplicates by (title, start) and sorting by start."""
    seen = set()
    merged = []
    for events in groups:
        for event in events:
            start = event.get("start") or {}
            key = ((event.get("summary") or "").strip().lower(), start.get("dateTime") or start.get("date") or "")
            if key in seen:
                continue
            seen.add(key)
            merged.append(event)

    def _sort_key(event: dict[str, Any]) -> str:
        start = event.get("start") or {}
        return start.get("dateTime") or start.get("date") or ""

    return sorted(merged, key=_sort_key)


def format_calendar_context(day: date, events: list[dict[str, Any]]) -> str:
    bookings, leads, other = [], [], []
    for event in events:
        title = (event.get("summary") or "").lower()
        if any(word in title for word in _LEAD_WORDS):
            leads.append(event)
        elif any(word in title for word in _BOOKING_WORDS):
            bookings.append(event)
        else:
            other.append(event)

    lines = [f"{format_date_for_display(day)}:"]
    if leads:
        lines.append(f"- {len(leads)} lead{'s' if len(leads) > 1 else ''} (pending)")
    for booking in bookings:
        when = format_event_time(booking)
        lines.append(f"- Booking: {booking.get('summary')}" + (f" ({when})" if when else ""))
    if other and not bookings and not leads:
        lines.append(f"- {len(other)} other event{'s' if len(other) > 1 else ''}")
    if not events:
        lines.append("- No events scheduled")
    return "\n".join(lines)


class CalendarLookup:
    """Lists events through the calendar tool gateway for every configured calendar."""

    def __init__(
        self,
        *,
        api_url: str,
        api_key: str,
        calendar_ids: list[str],
        timezone: str = "America/Toronto",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._api_key = api_key
        self._calendar_ids = calendar_ids or ["primary"]
        self._tz = ZoneInfo(timezone)
        self._timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._api_url and self._api_key)

    async def _list_events(self, client: httpx.AsyncClient, calendar_id: str, day: date) -> list[dict[str, Any]]:
        start = datetime.combine(day, time.min, tzinfo=self._tz)
        end = datetime.combine(day, time.max, tzinfo=self._tz)
        res = await client.post(
            f"{self._api_url}/execute",
            headers={"Authorization": f"Bearer {self._api_key}"},
            json={
                "tool": "GOOGLE_CALENDAR_LIST_EVENTS",
                "params": {
                    "calendar_id": calendar_id,
                    "time_min": start.isoformat(),
                    "time_max": end.isoformat(),
                    "max_results": 20,
                },
            },
        )
        res.raise_for_status()
        return res.json().get("events") or []

    async def events_for_date(self, day: date) -> list[dict[str, Any]]:
        """
        Query every calendar concurrently. A calendar that fails is logged
        and contributes nothing; the others are still merged.
        """
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            results = await asyncio.gather(
                *(self._list_events(client, calendar_id, day) for calendar_id in self._calendar_ids),
                return_exceptions=True,
            )

        groups = []
        for calendar_id, result in zip(self._calendar_ids, results):
            if isinstance(result, BaseException):
                logger.error(f"Calendar query failed: calendar={calendar_id}, error={result}")
                continue
            groups.append(result)
        return merge_events(groups)

    async def get_context(self, message_body: str, today: Optional[date] = None) -> Optional[str]:
        """Availability summary for the date mentioned in the message, or None."""
        day = extract_date_reference(message_body, today=today or datetime.now(self._tz).date())
        if day is None:
            return None
        if not self.configured:
            logger.warning("Calendar not configured, skipping calendar")
            return None

        try:
            events = await self.events_for_date(day)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(f"Failed to get calendar context: {exc}")
            return None

        logger.info(f"Got calendar context: date={day.isoformat()}, event_count={len(events)}")
        return format_calendar_context(day, events)
