"""
Tests for reminder scheduling and the /reminders endpoints.

Tests cover:
- Validation of message and time
- Exclusive claim of a due reminder
- Retry and the three-attempt cap
- API key enforcement, listing and cancellation
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from sms_relay import storage
from sms_relay.models import Reminder
from sms_relay.reminders import CallResult, ReminderScheduler, ReminderValidationError
from sms_relay.storage import SessionLocal

from conftest import FakeNotifier, FakeVapi

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def vapi():
    return FakeVapi()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def scheduler(vapi, notifier):
    return ReminderScheduler(session_factory=SessionLocal, vapi=vapi, notifier=notifier)


def due_reminder(message="Call the florist", retry_count=0):
    with SessionLocal() as db:
        reminder = storage.create_reminder(db, message, NOW - timedelta(minutes=5))
        if retry_count:
            storage.update_reminder(db, reminder.id, retry_count=retry_count)
        return reminder.id


def load(reminder_id):
    with SessionLocal() as db:
        return db.get(Reminder, reminder_id)


class TestCreate:
    def test_future_reminder_created(self, scheduler):
        with SessionLocal() as db:
            reminder = scheduler.create(db, "  Pick up limes  ", NOW + timedelta(hours=2), now=NOW)

        assert reminder.message == "Pick up limes"
        assert reminder.status == "pending"
        assert reminder.retry_count == 0

    def test_naive_time_treated_as_utc(self, scheduler):
        with SessionLocal() as db:
            reminder = scheduler.create(db, "Pick up limes", datetime(2026, 6, 1, 14, 0), now=NOW)

        assert reminder.scheduled_for.replace(tzinfo=None) == datetime(2026, 6, 1, 14, 0)

    @pytest.mark.parametrize(
        "message, offset",
        [
            ("", timedelta(hours=1)),
            ("   ", timedelta(hours=1)),
            ("x" * 501, timedelta(hours=1)),
            ("Pick up limes", timedelta(0)),
            ("Pick up limes", -timedelta(hours=1)),
        ],
    )
    def test_invalid_reminders_rejected(self, scheduler, message, offset):
        with SessionLocal() as db:
            with pytest.raises(ReminderValidationError):
                scheduler.create(db, message, NOW + offset, now=NOW)


class TestChecker:
    def test_due_reminder_called_once(self, scheduler, vapi, notifier):
        reminder_id = due_reminder()

        found = asyncio.run(scheduler.check_due(now=NOW))

        reminder = load(reminder_id)
        assert found == 1
        assert vapi.calls == ["Call the florist"]
        assert reminder.status == "completed"
        assert reminder.call_id == "call_1"
        assert reminder.completed_at is not None
        assert "Reminder call placed" in notifier.messages[0]

    def test_future_reminder_not_due(self, scheduler, vapi):
        with SessionLocal() as db:
            storage.create_reminder(db, "Later", NOW + timedelta(hours=1))

        assert asyncio.run(scheduler.check_due(now=NOW)) == 0
        assert vapi.calls == []

    def test_claim_is_exclusive(self, scheduler, vapi):
        reminder_id = due_reminder()

        async def _race():
            return await asyncio.gather(
                scheduler.process(reminder_id, "Call the florist", 0),
                scheduler.process(reminder_id, "Call the florist", 0),
            )

        results = asyncio.run(_race())

        assert sorted(results) == [False, True]
        assert len(vapi.calls) == 1

    def test_claimed_reminder_skipped(self, scheduler, vapi):
        reminder_id = due_reminder()
        with SessionLocal() as db:
            assert storage.claim_reminder(db, reminder_id) is True

        assert asyncio.run(scheduler.process(reminder_id, "Call the florist", 0)) is False
        assert vapi.calls == []

    def test_failed_call_returns_to_pending(self, scheduler, vapi):
        reminder_id = due_reminder()
        vapi.results = [CallResult(success=False, error="busy")]

        asyncio.run(scheduler.check_due(now=NOW))

        reminder = load(reminder_id)
        assert reminder.status == "pending"
        assert reminder.retry_count == 1

    def test_third_failure_marks_failed(self, scheduler, vapi, notifier):
        reminder_id = due_reminder(retry_count=2)
        vapi.results = [CallResult(success=False, error="busy")]

        asyncio.run(scheduler.check_due(now=NOW))

        reminder = load(reminder_id)
        assert reminder.status == "failed"
        assert reminder.retry_count == 3
        assert "failed after 3 attempts" in notifier.messages[0]

    def test_three_cycles_of_failures(self, scheduler, vapi):
        reminder_id = due_reminder()
        vapi.results = [CallResult(success=False, error="busy") for _ in range(5)]

        for _ in range(5):
            asyncio.run(scheduler.check_due(now=NOW))

        assert len(vapi.calls) == 3
        assert load(reminder_id).status == "failed"

    def test_unconfigured_vapi_skips_checks(self, scheduler, vapi):
        due_reminder()
        vapi.configured = False

        assert asyncio.run(scheduler.check_due(now=NOW)) == 0
        assert vapi.calls == []


class TestRemindersApi:
    def test_api_key_required(self, client):
        response = client.get("/reminders")

        assert response.status_code == 401

    def test_create_list_and_cancel(self, client, auth_headers):
        scheduled_for = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()

        created = client.post(
            "/reminders",
            json={"message": "Confirm the Saturday booking", "scheduled_for": scheduled_for},
            headers=auth_headers,
        )
        assert created.status_code == 201
        reminder_id = created.json()["id"]
        assert created.json()["status"] == "pending"

        listed = client.get("/reminders", headers=auth_headers)
        assert listed.json()["count"] == 1
        assert listed.json()["data"][0]["id"] == reminder_id

        cancelled = client.delete(f"/reminders/{reminder_id}", headers=auth_headers)
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

        assert client.get("/reminders", headers=auth_headers).json()["count"] == 0
        assert client.delete(f"/reminders/{reminder_id}", headers=auth_headers).status_code == 404

    def test_past_time_rejected(self, client, auth_headers):
        scheduled_for = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()

        response = client.post(
            "/reminders",
            json={"message": "Too late", "scheduled_for": scheduled_for},
            headers=auth_headers,
        )

        assert response.status_code == 400

    def test_empty_message_rejected(self, client, auth_headers):
        scheduled_for = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()

        response = client.post("/reminders", json={"message": "", "scheduled_for": scheduled_for}, headers=auth_headers)

        assert response.status_code == 422

    def test_invalid_id_format(self, client, auth_headers):
        response = client.delete("/reminders/not-a-uuid", headers=auth_headers)

        assert response.status_code == 400
