"""
Tests for the inbound SMS pipeline.

Tests cover:
- First-contact template drafts
- Menu change evaluation and pending action registration
- Deduplication by provider message id
- Auto-approval when the reviewer cannot be notified
- Model drafts for follow-ups and the canned fallback
- Isolation of failing context lookups
"""

import asyncio

from sms_relay.menu_api import MenuApiResult
from sms_relay.models import Message
from sms_relay.pending_actions import ActionType
from sms_relay.schemas import InboundSms
from sms_relay.storage import SessionLocal

PHONE = "+15145551234"


def inbound(body, sid="SM1", sender=PHONE):
    return InboundSms(message_sid=sid, from_number=sender, to_number="+15145550100", body=body)


def process(services, message, send_approval=True):
    return asyncio.run(services.processor.process(message, send_approval=send_approval))


def ready_evaluation():
    return MenuApiResult(
        ok=True,
        status=200,
        data={
            "status": "ready",
            "action": "update_menu",
            "eventId": "evt_42",
            "oldCocktail": "margarita",
            "oldCocktailDisplay": "Margarita",
            "newCocktail": "paloma",
            "newCocktailDisplay": "Paloma",
            "summary": "Swap Margarita for Paloma",
        },
    )


class TestFirstContact:
    def test_wedding_inquiry_asks_only_missing_questions(self, services, fakes):
        result = process(
            services,
            inbound("Hi, this is Sarah. We're planning a wedding on June 15 for 80 people"),
        )

        assert result.success is True
        assert result.draft_mode == "template"
        draft = result.draft_reply
        assert draft.startswith("Hi Sarah!")
        assert "Where will it take place?" in draft
        assert "Do you need us to bring a bar?" in draft
        assert "Do you need glassware?" in draft
        assert "Will you supply the alcohol, or should we?" in draft
        assert "What date is the event?" not in draft
        assert "How many guests" not in draft
        assert fakes["model"].calls == []

    def test_french_inquiry_gets_french_template(self, services):
        result = process(services, inbound("Bonjour, je voudrais un bar à cocktails pour notre mariage"))

        assert result.draft_reply.startswith("Bonjour!")
        assert "Quelle est la date de l'événement?" in result.draft_reply

    def test_reviewer_notified_with_draft(self, services, fakes):
        result = process(services, inbound("Do you do cocktail workshops?"))

        assert result.approval_sent is True
        request = fakes["notifier"].approval_requests[0]
        assert request["message_id"] == result.draft_id
        assert request["phone_number"] == PHONE
        assert request["draft_reply"] == result.draft_reply

    def test_inbound_mirrored_downstream(self, services, fakes):
        process(services, inbound("Do you sell syrups?"))

        mirrored = fakes["menu_api"].mirrored[0]
        assert mirrored["direction"] == "inbound"
        assert mirrored["providerMessageId"] == "SM1"


class TestMenuChanges:
    def test_ready_change_registers_pending_action(self, services, fakes):
        process(services, inbound("Hi, we booked you for June 15", sid="SM0"))
        fakes["menu_api"].evaluation = ready_evaluation()
        fakes["model"].reply = "Done! We'll swap the Margarita for a Paloma."

        result = process(services, inbound("Can we swap the margarita for a paloma?"))

        assert result.action == "update_menu"
        assert result.action_status == "ready"
        assert result.draft_mode == "model"
        assert "Action available: Swap Margarita for Paloma" in fakes["model"].calls[0]["system"]

        pending = services.pending_actions.get(result.draft_id)
        assert pending.type == ActionType.UPDATE_MENU
        assert pending.payload["oldCocktail"] == "Margarita"
        assert pending.payload["newCocktail"] == "Paloma"
        assert pending.payload["eventId"] == "evt_42"

        with SessionLocal() as db:
            assert db.get(Message, result.draft_id).action_summary == "Swap Margarita for Paloma"
        assert fakes["notifier"].approval_requests[-1]["action_summary"] == "Swap Margarita for Paloma"

    def test_ambiguous_change_registers_nothing(self, services, fakes):
        process(services, inbound("Hi, we booked you for June 15", sid="SM0"))
        fakes["menu_api"].evaluation = MenuApiResult(
            ok=True,
            status=200,
            data={
                "status": "ambiguous",
                "options": [{"clientName": "Sarah", "eventDate": "2026-06-15"}, {"clientName": "Sarah B"}],
            },
        )

        result = process(services, inbound("Can we swap the margarita for a paloma?"))

        assert result.action is None
        assert result.action_status == "ambiguous"
        assert len(services.pending_actions) == 0
        assert "Ask which one: Sarah (2026-06-15), Sarah B" in fakes["model"].calls[0]["system"]

    def test_first_contact_with_unmatched_change_keeps_template(self, services, fakes):
        fakes["menu_api"].evaluation = MenuApiResult(ok=True, status=200, data={"status": "not_found"})

        result = process(services, inbound("Hi, this is Sarah, need a quote for June 15 for 80 people"))

        assert result.action_status == "not_found"
        assert result.draft_mode == "template"
        assert result.draft_reply.startswith("Hi Sarah!")
        assert fakes["model"].calls == []

    def test_first_contact_ready_change_noted_in_template(self, services, fakes):
        fakes["menu_api"].evaluation = ready_evaluation()

        result = process(services, inbound("Can we swap the margarita for a paloma?"))

        assert result.draft_mode == "template"
        assert result.draft_reply.endswith("I've noted your request: Swap Margarita for Paloma. I'll confirm once it's done.")
        assert fakes["model"].calls == []
        assert services.pending_actions.get(result.draft_id).type == ActionType.UPDATE_MENU

    def test_evaluation_failure_reads_as_no_action(self, services, fakes):
        fakes["menu_api"].evaluation = MenuApiResult(ok=False, status=503, error="Service unavailable")

        result = process(services, inbound("Can we swap the margarita for a paloma?"))

        assert result.success is True
        assert result.action_status == "no_action"
        assert len(services.pending_actions) == 0


class TestDeduplication:
    def test_same_sid_processed_once(self, services, fakes):
        first = process(services, inbound("Hello there", sid="SMdup"))
        second = process(services, inbound("Hello there", sid="SMdup"))

        assert first.duplicate is False
        assert second.duplicate is True
        assert second.draft_id is None
        assert len(fakes["notifier"].approval_requests) == 1

    def test_messages_without_sid_are_not_deduplicated(self, services):
        first = process(services, inbound("Hello there", sid=None))
        second = process(services, inbound("Hello there", sid=None))

        assert first.draft_id != second.draft_id


class TestApprovalRouting:
    def test_notification_failure_auto_approves(self, services, fakes):
        fakes["notifier"].fail_approvals = True

        result = process(services, inbound("Do you do cocktail workshops?"))

        assert result.auto_approved is True
        assert result.approval_sent is False
        assert fakes["telephony"].sent == [(PHONE, result.draft_reply)]
        with SessionLocal() as db:
            assert db.get(Message, result.draft_id).status == "sent"

    def test_without_approval_draft_stays_pending(self, services, fakes):
        result = process(services, inbound("Do you do cocktail workshops?"), send_approval=False)

        assert result.approval_sent is False
        assert result.auto_approved is False
        assert fakes["notifier"].approval_requests == []
        assert fakes["telephony"].sent == []
        with SessionLocal() as db:
            assert db.get(Message, result.draft_id).status == "pending_approval"


class TestFollowUps:
    def test_follow_up_uses_model_with_history(self, services, fakes):
        process(services, inbound("Do you do weddings?", sid="SM1"))
        result = process(services, inbound("Great, what about June 15?", sid="SM2"))

        assert result.draft_mode == "model"
        assert result.draft_reply == "Sounds great, see you then!"
        prompt = fakes["model"].calls[0]["messages"][0]["content"]
        assert "Previous messages:\nClient: Do you do weddings?" in prompt
        assert prompt.count("Great, what about June 15?") == 1

    def test_model_failure_uses_fallback(self, services, fakes):
        fakes["model"].error = "Connection error"
        process(services, inbound("Do you do weddings?", sid="SM1"))

        result = process(services, inbound("Are you available that weekend?", sid="SM2"))

        assert result.draft_mode == "fallback"
        assert result.draft_reply == "Hi! Yes, we'd love to help with your event. What date are you looking at?"

    def test_failing_lookups_do_not_block_draft(self, services, fakes):
        fakes["memory"].search_error = RuntimeError("memory down")
        fakes["calendar"].error = RuntimeError("calendar down")
        process(services, inbound("Do you do weddings?", sid="SM1"))

        result = process(services, inbound("Great, what about June 15?", sid="SM2"))

        assert result.success is True
        assert result.draft_mode == "model"
        assert "MTL Craft Cocktails" in fakes["model"].calls[0]["system"]


def test_unexpected_error_reported(services, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("draft store exploded")

    monkeypatch.setattr(services.processor._drafts, "generate", broken)

    result = process(services, inbound("Do you do weddings?"))

    assert result.success is False
    assert result.error == "draft store exploded"
