"""
Tests for draft generation: language detection, inquiry classification,
first-contact templates, prompts and the model fallback.
"""

import asyncio

import pytest

from sms_relay import drafts
from sms_relay.context import ContextBundle, HistoryTurn

from conftest import FakeModel


class TestLanguageAndCategory:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("Hi, do you do weddings?", "en"),
            ("Bonjour, est-ce que vous êtes disponibles?", "fr"),
            ("Merci pour la soumission", "fr"),
            ("Salut! On organise une fête", "fr"),
        ],
    )
    def test_detect_language(self, text, expected):
        assert drafts.detect_language(text) == expected

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("Do you offer cocktail workshops for team building?", "workshop"),
            ("I'd like to order some of your syrups", "syrups"),
            ("We want a mocktail bar, no alcohol", "mocktail"),
            ("Need a quote for a bartender at our party", "bar_service"),
            ("Of course, talk soon", "general"),
        ],
    )
    def test_classify_inquiry(self, text, expected):
        assert drafts.classify_inquiry(text) == expected


class TestFirstContactTemplates:
    def test_bar_service_skips_answered_questions(self):
        text = "Hi, this is Sarah. We're planning a wedding on June 15 for 80 people"

        remaining = drafts.remaining_questions("bar_service", text)

        assert remaining == ["location", "bar_rental", "glassware", "alcohol"]

    def test_location_detected(self):
        assert drafts.remaining_questions("workshop", "Workshop at our office for 12 people on Friday") == []

    def test_all_answered_reply(self):
        reply = drafts.first_contact_reply("Workshop at our office for 12 people on Friday", None, "workshop", "en")

        assert reply.startswith("Hi! Thanks for your interest in our cocktail workshops!")
        assert "We have everything we need to start." in reply

    def test_general_category_asks_open_question(self):
        reply = drafts.first_contact_reply("Hello", "Mike", "general", "en")

        assert reply == (
            "Hi Mike! Thanks for reaching out to MTL Craft Cocktails! "
            "How can we help? Tell me a bit about what you're planning."
        )

    def test_first_contact_counts_current_message(self):
        assert drafts.is_first_contact([HistoryTurn("inbound", "Hi")]) is True
        assert drafts.is_first_contact([HistoryTurn("inbound", "Hi"), HistoryTurn("outbound", "Hello!")]) is False


class TestPrompts:
    def test_system_prompt_sections(self):
        bundle = ContextBundle(
            business_context="Bar service in Montreal",
            client_context="- Prefers gin",
            calendar_context="Monday, June 15:\n- No events scheduled",
            correction_rules=["Always mention the deposit", "Sign off as Max"],
        )

        prompt = drafts.build_system_prompt("fr", bundle, "Action available: Swap")

        assert "RESPOND ENTIRELY IN FRENCH" in prompt
        assert "Client notes:\n- Prefers gin" in prompt
        assert "Calendar info:\nMonday, June 15" in prompt
        assert "Pending action:\nAction available: Swap" in prompt
        assert "1. Always mention the deposit\n2. Sign off as Max" in prompt

    def test_user_prompt_limits_history(self):
        history = [HistoryTurn("inbound" if i % 2 == 0 else "outbound", f"turn {i}") for i in range(8)]
        history.append(HistoryTurn("inbound", "latest"))

        prompt = drafts.build_user_prompt("latest", "Sarah", history)

        assert "turn 2" not in prompt
        assert "Client: turn 4" in prompt
        assert "Max: turn 7" in prompt
        assert prompt.count("latest") == 1
        assert prompt.endswith('New message from Sarah:\n"latest"\n\nWrite a friendly SMS reply:')

    def test_clean_draft_strips_quotes(self):
        assert drafts.clean_draft('  "See you Saturday!"  ') == "See you Saturday!"


class TestDraftGenerator:
    def follow_up_bundle(self):
        return ContextBundle(
            business_context="Bar service",
            history=[HistoryTurn("inbound", "Hi"), HistoryTurn("outbound", "Hello!"), HistoryTurn("inbound", "Price?")],
        )

    def test_model_draft(self):
        model = FakeModel()
        model.reply = '"Our packages start at $500."'

        result = asyncio.run(drafts.DraftGenerator(model).generate("Price?", None, self.follow_up_bundle()))

        assert result.mode == drafts.MODE_MODEL
        assert result.text == "Our packages start at $500."

    def test_fallback_on_model_error(self):
        model = FakeModel()
        model.error = "Rate limit exceeded"

        result = asyncio.run(drafts.DraftGenerator(model).generate("What's the price?", None, self.follow_up_bundle()))

        assert result.mode == drafts.MODE_FALLBACK
        assert result.text.startswith("Thanks for reaching out! Our packages vary by event size.")

    def test_french_fallback(self):
        assert drafts.fallback_reply("Quel est le prix?").startswith("Merci de nous contacter!")

    def test_quote_only_reply_uses_fallback(self):
        model = FakeModel()
        model.reply = '"'

        result = asyncio.run(drafts.DraftGenerator(model).generate("Is Saturday available?", None, self.follow_up_bundle()))

        assert result.mode == drafts.MODE_FALLBACK
        assert result.text == "Hi! Yes, we'd love to help with your event. What date are you looking at?"

    @pytest.mark.parametrize(
        "action_context",
        [
            "No matching event found. Ask which event this refers to.",
            "Need clarification: multiple events match. Ask which one: Sarah, Sarah B.",
        ],
    )
    def test_first_contact_stays_template_with_action_context(self, action_context):
        model = FakeModel()
        bundle = ContextBundle(history=[HistoryTurn("inbound", "Swap the margarita")])

        result = asyncio.run(drafts.DraftGenerator(model).generate("Swap the margarita", None, bundle, action_context))

        assert result.mode == drafts.MODE_TEMPLATE
        assert model.calls == []

    def test_first_contact_mentions_ready_change(self):
        model = FakeModel()
        bundle = ContextBundle(history=[HistoryTurn("inbound", "Echange la margarita svp")])

        result = asyncio.run(
            drafts.DraftGenerator(model).generate(
                "Echange la margarita svp",
                None,
                bundle,
                "Action available: Swap Margarita for Paloma.",
                action_summary="Swap Margarita for Paloma",
            )
        )

        assert result.mode == drafts.MODE_TEMPLATE
        assert result.text.endswith(
            "J'ai bien noté votre demande : Swap Margarita for Paloma. Je vous confirme dès que c'est fait."
        )
        assert model.calls == []


def test_month_day_date_counts_as_answered():
    assert drafts.mentions_date("on March 3rd") is True
    assert drafts.mentions_date("sometime soon") is False
