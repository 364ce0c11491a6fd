"""
Tests for correction learning: rule extraction, promotion into semantic
memory, retrieval for drafting and reconciliation of unpromoted rules.
"""

import asyncio

from sms_relay import corrections, storage
from sms_relay.corrections import CorrectionLearner
from sms_relay.models import CorrectionRecord
from sms_relay.storage import SessionLocal

from conftest import FakeMemory, FakeModel

RULE_REPLY = 'Sure: {"rule": "Always mention the $100 deposit", "category": "pricing"}'


def make_learner(memory=None, model=None):
    return CorrectionLearner(session_factory=SessionLocal, memory=memory or FakeMemory(), model=model or FakeModel())


def record_and_drain(learner, **kwargs):
    async def _run():
        correction_id = await learner.record(**kwargs)
        await learner.drain()
        return correction_id
    return asyncio.run(_run())


def load(correction_id):
    with SessionLocal() as db:
        return db.get(CorrectionRecord, correction_id)


def seed_rule(rule, promoted=False, category="tone"):
    with SessionLocal() as db:
        record = storage.create_correction(db, action="edit", original_draft="draft", corrected_text="fixed")
        storage.set_correction_rule(db, record.id, rule, category)
        if promoted:
            storage.mark_correction_promoted(db, record.id)
        return record.id


class TestParsing:
    def test_json_inside_prose(self):
        assert corrections.parse_rule_response(RULE_REPLY) == ("Always mention the $100 deposit", "pricing")

    def test_unknown_category_becomes_other(self):
        assert corrections.parse_rule_response('{"rule": "Be brief", "category": "style"}') == ("Be brief", "other")

    def test_missing_rule(self):
        assert corrections.parse_rule_response('{"category": "tone"}') is None
        assert corrections.parse_rule_response("no json here") is None

    def test_memory_format_round_trips(self):
        content = corrections.format_rule_memory("Be brief", "tone")

        assert content == "[DRAFT CORRECTION RULE] [tone] Be brief"
        assert corrections.strip_rule_memory(content) == "Be brief"

    def test_reject_prompt_has_no_corrected_text(self):
        prompt = corrections.build_extraction_prompt("reject", "Bad draft", None, "Client asked about prices")

        assert "REJECTED" in prompt
        assert "<corrected_text>" not in prompt
        assert "<context>Client asked about prices</context>" in prompt


class TestLearning:
    def test_edit_extracts_and_promotes_rule(self):
        memory = FakeMemory()
        model = FakeModel()
        model.reply = RULE_REPLY
        learner = make_learner(memory, model)

        correction_id = record_and_drain(
            learner,
            action="edit",
            original_draft="Our packages vary.",
            corrected_text="Packages start at $500 plus a $100 deposit.",
            incoming_context="How much?",
            incoming_from="+15145551234",
            source_message_id=12,
        )

        record = load(correction_id)
        assert record.correction_rule == "Always mention the $100 deposit"
        assert record.rule_category == "pricing"
        assert record.promoted is True
        assert memory.writes == [
            {
                "content": "[DRAFT CORRECTION RULE] [pricing] Always mention the $100 deposit",
                "category": "correction_rule",
                "importance": 7,
                "source": "sms_correction",
            }
        ]
        assert "<corrected_text>Packages start at $500 plus a $100 deposit.</corrected_text>" in (
            model.calls[0]["messages"][0]["content"]
        )

    def test_memory_failure_leaves_rule_unpromoted(self):
        memory = FakeMemory()
        memory.write_ok = False
        model = FakeModel()
        model.reply = RULE_REPLY

        correction_id = record_and_drain(make_learner(memory, model), action="reject", original_draft="Bad draft")

        record = load(correction_id)
        assert record.correction_rule == "Always mention the $100 deposit"
        assert record.promoted is False

    def test_model_failure_keeps_record(self):
        model = FakeModel()
        model.error = "Connection error"

        correction_id = record_and_drain(make_learner(model=model), action="reject", original_draft="Bad draft")

        record = load(correction_id)
        assert record.action == "reject"
        assert record.correction_rule is None


class TestRuleRetrieval:
    def test_memory_rules_first(self):
        memory = FakeMemory()
        memory.hits = ["[DRAFT CORRECTION RULE] [tone] Sign off as Max", "Client likes gin"]
        seed_rule("Keyword rule about weddings")

        rules = asyncio.run(make_learner(memory).relevant_rules("Do you do weddings?"))

        assert rules == ["Sign off as Max"]

    def test_keyword_rules_when_memory_empty(self):
        seed_rule("Quote weddings per guest")
        seed_rule("Never use emojis")

        rules = asyncio.run(make_learner().relevant_rules("Do you do weddings?"))

        assert rules == ["Quote weddings per guest"]

    def test_recent_rules_as_last_resort(self):
        for i in range(5):
            seed_rule(f"Rule {i}")

        rules = asyncio.run(make_learner().relevant_rules("zzz"))

        assert rules == ["Rule 4", "Rule 3", "Rule 2"]


class TestReconcile:
    def test_promotes_at_most_one_batch_oldest_first(self):
        ids = [seed_rule(f"Rule {i}") for i in range(12)]
        seed_rule("Already promoted", promoted=True)
        memory = FakeMemory()

        result = asyncio.run(make_learner(memory).reconcile_unpromoted())

        assert result.promoted == 10
        assert result.failed == 0
        assert [write["content"] for write in memory.writes][0] == "[DRAFT CORRECTION RULE] [tone] Rule 0"
        assert [load(i).promoted for i in ids] == [True] * 10 + [False] * 2

    def test_failed_promotions_counted(self):
        seed_rule("Rule A")
        seed_rule("Rule B")
        memory = FakeMemory()
        memory.write_ok = False

        result = asyncio.run(make_learner(memory).reconcile_unpromoted())

        assert (result.promoted, result.failed) == (0, 2)

    def test_nothing_to_reconcile(self):
        result = asyncio.run(make_learner().reconcile_unpromoted())

        assert (result.promoted, result.failed) == (0, 0)
