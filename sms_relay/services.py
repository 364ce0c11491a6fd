"""
Wiring of the service graph.

Routes depend on get_services(); tests replace it through
app.dependency_overrides with a graph built from fakes.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional

from sqlalchemy.orm import Session

from sms_relay.actions import ActionEvaluator
from sms_relay.approval import ApprovalService
from sms_relay.calendar_context import CalendarLookup
from sms_relay.config import Settings, settings
from sms_relay.context import ContextAggregator
from sms_relay.corrections import CorrectionLearner
from sms_relay.drafts import DraftGenerator
from sms_relay.llm import ModelClient
from sms_relay.memory import SemanticMemory
from sms_relay.menu_api import MenuApiClient
from sms_relay.pending_actions import PendingActionRegistry
from sms_relay.processor import MessageProcessor
from sms_relay.rate_limit import InMemoryRateLimiter
from sms_relay.reminders import ReminderScheduler, VapiClient
from sms_relay.storage import SessionLocal
from sms_relay.telegram import TelegramNotifier
from sms_relay.telephony import TwilioClient


@dataclass
class Services:
    settings: Settings
    session_factory: Callable[[], Session]
    telephony: TwilioClient
    notifier: TelegramNotifier
    memory: SemanticMemory
    menu_api: MenuApiClient
    model: ModelClient
    pending_actions: PendingActionRegistry
    learner: CorrectionLearner
    evaluator: ActionEvaluator
    approval: ApprovalService
    processor: MessageProcessor
    reminders: ReminderScheduler
    search_limiter: InMemoryRateLimiter
    simulate_limiter: InMemoryRateLimiter


def build_services(
    config: Settings,
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    telephony: Optional[TwilioClient] = None,
    notifier: Optional[TelegramNotifier] = None,
    memory: Optional[SemanticMemory] = None,
    menu_api: Optional[MenuApiClient] = None,
    model: Optional[ModelClient] = None,
    calendar: Optional[CalendarLookup] = None,
    vapi: Optional[VapiClient] = None,
) -> Services:
    """Build the full graph; any collaborator passed in replaces the configured one."""
    timeout = config.EXTERNAL_CALL_TIMEOUT_SECONDS
    base_url = config.PUBLIC_BASE_URL.rstrip("/")

    telephony = telephony or TwilioClient(
        account_sid=config.TWILIO_ACCOUNT_SID,
        auth_token=config.TWILIO_AUTH_TOKEN,
        from_number=config.TWILIO_PHONE_NUMBER,
        status_callback_url=f"{base_url}/status",
        api_base_url=config.TWILIO_API_BASE_URL,
        timeout=timeout,
    )
    notifier = notifier or TelegramNotifier(
        bot_token=config.TELEGRAM_BOT_TOKEN,
        chat_id=config.TELEGRAM_CHAT_ID,
        public_base_url=base_url,
        api_base_url=config.TELEGRAM_API_BASE_URL,
        timeout=timeout,
    )
    memory = memory or SemanticMemory(
        session_factory=session_factory,
        ollama_url=config.OLLAMA_URL,
        embed_model=config.OLLAMA_EMBED_MODEL,
        threshold=config.MEMORY_SIMILARITY_THRESHOLD,
    )
    menu_api = menu_api or MenuApiClient(
        base_url=config.MENU_API_BASE_URL,
        secret=config.MENU_API_SECRET,
        timeout=timeout,
    )
    model = model or ModelClient(
        api_key=config.ANTHROPIC_API_KEY,
        model=config.ANTHROPIC_MODEL,
        max_tokens=config.DRAFT_MAX_TOKENS,
    )
    calendar = calendar or CalendarLookup(
        api_url=config.CALENDAR_API_URL,
        api_key=config.CALENDAR_API_KEY,
        calendar_ids=config.calendar_ids,
        timezone=config.CALENDAR_TIMEZONE,
        timeout=timeout,
    )
    vapi = vapi or VapiClient(
        api_key=config.VAPI_API_KEY,
        assistant_id=config.VAPI_ASSISTANT_ID,
        phone_number_id=config.VAPI_PHONE_NUMBER_ID,
        owner_number=config.OWNER_PHONE_NUMBER,
        api_base_url=config.VAPI_API_BASE_URL,
        timeout=timeout,
    )

    pending_actions = PendingActionRegistry(ttl_seconds=config.PENDING_ACTION_TTL_SECONDS)
    learner = CorrectionLearner(session_factory=session_factory, memory=memory, model=model)
    evaluator = ActionEvaluator(menu_api)
    approval = ApprovalService(
        session_factory=session_factory,
        telephony=telephony,
        notifier=notifier,
        evaluator=evaluator,
        menu_api=menu_api,
        pending_actions=pending_actions,
        learner=learner,
        from_number=config.TWILIO_PHONE_NUMBER,
    )
    aggregator = ContextAggregator(
        memory=memory,
        calendar=calendar,
        session_factory=session_factory,
        rules_lookup=learner.relevant_rules,
        business_fallback=config.BUSINESS_FALLBACK_CONTEXT,
        timeout=timeout,
    )
    processor = MessageProcessor(
        session_factory=session_factory,
        aggregator=aggregator,
        evaluator=evaluator,
        drafts=DraftGenerator(model),
        pending_actions=pending_actions,
        notifier=notifier,
        approval=approval,
        menu_api=menu_api,
    )
    reminders = ReminderScheduler(
        session_factory=session_factory,
        vapi=vapi,
        notifier=notifier,
        interval_seconds=config.REMINDER_CHECK_INTERVAL_SECONDS,
    )

    return Services(
        settings=config,
        session_factory=session_factory,
        telephony=telephony,
        notifier=notifier,
        memory=memory,
        menu_api=menu_api,
        model=model,
        pending_actions=pending_actions,
        learner=learner,
        evaluator=evaluator,
        approval=approval,
        processor=processor,
        reminders=reminders,
        search_limiter=InMemoryRateLimiter(config.SEARCH_RATE_LIMIT, config.RATE_LIMIT_WINDOW_SECONDS),
        simulate_limiter=InMemoryRateLimiter(config.SIMULATE_RATE_LIMIT, config.RATE_LIMIT_WINDOW_SECONDS),
    )


@lru_cache()
def get_services() -> Services:
    return build_services(settings)
