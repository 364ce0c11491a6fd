"""
Draft reply generation.

First contact in a conversation gets a deterministic template chosen by
inquiry category and language; follow-ups are written by the model with
the aggregated context, and fall back to canned keyword replies when the
model is unavailable.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from sms_relay.calendar_context import extract_date_reference
from sms_relay.context import ContextBundle, HistoryTurn
from sms_relay.llm import ModelClient, ModelError

logger = logging.getLogger(__name__)

MODE_TEMPLATE = "template"
MODE_MODEL = "model"
MODE_FALLBACK = "fallback"

_FRENCH = re.compile(
    r"[àâéèêëïîôùûüç]|\bbonjour\b|\bsalut\b|\bmerci\b|\bbonsoir\b|s'il vous|\bsvp\b|\boui\b|est-ce que"
    r"|je voudrais|nous cherchons|\bdisponible|événement|fête|mariage|réservation|\bprix\b|\btarif"
    r"|soirée|cocktails? pour"
)

# Checked in order; the first category whose pattern matches wins
INQUIRY_PATTERNS = (
    ("workshop", re.compile(r"\b(?:workshops?|ateliers?|masterclass|class(?:es)?|cours|team building)\b")),
    ("syrups", re.compile(r"\b(?:syrups?|sirops?)\b")),
    ("mocktail", re.compile(r"\b(?:mocktails?|non[- ]alcoholic|alcohol[- ]free|sans alcool)\b")),
    (
        "bar_service",
        re.compile(
            r"\b(?:quotes?|soumission|bars?|bartend\w*|events?|événements?|weddings?|mariages?"
            r"|party|parties|fêtes?|cocktails?|people|guests|personnes|invités)\b"
        ),
    ),
)
INQUIRY_CATEGORIES = tuple(name for name, _ in INQUIRY_PATTERNS) + ("general",)

_GUEST_COUNT = re.compile(r"\b\d+\s*(?:people|guests|persons|pax|personnes|invités)", re.IGNORECASE)
_DATE_WORDS = re.compile(
    r"\b(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday|weekend"
    r"|lundi|mardi|mercredi|jeudi|vendredi|samedi|dimanche"
    r"|janvier|février|mars|avril|mai|juin|juillet|août|septembre|octobre|novembre|décembre)\b",
    re.IGNORECASE,
)
_LOCATION_WORDS = re.compile(
    r"\b(?:venue|hall|address|downtown|montreal|montréal|laval|longueuil|chez|salle|restaurant"
    r"|backyard|home|house|loft|office|chalet|terrasse|rooftop|adresse)\b",
    re.IGNORECASE,
)

_QUESTIONS = {
    "date": {"en": "What date is the event?", "fr": "Quelle est la date de l'événement?"},
    "guests": {"en": "How many guests are you expecting?", "fr": "Combien d'invités attendez-vous?"},
    "location": {"en": "Where will it take place?", "fr": "Où aura lieu l'événement?"},
    "bar_rental": {
        "en": "Do you need us to bring a bar?",
        "fr": "Avez-vous besoin qu'on apporte un bar?",
    },
    "glassware": {"en": "Do you need glassware?", "fr": "Avez-vous besoin de verrerie?"},
    "alcohol": {
        "en": "Will you supply the alcohol, or should we?",
        "fr": "Fournissez-vous l'alcool, ou souhaitez-vous qu'on s'en occupe?",
    },
    "flavours": {"en": "Which flavours interest you?", "fr": "Quelles saveurs vous intéressent?"},
    "quantity": {"en": "How many bottles do you need?", "fr": "Combien de bouteilles vous faut-il?"},
}

_CATEGORY_QUESTIONS = {
    "bar_service": ("date", "guests", "location", "bar_rental", "glassware", "alcohol"),
    "workshop": ("date", "guests", "location"),
    "mocktail": ("date", "guests", "location"),
    "syrups": ("flavours", "quantity"),
    "general": (),
}

_INTROS = {
    "bar_service": {
        "en": "Thanks for reaching out to MTL Craft Cocktails! We'd love to bartend your event.",
        "fr": "Merci de contacter MTL Craft Cocktails! On serait ravis de s'occuper du bar pour votre événement.",
    },
    "workshop": {
        "en": "Thanks for your interest in our cocktail workshops!",
        "fr": "Merci de votre intérêt pour nos ateliers cocktails!",
    },
    "mocktail": {
        "en": "Thanks for reaching out! We'd love to set up a mocktail bar for you.",
        "fr": "Merci de nous contacter! On serait ravis de monter un bar à mocktails pour vous.",
    },
    "syrups": {
        "en": "Thanks for your interest in our handmade syrups!",
        "fr": "Merci de votre intérêt pour nos sirops maison!",
    },
    "general": {
        "en": "Thanks for reaching out to MTL Craft Cocktails!",
        "fr": "Merci de contacter MTL Craft Cocktails!",
    },
}

_ASK = {"en": "To prepare your quote, could you tell me:", "fr": "Pour préparer votre soumission, pourriez-vous me dire:"}
_NO_QUESTIONS = {
    "en": "How can we help? Tell me a bit about what you're planning.",
    "fr": "Comment pouvons-nous vous aider? Parlez-moi un peu de votre projet.",
}
_ALL_ANSWERED = {
    "en": "We have everything we need to start. We'll follow up with details shortly.",
    "fr": "Nous avons tout ce qu'il faut pour commencer. On vous revient sous peu.",
}
_ACTION_NOTE = {
    "en": "I've noted your request: {summary}. I'll confirm once it's done.",
    "fr": "J'ai bien noté votre demande : {summary}. Je vous confirme dès que c'est fait.",
}


@dataclass
class DraftResult:
    text: str
    mode: str
    language: str
    category: str


def detect_language(text: str) -> str:
    return "fr" if _FRENCH.search((text or "").lower()) else "en"


def classify_inquiry(text: str) -> str:
    lower = (text or "").lower()
    for category, pattern in INQUIRY_PATTERNS:
        if pattern.search(lower):
            return category
    return "general"


def is_first_contact(history: list[HistoryTurn]) -> bool:
    """The inbound message being answered is already part of history."""
    return len(history) <= 1


def mentions_date(text: str) -> bool:
    return extract_date_reference(text) is not None or bool(_DATE_WORDS.search(text or ""))


def mentions_guest_count(text: str) -> bool:
    return bool(_GUEST_COUNT.search(text or ""))


def mentions_location(text: str) -> bool:
    return bool(_LOCATION_WORDS.search(text or ""))


def remaining_questions(category: str, text: str) -> list[str]:
    """Template question keys for a category, minus those the message already answers."""
    answered = set()
    if mentions_date(text):
        answered.add("date")
    if mentions_guest_count(text):
        answered.add("guests")
    if mentions_location(text):
        answered.add("location")
    return [key for key in _CATEGORY_QUESTIONS.get(category, ()) if key not in answered]


def first_contact_reply(
    text: str,
    client_name: Optional[str],
    category: str,
    language: str,
    action_summary: Optional[str] = None,
) -> str:
    greeting = ("Bonjour" if language == "fr" else "Hi") + (f" {client_name}!" if client_name else "!")
    intro = _INTROS.get(category, _INTROS["general"])[language]
    questions = remaining_questions(category, text)

    if not _CATEGORY_QUESTIONS.get(category):
        reply = f"{greeting} {intro} {_NO_QUESTIONS[language]}"
    elif not questions:
        reply = f"{greeting} {intro} {_ALL_ANSWERED[language]}"
    else:
        lines = [f"{greeting} {intro} {_ASK[language]}"]
        lines.extend(f"- {_QUESTIONS[key][language]}" for key in questions)
        reply = "\n".join(lines)

    if action_summary:
        reply += "\n" + _ACTION_NOTE[language].format(summary=action_summary)
    return reply


def fallback_reply(text: str) -> str:
    """Canned keyword reply used when the model cannot be reached."""
    lower = (text or "").lower()

    if detect_language(text) == "fr":
        if "prix" in lower or "coût" in lower or "tarif" in lower:
            return "Merci de nous contacter! Nos forfaits varient selon l'événement. Pouvez-vous m'en dire plus?"
        if "disponible" in lower or "réserv" in lower:
            return "Bonjour! Oui, on serait ravis de vous aider. C'est pour quelle date?"
        return "Merci pour votre message! Je reviens vers vous sous peu."

    if "price" in lower or "cost" in lower or "rate" in lower:
        return "Thanks for reaching out! Our packages vary by event size. Can you tell me more about what you're planning?"
    if "available" in lower or "book" in lower:
        return "Hi! Yes, we'd love to help with your event. What date are you looking at?"
    return "Thanks for your message! I'll get back to you shortly with more details."


def clean_draft(text: str) -> str:
    return re.sub(r"^[\"']|[\"']$", "", text.strip()).strip()


def build_system_prompt(language: str, context: ContextBundle, action_context: str = "") -> str:
    directive = (
        "RESPOND ENTIRELY IN FRENCH. The client wrote in French."
        if language == "fr"
        else "RESPOND ENTIRELY IN ENGLISH. The client wrote in English."
    )
    sections = [
        "You are Max, a bilingual assistant for MTL Craft Cocktails, a mobile bartending service in Montreal.",
        "Your task: write a brief, friendly SMS reply to a client.",
        f"LANGUAGE: {directive}",
        "Guidelines:\n"
        "- Keep it under 160 characters when possible\n"
        "- Be warm, professional and enthusiastic\n"
        "- Don't mention specific pricing unless they ask directly\n"
        "- End with a clear next step or question when appropriate",
        f"Business context:\n{context.business_context}",
    ]
    if context.client_context:
        sections.append(f"Client notes:\n{context.client_context}")
    if context.calendar_context:
        sections.append(f"Calendar info:\n{context.calendar_context}")
    if action_context:
        sections.append(f"Pending action:\n{action_context}")
    if context.correction_rules:
        numbered = "\n".join(f"{i}. {rule}" for i, rule in enumerate(context.correction_rules, start=1))
        sections.append(f"CORRECTION RULES (follow these strictly, they override the guidelines):\n{numbered}")
    sections.append("Output only the SMS reply text, nothing else.")
    return "\n\n".join(sections)


def build_user_prompt(incoming: str, client_name: Optional[str], history: list[HistoryTurn]) -> str:
    turns = list(history)
    if turns and turns[-1].direction == "inbound" and turns[-1].body == incoming:
        turns = turns[:-1]

    prompt = ""
    if turns:
        prompt += "Previous messages:\n"
        for turn in turns[-5:]:
            speaker = "Client" if turn.direction == "inbound" else "Max"
            prompt += f"{speaker}: {turn.body}\n"
        prompt += "\n"
    prompt += f'New message from {client_name or "Client"}:\n"{incoming}"\n\nWrite a friendly SMS reply:'
    return prompt


class DraftGenerator:
    def __init__(self, model: ModelClient) -> None:
        self._model = model

    async def generate(
        self,
        incoming: str,
        client_name: Optional[str],
        context: ContextBundle,
        action_context: str = "",
        action_summary: Optional[str] = None,
    ) -> DraftResult:
        """
        Template reply for a first contact, model reply otherwise.

        action_summary is set only for a ready menu change; first-contact
        templates mention it so the pending change is still referenced.
        """
        language = detect_language(incoming)
        category = classify_inquiry(incoming)

        if is_first_contact(context.history):
            text = first_contact_reply(incoming, client_name, category, language, action_summary)
            logger.info(f"Generated first-contact draft: category={category}, language={language}")
            return DraftResult(text=text, mode=MODE_TEMPLATE, language=language, category=category)

        try:
            raw = await self._model.complete(
                build_system_prompt(language, context, action_context),
                [{"role": "user", "content": build_user_prompt(incoming, client_name, context.history)}],
            )
        except ModelError as exc:
            logger.error(f"Failed to generate draft: {exc}")
            return DraftResult(text=fallback_reply(incoming), mode=MODE_FALLBACK, language=language, category=category)

        text = clean_draft(raw)
        if not text:
            logger.warning("Model returned an empty draft, using fallback reply")
            return DraftResult(text=fallback_reply(incoming), mode=MODE_FALLBACK, language=language, category=category)
        logger.info(f"Generated draft reply: length={len(text)}")
        return DraftResult(text=text, mode=MODE_MODEL, language=language, category=category)
