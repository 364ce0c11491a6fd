"""Inbound voice call routing."""

import logging

from sqlalchemy.orm import Session

from sms_relay import storage
from sms_relay.telephony import dial_twiml, say_twiml

logger = logging.getLogger(__name__)

VOICE_MODES = ("ai", "forward")
DEFAULT_VOICE_MODE = "forward"


def get_voice_mode(db: Session) -> str:
    mode = storage.get_setting(db, storage.VOICE_MODE_KEY, DEFAULT_VOICE_MODE)
    return mode if mode in VOICE_MODES else DEFAULT_VOICE_MODE


def set_voice_mode(db: Session, mode: str) -> str:
    if mode not in VOICE_MODES:
        raise ValueError('Mode must be "ai" or "forward"')
    storage.set_setting(db, storage.VOICE_MODE_KEY, mode)
    logger.info(f"Voice mode updated: mode={mode}")
    return mode


def route_call(mode: str, assistant_number: str, owner_number: str) -> str:
    """
    TwiML for an incoming call: dial the AI assistant line in "ai" mode,
    the owner otherwise. A missing number gets a spoken apology instead.
    """
    if mode == "ai":
        if not assistant_number:
            logger.error("Assistant phone number not configured")
            return say_twiml("Sorry, the AI assistant is not available right now. Please try again later.")
        return dial_twiml(assistant_number)

    if not owner_number:
        logger.error("Owner phone number not configured")
        return say_twiml("Sorry, we are unable to connect your call right now. Please try again later.")
    return dial_twiml(owner_number)
