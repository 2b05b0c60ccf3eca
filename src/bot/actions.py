"""What the caller hears next, independent of TwiML."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from integrations.backend_client import BackendReply

# Backend replies of the form "CODE: 1234#" are played as DTMF tones.
CODE_PATTERN = re.compile(r"^\s*code\s*:\s*([0-9*#wW]+)\s*$", re.IGNORECASE)

SESSION_EXPIRED_MESSAGE = "Your session has expired. Goodbye."
APOLOGY_MESSAGE = "Sorry, we're experiencing technical difficulties."
DEFAULT_GREETING = "Hello, welcome to our service."
REPROMPT_MESSAGE = "Sorry, I didn't catch that. Could you repeat?"


class ActionKind(str, Enum):
    SPEAK = "speak"
    SPEAK_AND_HANGUP = "speak_and_hangup"
    PLAY_DIGITS = "play_digits"
    POLL_QUEUE = "poll_queue"


@dataclass(frozen=True)
class CallAction:
    kind: ActionKind
    text: str = ""
    digits: str = ""

    @classmethod
    def speak(cls, text: str) -> CallAction:
        return cls(ActionKind.SPEAK, text=text)

    @classmethod
    def hangup(cls, text: str = "") -> CallAction:
        return cls(ActionKind.SPEAK_AND_HANGUP, text=text)

    @classmethod
    def play_digits(cls, digits: str) -> CallAction:
        return cls(ActionKind.PLAY_DIGITS, digits=digits)

    @classmethod
    def poll_queue(cls, text: str = "") -> CallAction:
        return cls(ActionKind.POLL_QUEUE, text=text)

    @property
    def ends_call(self) -> bool:
        return self.kind is ActionKind.SPEAK_AND_HANGUP


def extract_code(text: str) -> str | None:
    match = CODE_PATTERN.match(text)
    return match.group(1) if match else None


def action_for_reply(reply: BackendReply, *, streaming: bool = False) -> CallAction:
    """Map a backend turn result onto the next call action."""

    text = reply.response.strip()
    if reply.ends:
        return CallAction.hangup(text)
    digits = extract_code(text)
    if digits:
        return CallAction.play_digits(digits)
    if not text and streaming:
        return CallAction.poll_queue()
    return CallAction.speak(text)
