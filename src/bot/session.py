"""Per-call session state, inbound message queue and the conversation index."""

from __future__ import annotations

import asyncio
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from bot.errors import ConversationConflictError, InvalidTransitionError

_SENTENCE_END = re.compile(r"[.!?]$")
_WHITESPACE = re.compile(r"\s+")


def normalize_transcript(text: str) -> str:
    """Case-fold and collapse whitespace so near-identical transcripts compare equal."""

    return _WHITESPACE.sub(" ", text.casefold()).strip()


def ends_with_sentence_punctuation(text: str) -> bool:
    return bool(_SENTENCE_END.search(text.strip()))


class MessageKind(str, Enum):
    TEXT = "text"
    END_OF_STREAM = "end_of_stream"
    END_OF_CONVERSATION = "end_of_conversation"


@dataclass(frozen=True, slots=True)
class QueuedMessage:
    kind: MessageKind
    text: str = ""

    @classmethod
    def text_chunk(cls, text: str) -> QueuedMessage:
        return cls(MessageKind.TEXT, text)

    @classmethod
    def end_of_stream(cls) -> QueuedMessage:
        return cls(MessageKind.END_OF_STREAM)

    @classmethod
    def end_of_conversation(cls) -> QueuedMessage:
        return cls(MessageKind.END_OF_CONVERSATION)


class GenerationState(str, Enum):
    IDLE = "idle"
    SPEECH_PENDING = "speech_pending"
    GENERATING = "generating"
    ENDED = "ended"


_ALLOWED_TRANSITIONS: dict[GenerationState, frozenset[GenerationState]] = {
    GenerationState.IDLE: frozenset(
        {GenerationState.SPEECH_PENDING, GenerationState.GENERATING, GenerationState.ENDED}
    ),
    GenerationState.SPEECH_PENDING: frozenset(
        {
            GenerationState.SPEECH_PENDING,
            GenerationState.GENERATING,
            GenerationState.IDLE,
            GenerationState.ENDED,
        }
    ),
    GenerationState.GENERATING: frozenset(
        {GenerationState.GENERATING, GenerationState.IDLE, GenerationState.ENDED}
    ),
    GenerationState.ENDED: frozenset(),
}


def can_transition(current: GenerationState, target: GenerationState) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


@dataclass
class Session:
    """Mutable state of one call leg.

    Instances are owned by the registry and must only be mutated inside
    ``SessionRegistry.with_mutable``. The queue is the exception: it is safe to
    use from any task without holding the registry lock.
    """

    session_id: str
    queue: asyncio.Queue[QueuedMessage]
    created_at: float
    last_activity_at: float
    conversation_id: str | None = None
    user_id: str = ""
    name: str = ""
    bot_type: str = "twilio"
    direction: str = "inbound"
    backend_session_id: str | None = None
    state: GenerationState = GenerationState.IDLE
    run_in_progress: bool = False
    last_unstable_transcript: str | None = None
    generation_id: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(cls, *, now: float, queue_capacity: int, conversation_id: str | None = None, **fields: Any) -> Session:
        return cls(
            session_id=uuid.uuid4().hex,
            queue=asyncio.Queue(maxsize=queue_capacity),
            created_at=now,
            last_activity_at=now,
            conversation_id=conversation_id,
            **fields,
        )

    @property
    def speech_in_progress(self) -> bool:
        return self.state is GenerationState.SPEECH_PENDING

    @property
    def generation_in_progress(self) -> bool:
        return self.state is GenerationState.GENERATING

    @property
    def session_ending(self) -> bool:
        return self.state is GenerationState.ENDED

    def transition(self, target: GenerationState) -> None:
        if not can_transition(self.state, target):
            raise InvalidTransitionError(f"Cannot move session {self.session_id} from {self.state.value} to {target.value}")
        self.state = target

    def touch(self, now: float) -> None:
        if now > self.last_activity_at:
            self.last_activity_at = now

    def is_expired(self, now: float, max_age: float) -> bool:
        return now - self.last_activity_at > max_age

    def unstable_transcript_matches(self, transcript: str) -> bool:
        if self.last_unstable_transcript is None:
            return False
        return normalize_transcript(self.last_unstable_transcript) == normalize_transcript(transcript)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            conversation_id=self.conversation_id,
            user_id=self.user_id,
            name=self.name,
            bot_type=self.bot_type,
            direction=self.direction,
            backend_session_id=self.backend_session_id,
            state=self.state,
            run_in_progress=self.run_in_progress,
            last_unstable_transcript=self.last_unstable_transcript,
            created_at=self.created_at,
            last_activity_at=self.last_activity_at,
            metadata=dict(self.metadata),
        )


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """Read-only copy of a session handed out across await boundaries."""

    session_id: str
    conversation_id: str | None
    user_id: str
    name: str
    bot_type: str
    direction: str
    backend_session_id: str | None
    state: GenerationState
    run_in_progress: bool
    last_unstable_transcript: str | None
    created_at: float
    last_activity_at: float
    metadata: dict[str, Any]

    @property
    def speech_in_progress(self) -> bool:
        return self.state is GenerationState.SPEECH_PENDING

    @property
    def generation_in_progress(self) -> bool:
        return self.state is GenerationState.GENERATING

    @property
    def session_ending(self) -> bool:
        return self.state is GenerationState.ENDED

    @property
    def greeting(self) -> str | None:
        init = self.metadata.get("initialization_response") or {}
        greeting = init.get("greeting") if isinstance(init, dict) else None
        return greeting if isinstance(greeting, str) else None


class ConversationIndex:
    """Bijective conversation-id <-> session-id mapping.

    Both directions are updated in the same call so they can never diverge.
    Callers are expected to hold the registry lock.
    """

    def __init__(self) -> None:
        self._by_conversation: dict[str, str] = {}
        self._by_session: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._by_conversation)

    def bind(self, conversation_id: str, session_id: str) -> None:
        existing_session = self._by_conversation.get(conversation_id)
        if existing_session is not None and existing_session != session_id:
            raise ConversationConflictError(f"Conversation {conversation_id} is already bound to session {existing_session}")
        existing_conversation = self._by_session.get(session_id)
        if existing_conversation is not None and existing_conversation != conversation_id:
            raise ConversationConflictError(f"Session {session_id} is already bound to conversation {existing_conversation}")
        self._by_conversation[conversation_id] = session_id
        self._by_session[session_id] = conversation_id

    def session_for(self, conversation_id: str) -> str | None:
        return self._by_conversation.get(conversation_id)

    def unbind_session(self, session_id: str) -> str | None:
        conversation_id = self._by_session.pop(session_id, None)
        if conversation_id is not None:
            self._by_conversation.pop(conversation_id, None)
        return conversation_id
