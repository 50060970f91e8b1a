import asyncio
import logging
import secrets
import time
from collections import Counter, OrderedDict, defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Optional, Union

log = logging.getLogger(__name__)

DEFAULT_IDLE_TTL = 24 * 60 * 60
SWEEP_INTERVAL = 10 * 60
MAX_STASHED_PROMPTS = 20


@dataclass(frozen=True)
class AwaitingCollectionAddress:
    image_id: str


@dataclass(frozen=True)
class AwaitingImagePrompt:
    pass


PendingAction = Union[None, AwaitingCollectionAddress, AwaitingImagePrompt]


@dataclass
class Session:
    conversation_id: str
    pending: PendingAction = None
    last_metadata_uri: Optional[str] = None
    # prompts too long for a button payload, by token
    prompts: "OrderedDict[str, str]" = field(default_factory=OrderedDict)
    last_seen: float = field(default_factory=time.monotonic)


class SessionStore:
    """Ephemeral per-conversation state with one lock per conversation.

    Sessions idle for longer than ``idle_ttl`` are dropped together with their
    lock, unless an event is in flight or a pending action is still waiting.
    """

    def __init__(self, *, idle_ttl: float = DEFAULT_IDLE_TTL) -> None:
        self.idle_ttl = idle_ttl
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._active: Counter = Counter()
        self._last_sweep = time.monotonic()

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, conversation_id: str) -> Session:
        session = self._sessions.get(conversation_id)
        if session is None:
            session = Session(conversation_id=conversation_id)
            self._sessions[conversation_id] = session
        return session

    def pending(self, conversation_id: str) -> PendingAction:
        return self.get(conversation_id).pending

    def set_pending(self, conversation_id: str, action: PendingAction) -> None:
        session = self.get(conversation_id)
        if session.pending != action:
            log.debug("pending action for %s: %r -> %r", conversation_id, session.pending, action)
        session.pending = action

    def clear_pending(self, conversation_id: str) -> None:
        self.set_pending(conversation_id, None)

    def remember_metadata_uri(self, conversation_id: str, uri: str) -> None:
        self.get(conversation_id).last_metadata_uri = uri

    def last_metadata_uri(self, conversation_id: str) -> Optional[str]:
        return self.get(conversation_id).last_metadata_uri

    def stash_prompt(self, conversation_id: str, prompt: str) -> str:
        prompts = self.get(conversation_id).prompts
        token = secrets.token_hex(4)
        prompts[token] = prompt
        while len(prompts) > MAX_STASHED_PROMPTS:
            prompts.popitem(last=False)
        return token

    def stashed_prompt(self, conversation_id: str, token: str) -> Optional[str]:
        return self.get(conversation_id).prompts.get(token)

    def evict_idle(self, now: Optional[float] = None) -> int:
        now = time.monotonic() if now is None else now
        stale = [
            conversation_id
            for conversation_id, session in self._sessions.items()
            if now - session.last_seen > self.idle_ttl
            and session.pending is None
            and not self._active[conversation_id]
        ]
        for conversation_id in stale:
            del self._sessions[conversation_id]
            self._locks.pop(conversation_id, None)
            self._active.pop(conversation_id, None)
        if stale:
            log.debug("evicted %d idle sessions", len(stale))
        return len(stale)

    @asynccontextmanager
    async def serialized(self, conversation_id: str) -> AsyncIterator[Session]:
        now = time.monotonic()
        if now - self._last_sweep > SWEEP_INTERVAL:
            self._last_sweep = now
            self.evict_idle(now)
        self._active[conversation_id] += 1
        try:
            async with self._locks[conversation_id]:
                session = self.get(conversation_id)
                session.last_seen = time.monotonic()
                yield session
        finally:
            self._active[conversation_id] -= 1
            if not self._active[conversation_id]:
                del self._active[conversation_id]
