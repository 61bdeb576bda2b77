import asyncio
import copy
import enum
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Optional

from .engine import TokenState


class SessionState(enum.Enum):
    IDLE = "idle"
    HOLDING_TOKEN = "holding_token"
    AWAITING_DESTINATION = "awaiting_destination"
    TRANSFERRING = "transferring"


@dataclass
class Session:
    token: TokenState
    file_handle: str
    state: SessionState = SessionState.HOLDING_TOKEN

    @property
    def awaiting_destination(self) -> bool:
        return self.state is SessionState.AWAITING_DESTINATION


def state_of(session: Optional[Session]) -> SessionState:
    return session.state if session is not None else SessionState.IDLE


SessionUpdate = Callable[[Optional[Session]], Optional[Session]]


class SessionStore:
    """In-memory sessions keyed by identity with per-identity serialization.

    An absent record means the identity is idle. Callers only ever see copies;
    changes go through ``update`` which runs under the identity's lock. A lock
    lives only while its identity has a session or a caller using the lock.
    """

    def __init__(self) -> None:
        self._sessions: Dict[int, Session] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = {}

    @asynccontextmanager
    async def _locked(self, identity: int) -> AsyncIterator[None]:
        lock = self._locks.get(identity)
        if lock is None:
            lock = self._locks[identity] = asyncio.Lock()
        self._lock_users[identity] = self._lock_users.get(identity, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[identity] -= 1
            if not self._lock_users[identity]:
                del self._lock_users[identity]
                if identity not in self._sessions:
                    self._locks.pop(identity, None)

    async def get(self, identity: int) -> Optional[Session]:
        async with self._locked(identity):
            return copy.deepcopy(self._sessions.get(identity))

    async def update(self, identity: int, fn: SessionUpdate) -> Optional[Session]:
        """Apply ``fn`` atomically; returning ``None`` deletes the session.

        Exceptions raised by ``fn`` leave the stored session unchanged.
        """
        async with self._locked(identity):
            current = copy.deepcopy(self._sessions.get(identity))
            updated = fn(current)
            if updated is None:
                self._sessions.pop(identity, None)
                return None
            self._sessions[identity] = copy.deepcopy(updated)
            return updated

    async def delete(self, identity: int) -> None:
        async with self._locked(identity):
            self._sessions.pop(identity, None)

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    def __len__(self) -> int:
        return len(self._sessions)
