"""Session lookup for requests authenticated by the external auth layer."""

import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass
class Session:
    """An authenticated user session."""

    session_id: str
    user_id: int
    is_admin: bool
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.utcnow()) >= self.expires_at


class SessionStore(ABC):
    """Backing store for sessions.

    Implementations must be safe to share between request handlers; a
    multi-instance deployment should back this with a shared store.
    """

    def __init__(self, ttl: timedelta = timedelta(days=7)):
        self.ttl = ttl

    @abstractmethod
    async def save(self, session: Session) -> None:
        ...

    @abstractmethod
    async def load(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        ...

    async def create(self, user_id: int, is_admin: bool = False) -> Session:
        """Issue a new session for a user."""
        session = Session(
            session_id=secrets.token_urlsafe(32),
            user_id=user_id,
            is_admin=is_admin,
            expires_at=datetime.utcnow() + self.ttl,
        )
        await self.save(session)
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        """Look up a live session, dropping it if it has expired."""
        session = await self.load(session_id)
        if session is None:
            return None
        if session.is_expired():
            await self.delete(session_id)
            return None
        return session

    async def revoke(self, session_id: str) -> None:
        await self.delete(session_id)


class InMemorySessionStore(SessionStore):
    """Process-local session store for single-instance deployments and tests."""

    def __init__(self, ttl: timedelta = timedelta(days=7)):
        super().__init__(ttl)
        self._sessions: dict[str, Session] = {}

    async def save(self, session: Session) -> None:
        self._sessions[session.session_id] = session

    async def load(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    async def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
