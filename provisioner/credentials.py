from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

import aiosqlite

from .db import utc_now

SESSION_TTL = timedelta(hours=24)


class CredentialProvider(Protocol):
    """Supplies the provider session credential at call time."""

    async def get(self) -> Optional[str]:
        ...


class StaticCredentialProvider:
    def __init__(self, credential: Optional[str]):
        self.credential = credential

    async def get(self) -> Optional[str]:
        return self.credential


class SessionStore:
    """Latest provider session, refreshed by an external job."""

    def __init__(self, path: str):
        self.path = path

    async def save(self, session_cookie: str, expires_at: Optional[str] = None) -> str:
        if expires_at:
            expires = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
            if expires.tzinfo is None:
                expires = expires.replace(tzinfo=timezone.utc)
        else:
            expires = datetime.now(timezone.utc) + SESSION_TTL
        # Stored in the same format as utc_now() so the expiry check can compare strings.
        expires_at = expires.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")
        async with aiosqlite.connect(self.path) as db:
            # Single live session: older rows are dropped on refresh.
            await db.execute("DELETE FROM provider_sessions")
            await db.execute(
                "INSERT INTO provider_sessions(session_cookie, expires_at, created_at) VALUES (?,?,?)",
                (session_cookie, expires_at, utc_now()),
            )
            await db.commit()
        return expires_at

    async def current(self) -> Optional[str]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT session_cookie FROM provider_sessions WHERE expires_at > ? "
                "ORDER BY created_at DESC, id DESC LIMIT 1",
                (utc_now(),),
            )
            row = await cursor.fetchone()
            await cursor.close()
        return row["session_cookie"] if row else None


class StoredCredentialProvider:
    """Reads the stored session first and falls back to a configured credential."""

    def __init__(self, store: SessionStore, fallback: Optional[str] = None):
        self.store = store
        self.fallback = fallback

    async def get(self) -> Optional[str]:
        stored = await self.store.current()
        return stored or self.fallback
