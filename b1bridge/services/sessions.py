"""
SessionManager - Service Layer sessions with sliding expiration.

Sessions live in one KeyValueStore: a FallbackStore over Redis and memory
when Redis is configured, a MemoryStore otherwise. Every use refreshes
last_activity; a session idle for longer than the timeout is gone. A periodic sweep clears expired
sessions from the in-process store (Redis expires its keys natively).

Usage:
    store = FallbackStore(RedisStore(url), MemoryStore())
    manager = SessionManager(executor, store)
    session = await manager.login("SBO_TEST", "manager", "secret")
    headers = manager.auth_headers(session.session_id, session.company_db)
    await manager.logout(session.session_id)
"""

from datetime import datetime, timedelta
from typing import Any, Callable

from loguru import logger
from pydantic import BaseModel, ValidationError

from b1bridge.services.client import RequestExecutor
from b1bridge.services.errors import (
    ServiceError,
    SessionExpiredError,
    UpstreamAuthError,
    UpstreamError,
)
from b1bridge.services.store import KeyedLock, KeyValueStore, in_process_part
from b1bridge.utils import truncate, utcnow

LOGIN_PATH = "/b1s/v1/Login"
LOGOUT_PATH = "/b1s/v1/Logout"


class Session(BaseModel):
    """An authenticated Service Layer session."""

    session_id: str
    username: str
    company_db: str
    login_time: datetime
    last_activity: datetime
    active: bool = True
    version: str | None = None
    server_timeout_minutes: int | None = None

    def idle_seconds(self, now: datetime) -> float:
        return (now - self.last_activity).total_seconds()

    def is_expired(self, now: datetime, timeout: timedelta) -> bool:
        return not self.active or now - self.last_activity >= timeout


class SessionManager:
    """Creates, stores, refreshes and invalidates Service Layer sessions."""

    def __init__(
        self,
        executor: RequestExecutor,
        store: KeyValueStore,
        timeout_minutes: int = 30,
        cookie_name: str = "B1SESSION",
        prefix: str = "b1bridge:session:",
        clock: Callable[[], datetime] = utcnow,
    ):
        self._executor = executor
        self._store = store
        # Redis expires its own keys; the sweep covers the in-process entries
        self._memory = in_process_part(store)
        self._timeout = timedelta(minutes=timeout_minutes)
        self._cookie_name = cookie_name
        self._prefix = prefix
        self._clock = clock
        self._locks = KeyedLock()

    @property
    def timeout(self) -> timedelta:
        return self._timeout

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}{session_id}"

    def auth_headers(self, session_id: str, company_db: str | None = None) -> dict[str, str]:
        """Cookie (and tenant) headers for a Service Layer call."""
        headers = {"Cookie": f"{self._cookie_name}={session_id}"}
        if company_db:
            headers["CompanyDB"] = company_db
        return headers

    async def login(self, company_db: str, username: str, password: str) -> Session:
        """
        Log in to the Service Layer and store the new session.

        Raises:
            UpstreamAuthError: Credentials or company rejected (any 4xx), or
                the answer carried no SessionId
            ServiceError: Transport failures, as raised by the executor
        """
        logger.info(f"Logging in to Service Layer: user={username} company={company_db}")
        try:
            response = await self._executor.execute(
                "POST",
                LOGIN_PATH,
                body={"CompanyDB": company_db, "UserName": username, "Password": password},
            )
        except UpstreamAuthError:
            logger.warning(f"Login rejected for user={username} company={company_db}")
            raise
        except UpstreamError as e:
            if e.status_code is None or not 400 <= e.status_code < 500:
                raise
            logger.warning(f"Login rejected for user={username} company={company_db}: {e}")
            raise UpstreamAuthError(
                f"Invalid credentials or company database: {e}",
                e.service_id,
                e.status_code,
                e.body,
            ) from e

        payload = response.json if isinstance(response.json, dict) else {}
        session_id = payload.get("SessionId")
        if not session_id:
            raise UpstreamAuthError(
                "Login response did not include a SessionId",
                self._executor.service_id,
                response.status_code,
                truncate(response.raw_body),
            )

        now = self._clock()
        session = Session(
            session_id=session_id,
            username=username,
            company_db=company_db,
            login_time=now,
            last_activity=now,
            version=payload.get("Version"),
            server_timeout_minutes=payload.get("SessionTimeout"),
        )
        await self._save(session)
        logger.info(f"Login successful: user={username} company={company_db}")
        return session

    async def get_session(self, session_id: str | None) -> Session | None:
        """The session, or None if unknown, inactive or idle too long. Does not touch."""
        if not session_id:
            return None
        session = await self._load(session_id)
        if session is None:
            return None
        if session.is_expired(self._clock(), self._timeout):
            logger.info(f"Session for user={session.username} expired")
            await self._remove(session_id)
            return None
        return session

    async def touch(self, session_id: str) -> Session | None:
        """Refresh last_activity and re-apply the TTL."""
        async with self._locks(session_id):
            session = await self.get_session(session_id)
            if session is None:
                return None
            session = session.model_copy(update={"last_activity": self._clock()})
            await self._save(session)
            return session

    async def require(self, session_id: str) -> Session:
        """
        Touch a session that must exist.

        Raises:
            SessionExpiredError: Unknown, logged out or expired session
        """
        session = await self.touch(session_id)
        if session is None:
            raise SessionExpiredError(session_id)
        return session

    async def logout(self, session_id: str) -> bool:
        """
        Log out upstream (best effort) and drop the session locally.

        Idempotent. Returns True if the Service Layer acknowledged the logout.
        """
        session = await self._load(session_id)
        if session is None:
            logger.debug("Logout for unknown session, nothing to do")
            return False

        acknowledged = False
        try:
            await self._executor.execute(
                "POST", LOGOUT_PATH, headers=self.auth_headers(session_id), body={}
            )
            acknowledged = True
        except ServiceError as e:
            logger.warning(f"Service Layer logout failed, removing local session anyway: {e}")

        await self._remove(session_id)
        logger.info(f"Logged out user={session.username} company={session.company_db}")
        return acknowledged

    async def invalidate(self, session_id: str) -> None:
        """Drop a session the Service Layer no longer accepts."""
        logger.warning("Service Layer rejected session, invalidating it locally")
        await self._remove(session_id)

    async def cleanup_expired_sessions(self) -> int:
        """
        Remove idle sessions from the in-process store.

        Works on a snapshot and removes each entry with a check-and-delete,
        so a session touched meanwhile survives.
        """
        if self._memory is None:
            return 0
        now = self._clock()
        removed = 0
        for key, raw in self._memory.snapshot(self._prefix):
            try:
                expired = Session.model_validate_json(raw).is_expired(now, self._timeout)
            except ValidationError:
                expired = True
            if expired and self._memory.delete_if_unchanged(key, raw):
                removed += 1
        if removed:
            logger.info(f"Session sweep removed {removed} expired session(s)")
        return removed

    async def _live_sessions(self) -> list[Session]:
        now = self._clock()
        sessions = []
        for key in await self._store.scan(self._prefix):
            raw = await self._store.get(key)
            session = self._parse(raw) if raw is not None else None
            if session is not None and not session.is_expired(now, self._timeout):
                sessions.append(session)
        return sessions

    async def get_user_sessions(self, username: str) -> list[Session]:
        """Active sessions of one user."""
        return [s for s in await self._live_sessions() if s.username == username]

    async def get_session_stats(self) -> dict[str, Any]:
        return {
            "active": len(await self._live_sessions()),
            "store": getattr(self._store, "name", type(self._store).__name__),
            "timeout_minutes": int(self._timeout.total_seconds() // 60),
            "timestamp": self._clock().isoformat(),
        }

    async def _save(self, session: Session) -> None:
        await self._store.set(
            self._key(session.session_id),
            session.model_dump_json(),
            self._timeout.total_seconds(),
        )

    async def _load(self, session_id: str) -> Session | None:
        raw = await self._store.get(self._key(session_id))
        return self._parse(raw) if raw is not None else None

    async def _remove(self, session_id: str) -> None:
        await self._store.delete(self._key(session_id))

    def _parse(self, raw: str) -> Session | None:
        try:
            return Session.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable session record: {e}")
            return None
