# locks.py
"""Editorial locks: who is editing which article, shared with every admin session.

`LockRegistry` owns the article -> lock map. `LockCoordinator` binds editing
connections to their principals, applies `start_editing` / `stop_editing`
messages to the registry and relays the outcome to the other sessions.

Locks live in this process only. Two server instances would each hand out
their own locks for the same article.
"""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from auth import Principal
from schemas import LockMessage

logger = logging.getLogger(__name__)

INITIAL_LOCKS = "initial_locks"
START_EDITING = "start_editing"
STOP_EDITING = "stop_editing"
EDITING_CONFLICT = "editing_conflict"

CLIENT_MESSAGE_TYPES = (START_EDITING, STOP_EDITING)


class LockProtocolError(Exception):
    """A client sent something that is not a valid editing-channel message."""


@dataclass
class EditLock:
    article_id: str
    user_id: str
    user_name: str
    acquired_at: float
    last_seen: float

    def as_payload(self) -> Dict[str, str]:
        return {"articleId": self.article_id, "userId": self.user_id, "userName": self.user_name}


class Acquire(Enum):
    GRANTED = "granted"
    ALREADY_HELD = "already_held"
    CONFLICT = "conflict"


class LockRegistry:
    """At most one EditLock per article.

    With `ttl_seconds` > 0 a lock whose holder has not re-announced it within
    the TTL counts as absent. The default of 0 keeps locks until release.
    Expired locks are dropped lazily and no `stop_editing` is relayed for
    them, so sessions that saw the grant keep showing the article as locked
    until they reconnect or someone else takes it.
    """

    def __init__(self, ttl_seconds: int = 0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._locks: Dict[str, EditLock] = {}
        # REST handlers run in worker threads
        self._mutex = threading.Lock()

    def _expired(self, lock: EditLock, now: float) -> bool:
        if self.ttl_seconds <= 0:
            return False
        return (now - lock.last_seen) > self.ttl_seconds

    def _live(self, article_id: str, now: float) -> Optional[EditLock]:
        lock = self._locks.get(article_id)
        if lock is not None and self._expired(lock, now):
            logger.info("Lock on article %s held by %s expired", article_id, lock.user_id)
            del self._locks[article_id]
            return None
        return lock

    def acquire(self, article_id: str, principal: Principal) -> Tuple[Acquire, EditLock]:
        with self._mutex:
            now = self._clock()
            existing = self._live(article_id, now)
            if existing is None:
                lock = EditLock(article_id, principal.user_id, principal.name, now, now)
                self._locks[article_id] = lock
                return Acquire.GRANTED, lock
            if existing.user_id == principal.user_id:
                # re-announcing is the holder's heartbeat
                existing.last_seen = now
                return Acquire.ALREADY_HELD, existing
            return Acquire.CONFLICT, existing

    def release(self, article_id: str, user_id: str) -> bool:
        with self._mutex:
            lock = self._locks.get(article_id)
            if lock is None or lock.user_id != user_id:
                return False
            del self._locks[article_id]
            return True

    def release_all(self, user_id: str) -> List[str]:
        with self._mutex:
            held = [aid for aid, lock in self._locks.items() if lock.user_id == user_id]
            for aid in held:
                del self._locks[aid]
            return held

    def force_release(self, article_id: str) -> Optional[EditLock]:
        with self._mutex:
            return self._locks.pop(article_id, None)

    def holder(self, article_id: str) -> Optional[EditLock]:
        with self._mutex:
            return self._live(article_id, self._clock())

    def snapshot(self) -> Dict[str, EditLock]:
        with self._mutex:
            now = self._clock()
            for aid in list(self._locks):
                self._live(aid, now)
            return dict(self._locks)

    def __len__(self):
        with self._mutex:
            return len(self._locks)


def parse_message(raw: str) -> Tuple[str, str]:
    """Validate a client frame; returns (type, articleId)."""
    try:
        message = LockMessage.model_validate_json(raw)
    except ValidationError as e:
        raise LockProtocolError(f"malformed message: {e.error_count()} error(s)") from e
    if message.type not in CLIENT_MESSAGE_TYPES:
        raise LockProtocolError(f"clients may not send {message.type!r}")
    article_id = message.payload.get("articleId")
    # ids travel as strings, numeric ids are accepted as-is
    if isinstance(article_id, bool) or not isinstance(article_id, (str, int)):
        raise LockProtocolError("payload.articleId is required")
    article_id = str(article_id).strip()
    if not article_id:
        raise LockProtocolError("payload.articleId is empty")
    return message.type, article_id


def envelope(type_: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": type_, "payload": payload}


class EditingSession:
    """One accepted editing connection and the principal it authenticated as."""

    def __init__(self, websocket, principal: Principal):
        self.websocket = websocket
        self.principal = principal
        self.broken = False
        # sends are serialized so initial_locks always goes out first
        self.send_lock = asyncio.Lock()

    async def send(self, message: Dict[str, Any]) -> None:
        async with self.send_lock:
            await self.websocket.send_json(message)


class LockCoordinator:
    def __init__(self, registry: Optional[LockRegistry] = None):
        self.registry = registry if registry is not None else LockRegistry()
        self._sessions: Dict[int, EditingSession] = {}
        # disconnect relays in flight; referenced so they are not collected
        self._relays: Set[asyncio.Task] = set()

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def _session(self, websocket) -> EditingSession:
        session = self._sessions.get(id(websocket))
        if session is None:
            raise LockProtocolError("connection is not registered")
        return session

    async def connect(self, websocket, principal: Principal) -> EditingSession:
        session = EditingSession(websocket, principal)
        async with session.send_lock:
            # registration and snapshot happen with no await in between
            self._sessions[id(websocket)] = session
            snapshot = {aid: lock.as_payload() for aid, lock in self.registry.snapshot().items()}
            await websocket.send_json(envelope(INITIAL_LOCKS, snapshot))
        logger.info("Editor %s connected (%d sessions)", principal.user_id, len(self._sessions))
        return session

    async def disconnect(self, websocket) -> List[str]:
        """Drop the connection and release every lock its principal holds.

        The releases are relayed from a separate task, so cancelling the
        caller (a torn-down connection handler) does not cancel the relay.
        """
        session = self._sessions.pop(id(websocket), None)
        if session is None:
            return []
        released = self.registry.release_all(session.principal.user_id)
        logger.info("Editor %s disconnected (%d sessions)", session.principal.user_id, len(self._sessions))
        if released:
            relay = asyncio.get_running_loop().create_task(self._relay_releases(session, released))
            self._relays.add(relay)
            relay.add_done_callback(self._relays.discard)
            await asyncio.shield(relay)
        return released

    async def wait_relays(self) -> None:
        """Wait for disconnect relays still in flight."""
        if self._relays:
            await asyncio.gather(*list(self._relays), return_exceptions=True)

    async def _relay_releases(self, session: EditingSession, released: List[str]) -> None:
        for article_id in released:
            logger.info("Released lock on article %s after %s disconnected", article_id, session.principal.user_id)
            await self.broadcast(envelope(STOP_EDITING, {"articleId": article_id}))

    async def handle(self, websocket, raw: str) -> None:
        session = self._session(websocket)
        type_, article_id = parse_message(raw)
        if type_ == START_EDITING:
            await self.start_editing(session, article_id)
        else:
            await self.stop_editing(session, article_id)

    async def start_editing(self, session: EditingSession, article_id: str) -> Acquire:
        outcome, lock = self.registry.acquire(article_id, session.principal)
        if outcome is Acquire.GRANTED:
            logger.info("Article %s locked by %s", article_id, lock.user_id)
            await self.broadcast(envelope(START_EDITING, lock.as_payload()), exclude=session)
        elif outcome is Acquire.CONFLICT:
            logger.info(
                "Editing conflict on article %s: %s requested, held by %s",
                article_id,
                session.principal.user_id,
                lock.user_id,
            )
            await self._deliver(
                session,
                envelope(EDITING_CONFLICT, {"articleId": article_id, "lock": lock.as_payload()}),
            )
        return outcome

    async def stop_editing(self, session: EditingSession, article_id: str) -> bool:
        if not self.registry.release(article_id, session.principal.user_id):
            return False
        logger.info("Article %s released by %s", article_id, session.principal.user_id)
        await self.broadcast(envelope(STOP_EDITING, {"articleId": article_id}), exclude=session)
        return True

    async def release_after_save(self, article_id: str, principal: Principal) -> bool:
        """Release the saver's lock once the article write is committed."""
        if not self.registry.release(article_id, principal.user_id):
            return False
        logger.info("Article %s released by %s on save", article_id, principal.user_id)
        await self.broadcast(envelope(STOP_EDITING, {"articleId": article_id}))
        return True

    async def force_release(self, article_id: str) -> Optional[EditLock]:
        lock = self.registry.force_release(article_id)
        if lock is not None:
            logger.warning("Lock on article %s held by %s was force-released", article_id, lock.user_id)
            await self.broadcast(envelope(STOP_EDITING, {"articleId": article_id}))
        return lock

    async def _deliver(self, session: EditingSession, message: Dict[str, Any]) -> bool:
        try:
            await session.send(message)
            return True
        except Exception as e:
            # skipped from now on; its locks go when the receive loop sees the close
            logger.warning("Send to editor %s failed: %s", session.principal.user_id, e)
            session.broken = True
            return False

    async def broadcast(self, message: Dict[str, Any], exclude: Optional[EditingSession] = None) -> int:
        """Send to every session but `exclude`; returns how many sends succeeded."""
        targets = [s for s in self._sessions.values() if s is not exclude and not s.broken]
        if not targets:
            return 0
        results = await asyncio.gather(*(self._deliver(s, message) for s in targets))
        return sum(1 for ok in results if ok)
