# guest_house/storage.py
#
# -----------------------------------------------------------------------------
# Auth session state
# -----------------------------------------------------------------------------
# An AuthSession is one in-flight sign-in attempt. It is created when the
# browser submits a phone number and lives until a terminal outcome (signed in,
# onboarded, rejected) or until it expires together with the browser cookie.
#
# The verification result arrives on a *different* request (provider redirect
# or magic-link click), so the store keeps three tables:
#   - sessions      : session_id -> AuthSession (authoritative)
#   - check index   : check_id   -> session_id  (phone-check channel)
#   - link index    : link_code  -> session_id  (magic-link channel)
#
# All three are updated inside one critical section per operation.
#
# WARNING (DEPLOYMENT):
# - Everything here is process memory. Multiple Uvicorn workers will not see
#   each other's sessions; run a single worker.
# -----------------------------------------------------------------------------

import secrets
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterator, Optional, Tuple


def new_session_id() -> str:
    return str(uuid.uuid4())


def new_link_code() -> str:
    return secrets.token_urlsafe(32)


class Channel(str, Enum):
    PHONE_CHECK = "phone_check"
    MAGIC_LINK = "magic_link"
    UNVERIFIED = "unverified"


@dataclass
class AuthSession:
    session_id: str
    phone_number: str
    channel: Channel
    issued_at: int
    expires_at: int

    phone_number_verified: bool = False
    check_id: Optional[str] = None
    link_code: Optional[str] = None
    email: Optional[str] = None

    def __post_init__(self):
        # The channel tag must agree with which correlation key is present.
        if self.channel == Channel.PHONE_CHECK:
            ok = bool(self.check_id) and not self.link_code
        elif self.channel == Channel.MAGIC_LINK:
            ok = bool(self.link_code) and bool(self.email) and not self.check_id
        else:
            ok = not self.check_id and not self.link_code
        if not ok:
            raise ValueError(f"inconsistent auth session for channel {self.channel.value}")

    def is_expired(self, now: Optional[int] = None) -> bool:
        now = int(time.time()) if now is None else now
        return now >= self.expires_at

    @property
    def is_pending(self) -> bool:
        """True while the chosen channel has not produced a verification yet."""
        if self.channel == Channel.PHONE_CHECK:
            return not self.phone_number_verified
        return self.channel == Channel.MAGIC_LINK


# -----------------------------------------------------------------------------
# Constructors, one per channel
# -----------------------------------------------------------------------------
def phone_check_session(phone_number: str, check_id: str, *, ttl_seconds: int, now: int) -> AuthSession:
    return AuthSession(
        session_id=new_session_id(),
        phone_number=phone_number,
        channel=Channel.PHONE_CHECK,
        check_id=check_id,
        issued_at=now,
        expires_at=now + ttl_seconds,
    )


def magic_link_session(phone_number: str, email: str, *, ttl_seconds: int, now: int) -> AuthSession:
    return AuthSession(
        session_id=new_session_id(),
        phone_number=phone_number,
        channel=Channel.MAGIC_LINK,
        link_code=new_link_code(),
        email=email,
        issued_at=now,
        expires_at=now + ttl_seconds,
    )


def unverified_session(phone_number: str, *, ttl_seconds: int, now: int) -> AuthSession:
    return AuthSession(
        session_id=new_session_id(),
        phone_number=phone_number,
        channel=Channel.UNVERIFIED,
        issued_at=now,
        expires_at=now + ttl_seconds,
    )


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------
class _KeyedLocks:
    """One lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]


class AuthSessionStore:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._sessions: Dict[str, AuthSession] = {}
        self._check_index: Dict[str, str] = {}
        self._link_index: Dict[str, str] = {}
        # (check_id, link_code) as last indexed, per session id
        self._keys: Dict[str, Tuple[Optional[str], Optional[str]]] = {}
        self._lock = threading.RLock()
        self._session_locks = _KeyedLocks()

    def _now(self) -> int:
        return int(self._clock())

    @contextmanager
    def locked(self, session_id: str) -> Iterator[None]:
        """Serialize read-modify-write sequences on a single auth session."""
        with self._session_locks.hold(session_id):
            yield

    def save(self, sess: AuthSession) -> None:
        with self._lock:
            # the caller may have mutated the stored object itself, so clear by
            # the keys recorded at the previous save, not by its current fields
            self._clear_index_unlocked(sess.session_id)

            self._sessions[sess.session_id] = sess
            self._keys[sess.session_id] = (sess.check_id, sess.link_code)
            if sess.check_id:
                self._check_index[sess.check_id] = sess.session_id
            if sess.link_code:
                self._link_index[sess.link_code] = sess.session_id

            self._prune_unlocked(self._now())

    def remove(self, sess: AuthSession) -> None:
        with self._lock:
            self._sessions.pop(sess.session_id, None)
            self._clear_index_unlocked(sess.session_id)

    def find_by_session_id(self, session_id: Optional[str]) -> Optional[AuthSession]:
        if not session_id:
            return None
        with self._lock:
            sess = self._sessions.get(session_id)
            if sess is None:
                return None
            if sess.is_expired(self._now()):
                self._drop_unlocked(sess)
                return None
            return sess

    def find_by_check_id(self, check_id: Optional[str]) -> Optional[AuthSession]:
        if not check_id:
            return None
        with self._lock:
            sess = self.find_by_session_id(self._check_index.get(check_id))
            return sess if sess is not None and sess.check_id == check_id else None

    def find_by_link_code(self, link_code: Optional[str]) -> Optional[AuthSession]:
        if not link_code:
            return None
        with self._lock:
            sess = self.find_by_session_id(self._link_index.get(link_code))
            return sess if sess is not None and sess.link_code == link_code else None

    def prune_expired(self) -> int:
        """Best-effort pruning to prevent unbounded growth."""
        with self._lock:
            return self._prune_unlocked(self._now())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    # -- caller must hold self._lock -------------------------------------------
    def _prune_unlocked(self, now: int) -> int:
        dead = [s for s in self._sessions.values() if s.is_expired(now)]
        for s in dead:
            self._drop_unlocked(s)
        return len(dead)

    def _drop_unlocked(self, sess: AuthSession) -> None:
        self._sessions.pop(sess.session_id, None)
        self._clear_index_unlocked(sess.session_id)

    def _clear_index_unlocked(self, session_id: str) -> None:
        check_id, link_code = self._keys.pop(session_id, (None, None))
        # only clear entries that still point at this session
        if check_id and self._check_index.get(check_id) == session_id:
            del self._check_index[check_id]
        if link_code and self._link_index.get(link_code) == session_id:
            del self._link_index[link_code]
