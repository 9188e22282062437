import os
import time
import logging
import secrets
import threading
from dataclasses import dataclass
from typing import Dict, Optional
from fastapi import Depends, Request, Response
from jose import JWTError, jwt
from passlib.context import CryptContext

from errors import AuthenticationError
from schemas import UserType

logger = logging.getLogger(__name__)

SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
ALGORITHM = "HS256"
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
SESSION_MAX_AGE_SECONDS = int(os.getenv("SESSION_MAX_AGE_SECONDS", 60 * 60 * 24))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


@dataclass(frozen=True)
class Session:
    user_id: str
    user_type: UserType


class SessionStore:
    """Where sessions live, keyed by an opaque token."""

    def get(self, token: str) -> Optional[Session]:
        raise NotImplementedError

    def set(self, token: str, session: Session, max_age: int) -> None:
        raise NotImplementedError

    def destroy(self, token: str) -> None:
        raise NotImplementedError


class MemorySessionStore(SessionStore):
    """Process-local store. Expired entries are pruned at most once per check period."""

    def __init__(self, check_period: int = SESSION_MAX_AGE_SECONDS, clock=time.monotonic):
        self._entries: Dict[str, tuple] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._check_period = check_period
        self._last_prune = clock()

    def _prune(self, now: float) -> None:
        if now - self._last_prune < self._check_period:
            return
        expired = [t for t, (_, expires) in self._entries.items() if expires <= now]
        for token in expired:
            del self._entries[token]
        self._last_prune = now
        if expired:
            logger.info("Pruned %d expired sessions", len(expired))

    def get(self, token: str) -> Optional[Session]:
        with self._lock:
            now = self._clock()
            self._prune(now)
            entry = self._entries.get(token)
            if entry is None:
                return None
            session, expires = entry
            if expires <= now:
                del self._entries[token]
                return None
            return session

    def set(self, token: str, session: Session, max_age: int) -> None:
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._entries[token] = (session, now + max_age)

    def destroy(self, token: str) -> None:
        with self._lock:
            self._entries.pop(token, None)

    def __len__(self):
        return len(self._entries)


session_store = MemorySessionStore()


def get_session_store() -> SessionStore:
    return session_store


def sign_session_token(token: str) -> str:
    return jwt.encode({"sid": token, "exp": int(time.time()) + SESSION_MAX_AGE_SECONDS}, SECRET_KEY, algorithm=ALGORITHM)


def read_session_token(cookie: Optional[str]) -> Optional[str]:
    if not cookie:
        return None
    try:
        payload = jwt.decode(cookie, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    return payload.get("sid")


def start_session(response: Response, store: SessionStore, user_id: str, user_type: UserType) -> str:
    token = secrets.token_urlsafe(32)
    store.set(token, Session(user_id=user_id, user_type=UserType(user_type)), SESSION_MAX_AGE_SECONDS)
    response.set_cookie(
        SESSION_COOKIE_NAME,
        sign_session_token(token),
        max_age=SESSION_MAX_AGE_SECONDS,
        httponly=True,
        samesite="lax",
    )
    return token


def end_session(request: Request, response: Response, store: SessionStore) -> None:
    token = read_session_token(request.cookies.get(SESSION_COOKIE_NAME))
    if token:
        store.destroy(token)
    response.delete_cookie(SESSION_COOKIE_NAME)


def get_current_session(request: Request, store: SessionStore = Depends(get_session_store)) -> Session:
    token = read_session_token(request.cookies.get(SESSION_COOKIE_NAME))
    session = store.get(token) if token else None
    if session is None:
        raise AuthenticationError("Unauthorized")
    return session
