"""
Session-cookie authentication.

Sessions live in process memory and are swept periodically, so they do not
survive a restart and are not shared between processes. The cookie carries a
signed token naming the server-side session, never the user id itself.
"""
import asyncio
import logging
import secrets
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import jwt
from fastapi import Depends, HTTPException, Request, Response
from passlib.context import CryptContext

import config
from schemas import EntityId, UserRecord, UserPublic
from storage import StorageInterface

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.BCRYPT_ROUNDS)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError:
        # not a hash passlib recognises
        return False


def public_user(user: UserRecord) -> UserPublic:
    return UserPublic(**user.model_dump())


class SessionStore:
    def __init__(self, max_age: int = config.SESSION_MAX_AGE):
        self.max_age = max_age
        self._sessions: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def create(self, user_id: EntityId) -> str:
        sid = secrets.token_urlsafe(32)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.max_age)
        with self._lock:
            self._sessions[sid] = {"user_id": user_id, "expires_at": expires_at}
        return sid

    def get(self, sid: Optional[str]) -> Optional[EntityId]:
        if not sid:
            return None
        with self._lock:
            session = self._sessions.get(sid)
            if session is None:
                return None
            if session["expires_at"] <= datetime.now(timezone.utc):
                del self._sessions[sid]
                return None
            return session["user_id"]

    def destroy(self, sid: Optional[str]) -> None:
        with self._lock:
            self._sessions.pop(sid, None)

    def sweep(self) -> int:
        now = datetime.now(timezone.utc)
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s["expires_at"] <= now]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)


async def run_sweeper(store: SessionStore, interval: int = config.SESSION_CHECK_PERIOD):
    while True:
        await asyncio.sleep(interval)
        removed = store.sweep()
        if removed:
            logger.info("Swept %d expired sessions", removed)


def create_session_token(sid: str, max_age: int = config.SESSION_MAX_AGE) -> str:
    payload = {
        "sid": sid,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=max_age),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, config.SESSION_SECRET, algorithm=config.SESSION_ALG)


def read_session_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    try:
        payload = jwt.decode(token, config.SESSION_SECRET, algorithms=[config.SESSION_ALG])
    except jwt.PyJWTError:
        return None
    return payload.get("sid")


def get_storage(request: Request) -> StorageInterface:
    return request.app.state.storage


def get_sessions(request: Request) -> SessionStore:
    return request.app.state.sessions


def login_user(response: Response, sessions: SessionStore, user: UserRecord) -> None:
    sid = sessions.create(user.id)
    response.set_cookie(
        config.SESSION_COOKIE,
        create_session_token(sid, sessions.max_age),
        max_age=sessions.max_age,
        httponly=True,
        secure=config.APP_ENV == "production",
        samesite="lax",
    )


def logout_user(request: Request, response: Response, sessions: SessionStore) -> None:
    sessions.destroy(read_session_token(request.cookies.get(config.SESSION_COOKIE)))
    response.delete_cookie(config.SESSION_COOKIE)


def get_optional_user(request: Request, storage: StorageInterface = Depends(get_storage),
                      sessions: SessionStore = Depends(get_sessions)) -> Optional[UserRecord]:
    sid = read_session_token(request.cookies.get(config.SESSION_COOKIE))
    user_id = sessions.get(sid)
    if user_id is None:
        return None
    return storage.get_user(user_id)


def require_user(user: Optional[UserRecord] = Depends(get_optional_user)) -> UserRecord:
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def require_admin(user: UserRecord = Depends(require_user)) -> UserRecord:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Access denied. Admin privileges required.")
    return user
