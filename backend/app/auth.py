from __future__ import annotations

import hashlib
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from .database import Database
from .errors import AuthenticationError
from .logger import get_logger
from .models import SessionToken, User

TOKEN_BYTES = 32
TOKEN_EXPIRY_MINUTES = 12 * 60

logger = get_logger(__name__)


@dataclass
class AuthService:
    database: Database
    token_expiry_minutes: int = TOKEN_EXPIRY_MINUTES

    def sign_in(self, username: str, password: str) -> SessionToken:
        normalized = username.strip()
        user = self.database.get_user_by_username(normalized)
        if not user or not user.is_active:
            logger.info("Sign-in refused for %r: unknown or inactive account", normalized)
            raise AuthenticationError("Benutzername nicht gefunden")
        if not verify_password(password, user.password_hash):
            logger.info("Sign-in refused for %r: wrong password", normalized)
            raise AuthenticationError("Passwort ungültig")
        now = _utcnow()
        self.database.purge_expired_tokens(now)
        token = secrets.token_urlsafe(TOKEN_BYTES)
        expires_at = now + timedelta(minutes=self.token_expiry_minutes)
        session = self.database.add_session_token(user.id, token, expires_at)
        logger.info("User %s signed in", user.username)
        return session

    def sign_out(self, token: Optional[str]) -> None:
        if not token:
            return
        try:
            self.database.delete_session_token(token)
        except sqlite3.Error:
            logger.warning("Could not delete session token during sign-out", exc_info=True)

    def get_current_user(self, token: Optional[str]) -> Optional[User]:
        if not token:
            return None
        session = self.database.get_session_token(token)
        if not session:
            return None
        if session.expires_at < _utcnow():
            return None
        user = self.database.get_user(session.user_id)
        if not user or not user.is_active:
            return None
        return user


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.sha256(f"{salt}:{password}".encode("utf-8")).hexdigest()
    return f"{salt}${digest}"


def verify_password(password: str, stored: str) -> bool:
    try:
        salt, digest = stored.split("$", 1)
    except ValueError:
        return False
    check = hashlib.sha256(f"{salt}:{password}".encode("utf-8")).hexdigest()
    return secrets.compare_digest(check, digest)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
