# Overview: Service-layer operations for API sessions and actor resolution.

"""
Session Token Management Service

WHY: The stock ledger needs to know WHO performed each movement. The
actor is resolved once per request from the bearer token and passed to
services as an explicit ActorContext value. There is no fallback to "any
admin": unauthenticated requests are rejected before they reach a service.

Scheduled jobs run as ActorContext.system(), which is recorded on the
movement as performed_by="system" with no user id.

SECURITY FEATURES:
- Cryptographically secure random tokens (32 bytes)
- Tokens hashed with SHA-256 before storage (fast, one-way)
- Absolute timeout (SESSION_TTL_HOURS)
- Revocable
"""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import SessionToken, User
from ..models.auth import ROLE_ADMIN
from backoffice.time_utils import utcnow


SYSTEM_ACTOR_NAME = "system"


@dataclass(frozen=True)
class ActorContext:
    """Who is performing an operation."""
    user_id: int | None
    username: str
    role: str

    @classmethod
    def from_user(cls, user: User) -> "ActorContext":
        return cls(user_id=user.id, username=user.username, role=user.role)

    @classmethod
    def system(cls) -> "ActorContext":
        return cls(user_id=None, username=SYSTEM_ACTOR_NAME, role=ROLE_ADMIN)


def generate_token() -> str:
    """
    Generate cryptographically secure random token.

    Returns 64-character hex string (32 bytes of entropy).
    This is the plaintext token sent to client (never stored).
    """
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """Hash token for database storage using SHA-256."""
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def create_session(user_id: int) -> tuple[SessionToken, str]:
    """
    Create new session token for user.

    Returns (session_record, plaintext_token).
    Raises ValueError if the user does not exist or is inactive.
    """
    user = db.session.query(User).filter_by(id=user_id).first()
    if not user:
        raise ValueError("User not found")
    if not user.is_active:
        raise ValueError("User is not active")

    plaintext_token = generate_token()
    now = utcnow()
    ttl_hours = current_app.config.get("SESSION_TTL_HOURS", 24)

    session = SessionToken(
        user_id=user_id,
        token_hash=hash_token(plaintext_token),
        created_at=now,
        expires_at=now + timedelta(hours=ttl_hours),
        is_revoked=False,
    )
    db.session.add(session)
    db.session.commit()

    return session, plaintext_token


def validate_session(token: str) -> ActorContext | None:
    """
    Resolve a bearer token to an ActorContext.

    Returns None if the token is unknown, expired, revoked, or belongs to
    a deactivated user.
    """
    session = db.session.query(SessionToken).filter_by(
        token_hash=hash_token(token),
        is_revoked=False,
    ).first()
    if not session:
        return None

    if session.expires_at < utcnow():
        return None

    user = session.user
    if not user or not user.is_active:
        return None

    return ActorContext.from_user(user)


def revoke_session(token: str) -> bool:
    session = db.session.query(SessionToken).filter_by(token_hash=hash_token(token)).first()
    if not session or session.is_revoked:
        return False
    session.is_revoked = True
    session.revoked_at = utcnow()
    db.session.commit()
    return True
