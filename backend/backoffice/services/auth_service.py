# Overview: Service-layer operations for user accounts; encapsulates business logic and database work.

"""
User Account Service

WHY: Every stock movement is attributed to an actor. Users are created
here (CLI bootstrap, tests) with bcrypt-hashed passwords.

Login screens and token refresh are handled by the front-office; this
service only verifies credentials so the CLI can issue API tokens.
"""

import re

import bcrypt
from flask import current_app

from ..extensions import db
from ..models import User
from ..models.auth import ROLES


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


class UserValidationError(Exception):
    """Raised when user data fails validation."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 8 characters
    - At least one letter
    - At least one digit

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Za-z]', password):
        raise PasswordValidationError("Password must contain at least one letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt.

    Cost factor comes from BCRYPT_ROUNDS (12 unless configured; tests lower it).
    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    rounds = current_app.config.get("BCRYPT_ROUNDS", 12)
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')  # Store as string in database


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    bcrypt.checkpw() is timing-safe.
    """
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        # Malformed hash in the database
        return False


def create_user(
    username: str,
    password: str,
    role: str,
    email: str | None = None,
) -> User:
    """
    Create new user with bcrypt password hashing.

    Raises:
        UserValidationError: unknown role or duplicate username
        PasswordValidationError: password doesn't meet requirements
    """
    username = (username or "").strip()
    if not username:
        raise UserValidationError("Username is required")
    if role not in ROLES:
        raise UserValidationError(f"Invalid role. Must be one of: {', '.join(sorted(ROLES))}")

    existing = db.session.query(User).filter_by(username=username).first()
    if existing:
        raise UserValidationError(f"Username '{username}' already exists")

    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password),
        role=role,
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(username: str, password: str) -> User | None:
    """Return the active user matching the credentials, else None."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user or not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user
