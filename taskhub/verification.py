"""Email verification.

An account moves from unverified to verified exactly once. Admin accounts
are treated as verified from the start. Only the most recently generated
token is accepted.
"""
import hashlib
import logging
import secrets
from urllib.parse import urlencode

from sqlalchemy.orm import Session

from . import auth, config, crud, email_utils, models
from .database import atomic
from .errors import AdminNoVerificationNeeded, AlreadyVerified, InvalidToken, ValidationError

logger = logging.getLogger(__name__)

TOKEN_BYTES = 48


def assign_token(user: models.User) -> str:
    """Replace the pending token on ``user`` without committing."""
    token = secrets.token_urlsafe(TOKEN_BYTES)
    user.email_verification_token = token
    return token


def generate_token(db: Session, user: models.User) -> str:
    with atomic(db, "Failed to store verification token"):
        token = assign_token(user)
    return token


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def _matches(expected: str, given: str) -> bool:
    return secrets.compare_digest(expected.encode(), given.encode())


def stamp_verified(user: models.User, token: str = None):
    user.email_verification_token = None
    user.consumed_verification_digest = _digest(token) if token else None
    user.email_verified_at = models.utc_now()


def mark_verified(db: Session, user: models.User, token: str = None):
    with atomic(db, "Failed to verify email"):
        stamp_verified(user, token)


def verification_link(user: models.User, token: str) -> str:
    query = urlencode({"id": user.id, "token": token})
    return f"{config.FRONTEND_URL.rstrip('/')}/verify-email?{query}"


def notify_verification(background_tasks, user: models.User, token: str):
    body = (
        f"Hello {user.name},\n\n"
        "Please confirm your email address by opening the link below:\n\n"
        f"{verification_link(user, token)}\n\n"
        "If you did not create an account, no further action is required."
    )
    email_utils.send_email(background_tasks, user.email, "Verify your email address", body)
    logger.info("Verification email dispatched to user %s", user.id)


def verify(db: Session, user_id: int, token: str):
    """Confirm ``token`` for ``user_id`` and return ``(user, session_token, newly_verified)``.

    Repeating the link that verified the account succeeds again and still
    issues a session token.
    """
    user = crud.get_user_by_id(db, user_id)
    if user is None:
        raise InvalidToken()

    if user.email_verified_at is not None:
        consumed = user.consumed_verification_digest
        if not consumed or not token or not _matches(consumed, _digest(token)):
            raise InvalidToken()
        return user, auth.issue_token(db, user), False

    stored = user.email_verification_token
    if not stored or not token or not _matches(stored, token):
        raise InvalidToken()

    mark_verified(db, user, token)
    logger.info("User %s verified their email", user.id)
    return user, auth.issue_token(db, user), True


def resend(db: Session, background_tasks, email: str):
    user = crud.get_user_by_email(db, email)
    if user is None:
        raise ValidationError({"email": ["The selected email is invalid."]})
    if user.email_verified_at is not None:
        raise AlreadyVerified()
    if user.is_admin:
        raise AdminNoVerificationNeeded()

    token = generate_token(db, user)
    notify_verification(background_tasks, user, token)
