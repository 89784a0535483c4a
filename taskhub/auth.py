import logging
import secrets
from datetime import timedelta
from typing import Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.hash import bcrypt
from sqlalchemy.orm import Session

from . import config, crud, models
from .database import atomic, get_db
from .errors import InvalidCredentials, Unauthenticated, VerificationRequired
from .permissions import ensure_admin

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)

# stands in for the stored hash when the email is unknown
DUMMY_HASH = bcrypt.hash("taskhub-unknown-user")


def verify_password(plain_password, hashed_password):
    return bcrypt.verify(plain_password, hashed_password)


def create_access_token(db: Session, user: models.User, expires_delta: timedelta = None) -> str:
    """Record a new token row for ``user`` and return the signed JWT.

    The row is added to the session but not committed.
    """
    jti = secrets.token_hex(16)
    expire = models.utc_now() + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    db.add(models.AccessToken(user_id=user.id, jti=jti, expires_at=expire))
    to_encode = {"sub": str(user.id), "jti": jti, "exp": expire}
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def issue_token(db: Session, user: models.User) -> str:
    with atomic(db, "Failed to issue access token"):
        token = create_access_token(db, user)
    return token


def lock_user(db: Session, user_id: int) -> models.User:
    """SELECT ... FOR UPDATE on the user row, held until the transaction ends."""
    return db.query(models.User).filter(models.User.id == user_id).with_for_update().one()


def revoke_all_tokens(db: Session, user_id: int) -> int:
    return (
        db.query(models.AccessToken)
        .filter(models.AccessToken.user_id == user_id)
        .delete(synchronize_session=False)
    )


def _decode(token: str) -> Optional[dict]:
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        return None
    if payload.get("sub") is None or payload.get("jti") is None:
        return None
    return payload


def login(db: Session, email: str, password: str):
    """Check credentials and start a fresh session.

    Every token the user held before is deleted in the same transaction that
    creates the new one. The user row is locked first so two concurrent logins
    of one account run one after the other and only the last token survives.
    """
    user = crud.get_user_by_email(db, email)
    if user is None:
        verify_password(password, DUMMY_HASH)
        logger.info("Failed login attempt")
        raise InvalidCredentials()
    if not verify_password(password, user.hashed_password):
        logger.info("Failed login attempt")
        raise InvalidCredentials()

    if not user.email_verified:
        raise VerificationRequired(user.id)

    with atomic(db, "Login failed"):
        lock_user(db, user.id)
        revoked = revoke_all_tokens(db, user.id)
        user.last_login_at = models.utc_now()
        token = create_access_token(db, user)
    db.refresh(user)
    logger.info("User %s logged in (%d previous tokens revoked)", user.id, revoked)
    return user, token


def logout(db: Session, token: str) -> bool:
    """Revoke exactly ``token``. Returns False when it was already gone."""
    payload = _decode(token) if token else None
    if payload is None:
        return False
    with atomic(db, "Logout failed"):
        deleted = (
            db.query(models.AccessToken)
            .filter(models.AccessToken.jti == payload["jti"])
            .delete(synchronize_session=False)
        )
    if deleted:
        logger.info("User %s logged out", payload["sub"])
    return bool(deleted)


def current_user(db: Session, token: Optional[str]) -> models.User:
    if not token:
        raise Unauthenticated()
    payload = _decode(token)
    if payload is None:
        raise Unauthenticated()

    row = db.query(models.AccessToken).filter(models.AccessToken.jti == payload["jti"]).first()
    if row is None or str(row.user_id) != str(payload["sub"]):
        raise Unauthenticated()

    row.last_used_at = models.utc_now()
    db.commit()
    return row.user


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)):
    return current_user(db, token)


def get_current_admin(user: models.User = Depends(get_current_user)):
    ensure_admin(user)
    return user
