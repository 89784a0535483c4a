import logging

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import auth, config, crud, models, schemas, verification
from .errors import InternalError, ValidationError

logger = logging.getLogger(__name__)

EMAIL_TAKEN = {"email": ["The email has already been taken."]}


def register(db: Session, background_tasks, user: schemas.UserCreate, role: str = models.ROLE_USER):
    """Create an account and return ``(user, session_token_or_None)``.

    Regular users get a verification email and no session until they verify.
    Admins are verified on creation and receive a session token immediately.
    """
    if crud.get_user_by_email(db, user.email):
        raise ValidationError(EMAIL_TAKEN)

    session_token = verification_token = None
    try:
        db_user = crud.create_user(db, user, role=role)
        if db_user.is_admin:
            verification.stamp_verified(db_user)
            session_token = auth.create_access_token(db, db_user)
        else:
            verification_token = verification.assign_token(db_user)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationError(EMAIL_TAKEN)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to create account")
        raise InternalError("Failed to create account")
    db.refresh(db_user)
    logger.info("User %s registered with role %s", db_user.id, role)

    if verification_token:
        verification.notify_verification(background_tasks, db_user, verification_token)
    return db_user, session_token


def ensure_admin_account(db: Session):
    """Create the bootstrap admin from ADMIN_EMAIL / ADMIN_PASSWORD if missing."""
    if not config.ADMIN_EMAIL or not config.ADMIN_PASSWORD:
        logger.debug("ADMIN_EMAIL/ADMIN_PASSWORD not set, skipping admin bootstrap")
        return None
    existing = crud.get_user_by_email(db, config.ADMIN_EMAIL)
    if existing:
        logger.info("Admin user already exists (email: %s)", config.ADMIN_EMAIL)
        return existing

    try:
        data = schemas.UserCreate(name=config.ADMIN_NAME, email=config.ADMIN_EMAIL, password=config.ADMIN_PASSWORD)
    except PydanticValidationError as e:
        logger.error("Invalid admin bootstrap settings: %s", e)
        return None
    admin, _ = register(db, None, data, role=models.ROLE_ADMIN)
    logger.info("Admin user created (email: %s)", admin.email)
    return admin
