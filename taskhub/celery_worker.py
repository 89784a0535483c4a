import logging
import smtplib

from celery import Celery

from . import config

logger = logging.getLogger(__name__)

celery = Celery("taskhub", broker=config.CELERY_BROKER_URL, backend=config.CELERY_BACKEND_URL)
celery.conf.task_acks_late = True


@celery.task(
    name="taskhub.send_email",
    autoretry_for=(smtplib.SMTPException, OSError),
    retry_backoff=True,
    max_retries=3,
)
def send_email_async(email_to: str, subject: str, body: str):
    from .email_utils import send_email_smtp

    logger.info("Delivering %r to %s", subject, email_to)
    send_email_smtp(email_to, subject, body)
