import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from fastapi import BackgroundTasks

from . import config

logger = logging.getLogger(__name__)


def fake_send_email(email_to: str, subject: str, body: str):
    logger.info("----- Sending email -----\nTo: %s\nSubject: %s\n%s\n-------------------------",
                email_to, subject, body)


def send_email_smtp(email_to: str, subject: str, body: str):
    msg = MIMEMultipart("alternative")
    msg["From"] = config.MAIL_FROM
    msg["To"] = email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    with smtplib.SMTP(config.SMTP_SERVER, config.SMTP_PORT) as server:
        server.starttls()
        server.login(config.SMTP_USER, config.SMTP_PASSWORD)
        server.sendmail(config.MAIL_FROM, email_to, msg.as_string())


def _deliver(email_to: str, subject: str, body: str):
    try:
        if config.MAIL_TRANSPORT == "smtp":
            send_email_smtp(email_to, subject, body)
        else:
            fake_send_email(email_to, subject, body)
    except (smtplib.SMTPException, OSError):
        logger.exception("Failed to deliver email to %s", email_to)


def send_email(background_tasks: Optional[BackgroundTasks], email_to: str, subject: str, body: str):
    """Hand an email to the configured transport.

    ``celery`` enqueues it on the worker; otherwise it is delivered after the
    response is sent, or right away when there is no request in flight.
    """
    if config.MAIL_TRANSPORT == "celery":
        from .celery_worker import send_email_async
        send_email_async.delay(email_to, subject, body)
    elif background_tasks is not None:
        background_tasks.add_task(_deliver, email_to, subject, body)
    else:
        _deliver(email_to, subject, body)
    logger.debug("Queued email %r via %s transport", subject, config.MAIL_TRANSPORT)
