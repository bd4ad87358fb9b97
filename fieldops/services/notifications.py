"""
Notification service for email and SMS.
Respects user preferences and quiet hours; every attempt is written to
NotificationLog and delivery failures never propagate to callers.
"""
import smtplib
from datetime import datetime, time
from email.message import EmailMessage
from typing import Optional, Dict, List, Tuple

import httpx
import pytz
import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import NotificationLog, NotificationPreference, User

logger = structlog.get_logger(__name__)

# (filename, content bytes, mime type)
Attachment = Tuple[str, bytes, str]


def is_quiet_hours(user_pref: Optional[Dict], timezone_str: str = "America/New_York", now: Optional[datetime] = None) -> bool:
    """
    Check if the current time is within the user's quiet hours.

    Args:
        user_pref: Preferences dict holding "quiet_hours": {start, end, timezone}
        timezone_str: Fallback timezone
        now: Override for the current time (aware)

    Returns:
        True if within quiet hours
    """
    if not user_pref or not user_pref.get("quiet_hours"):
        return False

    quiet_hours = user_pref.get("quiet_hours") or {}
    if not quiet_hours.get("start") or not quiet_hours.get("end"):
        return False

    try:
        tz = pytz.timezone(quiet_hours.get("timezone") or timezone_str)
        start_time = time.fromisoformat(quiet_hours["start"])
        end_time = time.fromisoformat(quiet_hours["end"])
    except (pytz.UnknownTimeZoneError, ValueError):
        return False

    current = (now.astimezone(tz) if now else datetime.now(tz)).time()

    # Window may span midnight
    if start_time <= end_time:
        return start_time <= current <= end_time
    return current >= start_time or current <= end_time


def should_send_notification(
    db: Session,
    user_id,
    channel: str,
    timezone_str: str = "America/New_York",
    now: Optional[datetime] = None,
) -> bool:
    """
    Check if a notification should be sent based on global switches,
    user preferences and quiet hours.

    Args:
        db: Database session
        user_id: User ID
        channel: email|sms|push
        timezone_str: User's timezone
        now: Override for the current time
    """
    if channel == "push" and not settings.enable_push:
        return False
    if channel == "email" and not settings.enable_email:
        return False
    if channel == "sms" and not settings.enable_sms:
        return False

    pref = db.query(NotificationPreference).filter(NotificationPreference.user_id == user_id).first()
    if pref:
        if not getattr(pref, channel, True):
            return False
        if is_quiet_hours({"quiet_hours": pref.quiet_hours}, timezone_str, now=now):
            return False

    return True


def _log(db: Session, organization_id, channel: str, recipient: str, subject: Optional[str], body: Optional[str],
         status: str, error: Optional[str] = None, **refs) -> NotificationLog:
    entry = NotificationLog(
        organization_id=organization_id,
        channel=channel,
        recipient=recipient,
        subject=subject,
        body=body,
        status=status,
        error=error,
        **refs,
    )
    db.add(entry)
    db.flush()
    return entry


def _deliver_email(to: str, subject: str, body: str, attachments: Optional[List[Attachment]] = None) -> None:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.mail_from
    msg["To"] = to
    msg.set_content(body)
    for filename, content, mime in attachments or []:
        maintype, _, subtype = mime.partition("/")
        msg.add_attachment(content, maintype=maintype, subtype=subtype or "octet-stream", filename=filename)
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as s:
        if settings.smtp_tls:
            s.starttls()
        if settings.smtp_username and settings.smtp_password:
            s.login(settings.smtp_username, settings.smtp_password)
        s.send_message(msg)


def send_email(
    db: Session,
    organization_id,
    to: Optional[str],
    subject: str,
    body: str,
    attachments: Optional[List[Attachment]] = None,
    **refs,
) -> NotificationLog:
    """
    Send an email over SMTP and log the attempt.

    Returns the NotificationLog row; status is skipped when SMTP or email is
    disabled, failed when delivery raised.
    """
    if not to:
        return _log(db, organization_id, "email", "", subject, body, "skipped", "No recipient", **refs)
    if not (settings.enable_email and settings.smtp_host and settings.mail_from):
        return _log(db, organization_id, "email", to, subject, body, "skipped", "Email not configured", **refs)
    try:
        _deliver_email(to, subject, body, attachments)
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("email_send_failed", recipient=to, error=str(e))
        return _log(db, organization_id, "email", to, subject, body, "failed", str(e), **refs)
    logger.info("email_sent", recipient=to, subject=subject)
    return _log(db, organization_id, "email", to, subject, body, "sent", **refs)


def send_sms(db: Session, organization_id, to: Optional[str], body: str, **refs) -> NotificationLog:
    """Send an SMS through the configured HTTP gateway and log the attempt."""
    if not to:
        return _log(db, organization_id, "sms", "", None, body, "skipped", "No recipient", **refs)
    if not (settings.enable_sms and settings.sms_gateway_url):
        return _log(db, organization_id, "sms", to, None, body, "skipped", "SMS not configured", **refs)
    headers = {}
    if settings.sms_gateway_token:
        headers["Authorization"] = f"Bearer {settings.sms_gateway_token}"
    try:
        resp = httpx.post(
            settings.sms_gateway_url,
            json={"to": to, "message": body},
            headers=headers,
            timeout=settings.sms_timeout_seconds,
        )
        resp.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("sms_send_failed", recipient=to, error=str(e))
        return _log(db, organization_id, "sms", to, None, body, "failed", str(e), **refs)
    logger.info("sms_sent", recipient=to)
    return _log(db, organization_id, "sms", to, None, body, "sent", **refs)


def notify_user(
    db: Session,
    user: User,
    subject: str,
    body: str,
    channels: Tuple[str, ...] = ("email",),
    timezone_str: Optional[str] = None,
    related_entity: Optional[str] = None,
) -> List[NotificationLog]:
    """Send to a user on each channel their preferences allow."""
    tz = timezone_str or (user.organization.timezone if user.organization else settings.tz_default)
    results = []
    for channel in channels:
        if not should_send_notification(db, user.id, channel, tz):
            recipient = user.email if channel == "email" else (user.phone or "")
            results.append(_log(db, user.organization_id, channel, recipient, subject, body, "skipped",
                                "Suppressed by preferences", user_id=user.id, related_entity=related_entity))
            continue
        if channel == "email":
            results.append(send_email(db, user.organization_id, user.email, subject, body,
                                      user_id=user.id, related_entity=related_entity))
        elif channel == "sms":
            results.append(send_sms(db, user.organization_id, user.phone, body,
                                    user_id=user.id, related_entity=related_entity))
    return results
