# src/campus_gate/services/notification_service.py
import time
import traceback
from datetime import timedelta

import requests
from ratelimit import limits, RateLimitException
from sqlalchemy.orm import Session

from campus_gate.config import get_config
from campus_gate.services.ledger_service import gate_today, latest_fee_term
from campus_gate.utils.database import Account, AccountState, Notification, Role, init_db
from campus_gate.utils.logger import setup_logger

config = get_config()
logger = setup_logger(__name__)

ACTIVATION = "activation"
CODE_ISSUED = "gatepass_code"
ENROLLMENT = "enrollment"
FINANCE_APPROVAL = "finance_approval"
GATEPASS_EXPIRY = "gatepass_expiry"


@limits(calls=30, period=60)
def _post_webhook(url, body):
    return requests.post(url, json=body, timeout=config.NOTIFICATION_TIMEOUT)


def deliver_webhook(notification, max_attempts=3, delay=1):
    """POST {accountId, kind, payload} to the notification collaborator. Returns True when accepted."""
    url = config.NOTIFICATION_WEBHOOK_URL
    if not url:
        logger.debug(f"No NOTIFICATION_WEBHOOK_URL set; notification {notification.id} kept in outbox only")
        return False

    body = {
        "accountId": notification.recipient_id,
        "kind": notification.kind,
        "payload": dict(notification.payload or {}, title=notification.title, message=notification.message),
    }
    extra_log = {"account_id": notification.recipient_id}

    for attempt in range(max_attempts):
        try:
            response = _post_webhook(url, body)
            if 200 <= response.status_code < 300:
                logger.info(f"Notification {notification.kind} delivered for account {notification.recipient_id}",
                            extra=extra_log)
                return True
            logger.warning(f"Notification webhook error {response.status_code}: {response.text}", extra=extra_log)
        except RateLimitException as e:
            logger.warning(f"Notification webhook rate limited, retry in {e.period_remaining:.0f}s", extra=extra_log)
            return False
        except requests.RequestException as e:
            logger.error(f"Error delivering notification on attempt {attempt + 1}: {str(e)}", extra=extra_log)
        if attempt < max_attempts - 1:
            time.sleep(delay)
    return False


def emit_notification(session, recipient_id, kind, title, message, payload=None, sender_id=None, priority="medium"):
    """
    Fire-and-forget lifecycle notification.

    Runs in its own transaction on the caller's engine, after the caller has
    committed. Any failure is logged and swallowed so it can never undo or fail
    the state change that triggered it.
    """
    extra_log = {"account_id": recipient_id, "kind": kind}
    try:
        with Session(bind=session.get_bind(), expire_on_commit=False) as outbox:
            notification = Notification(
                recipient_id=recipient_id,
                sender_id=sender_id,
                kind=kind,
                title=title,
                message=message,
                payload=payload or {},
                priority=priority,
            )
            outbox.add(notification)
            outbox.commit()

            if deliver_webhook(notification):
                notification.delivered = True
                outbox.commit()
        logger.info(f"Notification '{kind}' emitted to account {recipient_id}", extra=extra_log)
        return notification
    except Exception as e:
        logger.error(f"Failed to emit notification '{kind}' to account {recipient_id}: {str(e)}\n"
                     f"{traceback.format_exc()}", extra=extra_log)
        return None


def notify_role(session, role, kind, title, message, payload=None, sender_id=None, priority="medium"):
    """Send the same notification to every active account of a staff role."""
    try:
        recipients = session.query(Account.id).filter(
            Account.role == Role(role).value,
            Account.state == AccountState.ACTIVE.value,
        ).all()
    except Exception as e:
        logger.error(f"Could not load {role} recipients for '{kind}': {str(e)}")
        return 0

    sent = 0
    for (recipient_id,) in recipients:
        if emit_notification(session, recipient_id, kind, title, message, payload, sender_id, priority):
            sent += 1
    return sent


def notify_expiring_gatepasses(session=None, days_ahead=None, today=None):
    """
    Warn active students whose gate pass expires within `days_ahead` days.
    At most one notice per (account, expiry date).
    """
    owns_session = session is None
    session = session or init_db()
    days_ahead = config.EXPIRY_NOTICE_DAYS if days_ahead is None else days_ahead
    today = today or gate_today()
    horizon = today + timedelta(days=days_ahead)
    sent = 0

    try:
        students = session.query(Account).filter(
            Account.role == Role.STUDENT.value,
            Account.state == AccountState.ACTIVE.value,
        ).all()
        logger.info(f"Checking gate-pass expiry for {len(students)} active students (horizon {horizon})")

        for student in students:
            fee_term = latest_fee_term(session, student.id)
            expiry = fee_term.gatepass_expiry_date if fee_term else None
            if not expiry or expiry < today or expiry > horizon:
                continue

            already_sent = [
                n for n in session.query(Notification).filter(
                    Notification.recipient_id == student.id,
                    Notification.kind == GATEPASS_EXPIRY,
                ).all()
                if (n.payload or {}).get("expiryDate") == expiry.isoformat()
            ]
            if already_sent:
                continue

            days_left = (expiry - today).days
            message = (
                f"Your gate pass expires on {expiry.strftime('%Y-%m-%d')}"
                f" ({'today' if days_left == 0 else f'in {days_left} day(s)'}). "
                f"Please clear your fee balance with the finance office to keep access."
            )
            if emit_notification(
                session, student.id, GATEPASS_EXPIRY, "Gate Pass Expiring Soon", message,
                payload={"expiryDate": expiry.isoformat(), "daysLeft": days_left,
                         "balance": fee_term.balance},
                priority="high",
            ):
                sent += 1

        logger.info(f"Sent {sent} gate-pass expiry notices")
        return sent
    finally:
        if owns_session:
            session.remove()
