# src/campus_gate/services/gate_service.py
"""
Gate-pass verification engine.

Each request for a student is evaluated against that student's counter row
for the current calendar day. The first CODE_THRESHOLD successful checks are
granted on the gate pass alone; the check that reaches the threshold issues a
six-digit code to the student's dashboard, and every later check that day must
present it.
"""
import enum
import hmac
import threading
import time
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from campus_gate.config import get_config
from campus_gate.exceptions import (
    AlreadyVerifiedError, CodeRequiredError, ExpiredGatePassError, InvalidCodeError, NotFoundError,
)
from campus_gate.services import ledger_service
from campus_gate.services import notification_service as notifications
from campus_gate.services.receipt_service import consume_receipt, issue_receipt
from campus_gate.utils.database import (
    Account, AccountState, GateVerificationLog, Role, VerificationTimestamp, as_utc, session_scope, utc_now,
)
from campus_gate.utils.logger import setup_logger

logger = setup_logger(__name__)
config = get_config()


class VerificationOutcome(str, enum.Enum):
    GRANTED = "Granted"
    DENIED_EXPIRED = "Denied-Expired"
    DENIED_NEEDS_CODE = "Denied-NeedsCode"
    DENIED_ALREADY_VERIFIED = "Denied-AlreadyVerified"
    DENIED_INVALID_CODE = "Denied-InvalidCode"
    DENIED_NOT_FOUND = "Denied-NotFound"


OUTCOME_ERRORS = {
    VerificationOutcome.DENIED_EXPIRED: ExpiredGatePassError,
    VerificationOutcome.DENIED_NEEDS_CODE: CodeRequiredError,
    VerificationOutcome.DENIED_ALREADY_VERIFIED: AlreadyVerifiedError,
    VerificationOutcome.DENIED_INVALID_CODE: InvalidCodeError,
    VerificationOutcome.DENIED_NOT_FOUND: NotFoundError,
}


@dataclass
class VerificationResult:
    outcome: VerificationOutcome
    message: str
    student: Optional[dict] = None
    expiry_date: Optional[str] = None
    verified_at: Optional[str] = None
    verification_time: Optional[str] = None
    verifications_today: int = 0
    balance: Optional[float] = None
    warning: Optional[str] = None
    code_issued: bool = False
    extra: dict = field(default_factory=dict)

    @property
    def granted(self):
        return self.outcome == VerificationOutcome.GRANTED

    @property
    def http_status(self):
        if self.granted:
            return 200
        return OUTCOME_ERRORS[self.outcome].http_status

    def raise_for_outcome(self):
        """Raise the matching CampusGateError for any denial."""
        if self.granted:
            return
        context = self.to_dict()
        context.pop("success", None)
        context.pop("message", None)
        raise OUTCOME_ERRORS[self.outcome](self.message, **context)

    def to_dict(self):
        body = {
            "success": self.granted,
            "outcome": self.outcome.value,
            "message": self.message,
            "student": self.student,
            "expiryDate": self.expiry_date,
            "verificationDate": self.verified_at,
            "verificationTime": self.verification_time,
            "verificationsToday": self.verifications_today,
            "balance": self.balance,
            "warning": self.warning,
            "isExpired": self.outcome == VerificationOutcome.DENIED_EXPIRED,
            "requiresCode": self.outcome in (VerificationOutcome.DENIED_NEEDS_CODE,
                                             VerificationOutcome.DENIED_INVALID_CODE),
            "codeIssued": self.code_issued,
        }
        body.update(self.extra)
        return body


class KeyedLocks:
    """One lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


_record_locks = KeyedLocks()

DAILY_RECORD_CONSTRAINT = "uq_daily_record_account_day"
DAILY_RECORD_SQLITE_COLUMNS = "daily_verification_records.account_id, daily_verification_records.day"


def _is_retryable(error):
    if isinstance(error, StaleDataError):
        return True
    if isinstance(error, IntegrityError):
        # Only a lost race creating the (account, day) row; FK and other violations are real errors
        text = str(error.orig)
        return DAILY_RECORD_CONSTRAINT in text or DAILY_RECORD_SQLITE_COLUMNS in text
    if isinstance(error, OperationalError):
        text = str(error).lower()
        return "locked" in text or "deadlock" in text or "could not serialize" in text
    return False


def _student_card(student):
    return {
        "id": student.id,
        "name": student.name,
        "admissionNumber": student.admission_number,
        "course": student.course.name if student.course else None,
        "courseCode": student.course.code if student.course else None,
        "level": student.level,
    }


def _log_attempt(session, student, outcome, now, verification_time, expiry, count, verified_by):
    session.add(GateVerificationLog(
        account_id=student.id,
        admission_number=student.admission_number,
        verified_at=now,
        day=ledger_service.gate_today(now),
        verification_time=verification_time,
        outcome=outcome.value,
        expiry_date=expiry,
        verifications_today=count,
        verified_by=verified_by,
    ))


def _evaluate(session, student, code, verified_by, now, today, dedup_window, threshold):
    """Steps 2-6 for one request. Runs under the (account, day) lock; caller commits."""
    record = ledger_service.get_or_create_daily_record(session, student.id, today)
    fee_term = ledger_service.latest_fee_term(session, student.id)
    expiry = fee_term.gatepass_expiry_date if fee_term else None
    verification_time = ledger_service.local_now(now).strftime("%I:%M %p")
    extra_log = {"account_id": student.id, "admission_number": student.admission_number}

    def finish(outcome, message, **kwargs):
        _log_attempt(session, student, outcome, now, verification_time, expiry,
                     record.verification_count, verified_by)
        return VerificationResult(
            outcome=outcome,
            message=message,
            student=_student_card(student),
            expiry_date=expiry.isoformat() if expiry else None,
            verified_at=now.isoformat(),
            verification_time=verification_time,
            verifications_today=record.verification_count,
            balance=fee_term.balance if fee_term else None,
            **kwargs,
        )

    def grant():
        record.verification_count += 1
        record.last_verified_at = now
        record.timestamps.append(VerificationTimestamp(verified_at=now))

    if expiry is None:
        logger.warning(f"No gate pass expiry date set for {student.admission_number}", extra=extra_log)
        return finish(VerificationOutcome.DENIED_EXPIRED,
                      "No gate pass expiry date set for this student. Please contact finance office.")
    if expiry < today:
        logger.warning(f"Gate pass for {student.admission_number} expired on {expiry}", extra=extra_log)
        return finish(VerificationOutcome.DENIED_EXPIRED,
                      f"Gate pass expired on {expiry.strftime('%Y-%m-%d')}. Please pay your fees.")

    last = as_utc(record.last_verified_at)
    if dedup_window > 0 and last is not None and abs((now - last).total_seconds()) < dedup_window:
        logger.info(f"Duplicate verification for {student.admission_number} within {dedup_window}s",
                    extra=extra_log)
        return finish(VerificationOutcome.DENIED_ALREADY_VERIFIED,
                      f"This admission was just verified at {as_verification_time(last)}.",
                      extra={"previousVerificationTime": as_verification_time(last)})

    if record.verification_count < threshold:
        previous = as_verification_time(last) if last else None
        grant()
        code_issued = False
        if record.verification_count == threshold:
            issue_receipt(session, student, record, now)
            code_issued = True
        warning = None
        if record.verification_count == threshold - 1:
            warning = (f"This admission was already verified today at {previous}. "
                       f"Next verification will require a security code.")
        logger.info(f"Granted {student.admission_number}: verification {record.verification_count} today",
                    extra=extra_log)
        return finish(VerificationOutcome.GRANTED,
                      f"Valid gate pass until {expiry.strftime('%Y-%m-%d')}",
                      warning=warning, code_issued=code_issued,
                      extra={"previousVerificationTime": previous})

    if not code:
        logger.info(f"Code required for {student.admission_number} ({record.verification_count} today)",
                    extra=extra_log)
        return finish(VerificationOutcome.DENIED_NEEDS_CODE,
                      "This admission has been verified several times today. For security, a 6-digit "
                      "verification code has been sent to the student dashboard. Please ask the student "
                      "for the code.")

    if not hmac.compare_digest(str(code).strip(), record.issued_code or ""):
        logger.warning(f"Invalid verification code for {student.admission_number}", extra=extra_log)
        return finish(VerificationOutcome.DENIED_INVALID_CODE, "Invalid or expired verification code")

    grant()
    consume_receipt(record.receipt, now)
    logger.info(f"Granted {student.admission_number} with code: verification {record.verification_count} today",
                extra=extra_log)
    return finish(VerificationOutcome.GRANTED, f"Valid gate pass until {expiry.strftime('%Y-%m-%d')}")


def as_verification_time(moment):
    return ledger_service.local_now(moment).strftime("%I:%M %p")


def verify_gate_pass(admission_number, course, code=None, verified_by=None, now=None, session=None,
                     dedup_window=None):
    """
    Evaluate one gate request. Returns a VerificationResult; denials are
    results, not exceptions (use raise_for_outcome() to convert).
    """
    now = as_utc(now) if now else utc_now()
    today = ledger_service.gate_today(now)
    dedup_window = config.DEDUP_WINDOW_SECONDS if dedup_window is None else dedup_window
    threshold = config.CODE_THRESHOLD
    extra_log = {"admission_number": admission_number}

    with session_scope(session) as session:
        student = ledger_service.find_student(session, admission_number, course)
        if not student or student.state != AccountState.ACTIVE.value:
            logger.warning(f"No active student for admission={admission_number}, course={course}",
                           extra=extra_log)
            session.rollback()
            return VerificationResult(
                outcome=VerificationOutcome.DENIED_NOT_FOUND,
                message="No active student found with this admission number and course",
                verified_at=now.isoformat(),
            )
        account_id = student.id

        attempts = max(1, config.VERIFY_MAX_RETRIES)
        with _record_locks.hold((account_id, today)):
            for attempt in range(attempts):
                try:
                    result = _evaluate(session, student, code, verified_by, now, today, dedup_window, threshold)
                    session.commit()
                    break
                except Exception as e:
                    session.rollback()
                    if not _is_retryable(e) or attempt == attempts - 1:
                        logger.error(f"Error verifying {admission_number}: {str(e)}\n{traceback.format_exc()}",
                                     extra=extra_log)
                        raise
                    logger.warning(f"Conflict on daily record for account {account_id} "
                                   f"(attempt {attempt + 1}): {type(e).__name__}", extra=extra_log)
                    time.sleep(config.VERIFY_RETRY_DELAY * (attempt + 1))
                    student = ledger_service.get_account(session, account_id)

        if result.code_issued:
            record = ledger_service.get_daily_record(session, account_id, today)
            notifications.emit_notification(
                session, account_id, notifications.CODE_ISSUED, "Gate Verification Code Required",
                f"SECURITY ALERT: Your admission number has been used for verification {threshold} times today. "
                f"Your verification code is: {record.issued_code}. This code is valid until end of day. "
                f"If you did not request this, please contact security.",
                payload={"admissionNumber": admission_number, "day": today.isoformat()},
                sender_id=verified_by, priority="high",
            )
        return result


def _log_query(session, start_day=None, end_day=None):
    query = session.query(GateVerificationLog)
    if start_day:
        query = query.filter(GateVerificationLog.day >= start_day)
    if end_day:
        query = query.filter(GateVerificationLog.day <= end_day)
    return query


def todays_verifications(session=None, now=None):
    today = ledger_service.gate_today(now)
    with session_scope(session) as session:
        logs = _log_query(session, today, today).order_by(GateVerificationLog.verified_at.desc()).all()
        return [log.to_dict() for log in logs]


def verification_history(start_date=None, end_date=None, limit=50, session=None):
    start_day = ledger_service.parse_date(start_date, "startDate")
    end_day = ledger_service.parse_date(end_date, "endDate")
    with session_scope(session) as session:
        logs = _log_query(session, start_day, end_day).order_by(
            GateVerificationLog.verified_at.desc()
        ).limit(int(limit)).all()
        return [log.to_dict() for log in logs]


def dashboard_stats(session=None, now=None):
    today = ledger_service.gate_today(now)
    with session_scope(session) as session:
        todays = _log_query(session, today, today)
        return {
            "todayVerifications": todays.count(),
            "validToday": todays.filter(GateVerificationLog.outcome == VerificationOutcome.GRANTED.value).count(),
            "expiredToday": todays.filter(
                GateVerificationLog.outcome == VerificationOutcome.DENIED_EXPIRED.value
            ).count(),
            "totalStudents": session.query(Account).filter(Account.role == Role.STUDENT.value).count(),
        }
