# src/campus_gate/services/admission_service.py
"""
Student admission lifecycle: enrollment -> finance -> teacher activation.

Every state change goes through TRANSITIONS, which also names the one role
allowed to perform it. Re-applying a transition that already happened is a
successful no-op so retried requests are safe.
"""
import re
import secrets
import traceback
from datetime import datetime, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from campus_gate.config import get_config
from campus_gate.exceptions import (
    DuplicateIdentifierError, InvalidStateError, NotAuthorizedError, NotFoundError, ValidationError,
)
from campus_gate.services import ledger_service
from campus_gate.services import notification_service as notifications
from campus_gate.utils.database import (
    Account, AccountState, AccountTransition, Course, Role, session_scope, utc_now,
)
from campus_gate.utils.logger import setup_logger

logger = setup_logger(__name__)
config = get_config()

# (from_state, to_state) -> role allowed to perform it. None means "no account yet".
TRANSITIONS = {
    (None, AccountState.DRAFT_ENROLLED): Role.ENROLLMENT,
    (AccountState.DRAFT_ENROLLED, AccountState.FINANCE_APPROVED): Role.FINANCE,
    (AccountState.FINANCE_APPROVED, AccountState.ACTIVE): Role.TEACHER,
    (AccountState.ACTIVE, AccountState.DEACTIVATED): Role.ADMIN,
}

# Forward order used to recognise a transition that has already been applied
PIPELINE_ORDER = [AccountState.DRAFT_ENROLLED, AccountState.FINANCE_APPROVED, AccountState.ACTIVE]

MAX_TRANSITION_ATTEMPTS = 3
EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def role_for_transition(from_state, to_state):
    return TRANSITIONS.get((from_state, to_state))


def authorize(actor_role, to_state):
    """Capability check: the actor must hold the role the table assigns to the edge into `to_state`."""
    allowed = {role for (_, target), role in TRANSITIONS.items() if target == to_state}
    try:
        actor_role = Role(actor_role)
    except ValueError:
        raise NotAuthorizedError(f"Unknown role: {actor_role}", role=actor_role)
    if actor_role not in allowed:
        raise NotAuthorizedError(
            f"Role '{actor_role.value}' may not move an account to {to_state.value}",
            role=actor_role.value, requested_state=to_state.value,
        )
    return actor_role


def already_applied(current, target):
    """True when `current` is `target` or a later pipeline stage."""
    if current == target:
        return True
    if current in PIPELINE_ORDER and target in PIPELINE_ORDER:
        return PIPELINE_ORDER.index(current) > PIPELINE_ORDER.index(target)
    return False


def _record_transition(session, account, from_state, to_state, actor_role, actor_id):
    session.add(AccountTransition(
        account_id=account.id,
        from_state=from_state.value if from_state else None,
        to_state=to_state.value,
        acting_role=Role(actor_role).value,
        acting_account_id=actor_id,
    ))


def _transition(session, account_id, target, actor_role, actor_id=None, before_commit=None):
    """
    Move an account to `target`. Returns (account, changed).

    `before_commit(account)` runs inside the same transaction, only when the
    transition is actually applied. A concurrent writer that wins the version
    check makes this call re-read and resolve as a no-op.
    """
    authorize(actor_role, target)

    for attempt in range(MAX_TRANSITION_ATTEMPTS):
        account = ledger_service.get_account(session, account_id)
        if target != AccountState.DEACTIVATED and account.role != Role.STUDENT.value:
            raise NotFoundError("Student not found", account_id=account_id)

        current = AccountState(account.state)
        if already_applied(current, target):
            logger.info(f"Account {account_id} already {current.value}; {target.value} is a no-op",
                        extra={"account_id": account_id})
            return account, False

        if (current, target) not in TRANSITIONS:
            raise InvalidStateError(
                f"Cannot move account from {current.value} to {target.value}",
                current_state=current.value, requested_state=target.value, account_id=account_id,
            )

        try:
            if before_commit:
                before_commit(account)
            account.state = target.value
            _record_transition(session, account, current, target, actor_role, actor_id)
            session.commit()
            logger.info(f"Account {account_id}: {current.value} -> {target.value} by {Role(actor_role).value}",
                        extra={"account_id": account_id})
            return account, True
        except StaleDataError:
            session.rollback()
            logger.warning(f"Concurrent update on account {account_id} (attempt {attempt + 1}), re-reading",
                           extra={"account_id": account_id})
        except Exception:
            session.rollback()
            raise

    raise InvalidStateError(f"Account {account_id} kept changing; retry the request", account_id=account_id)


def generate_admission_number(session, year=None):
    year = year or datetime.now(timezone.utc).year
    while True:
        candidate = f"STD{year}{secrets.randbelow(10000):04d}"
        if not session.query(Account.id).filter_by(admission_number=candidate).first():
            return candidate


def check_admission_available(admission_number, session=None):
    with session_scope(session) as session:
        exists = session.query(Account.id).filter_by(admission_number=admission_number).first() is not None
        return {
            "available": not exists,
            "message": "Admission number already exists" if exists else "Admission number is available",
        }


def _resolve_course(session, details):
    course = None
    if details.get("courseId"):
        course = session.get(Course, int(details["courseId"]))
    elif details.get("courseCode"):
        course = session.query(Course).filter(
            func.lower(Course.code) == details["courseCode"].strip().lower()
        ).first()
    if not course:
        raise NotFoundError("Course not found", course_id=details.get("courseId"),
                            course_code=details.get("courseCode"))
    return course


def submit_enrollment(details, actor_role=Role.ENROLLMENT.value, actor_id=None, session=None):
    """Create a student in DraftEnrolled. Raises DuplicateIdentifierError on a taken admission number or email."""
    authorize(actor_role, AccountState.DRAFT_ENROLLED)

    first_name = (details.get("firstName") or "").strip()
    last_name = (details.get("lastName") or "").strip()
    email = (details.get("email") or "").strip().lower()
    level = details.get("level")

    if not first_name or not last_name:
        raise ValidationError("firstName and lastName are required")
    if not EMAIL_REGEX.match(email):
        raise ValidationError(f"Invalid email address: {email}", field="email")
    if level not in config.STUDENT_LEVELS:
        raise ValidationError(f"Invalid level: {level}", field="level", allowed=list(config.STUDENT_LEVELS))

    with session_scope(session) as session:
        admission_number = (details.get("admissionNumber") or "").strip().upper()
        if admission_number and session.query(Account.id).filter_by(admission_number=admission_number).first():
            raise DuplicateIdentifierError("Admission number already exists", field="admissionNumber",
                                           admission_number=admission_number)
        if session.query(Account.id).filter_by(email=email).first():
            raise DuplicateIdentifierError("Email already registered", field="email", email=email)

        course = _resolve_course(session, details)
        admission_number = admission_number or generate_admission_number(session)

        student = Account(
            role=Role.STUDENT.value,
            name=f"{first_name} {last_name}",
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone=details.get("phone"),
            admission_number=admission_number,
            course=course,
            level=level,
            date_of_birth=ledger_service.parse_date(details.get("dateOfBirth"), "dateOfBirth"),
            county_of_birth=details.get("countyOfBirth"),
            state=AccountState.DRAFT_ENROLLED.value,
            created_by=actor_id,
        )
        try:
            session.add(student)
            session.flush()
            _record_transition(session, student, None, AccountState.DRAFT_ENROLLED, actor_role, actor_id)
            session.commit()
        except IntegrityError as e:
            session.rollback()
            logger.warning(f"Duplicate identifier on enrollment of {admission_number}: {str(e)}")
            raise DuplicateIdentifierError("Admission number or email already exists",
                                           admission_number=admission_number, email=email)

        logger.info(f"Enrolled student {student.name} ({admission_number}) as DraftEnrolled",
                    extra={"account_id": student.id, "admission_number": admission_number})

        notifications.notify_role(
            session, Role.FINANCE, notifications.ENROLLMENT, "New Student Registration",
            f"New student {student.name} ({admission_number}) has been enrolled and requires fee processing.",
            payload={"studentId": student.id, "admissionNumber": admission_number},
            sender_id=actor_id, priority="high",
        )
        return {"success": True, "student": student.summary()}


def approve_finance(account_id, fee_details, actor_role=Role.FINANCE.value, actor_id=None, session=None):
    """Attach the fee term and move DraftEnrolled -> FinanceApproved."""
    with session_scope(session) as session:
        if not fee_details.get("gatepassExpiryDate"):
            raise ValidationError("gatepassExpiryDate is required for finance approval", field="gatepassExpiryDate")

        def attach_fee_term(account):
            ledger_service.upsert_fee_term(session, account.id, fee_details, processed_by=actor_id)

        account, changed = _transition(
            session, account_id, AccountState.FINANCE_APPROVED, actor_role, actor_id, before_commit=attach_fee_term
        )
        fee_term = ledger_service.latest_fee_term(session, account.id)

        if changed:
            notifications.notify_role(
                session, Role.TEACHER, notifications.FINANCE_APPROVAL, "Student Ready for Activation",
                f"{account.name} ({account.admission_number}) has been cleared by finance and awaits activation.",
                payload={"studentId": account.id, "admissionNumber": account.admission_number},
                sender_id=actor_id,
            )
        return {
            "success": True,
            "changed": changed,
            "student": account.summary(),
            "fee": fee_term.to_dict() if fee_term else None,
        }


def activate_account(account_id, actor_role=Role.TEACHER.value, actor_id=None, session=None):
    """FinanceApproved -> Active; sends the welcome notification only when the transition happens."""
    with session_scope(session) as session:
        account, changed = _transition(session, account_id, AccountState.ACTIVE, actor_role, actor_id)
        if changed:
            notifications.emit_notification(
                session, account.id, notifications.ACTIVATION, "Welcome",
                f"Welcome {account.first_name or account.name}! Your student account "
                f"({account.admission_number}) is now active.",
                payload={"admissionNumber": account.admission_number}, sender_id=actor_id,
            )
        return {"success": True, "changed": changed, "student": account.summary()}


def deactivate_account(account_id, actor_role=Role.ADMIN.value, actor_id=None, session=None):
    with session_scope(session) as session:
        account, changed = _transition(session, account_id, AccountState.DEACTIVATED, actor_role, actor_id)
        return {"success": True, "changed": changed, "account": account.summary()}


def _generate_account_code(session, role):
    length = config.STAFF_CODE_LENGTHS[role.value]
    while True:
        candidate = str(10 ** (length - 1) + secrets.randbelow(9 * 10 ** (length - 1)))
        if not session.query(Account.id).filter_by(account_code=candidate).first():
            return candidate


def create_staff_account(role, name, email, actor_role=Role.ADMIN.value, actor_id=None, session=None):
    """Staff accounts skip the pipeline and start Active with a numeric login code."""
    if actor_role != Role.ADMIN:
        raise NotAuthorizedError("Only admin may create staff accounts", role=actor_role)
    try:
        role = Role(role)
    except ValueError:
        raise ValidationError(f"Unknown role: {role}", field="role")
    if role == Role.STUDENT:
        raise ValidationError("Students are created through enrollment", field="role")
    email = (email or "").strip().lower()
    if not name or not EMAIL_REGEX.match(email):
        raise ValidationError("name and a valid email are required")

    with session_scope(session) as session:
        if session.query(Account.id).filter_by(email=email).first():
            raise DuplicateIdentifierError("Email already registered", field="email", email=email)
        staff = Account(
            role=role.value,
            name=name,
            email=email,
            account_code=_generate_account_code(session, role),
            state=AccountState.ACTIVE.value,
            created_by=actor_id,
        )
        try:
            session.add(staff)
            session.flush()
            _record_transition(session, staff, None, AccountState.ACTIVE, actor_role, actor_id)
            session.commit()
        except IntegrityError:
            session.rollback()
            raise DuplicateIdentifierError("Email or account code already exists", email=email)
        logger.info(f"Created {role.value} account {staff.account_code} for {name}", extra={"account_id": staff.id})
        return {"success": True, "account": staff.summary()}


def pending_accounts(state, session=None):
    """The finance (DraftEnrolled) and teacher (FinanceApproved) 'new students' queues."""
    state = AccountState(state)
    with session_scope(session) as session:
        students = session.query(Account).filter(
            Account.role == Role.STUDENT.value,
            Account.state == state.value,
        ).order_by(Account.created_at.desc()).all()
        result = []
        for student in students:
            item = student.summary()
            fee_term = ledger_service.latest_fee_term(session, student.id)
            item["fee"] = fee_term.to_dict() if fee_term else None
            result.append(item)
        return result


def list_students(session=None):
    with session_scope(session) as session:
        students = session.query(Account).filter(
            Account.role == Role.STUDENT.value
        ).order_by(Account.created_at.desc()).all()
        return [s.summary() for s in students]


def enrollment_stats(session=None, now=None):
    now = now or utc_now()
    with session_scope(session) as session:
        try:
            students = session.query(Account).filter(Account.role == Role.STUDENT.value)
            recent_cutoff = now - timedelta(days=30)
            by_level = session.query(Account.level, func.count(Account.id)).filter(
                Account.role == Role.STUDENT.value
            ).group_by(Account.level).all()
            by_course = session.query(Course.name, func.count(Account.id)).join(
                Account, Account.course_id == Course.id
            ).filter(Account.role == Role.STUDENT.value).group_by(Course.name).all()
            by_state = session.query(Account.state, func.count(Account.id)).filter(
                Account.role == Role.STUDENT.value
            ).group_by(Account.state).all()

            return {
                "totalStudents": students.count(),
                "recentEnrollments": students.filter(Account.created_at >= recent_cutoff).count(),
                "studentsByLevel": [{"level": level, "count": count} for level, count in by_level],
                "studentsByCourse": [{"courseName": name, "count": count} for name, count in by_course],
                "studentsByState": {state: count for state, count in by_state},
            }
        except Exception as e:
            logger.error(f"Error building enrollment stats: {str(e)}\n{traceback.format_exc()}")
            raise
