import time
from datetime import datetime, date, time as dt_time, timezone
from zoneinfo import ZoneInfo

from campus_gate.config import get_config
from campus_gate.exceptions import NotFoundError, ValidationError
from campus_gate.utils.database import (
    Account, AccountState, DailyVerificationRecord, FeePayment, FeeStatus, FeeTerm, Role, utc_now,
)
from campus_gate.utils.logger import setup_logger

logger = setup_logger(__name__)
config = get_config()


def gate_zone():
    return ZoneInfo(config.GATE_TIMEZONE)


def local_now(now=None):
    """Current wall-clock time in the gate's timezone."""
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(gate_zone())


def gate_today(now=None):
    return local_now(now).date()


def end_of_day(day):
    """Last instant of the given calendar day in the gate's timezone, as UTC."""
    local_end = datetime.combine(day, dt_time(23, 59, 59, 999999), tzinfo=gate_zone())
    return local_end.astimezone(timezone.utc)


def start_of_day(day):
    local_start = datetime.combine(day, dt_time(0, 0), tzinfo=gate_zone())
    return local_start.astimezone(timezone.utc)


def parse_date(value, field):
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"Invalid date for {field}: {value} (expected YYYY-MM-DD)", field=field)


def parse_amount(value, field, default=0.0):
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid amount for {field}: {value}", field=field)


# Accounts

def get_account(session, account_id):
    account = session.get(Account, account_id)
    if not account:
        raise NotFoundError(f"Account {account_id} not found", account_id=account_id)
    return account


def find_student(session, admission_number, course):
    """Resolve a student by admission number and course (name or code); None on any mismatch."""
    if not admission_number or not course:
        return None
    student = session.query(Account).filter(
        Account.admission_number == admission_number.strip(),
        Account.role == Role.STUDENT.value,
    ).first()
    if not student or not student.course or not student.course.matches(course):
        return None
    return student


def count_students(session, state=None):
    query = session.query(Account).filter(Account.role == Role.STUDENT.value)
    if state:
        query = query.filter(Account.state == AccountState(state).value)
    return query.count()


# Fee terms

def compute_balance(total_amount, carried_unpaid_balance, amount_paid):
    # Overpayment shows up as a negative balance
    return total_amount + carried_unpaid_balance - amount_paid


def derive_fee_status(fee_term, today=None):
    today = today or gate_today()
    if fee_term.balance <= 0:
        return FeeStatus.PAID.value
    if fee_term.due_date and fee_term.due_date < today:
        return FeeStatus.OVERDUE.value
    if fee_term.amount_paid > 0:
        return FeeStatus.PARTIAL.value
    return FeeStatus.UNPAID.value


def latest_fee_term(session, account_id):
    return session.query(FeeTerm).filter(
        FeeTerm.account_id == account_id
    ).order_by(FeeTerm.created_at.desc(), FeeTerm.id.desc()).first()


def _new_receipt_number():
    return f"RCP{int(time.time() * 1000)}"


def upsert_fee_term(session, account_id, details, processed_by=None, today=None):
    """
    Create or update the fee term for (account, semester, academic year).

    `details` uses the finance form's keys (totalAmount, amountPaid, semester,
    academicYear, gatepassExpiryDate, lastUnpaidBalance, ...). An optional
    paymentAmount is appended to the payment history; amountPaid stays the
    figure finance entered.
    """
    semester = (details.get("semester") or "").strip()
    academic_year = (details.get("academicYear") or "").strip()
    if not semester or not academic_year:
        raise ValidationError("semester and academicYear are required")

    fee_term = session.query(FeeTerm).filter_by(
        account_id=account_id, semester=semester, academic_year=academic_year
    ).first()
    is_new = fee_term is None
    if is_new:
        fee_term = FeeTerm(account_id=account_id, semester=semester, academic_year=academic_year)
        session.add(fee_term)

    if is_new or details.get("totalAmount") is not None:
        fee_term.total_amount = parse_amount(details.get("totalAmount"), "totalAmount")
    if fee_term.total_amount < 0:
        raise ValidationError("totalAmount cannot be negative", field="totalAmount")
    if is_new or details.get("amountPaid") is not None:
        fee_term.amount_paid = parse_amount(details.get("amountPaid"), "amountPaid")
    if is_new or details.get("lastUnpaidBalance") is not None:
        fee_term.carried_unpaid_balance = parse_amount(details.get("lastUnpaidBalance"), "lastUnpaidBalance")
    if details.get("unpaidBalanceSemester"):
        fee_term.carried_from_semester = details["unpaidBalanceSemester"]
    if details.get("unpaidBalanceYear"):
        fee_term.carried_from_year = details["unpaidBalanceYear"]
    if "dueDate" in details:
        fee_term.due_date = parse_date(details.get("dueDate"), "dueDate")
    if is_new or "gatepassExpiryDate" in details:
        fee_term.gatepass_expiry_date = parse_date(details.get("gatepassExpiryDate"), "gatepassExpiryDate")

    payment_amount = parse_amount(details.get("paymentAmount"), "paymentAmount")
    if payment_amount > 0:
        fee_term.payments.append(FeePayment(
            amount=payment_amount,
            paid_at=utc_now(),
            receipt_number=details.get("receiptNumber") or _new_receipt_number(),
            payment_method=details.get("paymentMethod") or "Cash",
            processed_by=processed_by,
        ))

    fee_term.balance = compute_balance(fee_term.total_amount, fee_term.carried_unpaid_balance, fee_term.amount_paid)
    status = details.get("status")
    if status:
        try:
            fee_term.status = FeeStatus(status).value
        except ValueError:
            raise ValidationError(f"Invalid fee status: {status}", field="status")
    else:
        fee_term.status = derive_fee_status(fee_term, today)

    session.flush()
    logger.info(
        f"{'Created' if is_new else 'Updated'} fee term {semester} {academic_year} for account {account_id}: "
        f"balance={fee_term.balance}, status={fee_term.status}, expiry={fee_term.gatepass_expiry_date}",
        extra={"account_id": account_id}
    )
    return fee_term


def record_payment(session, fee_term_id, amount, payment_method=None, receipt_number=None,
                   processed_by=None, today=None):
    """Append a payment and move amount_paid, balance and status along with it."""
    fee_term = session.get(FeeTerm, fee_term_id)
    if not fee_term:
        raise NotFoundError("Fee record not found", fee_term_id=fee_term_id)

    amount = parse_amount(amount, "amount")
    if amount <= 0:
        raise ValidationError("Payment amount must be greater than 0", field="amount")

    fee_term.payments.append(FeePayment(
        amount=amount,
        paid_at=utc_now(),
        receipt_number=receipt_number or _new_receipt_number(),
        payment_method=payment_method or "Cash",
        processed_by=processed_by,
    ))
    fee_term.amount_paid += amount
    fee_term.balance = compute_balance(fee_term.total_amount, fee_term.carried_unpaid_balance, fee_term.amount_paid)
    fee_term.status = derive_fee_status(fee_term, today)
    session.flush()

    logger.info(f"Recorded payment {amount} on fee term {fee_term_id}, balance now {fee_term.balance}",
                extra={"account_id": fee_term.account_id})
    return fee_term


# Daily verification records

def get_daily_record(session, account_id, day):
    return session.query(DailyVerificationRecord).populate_existing().filter(
        DailyVerificationRecord.account_id == account_id,
        DailyVerificationRecord.day == day,
    ).first()


def get_or_create_daily_record(session, account_id, day):
    """Today's counter row; a new calendar day simply finds no row and starts at zero."""
    record = get_daily_record(session, account_id, day)
    if record is None:
        record = DailyVerificationRecord(
            account_id=account_id,
            day=day,
            verification_count=0,
            code_consumed_count=0,
        )
        session.add(record)
        # Raises IntegrityError if another worker created the same (account, day) first
        session.flush()
        logger.info(f"Created daily verification record for account {account_id}, day {day}",
                    extra={"account_id": account_id})
    return record
