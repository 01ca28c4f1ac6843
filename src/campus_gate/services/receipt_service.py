# src/campus_gate/services/receipt_service.py
import secrets

from campus_gate.exceptions import InvalidStateError, NotFoundError
from campus_gate.services.ledger_service import end_of_day, get_account
from campus_gate.utils.database import Account, Role, VerificationReceipt, as_utc, session_scope, utc_now
from campus_gate.utils.logger import setup_logger

logger = setup_logger(__name__)


def generate_verification_code():
    """Six-digit challenge code, never starting with 0."""
    return str(100000 + secrets.randbelow(900000))


def issue_receipt(session, account, record, now=None):
    """
    Issue the day's challenge code for `record`. Called inside the caller's
    transaction; a second call for the same record raises InvalidStateError.
    """
    if record.receipt is not None or record.issued_code:
        raise InvalidStateError(
            f"Verification code already issued for account {account.id} on {record.day}",
            account_id=account.id,
        )

    now = now or utc_now()
    code = generate_verification_code()
    receipt = VerificationReceipt(
        account_id=account.id,
        admission_number=account.admission_number,
        verification_code=code,
        generated_date=now,
        expires_at=end_of_day(record.day),
    )
    record.receipt = receipt
    record.issued_code = code
    record.code_issued_at = now
    session.add(receipt)

    logger.info(f"Issued gate verification code for {account.admission_number} on {record.day}",
                extra={"account_id": account.id, "admission_number": account.admission_number})
    return receipt


def consume_receipt(receipt, now=None):
    """Flag the receipt used. History is kept; the code stays valid until end of day."""
    now = now or utc_now()
    receipt.is_used = True
    receipt.used_at = now
    if receipt.record is not None:
        receipt.record.code_consumed_count = (receipt.record.code_consumed_count or 0) + 1
    return receipt


def latest_receipt(account_id, session=None):
    """Most recent receipt for the student dashboard, used or not; None if never issued."""
    with session_scope(session) as session:
        get_account(session, account_id)
        receipt = session.query(VerificationReceipt).filter(
            VerificationReceipt.account_id == account_id
        ).order_by(VerificationReceipt.generated_date.desc(), VerificationReceipt.id.desc()).first()
        if not receipt:
            return None
        result = receipt.to_dict()
        result["isExpired"] = as_utc(receipt.expires_at) < utc_now()
        return result


def account_id_for(admission_number, session=None):
    """Student account id behind an admission number, or None."""
    with session_scope(session) as session:
        row = session.query(Account.id).filter(
            Account.admission_number == admission_number,
            Account.role == Role.STUDENT.value,
        ).first()
        return row[0] if row else None


def active_receipts(admission_number, session=None, now=None):
    """Unused, unexpired receipts for an admission number, newest first."""
    now = now or utc_now()
    with session_scope(session) as session:
        student = session.query(Account).filter(
            Account.admission_number == admission_number,
            Account.role == Role.STUDENT.value,
        ).first()
        if not student:
            raise NotFoundError("Student not found", admission_number=admission_number)

        receipts = session.query(VerificationReceipt).filter(
            VerificationReceipt.account_id == student.id,
            VerificationReceipt.is_used.is_(False),
        ).order_by(VerificationReceipt.generated_date.desc()).all()
        return [r.to_dict() for r in receipts if as_utc(r.expires_at) > now]
