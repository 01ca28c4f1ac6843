# src/campus_gate/services/finance_service.py
from campus_gate.exceptions import NotFoundError
from campus_gate.services import ledger_service
from campus_gate.services import notification_service as notifications
from campus_gate.utils.database import FeeTerm, Role, session_scope
from campus_gate.utils.logger import setup_logger

logger = setup_logger(__name__)

FEE_UPDATED = "fee"


def _notify_fee_update(session, fee_term, sender_id):
    notifications.emit_notification(
        session, fee_term.account_id, FEE_UPDATED, "Fee Record Updated",
        f"Your fee record for {fee_term.semester} {fee_term.academic_year} has been updated. "
        f"Balance: KES {fee_term.balance}",
        payload={"feeTermId": fee_term.id, "balance": fee_term.balance,
                 "gatepassExpiryDate": fee_term.to_dict()["gatepassExpiryDate"]},
        sender_id=sender_id,
        priority="high" if fee_term.balance > 0 else "medium",
    )


def save_fee_record(account_id, details, actor_id=None, session=None):
    """Finance create/update of a student's fee term outside the approval hand-off."""
    with session_scope(session) as session:
        account = ledger_service.get_account(session, account_id)
        if account.role != Role.STUDENT.value:
            raise NotFoundError("Student not found", account_id=account_id)
        try:
            fee_term = ledger_service.upsert_fee_term(session, account.id, details, processed_by=actor_id)
            session.commit()
        except Exception:
            session.rollback()
            raise
        _notify_fee_update(session, fee_term, actor_id)
        return fee_term.to_dict()


def add_payment(fee_term_id, amount, payment_method=None, receipt_number=None, actor_id=None, session=None):
    with session_scope(session) as session:
        try:
            fee_term = ledger_service.record_payment(
                session, fee_term_id, amount, payment_method, receipt_number, processed_by=actor_id
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        _notify_fee_update(session, fee_term, actor_id)
        return fee_term.to_dict()


def fee_records(account_id, session=None):
    with session_scope(session) as session:
        ledger_service.get_account(session, account_id)
        terms = session.query(FeeTerm).filter(FeeTerm.account_id == account_id).order_by(
            FeeTerm.created_at.desc()
        ).all()
        return [t.to_dict() for t in terms]
