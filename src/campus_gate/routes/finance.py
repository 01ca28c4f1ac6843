# src/campus_gate/routes/finance.py
import uuid

from flask import Blueprint, g, jsonify, request

from campus_gate.routes.actor import require_role
from campus_gate.services import admission_service, finance_service
from campus_gate.utils.database import AccountState
from campus_gate.utils.logger import setup_logger

finance_bp = Blueprint('finance', __name__, url_prefix="/api/finance")
logger = setup_logger(__name__)


@finance_bp.route("/new-students", methods=["GET"])
@require_role("finance")
def new_students_route():
    return jsonify(admission_service.pending_accounts(AccountState.DRAFT_ENROLLED)), 200


@finance_bp.route("/approve-student/<int:account_id>", methods=["POST"])
@require_role("finance")
def approve_student_route(account_id):
    request_id = str(uuid.uuid4())
    data = request.get_json(silent=True) or {}
    logger.debug(f"Finance approval for account {account_id}: {data}", extra={"request_id": request_id})
    result = admission_service.approve_finance(account_id, data, actor_role=g.actor_role, actor_id=g.actor_id)
    return jsonify(result), 200


@finance_bp.route("/fee", methods=["POST"])
@require_role("finance")
def save_fee_route():
    data = request.get_json(silent=True) or {}
    student_id = data.get("studentId")
    if not student_id:
        return jsonify({"error": "studentId is required"}), 400
    return jsonify(finance_service.save_fee_record(int(student_id), data, actor_id=g.actor_id)), 201


@finance_bp.route("/fee/<int:fee_term_id>/payments", methods=["POST"])
@require_role("finance")
def add_payment_route(fee_term_id):
    data = request.get_json(silent=True) or {}
    result = finance_service.add_payment(
        fee_term_id,
        data.get("amount"),
        payment_method=data.get("paymentMethod"),
        receipt_number=data.get("receiptNumber"),
        actor_id=g.actor_id,
    )
    return jsonify(result), 201


@finance_bp.route("/students/<int:account_id>/fees", methods=["GET"])
@require_role("finance", "admin", "student")
def fee_records_route(account_id):
    return jsonify(finance_service.fee_records(account_id)), 200
