# src/campus_gate/routes/teacher.py
from flask import Blueprint, g, jsonify

from campus_gate.routes.actor import require_role
from campus_gate.services import admission_service
from campus_gate.utils.database import AccountState
from campus_gate.utils.logger import setup_logger

teacher_bp = Blueprint('teacher', __name__, url_prefix="/api/teacher")
logger = setup_logger(__name__)


@teacher_bp.route("/new-students", methods=["GET"])
@require_role("teacher")
def new_students_route():
    return jsonify(admission_service.pending_accounts(AccountState.FINANCE_APPROVED)), 200


@teacher_bp.route("/approve-student/<int:account_id>", methods=["POST"])
@require_role("teacher")
def activate_student_route(account_id):
    result = admission_service.activate_account(account_id, actor_role=g.actor_role, actor_id=g.actor_id)
    message = "Student account activated successfully" if result["changed"] else "Student account already active"
    result["message"] = message
    return jsonify(result), 200
