# src/campus_gate/routes/gate.py
import uuid

from flask import Blueprint, g, jsonify, request

from campus_gate.exceptions import NotAuthorizedError
from campus_gate.routes.actor import require_role
from campus_gate.services import gate_service, receipt_service
from campus_gate.utils.logger import setup_logger

gate_bp = Blueprint('gate', __name__, url_prefix="/api/gate")
logger = setup_logger(__name__)


def _text(value):
    """Form fields may arrive as JSON numbers (a code typed into a numeric input)."""
    if value is None:
        return ""
    return str(value).strip()


@gate_bp.route("/verify", methods=["POST"])
@require_role("gate")
def verify_route():
    request_id = str(uuid.uuid4())
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        logger.debug(f"Malformed JSON in request body: {request.data}", extra={"request_id": request_id})
        data = {}

    admission_number = _text(data.get("admissionNumber"))
    course = _text(data.get("course"))
    code = _text(data.get("verificationCode")) or None

    if not admission_number or not course:
        logger.error(f"Missing required parameters: admissionNumber={admission_number}, course={course}",
                     extra={"request_id": request_id})
        return jsonify({"error": "admissionNumber and course are required"}), 400

    result = gate_service.verify_gate_pass(admission_number, course, code=code, verified_by=g.actor_id)
    logger.info(f"Gate verification {admission_number}: {result.outcome.value}", extra={"request_id": request_id})
    return jsonify(result.to_dict()), result.http_status


@gate_bp.route("/verifications/today", methods=["GET"])
@require_role("gate", "admin")
def todays_verifications_route():
    return jsonify(gate_service.todays_verifications()), 200


@gate_bp.route("/verifications/history", methods=["GET"])
@require_role("gate", "admin")
def verification_history_route():
    result = gate_service.verification_history(
        start_date=request.args.get("startDate"),
        end_date=request.args.get("endDate"),
        limit=request.args.get("limit", 50, type=int),
    )
    return jsonify(result), 200


@gate_bp.route("/dashboard", methods=["GET"])
@require_role("gate", "admin")
def dashboard_route():
    return jsonify(gate_service.dashboard_stats()), 200


@gate_bp.route("/student/<admission_number>/receipts", methods=["GET"])
@require_role("student", "gate", "admin")
def student_receipts_route(admission_number):
    if g.actor_role == "student" and receipt_service.account_id_for(admission_number) != g.actor_id:
        raise NotAuthorizedError("Students may only view their own verification codes")
    return jsonify(receipt_service.active_receipts(admission_number)), 200
