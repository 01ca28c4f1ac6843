# src/campus_gate/routes/enrollment.py
import uuid

from flask import Blueprint, g, jsonify, request

from campus_gate.services import admission_service
from campus_gate.routes.actor import require_role
from campus_gate.utils.logger import setup_logger

enrollment_bp = Blueprint('enrollment', __name__, url_prefix="/api/enrollment")
logger = setup_logger(__name__)


@enrollment_bp.route("/check-admission", methods=["POST"])
@require_role("enrollment")
def check_admission_route():
    data = request.get_json(silent=True) or {}
    admission_number = data.get("admissionNumber") or request.args.get("admissionNumber")
    if not admission_number:
        return jsonify({"error": "admissionNumber is required"}), 400
    return jsonify(admission_service.check_admission_available(admission_number.strip().upper())), 200


@enrollment_bp.route("/register-student", methods=["POST"])
@require_role("enrollment")
def register_student_route():
    request_id = str(uuid.uuid4())
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        logger.debug(f"Malformed JSON in request body: {request.data}", extra={"request_id": request_id})
        return jsonify({"error": "JSON body required"}), 400

    logger.debug(f"Received /register-student for {data.get('email')}", extra={"request_id": request_id})
    result = admission_service.submit_enrollment(data, actor_role=g.actor_role, actor_id=g.actor_id)
    return jsonify(result), 201


@enrollment_bp.route("/students", methods=["GET"])
@require_role("enrollment", "admin")
def list_students_route():
    return jsonify(admission_service.list_students()), 200


@enrollment_bp.route("/dashboard", methods=["GET"])
@require_role("enrollment", "admin")
def enrollment_dashboard_route():
    return jsonify(admission_service.enrollment_stats()), 200
