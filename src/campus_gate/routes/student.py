# src/campus_gate/routes/student.py
from flask import Blueprint, g, jsonify

from campus_gate.exceptions import NotAuthorizedError
from campus_gate.routes.actor import require_role
from campus_gate.services import receipt_service

student_bp = Blueprint('student', __name__, url_prefix="/api/student")


@student_bp.route("/<int:account_id>/receipt", methods=["GET"])
@require_role("student", "admin")
def latest_receipt_route(account_id):
    if g.actor_role == "student" and g.actor_id != account_id:
        raise NotAuthorizedError("Students may only view their own receipt")
    receipt = receipt_service.latest_receipt(account_id)
    if receipt is None:
        return jsonify({"receipt": None, "message": "No verification code issued"}), 200
    return jsonify({"receipt": receipt}), 200
