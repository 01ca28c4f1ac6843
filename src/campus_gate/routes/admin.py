# src/campus_gate/routes/admin.py
from flask import Blueprint, g, jsonify, request

from campus_gate.routes.actor import require_role
from campus_gate.services import admission_service
from campus_gate.services.notification_service import notify_expiring_gatepasses
from campus_gate.utils.logger import setup_logger

admin_bp = Blueprint('admin', __name__, url_prefix="/api/admin")
logger = setup_logger(__name__)


@admin_bp.route("/staff", methods=["POST"])
@require_role("admin")
def create_staff_route():
    data = request.get_json(silent=True) or {}
    result = admission_service.create_staff_account(
        data.get("role"), data.get("name"), data.get("email"),
        actor_role=g.actor_role, actor_id=g.actor_id,
    )
    return jsonify(result), 201


@admin_bp.route("/deactivate/<int:account_id>", methods=["POST"])
@require_role("admin")
def deactivate_route(account_id):
    result = admission_service.deactivate_account(account_id, actor_role=g.actor_role, actor_id=g.actor_id)
    return jsonify(result), 200


@admin_bp.route("/expiry-notices", methods=["POST"])
@require_role("admin")
def expiry_notices_route():
    days = request.args.get("days", type=int)
    sent = notify_expiring_gatepasses(days_ahead=days)
    logger.info(f"Manual expiry notice run sent {sent} notices")
    return jsonify({"status": "Expiry notices sent", "sent": sent}), 200
