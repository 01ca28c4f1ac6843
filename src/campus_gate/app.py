# src/campus_gate/app.py
import traceback
import uuid

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from sqlalchemy import text

from campus_gate.config import get_config
from campus_gate.exceptions import CampusGateError
from campus_gate.routes import register_routes
from campus_gate.utils.database import session_scope
from campus_gate.utils.logger import setup_logger

logger = setup_logger(__name__)


def create_app(config_object=None, start_scheduler=False):
    config = config_object or get_config()
    app = Flask(__name__)
    app.config.from_object(config)

    register_routes(app)

    @app.errorhandler(CampusGateError)
    def handle_campus_gate_error(err):
        logger.warning(f"{err.code}: {err.message}")
        return jsonify(err.to_dict()), err.http_status

    @app.errorhandler(Exception)
    def handle_unexpected_error(err):
        request_id = str(uuid.uuid4())
        if isinstance(err, HTTPException):
            return jsonify({"success": False, "error": err.name, "message": err.description}), err.code
        logger.error(f"Unhandled error: {str(err)}\n{traceback.format_exc()}", extra={"request_id": request_id})
        return jsonify({"success": False, "error": "Internal server error", "requestId": request_id}), 500

    @app.route("/health", methods=["GET"])
    def health():
        try:
            with session_scope() as session:
                session.execute(text("SELECT 1"))
            return jsonify({"status": "ok", "database": "ok"}), 200
        except Exception as e:
            logger.error(f"Health check failed: {str(e)}")
            return jsonify({"status": "degraded", "database": str(e)}), 503

    if start_scheduler:
        from campus_gate.utils.scheduler import init_scheduler
        app.extensions["scheduler"] = init_scheduler()

    return app


if __name__ == "__main__":
    cfg = get_config()
    create_app(cfg, start_scheduler=True).run(host="0.0.0.0", port=int(cfg.PORT), debug=cfg.DEBUG)
