# src/campus_gate/routes/__init__.py
from campus_gate.utils.logger import setup_logger
from .enrollment import enrollment_bp
from .finance import finance_bp
from .teacher import teacher_bp
from .admin import admin_bp
from .gate import gate_bp
from .student import student_bp

logger = setup_logger(__name__)

BLUEPRINTS = (enrollment_bp, finance_bp, teacher_bp, admin_bp, gate_bp, student_bp)


def register_routes(app):
    for blueprint in BLUEPRINTS:
        logger.info(f"Registering {blueprint.name}_bp")
        app.register_blueprint(blueprint)
    logger.info("All blueprints registered successfully")
