"""Blueprint registration and public service routes."""
from flask import Blueprint, current_app, jsonify
from flask_wtf.csrf import generate_csrf

from models import COMPLAINT_CATEGORIES, COMPLAINT_STATUSES, Complaint
from .auth import auth_bp
from .complaints import complaints_bp
from .wards import wards_bp

main_bp = Blueprint("main", __name__)

RECENT_COMPLAINTS_LIMIT = 10


@main_bp.route("/")
def index():
    recent = Complaint.query.order_by(Complaint.created_at.desc()).limit(RECENT_COMPLAINTS_LIMIT).all()
    return jsonify(
        {
            "service": "Ward Watch",
            "categories": list(COMPLAINT_CATEGORIES),
            "statuses": list(COMPLAINT_STATUSES),
            "recent_complaints": [complaint.public_payload() for complaint in recent],
        }
    )


@main_bp.route("/csrf-token")
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})


@main_bp.route("/health")
def health():
    analyzer = current_app.extensions.get("complaint_analyzer")
    return jsonify({"status": "ok", "ai_configured": analyzer is not None})


def register_blueprints(app) -> None:
    app.register_blueprint(main_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(complaints_bp)
    app.register_blueprint(wards_bp)


__all__ = ["main_bp", "auth_bp", "complaints_bp", "wards_bp", "register_blueprints"]
