"""Ward gazetteer and public ward profiles."""
from flask import Blueprint, abort, current_app, jsonify
from flask_login import current_user
from flask_wtf import FlaskForm
from sqlalchemy.exc import SQLAlchemyError
from wtforms import FloatField, IntegerField, StringField
from wtforms.validators import InputRequired, Length, NumberRange, Optional

from extensions import db
from models import WardMetric
from utils.decorators import audit, roles_required
from utils.ward_profile import build_ward_profile, metric_payload
from utils.wards import gazetteer, is_valid_ward_id

wards_bp = Blueprint("wards", __name__, url_prefix="/wards")


def _component_field(label: str) -> FloatField:
    return FloatField(label, validators=[Optional(), NumberRange(min=0, max=100)])


class WardMetricForm(FlaskForm):
    pollution_score = FloatField("Pollution score", validators=[InputRequired(), NumberRange(min=0, max=100)])
    air_quality = _component_field("Air quality")
    water_quality = _component_field("Water quality")
    waste_management = _component_field("Waste management")
    noise_level = _component_field("Noise level")
    aqi = IntegerField("AQI", validators=[Optional(), NumberRange(min=0, max=999)])
    pm25 = FloatField("PM2.5", validators=[Optional(), NumberRange(min=0)])
    trend_7_days = FloatField("7 day trend", validators=[Optional()])
    trend_30_days = FloatField("30 day trend", validators=[Optional()])
    source = StringField("Source", validators=[Optional(), Length(max=50)])


def _ward_or_404(ward_id: int) -> int:
    if not is_valid_ward_id(ward_id):
        abort(404)
    return ward_id


@wards_bp.route("/", methods=["GET"])
def list_wards():
    return jsonify({"wards": gazetteer()})


@wards_bp.route("/<int:ward_id>", methods=["GET"])
def ward_profile(ward_id):
    ward_id = _ward_or_404(ward_id)
    limit = int(current_app.config.get("WARD_PROFILE_COMPLAINT_LIMIT", 20))
    return jsonify(build_ward_profile(ward_id, complaint_limit=limit))


@wards_bp.route("/<int:ward_id>/metrics", methods=["POST"])
@roles_required("admin")
def record_ward_metric(ward_id):
    ward_id = _ward_or_404(ward_id)
    form = WardMetricForm()
    if not form.validate_on_submit():
        return jsonify({"error": "Invalid ward reading", "fields": form.errors}), 400

    metric = WardMetric(ward_number=ward_id, source=(form.source.data or "manual").strip())
    for name in (
        "pollution_score",
        "air_quality",
        "water_quality",
        "waste_management",
        "noise_level",
        "aqi",
        "pm25",
        "trend_7_days",
        "trend_30_days",
    ):
        setattr(metric, name, getattr(form, name).data)

    try:
        db.session.add(metric)
        audit("WARD_METRIC_RECORDED", user=current_user, context_entity=f"ward:{ward_id}")
        db.session.commit()
    except SQLAlchemyError:
        current_app.logger.exception("Database error while recording ward metric")
        db.session.rollback()
        return jsonify({"error": "Unable to record reading. Please retry."}), 500

    current_app.logger.info("Ward metric recorded", extra={"ward_number": ward_id, "score": metric.pollution_score})
    return jsonify({"ward_id": ward_id, "metrics": metric_payload(metric)}), 201
