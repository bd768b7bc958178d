"""Complaint drafting with AI analysis, confirmation into the public ledger, and admin status updates."""
import os
import threading
import uuid
from typing import Dict, Optional

from flask import Blueprint, abort, current_app, jsonify, request, send_from_directory, session, url_for
from flask_login import current_user, login_required
from flask_wtf import FlaskForm
from flask_wtf.file import FileAllowed, FileField
from sqlalchemy.exc import SQLAlchemyError
from wtforms import IntegerField, SelectField, StringField, TextAreaField
from wtforms.validators import DataRequired, Length, NumberRange, Optional as OptionalValue

from extensions import db
from models import COMPLAINT_CATEGORIES, COMPLAINT_STATUSES, INITIAL_COMPLAINT_STATUS, Complaint
from utils.ai_complaint_analysis import AnalysisCancelled, AnalysisConfigError, AnalysisError, get_analyzer
from utils.complaint_prompt import IMAGE_ONLY_DESCRIPTION
from utils.decorators import audit, roles_required
from utils.image_utils import ALLOWED_IMAGE_EXTENSIONS, has_upload, photo_storage_path, store_photo, validate_image_file
from utils.security import sanitize_input, track_attempt

complaints_bp = Blueprint("complaints", __name__, url_prefix="/complaints")

DRAFT_SESSION_KEY = "complaint_draft"

# user id -> cancel signal of the analysis currently running for that user
_in_flight: Dict[str, threading.Event] = {}
_in_flight_lock = threading.Lock()


class AnalyzeForm(FlaskForm):
    description = TextAreaField("Describe the problem", validators=[Length(max=2000)])
    location = StringField("Location", validators=[Length(max=255)])
    photo = FileField(
        "Photo (jpg, png, webp)",
        validators=[FileAllowed(list(ALLOWED_IMAGE_EXTENSIONS), "Please upload an image (JPG, PNG, WebP)")],
    )


class SubmitForm(FlaskForm):
    description = TextAreaField("Description", validators=[Length(max=2000)])


class StatusUpdateForm(FlaskForm):
    status = SelectField("Status", choices=[(s, s) for s in COMPLAINT_STATUSES], validators=[DataRequired()])
    admin_feedback = TextAreaField("Feedback", validators=[OptionalValue(), Length(max=2000)])
    points_rewarded = IntegerField("Points", validators=[OptionalValue(), NumberRange(min=0, max=10000)])


def _claim_analysis_slot(user_id: str) -> Optional[threading.Event]:
    with _in_flight_lock:
        if user_id in _in_flight:
            return None
        cancel_event = threading.Event()
        _in_flight[user_id] = cancel_event
        return cancel_event


def _release_analysis_slot(user_id: str) -> None:
    with _in_flight_lock:
        _in_flight.pop(user_id, None)


def _cancel_analysis(user_id: str) -> bool:
    with _in_flight_lock:
        cancel_event = _in_flight.get(user_id)
    if cancel_event is None:
        return False
    cancel_event.set()
    return True


def _upload_root() -> str:
    upload_root = current_app.config.get("COMPLAINT_UPLOAD_FOLDER")
    if not upload_root:
        abort(500)
    return upload_root


def _stage_photo(content: bytes, extension: str) -> str:
    relative = "/".join(["drafts", str(current_user.id), f"{uuid.uuid4().hex}.{extension}"])
    store_photo(content, _upload_root(), relative)
    return relative


def _discard_staged_photo(draft: Optional[dict]) -> None:
    staged = (draft or {}).get("photo_path")
    if not staged:
        return
    try:
        os.remove(os.path.join(_upload_root(), staged))
    except OSError:
        current_app.logger.info("Staged photo already gone", extra={"photo_path": staged})


def _upload_draft_photo(draft: dict) -> Optional[str]:
    """Move the staged photo to its public location; a failure leaves the complaint without a photo."""
    staged = draft.get("photo_path")
    if not staged:
        return None
    upload_root = _upload_root()
    try:
        with open(os.path.join(upload_root, staged), "rb") as handle:
            content = handle.read()
        relative = photo_storage_path(str(current_user.id), staged.rsplit(".", 1)[1])
        store_photo(content, upload_root, relative)
    except (OSError, ValueError):
        current_app.logger.warning(
            "Complaint photo upload failed; submitting without photo",
            extra={"photo_path": staged},
            exc_info=True,
        )
        return None
    _discard_staged_photo(draft)
    return url_for("complaints.complaint_photo", filename=relative, _external=True)


def _draft_payload(draft: dict) -> dict:
    return {
        "description": draft.get("description"),
        "location_text": draft.get("location_text"),
        "has_photo": bool(draft.get("photo_path")),
        "analysis": draft.get("analysis"),
    }


def _complaint_or_404(complaint_id: str) -> Complaint:
    return Complaint.query.filter_by(id=str(complaint_id)).first_or_404()


@complaints_bp.route("/analyze", methods=["POST"])
@roles_required("citizen")
def analyze_complaint():
    form = AnalyzeForm()
    if not form.validate_on_submit():
        return jsonify({"error": "Invalid complaint draft", "fields": form.errors}), 400

    description = (form.description.data or "").strip()
    location_text = (form.location.data or "").strip()
    photo = form.photo.data
    if not description and not has_upload(photo):
        return jsonify({"error": "Describe the problem or upload a photo."}), 400

    image = None
    extension = None
    if has_upload(photo):
        try:
            content, extension, mime_type = validate_image_file(
                photo, max_bytes=int(current_app.config.get("MAX_IMAGE_UPLOAD_BYTES", 8 * 1024 * 1024))
            )
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        image = (content, mime_type)

    try:
        analyzer = get_analyzer()
    except AnalysisConfigError as exc:
        current_app.logger.error("Complaint analysis requested without Gemini configuration")
        return jsonify({"error": str(exc)}), 503

    user_id = str(current_user.id)
    if not track_attempt(f"analyze:{user_id}", limit=int(current_app.config.get("ANALYSES_PER_HOUR", 30))):
        return jsonify({"error": "Too many analyses. Please try again later."}), 429

    cancel_event = _claim_analysis_slot(user_id)
    if cancel_event is None:
        return jsonify({"error": "An analysis is already in progress. Please wait for it to finish."}), 409
    try:
        result = analyzer.analyze(
            description or IMAGE_ONLY_DESCRIPTION,
            image=image,
            location_text=location_text or None,
            fallback_ward_id=current_user.ward_number,
            cancel_event=cancel_event,
        )
    except AnalysisCancelled as exc:
        return jsonify({"error": str(exc)}), 409
    except AnalysisError as exc:
        current_app.logger.warning("Complaint analysis failed", extra={"error": str(exc)})
        return jsonify({"error": str(exc)}), 502
    finally:
        _release_analysis_slot(user_id)

    _discard_staged_photo(session.get(DRAFT_SESSION_KEY))
    photo_path = None
    if image:
        try:
            photo_path = _stage_photo(image[0], extension)
        except (OSError, ValueError):
            current_app.logger.warning("Could not stage complaint photo", exc_info=True)

    draft = {
        "description": description,
        "location_text": location_text or None,
        "photo_path": photo_path,
        "analysis": result.to_dict(),
    }
    session[DRAFT_SESSION_KEY] = draft
    audit("COMPLAINT_ANALYZED", context_entity=f"ward:{result.ward_id}")
    db.session.commit()
    return jsonify({"draft": _draft_payload(draft)}), 200


@complaints_bp.route("/draft", methods=["GET"])
@roles_required("citizen")
def current_draft():
    draft = session.get(DRAFT_SESSION_KEY)
    if not draft:
        return jsonify({"error": "No complaint draft in progress"}), 404
    return jsonify({"draft": _draft_payload(draft)})


@complaints_bp.route("/start-over", methods=["POST"])
@roles_required("citizen")
def start_over():
    cancelled = _cancel_analysis(str(current_user.id))
    draft = session.pop(DRAFT_SESSION_KEY, None)
    _discard_staged_photo(draft)
    return jsonify({"discarded": bool(draft), "cancelled_analysis": cancelled})


@complaints_bp.route("/submit", methods=["POST"])
@roles_required("citizen")
def submit_complaint():
    draft = session.get(DRAFT_SESSION_KEY)
    if not draft or not draft.get("analysis"):
        return jsonify({"error": "Analyze the complaint before reporting it."}), 400

    form = SubmitForm()
    if not form.validate_on_submit():
        return jsonify({"error": "Invalid complaint details", "fields": form.errors}), 400
    description = (form.description.data or draft.get("description") or "").strip()
    if not description:
        return jsonify({"error": "Add a short description before reporting."}), 400

    analysis = draft["analysis"]
    photo_url = _upload_draft_photo(draft)
    complaint = Complaint(
        user_id=current_user.id,
        ward_number=analysis["ward_id"],
        location_text=draft.get("location_text") or None,
        description=description,
        photo_url=photo_url,
        category=analysis["category"],
        ai_suggestion=analysis["suggestion"],
        status=INITIAL_COMPLAINT_STATUS,
    )
    try:
        db.session.add(complaint)
        db.session.flush()
        audit("COMPLAINT_CREATED", context_entity=complaint.id)
        db.session.commit()
    except SQLAlchemyError:
        current_app.logger.exception("Database error while saving complaint")
        db.session.rollback()
        return jsonify({"error": "Unable to save complaint. Please retry."}), 500

    session.pop(DRAFT_SESSION_KEY, None)
    current_app.logger.info(
        "Complaint reported",
        extra={"complaint_id": complaint.id, "ward_number": complaint.ward_number, "category": complaint.category},
    )
    return jsonify({"complaint": complaint.detail_payload()}), 201


@complaints_bp.route("/", methods=["GET"])
@login_required
def list_my_complaints():
    try:
        page = int(request.args.get("page", 1))
    except (TypeError, ValueError):
        page = 1
    page = 1 if page < 1 else page
    per_page = max(1, min(int(current_app.config.get("COMPLAINTS_PER_PAGE", 10)), 50))

    pagination = (
        Complaint.query.filter_by(user_id=current_user.id)
        .order_by(Complaint.created_at.desc())
        .paginate(page=page, per_page=per_page, error_out=False)
    )
    return jsonify(
        {
            "complaints": [complaint.detail_payload() for complaint in pagination.items],
            "page": pagination.page,
            "pages": pagination.pages,
            "total": pagination.total,
        }
    )


@complaints_bp.route("/public", methods=["GET"])
def public_complaints():
    filters = sanitize_input(request.args)
    category_filter = filters.get("category")
    status_filter = filters.get("status")
    ward_filter = filters.get("ward")
    limit = min(int(current_app.config.get("PUBLIC_MAX_COMPLAINTS", 50)), 100)

    query = Complaint.query
    if category_filter in COMPLAINT_CATEGORIES:
        query = query.filter(Complaint.category == category_filter)
    if status_filter in COMPLAINT_STATUSES:
        query = query.filter(Complaint.status == status_filter)
    if ward_filter and ward_filter.isdigit():
        query = query.filter(Complaint.ward_number == int(ward_filter))

    complaints = query.order_by(Complaint.created_at.desc()).limit(limit).all()
    current_app.logger.info(
        "public_complaints_list",
        extra={"count": len(complaints), "filters": {"category": category_filter, "status": status_filter, "ward": ward_filter}},
    )
    return jsonify({"complaints": [complaint.public_payload() for complaint in complaints]})


@complaints_bp.route("/<string:complaint_id>", methods=["GET"])
def view_complaint(complaint_id):
    complaint = _complaint_or_404(complaint_id)
    return jsonify({"complaint": complaint.detail_payload()})


@complaints_bp.route("/<string:complaint_id>/status", methods=["POST"])
@roles_required("admin")
def update_complaint_status(complaint_id):
    complaint = _complaint_or_404(complaint_id)
    form = StatusUpdateForm()
    if not form.validate_on_submit():
        return jsonify({"error": "Invalid status update", "fields": form.errors}), 400

    previous_status = complaint.status
    try:
        if form.admin_feedback.data:
            complaint.admin_feedback = form.admin_feedback.data.strip()
        if form.points_rewarded.data is not None:
            complaint.points_rewarded = form.points_rewarded.data
        complaint.set_status(form.status.data, current_user.id)
        audit("COMPLAINT_STATUS_UPDATED", context_entity=complaint.id)
        db.session.commit()
    except SQLAlchemyError:
        current_app.logger.exception("Database error while updating complaint status")
        db.session.rollback()
        return jsonify({"error": "Unable to update complaint. Please retry."}), 500

    current_app.logger.info(
        "Complaint status updated",
        extra={"complaint_id": complaint.id, "previous_status": previous_status, "new_status": complaint.status},
    )
    return jsonify({"complaint": complaint.detail_payload()})


@complaints_bp.route("/photos/<path:filename>", methods=["GET"])
def complaint_photo(filename):
    if not filename.startswith("complaints/"):
        abort(404)
    return send_from_directory(os.path.abspath(_upload_root()), filename)
