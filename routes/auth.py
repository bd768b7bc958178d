"""Citizen registration and session login."""
from datetime import datetime, timedelta

from flask import Blueprint, current_app, jsonify, session
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf import FlaskForm
from sqlalchemy.exc import IntegrityError
from wtforms import BooleanField, IntegerField, PasswordField, StringField
from wtforms.validators import DataRequired, Email, Length, NumberRange, Optional, ValidationError

from extensions import db
from models import Role, User
from utils.decorators import audit
from utils.security import password_meets_policy, track_attempt
from utils.wards import MAX_WARD_ID, MIN_WARD_ID

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

ROLE_DESCRIPTIONS: dict[str, str] = {
    "citizen": "Residents reporting problems in their ward",
    "admin": "Municipal staff who triage and verify complaints",
}


class RegistrationForm(FlaskForm):
    full_name = StringField("Full Name", validators=[DataRequired(), Length(max=150)])
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired(), Length(min=12)])
    ward_number = IntegerField(
        "Home Ward",
        validators=[Optional(), NumberRange(min=MIN_WARD_ID, max=MAX_WARD_ID, message="Ward must be between 1 and 250.")],
    )

    def validate_email(self, field):
        if User.query.filter_by(email=field.data.lower().strip()).first():
            raise ValidationError("An account with this email already exists.")


class LoginForm(FlaskForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired()])
    remember_me = BooleanField("Remember me")


@auth_bp.route("/register", methods=["POST"])
def register():
    form = RegistrationForm()
    if not form.validate_on_submit():
        return jsonify({"error": "Invalid registration details", "fields": form.errors}), 400

    password_ok, reason = password_meets_policy(form.password.data)
    if not password_ok:
        return jsonify({"error": reason, "fields": {"password": [reason]}}), 400

    try:
        role = Role.get_or_create("citizen", description=ROLE_DESCRIPTIONS["citizen"])
        user = User(
            full_name=form.full_name.data.strip(),
            email=form.email.data.lower().strip(),
            role=role,
            ward_number=form.ward_number.data,
            is_active=True,
        )
        user.set_password(form.password.data)
        db.session.add(user)
        db.session.flush()
        audit("REGISTER", user=user)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({"error": "Unable to register with the provided details. Please try again."}), 409

    current_app.logger.info("Citizen registered", extra={"user_id": user.id, "ward_number": user.ward_number})
    return jsonify({"user": user.profile_payload()}), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    form = LoginForm()
    if not form.validate_on_submit():
        return jsonify({"error": "Invalid login details", "fields": form.errors}), 400

    email = form.email.data.lower().strip()
    if not track_attempt(f"login:{email}", limit=10, window_seconds=900):
        return jsonify({"error": "Too many login attempts. Please try again later."}), 429

    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(form.password.data):
        audit("LOGIN_FAILED", user=user)
        db.session.commit()
        return jsonify({"error": "Invalid credentials provided."}), 401

    if not user.is_active:
        return jsonify({"error": "Your account is inactive. Please contact support."}), 403

    login_user(user, remember=bool(form.remember_me.data), duration=timedelta(days=30))
    session.permanent = True
    user.last_login_at = datetime.utcnow()
    audit("LOGIN", user=user)
    db.session.commit()
    return jsonify({"user": user.profile_payload()})


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    user = current_user._get_current_object()
    audit("LOGOUT", user=user)
    db.session.commit()
    logout_user()
    session.clear()
    return jsonify({"logged_out": True})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify({"user": current_user.profile_payload()})
