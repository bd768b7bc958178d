"""Core data models for citizens, the public complaint ledger, and ward pollution readings."""
import uuid
from datetime import datetime

from flask_login import UserMixin
from sqlalchemy import event, inspect
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db


def generate_uuid() -> str:
	return str(uuid.uuid4())


COMPLAINT_CATEGORIES: tuple[str, ...] = (
	"air",
	"water",
	"noise",
	"transport",
	"soil",
	"land",
)

# Catch-all bucket for anything the classifier cannot place.
DEFAULT_COMPLAINT_CATEGORY = "land"

COMPLAINT_STATUSES: tuple[str, ...] = (
	"received",
	"reported",
	"working",
	"solved",
	"verified",
)

INITIAL_COMPLAINT_STATUS = "received"
REWARD_STATUS = "verified"

USER_ROLES: tuple[str, ...] = (
	"citizen",
	"admin",
)


def _in_list(column: str, values: tuple[str, ...]) -> str:
	quoted = ",".join(f"'{value}'" for value in values)
	return f"{column} IN ({quoted})"


class Role(db.Model):
	__tablename__ = "roles"

	id = db.Column(db.Integer, primary_key=True)
	name = db.Column(db.String(50), unique=True, nullable=False, index=True)
	description = db.Column(db.String(255), nullable=True)

	users = db.relationship("User", back_populates="role", lazy="dynamic")

	@staticmethod
	def get_or_create(name: str, description: str = ""):
		role = Role.query.filter_by(name=name).first()
		if role:
			return role
		role = Role(name=name, description=description)
		db.session.add(role)
		db.session.commit()
		return role


class User(UserMixin, db.Model):
	__tablename__ = "users"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	full_name = db.Column(db.String(150), nullable=False)
	email = db.Column(db.String(255), unique=True, nullable=False, index=True)
	password_hash = db.Column(db.String(255), nullable=False)
	role_id = db.Column(db.Integer, db.ForeignKey("roles.id"), nullable=False)
	ward_number = db.Column(db.Integer, nullable=True, index=True)
	score = db.Column(db.Integer, nullable=False, default=0)
	wallet_balance = db.Column(db.Integer, nullable=False, default=0)
	is_active = db.Column(db.Boolean, default=True, nullable=False)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	last_login_at = db.Column(db.DateTime, nullable=True)

	__table_args__ = (
		db.CheckConstraint(
			"ward_number IS NULL OR (ward_number >= 1 AND ward_number <= 250)",
			name="ck_user_ward_number_range",
		),
	)

	role = db.relationship("Role", back_populates="users")
	audit_logs = db.relationship("AuditLog", back_populates="user", lazy="dynamic")
	complaints = db.relationship("Complaint", back_populates="user", lazy="dynamic")

	def set_password(self, password: str) -> None:
		self.password_hash = generate_password_hash(password, method="pbkdf2:sha256", salt_length=16)

	def check_password(self, password: str) -> bool:
		return check_password_hash(self.password_hash, password)

	@property
	def role_name(self) -> str:
		return (self.role.name if self.role else "").lower()

	@property
	def is_admin(self) -> bool:
		return self.role_name == "admin"

	@property
	def active(self) -> bool:  # Flask-Login compatibility alias
		return self.is_active

	def profile_payload(self) -> dict:
		return {
			"id": self.id,
			"full_name": self.full_name,
			"email": self.email,
			"role": self.role_name,
			"ward_number": self.ward_number,
			"score": self.score,
			"wallet_balance": self.wallet_balance,
		}


class AuditLog(db.Model):
	__tablename__ = "audit_logs"

	id = db.Column(db.Integer, primary_key=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	action_type = db.Column(db.String(50), nullable=False)
	ip_address = db.Column(db.String(64), nullable=True)
	user_agent = db.Column(db.String(255), nullable=True)
	context_entity = db.Column(db.String(120), nullable=True)
	timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	user = db.relationship("User", back_populates="audit_logs")


class Complaint(db.Model):
	__tablename__ = "complaints"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	ward_number = db.Column(db.Integer, nullable=False, index=True)
	description = db.Column(db.Text, nullable=False)
	photo_url = db.Column(db.String(500), nullable=True)
	category = db.Column(db.String(20), nullable=False, index=True)
	ai_suggestion = db.Column(db.Text, nullable=True)
	status = db.Column(db.String(20), nullable=False, default=INITIAL_COMPLAINT_STATUS, index=True)
	location_text = db.Column(db.String(255), nullable=True)
	admin_feedback = db.Column(db.Text, nullable=True)
	points_rewarded = db.Column(db.Integer, nullable=False, default=0)
	timeline = db.Column(db.JSON, nullable=False, default=list)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
	updated_at = db.Column(
		db.DateTime,
		default=datetime.utcnow,
		onupdate=datetime.utcnow,
		nullable=False,
	)

	__table_args__ = (
		db.CheckConstraint("ward_number >= 1 AND ward_number <= 250", name="ck_complaint_ward_number_range"),
		db.CheckConstraint(_in_list("category", COMPLAINT_CATEGORIES), name="ck_complaint_category_valid"),
		db.CheckConstraint(_in_list("status", COMPLAINT_STATUSES), name="ck_complaint_status_valid"),
		db.CheckConstraint("points_rewarded >= 0", name="ck_complaint_points_non_negative"),
		db.Index("ix_complaints_ward_created", "ward_number", "created_at"),
	)

	user = db.relationship("User", back_populates="complaints")

	def set_status(self, new_status: str, actor_id: str | None) -> None:
		"""Change status; the timeline entry is written by the flush listener, not here."""
		self._status_actor_id = actor_id
		self.status = new_status

	def public_payload(self) -> dict:
		return {
			"id": self.id,
			"ward_number": self.ward_number,
			"description": self.description,
			"location_text": self.location_text,
			"category": self.category,
			"ai_suggestion": self.ai_suggestion,
			"status": self.status,
			"photo_url": self.photo_url,
			"created_at": self.created_at.isoformat() if self.created_at else None,
		}

	def detail_payload(self) -> dict:
		payload = self.public_payload()
		payload.update(
			{
				"admin_feedback": self.admin_feedback,
				"points_rewarded": self.points_rewarded,
				"timeline": list(self.timeline or []),
				"updated_at": self.updated_at.isoformat() if self.updated_at else None,
			}
		)
		return payload


class WardMetric(db.Model):
	__tablename__ = "ward_metrics"

	id = db.Column(db.Integer, primary_key=True)
	ward_number = db.Column(db.Integer, nullable=False, index=True)
	air_quality = db.Column(db.Float, nullable=True)
	water_quality = db.Column(db.Float, nullable=True)
	waste_management = db.Column(db.Float, nullable=True)
	noise_level = db.Column(db.Float, nullable=True)
	pollution_score = db.Column(db.Float, nullable=False)
	aqi = db.Column(db.Integer, nullable=True)
	pm25 = db.Column(db.Float, nullable=True)
	trend_7_days = db.Column(db.Float, nullable=True)
	trend_30_days = db.Column(db.Float, nullable=True)
	source = db.Column(db.String(50), nullable=True)
	recorded_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.CheckConstraint("ward_number >= 1 AND ward_number <= 250", name="ck_ward_metric_ward_range"),
		db.CheckConstraint("pollution_score >= 0 AND pollution_score <= 100", name="ck_ward_metric_score_range"),
	)

	@staticmethod
	def latest_for(ward_number: int):
		return (
			WardMetric.query.filter_by(ward_number=ward_number)
			.order_by(WardMetric.recorded_at.desc(), WardMetric.id.desc())
			.first()
		)


def _timeline_entry(status: str, actor_id: str | None) -> dict:
	return {
		"status": status,
		"timestamp": datetime.utcnow().isoformat(),
		"updated_by": actor_id,
	}


@event.listens_for(Complaint, "before_insert")
def _complaint_initial_timeline(mapper, connection, target: Complaint) -> None:
	target.status = target.status or INITIAL_COMPLAINT_STATUS
	target.timeline = [_timeline_entry(target.status, target.user_id)]


@event.listens_for(Complaint, "before_update")
def _complaint_status_change(mapper, connection, target: Complaint) -> None:
	history = inspect(target).attrs.status.history
	if not history.has_changes():
		return
	previous = history.deleted[0] if history.deleted else None
	if previous == target.status:
		return
	actor_id = getattr(target, "_status_actor_id", None)
	target.timeline = list(target.timeline or []) + [_timeline_entry(target.status, actor_id)]

	if target.status == REWARD_STATUS and previous != REWARD_STATUS and target.points_rewarded:
		users = User.__table__
		connection.execute(
			users.update()
			.where(users.c.id == target.user_id)
			.values(
				score=users.c.score + target.points_rewarded,
				wallet_balance=users.c.wallet_balance + target.points_rewarded,
			)
		)
