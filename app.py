"""Flask application factory for the Ward Watch complaint service."""
import json
import mimetypes
import os
from typing import Mapping, Optional

import click
from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from werkzeug.exceptions import HTTPException

from extensions import csrf, db, login_manager, migrate
from utils.ai_complaint_analysis import AnalysisConfigError, AnalysisError, get_analyzer, init_analyzer
from utils.logger import assign_request_id, init_logging
from utils.security import apply_security_headers
from utils.wards import gazetteer


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def http_error(error):
        if error.code >= 500:
            app.logger.error("%s %s", error.code, error.name, extra={"path": request.path, "method": request.method})
        else:
            app.logger.warning("%s %s", error.code, error.name, extra={"path": request.path, "method": request.method})
        return jsonify({"error": error.description or error.name}), error.code

    @app.errorhandler(Exception)
    def internal_error(error):
        app.logger.exception("500 Internal Server Error")
        db.session.rollback()
        return jsonify({"error": "Internal server error"}), 500


def ensure_default_roles_and_admin(app: Flask) -> None:
    """Ensure baseline roles exist and a default admin can log in without registering."""
    from models import Role, User  # Local import to avoid circular dependency

    default_roles = [
        ("citizen", "Residents reporting problems in their ward"),
        ("admin", "Municipal staff who triage and verify complaints"),
    ]

    role_cache: dict[str, Role] = {}
    for name, description in default_roles:
        role_cache[name] = Role.get_or_create(name, description=description)

    admin_email = (app.config.get("DEFAULT_ADMIN_EMAIL") or "").lower().strip()
    admin_password = app.config.get("DEFAULT_ADMIN_PASSWORD") or ""
    if not admin_email or not admin_password:
        return

    admin_role = role_cache["admin"]
    admin_user = User.query.filter_by(email=admin_email).first()

    if admin_user:
        if admin_user.role != admin_role or not admin_user.is_active:
            admin_user.role = admin_role
            admin_user.is_active = True
            db.session.commit()
        return

    admin_user = User(
        full_name="Ward Watch Administrator",
        email=admin_email,
        role=admin_role,
        is_active=True,
    )
    admin_user.set_password(admin_password)
    db.session.add(admin_user)
    db.session.commit()


def ensure_database_exists(database_uri: str) -> None:
    """Create the target database if it does not exist (PostgreSQL + SQLite support)."""
    url = make_url(database_uri)

    if url.drivername.startswith("sqlite"):
        if url.database and url.database != ":memory:":
            os.makedirs(os.path.dirname(url.database) or ".", exist_ok=True)
        return

    if url.drivername.startswith("postgres"):
        db_name = url.database
        admin_url = url.set(database=os.getenv("POSTGRES_DB_ADMIN", "postgres"))
        engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")
        try:
            with engine.connect() as conn:
                exists = conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": db_name}
                ).scalar()
                if not exists:
                    conn.execute(text(f'CREATE DATABASE "{db_name}"'))
        except OperationalError:
            # Startup fails loudly on first use if the server is unreachable.
            pass
        finally:
            engine.dispose()


def register_cli(app: Flask) -> None:
    @app.cli.command("complaint-analyze")
    @click.option("--description", default="", help="What the citizen reported.")
    @click.option("--location", default=None, help="Free-text location of the problem.")
    @click.option("--ward", "fallback_ward", type=int, default=None, help="Ward to fall back on when the location is unknown.")
    @click.option("--image", "image_path", type=click.Path(exists=True, dir_okay=False), default=None)
    def complaint_analyze(description, location, fallback_ward, image_path):
        """Run one complaint through Gemini and print the structured result."""
        from utils.complaint_prompt import IMAGE_ONLY_DESCRIPTION

        image = None
        if image_path:
            mime_type = mimetypes.guess_type(image_path)[0] or "image/jpeg"
            with open(image_path, "rb") as handle:
                image = (handle.read(), mime_type)
        if not description.strip() and image is None:
            raise click.UsageError("Provide a description or --image.")
        try:
            result = get_analyzer().analyze(
                description.strip() or IMAGE_ONLY_DESCRIPTION,
                image=image,
                location_text=location,
                fallback_ward_id=fallback_ward,
            )
        except (AnalysisConfigError, AnalysisError) as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(json.dumps(result.to_dict(), indent=2))

    @app.cli.command("wards-list")
    @click.option("--named-only", is_flag=True, help="Only wards with a gazetteer name.")
    def wards_list(named_only):
        """Print the ward gazetteer."""
        for ward in gazetteer():
            if named_only and not ward["named"]:
                continue
            click.echo(f"{ward['id']:>3}  {ward['name']:<28} {ward['zone'] or '-'}")


def create_app(config_name: Optional[str] = None, overrides: Optional[Mapping] = None) -> Flask:
    """Application factory with environment-aware configuration."""
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)

    from config import DevelopmentConfig, ProductionConfig, TestingConfig

    config_key = (config_name or os.getenv("FLASK_CONFIG") or os.getenv("FLASK_ENV") or "production").lower()
    config_map = {
        "development": DevelopmentConfig,
        "dev": DevelopmentConfig,
        "production": ProductionConfig,
        "prod": ProductionConfig,
        "testing": TestingConfig,
        "test": TestingConfig,
    }
    config_class = config_map.get(config_key, ProductionConfig)
    app.config.from_object(config_class())
    # Optional instance-specific overrides
    app.config.from_pyfile("config.py", silent=True)
    if overrides:
        app.config.update(overrides)

    ensure_database_exists(app.config["SQLALCHEMY_DATABASE_URI"])
    os.makedirs(app.instance_path, exist_ok=True)
    os.makedirs(app.config["COMPLAINT_UPLOAD_FOLDER"], exist_ok=True)

    logger = init_logging(app)
    app.logger = logger

    csrf.init_app(app)
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    login_manager.session_protection = "strong"

    @login_manager.user_loader
    def load_user(user_id):
        from models import User  # Local import to avoid circular dependency

        if not user_id:
            return None
        return db.session.get(User, str(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "Authentication required"}), 401

    from routes import register_blueprints

    register_blueprints(app)
    register_error_handlers(app)
    register_cli(app)

    @app.before_request
    def _before_request() -> None:
        assign_request_id()

    @app.after_request
    def _after_request(response):
        response.headers.setdefault("X-Request-ID", getattr(g, "request_id", ""))
        return apply_security_headers(response, force_https=app.config.get("PREFERRED_URL_SCHEME") == "https")

    init_analyzer(app)

    # Ensure tables exist so first run creates the database structure automatically.
    with app.app_context():
        db.create_all()
        ensure_default_roles_and_admin(app)

    return app
