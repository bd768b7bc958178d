"""Authorization decorators for role-based access control."""
from functools import wraps

from flask import abort, current_app, request
from flask_login import current_user, login_required

from extensions import db
from models import AuditLog


def roles_required(*roles):
    allowed = {r.lower() for r in roles}

    def decorator(view_func):
        @wraps(view_func)
        @login_required
        def wrapped(*args, **kwargs):
            if current_user.role_name in allowed:
                return view_func(*args, **kwargs)

            current_app.logger.warning(
                "Unauthorized role access attempt",
                extra={"user_id": current_user.id, "role": current_user.role_name, "endpoint": request.endpoint},
            )
            db.session.add(
                AuditLog(
                    user_id=current_user.id,
                    action_type="UNAUTHORIZED_ACCESS",
                    ip_address=request.remote_addr,
                    user_agent=request.headers.get("User-Agent", "unknown"),
                    context_entity=request.endpoint,
                )
            )
            db.session.commit()
            abort(403)

        return wrapped

    return decorator


def audit(action_type: str, user=None, context_entity: str | None = None) -> AuditLog:
    """Stage an audit entry in the current session; the caller commits."""
    actor = user if user is not None else current_user
    entry = AuditLog(
        user_id=actor.id if actor and getattr(actor, "is_authenticated", False) else None,
        action_type=action_type,
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent", "unknown"),
        context_entity=context_entity,
    )
    db.session.add(entry)
    return entry
