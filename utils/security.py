"""Security helpers for headers, input sanitation, password policy and throttling."""
import html
import time
from typing import Mapping

from flask import request


def sanitize_input(data: Mapping) -> dict:
    """Return a sanitized copy of incoming data to reduce injection risk."""
    sanitized = {}
    for key, value in data.items():
        sanitized[html.escape(str(key))] = html.escape(str(value).strip())
    return sanitized


def apply_security_headers(response, force_https: bool = False):
    """JSON API headers: nothing on this origin is meant to be framed or to run scripts."""
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; img-src 'self'; frame-ancestors 'none'")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
    if force_https or request.is_secure:
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    return response


def password_meets_policy(password: str) -> tuple[bool, str | None]:
    if len(password) < 12:
        return False, "Password must be at least 12 characters long."
    if password.lower() == password or password.upper() == password:
        return False, "Use a mix of upper and lower case characters."
    if not any(c.isdigit() for c in password):
        return False, "Include at least one digit."
    if not any(c in "!@#$%^&*()-_=+[]{}|;:,.<>?/" for c in password):
        return False, "Include at least one symbol."
    return True, None


# Process-local attempt log; swap for a shared cache when running several workers.
_attempts: dict[str, list[float]] = {}


def track_attempt(key: str, limit: int = 10, window_seconds: int = 3600) -> bool:
    """Record an attempt for ``key``; False once ``limit`` attempts fall inside the window."""
    now = time.monotonic()
    recent = [ts for ts in _attempts.get(key, []) if now - ts < window_seconds]
    recent.append(now)
    _attempts[key] = recent
    return len(recent) <= limit


def reset_attempts() -> None:
    _attempts.clear()
