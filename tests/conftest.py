import io
import os
import sys
from types import SimpleNamespace

import pytest
from PIL import Image

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from app import create_app  # noqa: E402
from extensions import db  # noqa: E402
from models import Role, User  # noqa: E402
from utils.ai_complaint_analysis import ComplaintAnalyzer, GeminiSettings  # noqa: E402
from utils.security import reset_attempts  # noqa: E402

CITIZEN_PASSWORD = "Citizen@12345!"
ADMIN_EMAIL = "admin@wardwatch.in"
ADMIN_PASSWORD = "Admin@12345!"


class FakeModels:
    """Stands in for ``genai.Client().models``; replies are consumed in order."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    def generate_content(self, model, contents, config=None):
        self.calls.append({"model": model, "contents": contents, "config": config})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            return SimpleNamespace(text=reply, candidates=[])
        return reply


def candidate_response(text):
    """Reply shaped like the SDK: text only under candidates[0].content.parts[0]."""
    part = SimpleNamespace(text=text)
    return SimpleNamespace(text=None, candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]))])


class FakeGeminiClient:
    def __init__(self, *replies):
        self.models = FakeModels(replies)

    @property
    def calls(self):
        return self.models.calls


def make_settings(**overrides):
    values = {
        "api_key": "test-key",
        "models": ("gemini-2.5-flash", "gemini-2.0-flash"),
        "temperature": 0.3,
        "max_output_tokens": 512,
        "timeout_seconds": 30.0,
        "min_suggestion_length": 10,
    }
    values.update(overrides)
    return GeminiSettings(**values)


@pytest.fixture
def app(tmp_path):
    reset_attempts()
    app = create_app(
        "testing",
        overrides={
            "LOG_DIR": str(tmp_path / "logs"),
            "COMPLAINT_UPLOAD_FOLDER": str(tmp_path / "uploads"),
        },
    )
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def install_gemini(app):
    """Swap the app's analyzer for one backed by scripted Gemini replies."""

    def _install(*replies, **settings):
        client = FakeGeminiClient(*replies)
        app.extensions["complaint_analyzer"] = ComplaintAnalyzer(make_settings(**settings), client=client)
        return client

    return _install


@pytest.fixture
def citizen(app):
    with app.app_context():
        user = User(
            full_name="Asha Verma",
            email="asha@example.in",
            role=Role.get_or_create("citizen"),
            ward_number=45,
        )
        user.set_password(CITIZEN_PASSWORD)
        db.session.add(user)
        db.session.commit()
        return SimpleNamespace(id=user.id, email=user.email, password=CITIZEN_PASSWORD, ward_number=45)


def login(client, email, password):
    response = client.post("/auth/login", data={"email": email, "password": password})
    assert response.status_code == 200, response.get_json()
    return response


@pytest.fixture
def citizen_client(client, citizen):
    login(client, citizen.email, citizen.password)
    return client


@pytest.fixture
def admin_client(app):
    client = app.test_client()
    login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
    return client


@pytest.fixture
def png_bytes():
    img = Image.new("RGB", (64, 48), color=(120, 90, 60))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
