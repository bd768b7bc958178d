import io
import os
import threading
from urllib.parse import urlparse

import pytest
from google.genai import errors

from routes import complaints as complaints_routes
from utils.complaint_prompt import IMAGE_ONLY_DESCRIPTION

ROHINI_REPLY = (
    '```json\n{"category":"soil","suggestion":"Report the dumping to the MCD sanitation office in Rohini zone.",'
    '"ward_id":45,"ward_name":"Rohini Sector 7"}\n```'
)
CP_REPLY = '{"category":"water","suggestion":"Call the Delhi Jal Board helpline about the overflow.","ward_id":118}'


def _analyze(client, **data):
    return client.post("/complaints/analyze", data=data, content_type="multipart/form-data")


def test_analyze_requires_login(client, install_gemini):
    install_gemini(ROHINI_REPLY)
    response = _analyze(client, description="Garbage dumped near the park")
    assert response.status_code == 401


def test_empty_draft_is_rejected_before_any_call(citizen_client, install_gemini):
    gemini = install_gemini(ROHINI_REPLY)
    response = _analyze(citizen_client, description="   ", location="Rohini")
    assert response.status_code == 400
    assert gemini.calls == []


def test_analyze_then_submit_creates_public_complaint(citizen_client, install_gemini):
    install_gemini(ROHINI_REPLY)
    response = _analyze(citizen_client, description="Garbage dumped near the park", location="Rohini Sector 7")
    assert response.status_code == 200
    analysis = response.get_json()["draft"]["analysis"]
    assert analysis == {
        "category": "soil",
        "suggestion": "Report the dumping to the MCD sanitation office in Rohini zone.",
        "ward_id": 45,
        "ward_name": "Rohini",
    }

    draft = citizen_client.get("/complaints/draft").get_json()["draft"]
    assert draft["location_text"] == "Rohini Sector 7"

    response = citizen_client.post("/complaints/submit", data={})
    assert response.status_code == 201
    complaint = response.get_json()["complaint"]
    assert complaint["status"] == "received"
    assert complaint["ward_number"] == 45
    assert complaint["category"] == "soil"
    assert complaint["photo_url"] is None
    assert [entry["status"] for entry in complaint["timeline"]] == ["received"]

    public = citizen_client.get("/complaints/public?ward=45").get_json()["complaints"]
    assert [item["id"] for item in public] == [complaint["id"]]
    assert citizen_client.get("/complaints/draft").status_code == 404


def test_photo_only_draft_uses_placeholder_and_stores_photo(app, citizen, citizen_client, install_gemini, png_bytes):
    gemini = install_gemini(CP_REPLY)
    response = _analyze(
        citizen_client,
        description="",
        location="CP",
        photo=(io.BytesIO(png_bytes), "overflow.png"),
    )
    assert response.status_code == 200
    assert response.get_json()["draft"]["has_photo"] is True
    contents = gemini.calls[0]["contents"]
    assert contents[0].inline_data.mime_type == "image/png"
    assert contents[-1].text.endswith(IMAGE_ONLY_DESCRIPTION)

    response = citizen_client.post("/complaints/submit", data={})
    assert response.status_code == 400
    assert "description" in response.get_json()["error"]

    response = citizen_client.post("/complaints/submit", data={"description": "Sewage overflowing onto the road"})
    assert response.status_code == 201
    photo_url = response.get_json()["complaint"]["photo_url"]
    assert f"/complaints/photos/complaints/{citizen.id}/" in photo_url
    assert photo_url.endswith(".png")

    photo = citizen_client.get(urlparse(photo_url).path)
    assert photo.status_code == 200
    assert photo.data == png_bytes
    drafts_dir = os.path.join(app.config["COMPLAINT_UPLOAD_FOLDER"], "drafts", citizen.id)
    assert os.listdir(drafts_dir) == []


def test_invalid_photo_is_rejected(citizen_client, install_gemini):
    gemini = install_gemini(CP_REPLY)
    response = _analyze(citizen_client, description="Smoke", photo=(io.BytesIO(b"not an image"), "smoke.png"))
    assert response.status_code == 400
    assert gemini.calls == []


def test_missing_api_key_returns_503(app, citizen_client):
    app.extensions["complaint_analyzer"] = None
    response = _analyze(citizen_client, description="Loud music every night")
    assert response.status_code == 503
    assert "GEMINI_API_KEY" in response.get_json()["error"]


def test_failure_on_every_model_returns_502(citizen_client, install_gemini):
    rate_limited = errors.ClientError(
        429, {"error": {"code": 429, "message": "quota", "status": "RESOURCE_EXHAUSTED", "details": [{"retryDelay": "30s"}]}}
    )
    install_gemini(rate_limited, models=("gemini-2.5-flash",))
    response = _analyze(citizen_client, description="Loud music every night")
    assert response.status_code == 502
    assert "Please wait 30 seconds" in response.get_json()["error"]
    assert citizen_client.get("/complaints/draft").status_code == 404


def test_second_analysis_while_busy_is_refused(citizen, citizen_client, install_gemini):
    gemini = install_gemini(ROHINI_REPLY)
    complaints_routes._in_flight[citizen.id] = threading.Event()
    try:
        response = _analyze(citizen_client, description="Garbage dumped near the park")
        assert response.status_code == 409
        assert gemini.calls == []

        cancel = complaints_routes._in_flight[citizen.id]
        response = citizen_client.post("/complaints/start-over")
        assert response.get_json()["cancelled_analysis"] is True
        assert cancel.is_set()
    finally:
        complaints_routes._in_flight.pop(citizen.id, None)


def test_submit_without_analysis_is_rejected(citizen_client):
    response = citizen_client.post("/complaints/submit", data={"description": "Potholes"})
    assert response.status_code == 400


def test_start_over_discards_draft(citizen_client, install_gemini):
    install_gemini(ROHINI_REPLY)
    _analyze(citizen_client, description="Garbage dumped near the park")
    response = citizen_client.post("/complaints/start-over")
    assert response.get_json()["discarded"] is True
    assert citizen_client.get("/complaints/draft").status_code == 404


@pytest.fixture
def reported(citizen_client, install_gemini):
    install_gemini(ROHINI_REPLY)
    _analyze(citizen_client, description="Garbage dumped near the park")
    return citizen_client.post("/complaints/submit", data={}).get_json()["complaint"]


def test_admin_verification_rewards_citizen(citizen_client, admin_client, reported):
    response = admin_client.post(
        f"/complaints/{reported['id']}/status",
        data={"status": "verified", "points_rewarded": "50", "admin_feedback": "Cleared and confirmed on site"},
    )
    assert response.status_code == 200
    complaint = response.get_json()["complaint"]
    assert complaint["status"] == "verified"
    assert [entry["status"] for entry in complaint["timeline"]] == ["received", "verified"]

    me = citizen_client.get("/auth/me").get_json()["user"]
    assert (me["score"], me["wallet_balance"]) == (50, 50)


def test_admin_rejects_unknown_status(admin_client, reported):
    response = admin_client.post(f"/complaints/{reported['id']}/status", data={"status": "archived"})
    assert response.status_code == 400


def test_citizen_cannot_change_status(citizen_client, reported):
    response = citizen_client.post(f"/complaints/{reported['id']}/status", data={"status": "solved"})
    assert response.status_code == 403


def test_my_complaints_lists_own_reports(citizen_client, reported):
    body = citizen_client.get("/complaints/").get_json()
    assert body["total"] == 1
    assert body["complaints"][0]["id"] == reported["id"]


def test_unknown_complaint_is_404(client):
    response = client.get("/complaints/does-not-exist")
    assert response.status_code == 404
    assert "error" in response.get_json()
