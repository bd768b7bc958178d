import threading

import pytest
from google.genai import errors

from tests.conftest import FakeGeminiClient, candidate_response, make_settings
from utils.ai_complaint_analysis import (
    DEFAULT_SUGGESTION,
    MISSING_KEY_MESSAGE,
    NO_RESPONSE_MESSAGE,
    AnalysisCancelled,
    AnalysisConfigError,
    AnalysisError,
    ComplaintAnalyzer,
    GeminiSettings,
    Parsed,
    PartiallyRecovered,
    QualityRejection,
    RateLimitError,
    Unrecoverable,
    interpret,
    parse_response_text,
    resolve_ward,
    response_text,
    retry_delay_seconds,
    salvage_fields,
    strip_code_fences,
)

GOOD_REPLY = (
    '{"category":"soil","suggestion":"Report the dumping to the MCD sanitation office in Rohini zone.",'
    '"ward_id":45,"ward_name":"Rohini Sector 7"}'
)


def _analyzer(*replies, **settings):
    client = FakeGeminiClient(*replies)
    return ComplaintAnalyzer(make_settings(**settings), client=client), client


def _rate_limited(delay="30s"):
    return errors.ClientError(
        429,
        {
            "error": {
                "code": 429,
                "message": "Resource has been exhausted",
                "status": "RESOURCE_EXHAUSTED",
                "details": [{"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": delay}],
            }
        },
    )


def _server_error():
    return errors.ServerError(500, {"error": {"code": 500, "message": "backend exploded", "status": "INTERNAL"}})


# --- parsing -----------------------------------------------------------------


def test_strip_code_fences_removes_json_fence():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'


def test_strip_code_fences_is_idempotent_on_plain_text():
    plain = '{"category":"air"}'
    assert strip_code_fences(plain) == plain
    assert strip_code_fences(strip_code_fences(plain)) == plain


def test_strip_code_fences_handles_missing_closing_fence():
    assert strip_code_fences('```json\n{"category":"air"') == '{"category":"air"'


def test_parse_fenced_json_is_parsed():
    outcome = parse_response_text("```json\n" + GOOD_REPLY + "\n```")
    assert isinstance(outcome, Parsed)
    assert outcome.fields["ward_id"] == 45


def test_fenced_and_plain_replies_interpret_identically():
    fenced = interpret(parse_response_text("```json\n" + GOOD_REPLY + "\n```"), fallback_ward_id=213)
    plain = interpret(parse_response_text(GOOD_REPLY), fallback_ward_id=213)
    assert fenced == plain
    assert fenced.to_dict()["ward_name"] == "Rohini"


def test_salvage_keeps_escaped_quotes_in_suggestion():
    broken = '{"category":"air","suggestion":"Call the \\"DPCC\\" helpline now", "ward_id": 45,,}'
    outcome = parse_response_text(broken)
    assert isinstance(outcome, PartiallyRecovered)
    assert outcome.fields["suggestion"] == 'Call the "DPCC" helpline now'
    assert salvage_fields(broken)["ward_id"] == "45"


def test_parse_json_with_surrounding_chatter():
    outcome = parse_response_text("Here you go: " + GOOD_REPLY + " Hope this helps")
    assert isinstance(outcome, Parsed)
    assert outcome.fields["category"] == "soil"


def test_parse_truncated_json_salvages_fields():
    truncated = '{"category":"water","suggestion":"Call the Delhi Jal Board helpline and ask for a sew'
    outcome = parse_response_text(truncated)
    assert isinstance(outcome, PartiallyRecovered)
    assert outcome.fields["category"] == "water"
    assert outcome.fields["suggestion"].startswith("Call the Delhi Jal Board")
    assert {"ward_id", "ward_name"} <= outcome.missing


def test_parse_garbage_is_unrecoverable():
    outcome = parse_response_text("I cannot help with that.")
    assert isinstance(outcome, Unrecoverable)
    assert outcome.fields == {}


# --- normalization -----------------------------------------------------------


def test_unknown_category_defaults_to_land():
    result = interpret(Parsed({"category": "Garbage", "suggestion": "Contact the local office today.", "ward_id": 45}))
    assert result.category == "land"


def test_category_is_case_insensitive():
    result = interpret(Parsed({"category": "AIR", "suggestion": "Contact the local office today.", "ward_id": 45}))
    assert result.category == "air"


@pytest.mark.parametrize("raw, expected", [(0, 1), (-7, 1), (999, 250), ("118", 118), (45.0, 45)])
def test_ward_id_is_clamped_and_coerced(raw, expected):
    ward_id, _ = resolve_ward(raw)
    assert ward_id == expected


def test_ward_name_comes_from_gazetteer_not_model():
    result = interpret(Parsed({"category": "air", "suggestion": "Contact the pollution board.", "ward_id": 118, "ward_name": "Mars"}))
    assert result.ward_name == "Connaught Place"


def test_ungazetteered_ward_gets_synthesized_label():
    assert resolve_ward(2) == (2, "Ward 2")


def test_ungazetteered_ward_keeps_model_id_despite_fallback():
    assert resolve_ward(2, fallback_ward_id=45) == (2, "Ward 2")


@pytest.mark.parametrize("raw, expected", [(300, (250, "Ward 250")), (0, (1, "Narela")), ("100", (100, "Ward 100"))])
def test_clamp_ignores_fallback_for_numeric_ids(raw, expected):
    assert resolve_ward(raw, fallback_ward_id=10) == expected


def test_interpret_keeps_model_ward_over_home_ward():
    fields = {"category": "air", "suggestion": "Contact the pollution board.", "ward_id": 100}
    assert interpret(Parsed(fields), fallback_ward_id=45).ward_id == 100


def test_non_numeric_ward_uses_fallback():
    assert resolve_ward("somewhere", fallback_ward_id=45) == (45, "Rohini")


def test_missing_ward_uses_fallback():
    assert resolve_ward(None, fallback_ward_id=213) == (213, "Greater Kailash")


def test_unrecoverable_output_yields_defaults():
    result = interpret(Unrecoverable("nonsense"), fallback_ward_id=None)
    assert result.category == "land"
    assert result.suggestion == DEFAULT_SUGGESTION
    assert (result.ward_id, result.ward_name) == (1, "Narela")


def test_short_suggestion_is_rejected():
    with pytest.raises(QualityRejection):
        interpret(Parsed({"category": "air", "suggestion": "OK", "ward_id": 45}), min_suggestion_length=10)


# --- transport ---------------------------------------------------------------


def test_retry_delay_is_read_from_error_details():
    details = {"error": {"details": [{"retryDelay": "12s"}]}}
    assert retry_delay_seconds(details) == 12.0


def test_retry_delay_defaults_to_sixty_seconds():
    assert retry_delay_seconds({"error": {"details": []}}) == 60.0
    assert retry_delay_seconds(None) == 60.0


def test_settings_require_api_key():
    with pytest.raises(AnalysisConfigError) as excinfo:
        GeminiSettings.from_config({"GEMINI_API_KEY": "", "GEMINI_MODELS": "gemini-2.5-flash"})
    assert str(excinfo.value) == MISSING_KEY_MESSAGE


def test_settings_split_model_list():
    settings = GeminiSettings.from_config({"GEMINI_API_KEY": "k", "GEMINI_MODELS": " a , b ,"})
    assert settings.models == ("a", "b")


def test_rohini_complaint_resolves_to_ward_45():
    analyzer, client = _analyzer(GOOD_REPLY)
    result = analyzer.analyze("Garbage dumped near the park", location_text="Rohini Sector 7")
    assert result.to_dict() == {
        "category": "soil",
        "suggestion": "Report the dumping to the MCD sanitation office in Rohini zone.",
        "ward_id": 45,
        "ward_name": "Rohini",
    }
    assert len(client.calls) == 1
    assert client.calls[0]["model"] == "gemini-2.5-flash"
    prompt = client.calls[0]["contents"][-1].text
    assert "Rohini Sector 7" in prompt
    assert "Rohini Sector: 45" in prompt


def test_image_part_precedes_text(png_bytes):
    analyzer, client = _analyzer(GOOD_REPLY)
    analyzer.analyze("Smoke from a factory", image=(png_bytes, "image/png"))
    contents = client.calls[0]["contents"]
    assert len(contents) == 2
    assert contents[0].inline_data.mime_type == "image/png"
    assert contents[1].text


def test_falls_back_to_next_model_after_server_error():
    analyzer, client = _analyzer(_server_error(), GOOD_REPLY)
    result = analyzer.analyze("Garbage dumped near the park")
    assert result.ward_id == 45
    assert [call["model"] for call in client.calls] == ["gemini-2.5-flash", "gemini-2.0-flash"]


def test_falls_back_after_quality_rejection():
    short = '{"category":"air","suggestion":"Ok","ward_id":45}'
    analyzer, client = _analyzer(short, GOOD_REPLY)
    result = analyzer.analyze("Smoke everywhere")
    assert result.category == "soil"
    assert len(client.calls) == 2


def test_rate_limit_message_reports_wait():
    analyzer, _ = _analyzer(_rate_limited("30s"), models=("gemini-2.5-flash",))
    with pytest.raises(RateLimitError) as excinfo:
        analyzer.analyze("Loud music all night")
    assert excinfo.value.retry_after == 30.0
    assert "Please wait 30 seconds" in str(excinfo.value)
    assert "aistudio.google.com" in str(excinfo.value)


def test_all_models_failing_raises_last_error():
    analyzer, _ = _analyzer(_rate_limited(), _server_error())
    with pytest.raises(AnalysisError) as excinfo:
        analyzer.analyze("Loud music all night")
    assert str(excinfo.value).startswith("Gemini API error: 500 - ")


def test_empty_reply_is_no_response():
    analyzer, _ = _analyzer("", models=("gemini-2.5-flash",))
    with pytest.raises(AnalysisError) as excinfo:
        analyzer.analyze("Potholes on the main road")
    assert str(excinfo.value) == NO_RESPONSE_MESSAGE


def test_transport_failure_tries_next_model():
    analyzer, client = _analyzer(TimeoutError("read timed out"), GOOD_REPLY)
    assert analyzer.analyze("Potholes on the main road").ward_id == 45
    assert len(client.calls) == 2


def test_cancelled_analysis_sends_nothing():
    analyzer, client = _analyzer(GOOD_REPLY)
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(AnalysisCancelled):
        analyzer.analyze("Potholes on the main road", cancel_event=cancel)
    assert client.calls == []


def test_reply_text_read_from_first_candidate_part():
    assert response_text(candidate_response("  " + GOOD_REPLY + "\n")) == GOOD_REPLY
    analyzer, _ = _analyzer(candidate_response(GOOD_REPLY))
    assert analyzer.analyze("Garbage dumped near the park").ward_id == 45
