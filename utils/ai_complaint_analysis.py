"""Gemini complaint classification: sequential model fallback and tolerant response parsing."""
from __future__ import annotations

import json
import logging
import math
import re
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, FrozenSet, Optional, Tuple, Union

from flask import current_app, has_app_context
from google import genai
from google.genai import errors, types

from models import COMPLAINT_CATEGORIES, DEFAULT_COMPLAINT_CATEGORY
from utils.complaint_prompt import build_prompt_parts
from utils.wards import clamp_ward_id, ward_label

MISSING_KEY_MESSAGE = "Gemini API key not configured. Set GEMINI_API_KEY in the environment or .env"
GENERIC_FAILURE_MESSAGE = "Gemini API request failed"
NO_RESPONSE_MESSAGE = "No response from Gemini"
DEFAULT_SUGGESTION = "Thank you for reporting. Our team will look into this."
DEFAULT_RETRY_SECONDS = 60.0
ERROR_BODY_LIMIT = 200
EXPECTED_FIELDS: Tuple[str, ...] = ("category", "suggestion", "ward_id", "ward_name")

_module_logger = logging.getLogger(__name__)


class AnalysisError(Exception):
    """Raised when no Gemini model produced a usable analysis."""


class RateLimitError(AnalysisError):
    """Gemini answered 429; ``retry_after`` holds the suggested wait in seconds."""

    def __init__(self, retry_after: float) -> None:
        self.retry_after = retry_after
        super().__init__(
            f"Gemini API rate limit reached. Please wait {math.ceil(retry_after)} seconds and try again. "
            "Check quota at aistudio.google.com"
        )


class QualityRejection(AnalysisError):
    """The response parsed but its suggestion is too thin to show a citizen."""


class AnalysisCancelled(AnalysisError):
    """The caller abandoned the analysis before it finished."""


class AnalysisConfigError(Exception):
    """Raised before any request when the Gemini integration is not configured."""


@dataclass(frozen=True)
class GeminiSettings:
    api_key: str
    models: Tuple[str, ...]
    temperature: float = 0.3
    max_output_tokens: int = 512
    timeout_seconds: float = 30.0
    min_suggestion_length: int = 10

    @classmethod
    def from_config(cls, config) -> "GeminiSettings":
        api_key = str(config.get("GEMINI_API_KEY") or "").strip()
        if not api_key:
            raise AnalysisConfigError(MISSING_KEY_MESSAGE)
        raw_models = config.get("GEMINI_MODELS") or ""
        if isinstance(raw_models, str):
            raw_models = raw_models.split(",")
        models = tuple(str(m).strip() for m in raw_models if str(m).strip())
        if not models:
            raise AnalysisConfigError("GEMINI_MODELS must name at least one model")
        return cls(
            api_key=api_key,
            models=models,
            temperature=float(config.get("GEMINI_TEMPERATURE", 0.3)),
            max_output_tokens=int(config.get("GEMINI_MAX_OUTPUT_TOKENS", 512)),
            timeout_seconds=float(config.get("GEMINI_TIMEOUT_SECONDS", 30)),
            min_suggestion_length=int(config.get("MIN_SUGGESTION_LENGTH", 10)),
        )


@dataclass(frozen=True)
class AnalysisResult:
    category: str
    suggestion: str
    ward_id: int
    ward_name: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Parsed:
    fields: Dict[str, Any]


@dataclass(frozen=True)
class PartiallyRecovered:
    fields: Dict[str, Any]
    missing: FrozenSet[str]


@dataclass(frozen=True)
class Unrecoverable:
    raw_text: str

    @property
    def fields(self) -> Dict[str, Any]:
        return {}


ParseOutcome = Union[Parsed, PartiallyRecovered, Unrecoverable]


def _log() -> logging.Logger:
    return current_app.logger if has_app_context() else _module_logger


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

_FENCED_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*(.*?)\s*```$", re.DOTALL)
_OPEN_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*")
_CATEGORY_RE = re.compile(r'"category"\s*:\s*"([^"]*)"', re.IGNORECASE)
# Value may contain escaped quotes and may be cut off by the token ceiling.
_SUGGESTION_RE = re.compile(r'"suggestion"\s*:\s*"((?:[^"\\]|\\.)*)', re.IGNORECASE | re.DOTALL)
_WARD_ID_RE = re.compile(r'"ward_id"\s*:\s*"?\s*(-?\d+(?:\.\d+)?)', re.IGNORECASE)
_WARD_NAME_RE = re.compile(r'"ward_name"\s*:\s*"([^"]*)"', re.IGNORECASE)


def strip_code_fences(raw_text: str) -> str:
    """Remove a surrounding markdown fence; unfenced text comes back trimmed but otherwise unchanged."""
    cleaned = (raw_text or "").strip()
    match = _FENCED_RE.match(cleaned)
    if match:
        return match.group(1).strip()
    if cleaned.startswith("```"):
        # Truncated output: opening fence without a closing one.
        return _OPEN_FENCE_RE.sub("", cleaned, count=1).strip()
    return cleaned


def _load_json_object(text: str) -> Optional[Dict[str, Any]]:
    candidates = [text]
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start and (start, end) != (0, len(text) - 1):
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(payload, dict):
            return payload
    return None


def _unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except ValueError:
        return value.replace('\\"', '"').replace("\\n", "\n")


def salvage_fields(text: str) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    category = _CATEGORY_RE.search(text)
    if category:
        fields["category"] = category.group(1)
    suggestion = _SUGGESTION_RE.search(text)
    if suggestion:
        fields["suggestion"] = _unescape(suggestion.group(1).rstrip("\\"))
    ward_id = _WARD_ID_RE.search(text)
    if ward_id:
        fields["ward_id"] = ward_id.group(1)
    ward_name = _WARD_NAME_RE.search(text)
    if ward_name:
        fields["ward_name"] = ward_name.group(1)
    return fields


def parse_response_text(raw_text: str) -> ParseOutcome:
    cleaned = strip_code_fences(raw_text)
    payload = _load_json_object(cleaned)
    if payload is not None:
        return Parsed({key: payload[key] for key in EXPECTED_FIELDS if payload.get(key) is not None})
    fields = salvage_fields(cleaned)
    if not fields:
        return Unrecoverable(cleaned)
    return PartiallyRecovered(fields, frozenset(EXPECTED_FIELDS) - fields.keys())


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def normalize_category(value: Any) -> str:
    category = str(value or "").strip().lower()
    return category if category in COMPLAINT_CATEGORIES else DEFAULT_COMPLAINT_CATEGORY


def coerce_ward_id(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(str(value).strip()))
    except (TypeError, ValueError, OverflowError):
        return None


def resolve_ward(value: Any, fallback_ward_id: Optional[int] = None) -> Tuple[int, str]:
    """Clamp the model's ward id and pair it with a name taken from the gazetteer, never the model."""
    ward_id = coerce_ward_id(value)
    if ward_id is None:
        ward_id = fallback_ward_id or 1
    ward_id = clamp_ward_id(ward_id)
    return ward_id, ward_label(ward_id)


def normalize_suggestion(value: Any) -> str:
    suggestion = str(value or "").strip()
    return suggestion or DEFAULT_SUGGESTION


def interpret(
    outcome: ParseOutcome,
    fallback_ward_id: Optional[int] = None,
    min_suggestion_length: int = 0,
) -> AnalysisResult:
    fields = outcome.fields
    raw_suggestion = str(fields.get("suggestion") or "").strip()
    if raw_suggestion and len(raw_suggestion) < min_suggestion_length:
        raise QualityRejection("Gemini returned an unusable suggestion")
    ward_id, ward_name = resolve_ward(fields.get("ward_id"), fallback_ward_id)
    return AnalysisResult(
        category=normalize_category(fields.get("category")),
        suggestion=normalize_suggestion(raw_suggestion),
        ward_id=ward_id,
        ward_name=ward_name,
    )


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

def retry_delay_seconds(details: Any, default: float = DEFAULT_RETRY_SECONDS) -> float:
    """Read ``retryDelay`` (e.g. ``"30s"``) from a Google RPC error body."""
    if not isinstance(details, dict):
        return default
    error = details.get("error", details)
    entries = error.get("details") if isinstance(error, dict) else None
    for entry in entries or []:
        if isinstance(entry, dict) and entry.get("retryDelay"):
            try:
                return float(str(entry["retryDelay"]).strip().rstrip("s")) or default
            except ValueError:
                return default
    return default


def response_text(response: Any) -> str:
    """Text of the first candidate's first part, falling back to the SDK's joined ``text``."""
    text = None
    try:
        candidates = getattr(response, "candidates", None) or []
        parts = candidates[0].content.parts if candidates and candidates[0].content else None
        if parts:
            text = getattr(parts[0], "text", None)
    except (AttributeError, IndexError, TypeError):
        text = None
    if not text:
        text = getattr(response, "text", None)
    return (text or "").strip()


def _api_failure(exc: errors.APIError) -> AnalysisError:
    if exc.code == 429:
        return RateLimitError(retry_delay_seconds(exc.details))
    body = exc.details if isinstance(exc.details, str) else json.dumps(exc.details, default=str)
    return AnalysisError(f"Gemini API error: {exc.code} - {body[:ERROR_BODY_LIMIT]}")


class ComplaintAnalyzer:
    """Classifies a complaint and resolves its ward, trying each configured model in order."""

    def __init__(self, settings: GeminiSettings, client: Any = None) -> None:
        self.settings = settings
        self._client = client or genai.Client(api_key=settings.api_key)

    def _generation_config(self) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            temperature=self.settings.temperature,
            max_output_tokens=self.settings.max_output_tokens,
            response_mime_type="application/json",
            http_options=types.HttpOptions(timeout=int(self.settings.timeout_seconds * 1000)),
        )

    def _attempt(self, model: str, parts, config, fallback_ward_id: Optional[int]) -> Union[AnalysisResult, AnalysisError]:
        logger = _log()
        logger.info("Dispatching Gemini complaint analysis", extra={"model": model})
        try:
            response = self._client.models.generate_content(model=model, contents=parts, config=config)
        except errors.APIError as exc:
            failure = _api_failure(exc)
            logger.warning("Gemini API error", extra={"model": model, "code": exc.code, "error": str(failure)})
            return failure
        except Exception as exc:  # transport errors, timeouts, SDK serialization failures
            logger.warning("Gemini request failed", extra={"model": model, "error": str(exc)})
            return AnalysisError(f"{GENERIC_FAILURE_MESSAGE}: {exc}")

        text = response_text(response)
        if not text:
            logger.warning("Gemini returned empty response", extra={"model": model})
            return AnalysisError(NO_RESPONSE_MESSAGE)

        outcome = parse_response_text(text)
        if not isinstance(outcome, Parsed):
            logger.warning(
                "Gemini returned malformed JSON",
                extra={
                    "model": model,
                    "recovered": sorted(outcome.fields),
                    "raw_text_snippet": text[:ERROR_BODY_LIMIT],
                },
            )
        try:
            result = interpret(outcome, fallback_ward_id, self.settings.min_suggestion_length)
        except QualityRejection as exc:
            logger.warning("Gemini suggestion rejected", extra={"model": model, "raw_text_snippet": text[:ERROR_BODY_LIMIT]})
            return exc
        logger.info(
            "Gemini complaint analysis complete",
            extra={"model": model, "category": result.category, "ward_id": result.ward_id},
        )
        return result

    def analyze(
        self,
        description: str,
        image: Optional[Tuple[bytes, str]] = None,
        location_text: Optional[str] = None,
        fallback_ward_id: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> AnalysisResult:
        parts = build_prompt_parts(description, image, location_text, fallback_ward_id)
        config = self._generation_config()
        outcome: Union[AnalysisResult, AnalysisError] = AnalysisError(GENERIC_FAILURE_MESSAGE)
        for model in self.settings.models:
            if cancel_event is not None and cancel_event.is_set():
                raise AnalysisCancelled("Complaint analysis was cancelled")
            outcome = self._attempt(model, parts, config, fallback_ward_id)
            if isinstance(outcome, AnalysisResult):
                return outcome
        _log().error("Gemini complaint analysis failed on every model", extra={"error": str(outcome)})
        raise outcome


def init_analyzer(app) -> Optional[ComplaintAnalyzer]:
    """Validate Gemini settings once at startup and register the shared analyzer."""
    try:
        analyzer = ComplaintAnalyzer(GeminiSettings.from_config(app.config))
    except AnalysisConfigError as exc:
        app.logger.warning("Complaint analysis disabled", extra={"reason": str(exc)})
        analyzer = None
    app.extensions["complaint_analyzer"] = analyzer
    return analyzer


def get_analyzer() -> ComplaintAnalyzer:
    analyzer = current_app.extensions.get("complaint_analyzer")
    if analyzer is None:
        raise AnalysisConfigError(MISSING_KEY_MESSAGE)
    return analyzer
