"""HTTP-facing handlers that forward form requests to the speech backend.

Handlers are framework-free: they take the request method and the decoded
form fields and return an EdgeResponse that any web layer can send.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

from pydantic import ValidationError

from phonocoach.config import settings
from phonocoach.errors import InvalidInput, PhonocoachError, user_message
from phonocoach.models.gateway_models import GenerationRequest
from phonocoach.models.progress_models import DifficultyLevel
from phonocoach.services.gateway import SpeechGateway

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


@dataclass
class EdgeResponse:
    """Status, headers and body of a handler response."""
    status: int
    body: str
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def json(cls, data: Any, status: int = 200) -> "EdgeResponse":
        return cls(
            status=status,
            body=json.dumps(data, ensure_ascii=False),
            headers={**CORS_HEADERS, "Content-Type": "application/json"},
        )

    @classmethod
    def preflight(cls) -> "EdgeResponse":
        return cls(status=200, body="ok", headers=dict(CORS_HEADERS))


def _error_response(error: Exception) -> EdgeResponse:
    if isinstance(error, InvalidInput):
        message = error.message
    else:
        message = user_message(error)
    return EdgeResponse.json({"error": message}, status=500)


async def generate_practice_word(method: str, form: Mapping[str, Any], gateway: SpeechGateway) -> EdgeResponse:
    """Forward a generation request; the backend JSON is returned unchanged."""
    if method.upper() == "OPTIONS":
        return EdgeResponse.preflight()

    try:
        logger.info(
            f"Received parameters for word generation: phoneme={form.get('phoneme')!r}, "
            f"difficulty_level={form.get('difficulty_level')!r}, language={form.get('language')!r}"
        )
        try:
            request = GenerationRequest(
                phoneme=form.get("phoneme") or "",
                difficulty_level=form.get("difficulty_level") or "",
                language=form.get("language") or "",
            )
        except ValidationError as e:
            raise InvalidInput("Missing 'phoneme', 'difficulty_level', or 'language' in request form-data.") from e
        try:
            level = DifficultyLevel.parse(request.difficulty_level)
        except ValueError as e:
            raise InvalidInput(f"Unknown difficulty_level: {request.difficulty_level!r}") from e
        request = request.model_copy(update={"difficulty_level": level.value})
        data = await gateway.generate_raw(request)
        return EdgeResponse.json(data)
    except PhonocoachError as e:
        logger.error(f"generate-practice-word failed: {e.message}")
        return _error_response(e)
    except Exception as e:
        logger.exception(f"generate-practice-word internal error: {e}")
        return _error_response(e)


async def analyze_speech(method: str, form: Mapping[str, Any], gateway: SpeechGateway) -> EdgeResponse:
    """Forward an audio file for recognition; the backend JSON is returned unchanged."""
    if method.upper() == "OPTIONS":
        return EdgeResponse.preflight()

    try:
        audio = form.get("audio")
        target_word = form.get("target_word")
        language = form.get("language") or settings.practice.default_language
        if not isinstance(audio, (bytes, bytearray)) or not audio:
            raise InvalidInput("No audio file provided or invalid format.")
        if not target_word:
            raise InvalidInput("Target word is required.")
        data = await gateway.analyze_raw(bytes(audio), target_word, language)
        return EdgeResponse.json(data)
    except PhonocoachError as e:
        logger.error(f"analyze-speech failed: {e.message}")
        return _error_response(e)
    except Exception as e:
        logger.exception(f"analyze-speech internal error: {e}")
        return _error_response(e)
