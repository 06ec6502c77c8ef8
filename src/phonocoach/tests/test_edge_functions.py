"""Tests for the HTTP-facing handlers."""
import json
from unittest.mock import AsyncMock, Mock

import pytest

from phonocoach.errors import SecretMissing, UpstreamError
from phonocoach.services.edge_functions import CORS_HEADERS, analyze_speech, generate_practice_word
from phonocoach.services.gateway import SpeechGateway


@pytest.fixture
def gateway() -> Mock:
    gateway = Mock(spec=SpeechGateway)
    gateway.generate_raw = AsyncMock(return_value={"word": "thin", "phoneme_count": 3, "note": "kept"})
    gateway.analyze_raw = AsyncMock(return_value={"transcription": "θɪn"})
    return gateway


@pytest.mark.asyncio
@pytest.mark.parametrize("handler", [generate_practice_word, analyze_speech])
async def test_preflight(handler, gateway):
    """Test that OPTIONS answers ok with CORS headers."""
    response = await handler("OPTIONS", {}, gateway)

    assert response.status == 200
    assert response.body == "ok"
    assert response.headers["Access-Control-Allow-Origin"] == "*"


@pytest.mark.asyncio
async def test_generate_practice_word(gateway):
    """Test that the backend JSON is returned unchanged."""
    form = {"phoneme": "θ", "difficulty_level": "Primary-School", "language": "en"}

    response = await generate_practice_word("POST", form, gateway)

    assert response.status == 200
    assert json.loads(response.body) == {"word": "thin", "phoneme_count": 3, "note": "kept"}
    assert response.headers["Content-Type"] == "application/json"
    for name, value in CORS_HEADERS.items():
        assert response.headers[name] == value
    request = gateway.generate_raw.await_args.args[0]
    assert request.phoneme == "θ"


@pytest.mark.asyncio
async def test_generate_practice_word_normalizes_level(gateway):
    """Test that band aliases are sent to the backend as the band value."""
    form = {"phoneme": "θ", "difficulty_level": "middle_school", "language": "en"}

    response = await generate_practice_word("POST", form, gateway)

    assert response.status == 200
    assert gateway.generate_raw.await_args.args[0].difficulty_level == "Secondary-School"


@pytest.mark.asyncio
async def test_generate_practice_word_unknown_level(gateway):
    """Test that an unknown band fails before any outbound call."""
    form = {"phoneme": "θ", "difficulty_level": "university", "language": "en"}

    response = await generate_practice_word("POST", form, gateway)

    assert response.status == 500
    assert "university" in json.loads(response.body)["error"]
    gateway.generate_raw.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("missing", ["phoneme", "difficulty_level", "language"])
async def test_generate_practice_word_requires_fields(gateway, missing):
    """Test that a missing field fails before any outbound call."""
    form = {"phoneme": "θ", "difficulty_level": "Primary-School", "language": "en"}
    form.pop(missing)

    response = await generate_practice_word("POST", form, gateway)

    assert response.status == 500
    assert "phoneme" in json.loads(response.body)["error"]
    gateway.generate_raw.assert_not_awaited()


@pytest.mark.asyncio
async def test_upstream_body_is_not_exposed(gateway):
    """Test that backend failures map to a fixed message."""
    gateway.generate_raw.side_effect = UpstreamError(502, "stack trace from the backend")
    form = {"phoneme": "θ", "difficulty_level": "Adult", "language": "en"}

    response = await generate_practice_word("POST", form, gateway)

    assert response.status == 500
    error = json.loads(response.body)["error"]
    assert error == UpstreamError.user_message
    assert "stack trace" not in error


@pytest.mark.asyncio
async def test_unexpected_error(gateway):
    """Test that any other failure is still a JSON 500."""
    gateway.generate_raw.side_effect = RuntimeError("boom")
    form = {"phoneme": "θ", "difficulty_level": "Adult", "language": "en"}

    response = await generate_practice_word("POST", form, gateway)

    assert response.status == 500
    assert "error" in json.loads(response.body)


@pytest.mark.asyncio
async def test_analyze_speech(gateway):
    """Test forwarding an audio file for recognition."""
    form = {"audio": b"RIFF....", "target_word": "thin"}

    response = await analyze_speech("POST", form, gateway)

    assert response.status == 200
    assert json.loads(response.body) == {"transcription": "θɪn"}
    gateway.analyze_raw.assert_awaited_once_with(b"RIFF....", "thin", "en")


@pytest.mark.asyncio
@pytest.mark.parametrize("form", [
    {"target_word": "thin"},
    {"audio": "not bytes", "target_word": "thin"},
    {"audio": b"RIFF...."},
])
async def test_analyze_speech_validation(gateway, form):
    """Test that missing audio or target word fails before any outbound call."""
    response = await analyze_speech("POST", form, gateway)

    assert response.status == 500
    gateway.analyze_raw.assert_not_awaited()


@pytest.mark.asyncio
async def test_analyze_speech_missing_secret(gateway):
    """Test that configuration problems are reported generically."""
    gateway.analyze_raw.side_effect = SecretMissing("ASR_API_KEY")

    response = await analyze_speech("POST", {"audio": b"RIFF", "target_word": "thin"}, gateway)

    assert response.status == 500
    assert "ASR_API_KEY" not in json.loads(response.body)["error"]
